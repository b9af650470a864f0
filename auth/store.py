"""
auth/store.py -- SQLAlchemy Core persistence layer for users and OAuth links.

Pattern: Repository + Data Mapper.
CredentialStore is the repository; _row_to_user / _row_to_link are the mappers.
Route and flow code never touches SQL directly.

All methods are synchronous and check out a pooled connection for the
duration of one statement or transaction. Async callers run them through
starlette's run_in_threadpool so the event loop is never blocked on the
database.

Security:
  All queries use bound parameters. No f-strings in SQL.

Schema:
  "user"  (id, username UNIQUE, admin, password_hash NULL = password login off)
  "oauth" (uid, type, oid, token) with PRIMARY KEY (uid, type) -- a user has
          at most one link per provider.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import OauthLink, User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "user",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("admin", Boolean, nullable=False, default=False),
    Column("password_hash", Text),  # NULL for provider-only accounts
)

_oauth = Table(
    "oauth",
    _metadata,
    Column("uid", Integer, ForeignKey("user.id"), primary_key=True),
    Column("type", String(30), primary_key=True),  # provider tag, e.g. "AOSC"
    Column("oid", Text),  # provider's stable subject id
    Column("token", Text),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block behind writers.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for User and OauthLink records.

    Usage:
        store = CredentialStore("sqlite:///pakreq.db")
        uid = store.create_user(User(username="alice"))
        store.update_password_hash("alice", engine.hash(uid, "secret"))
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, pool_pre_ping=True)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned id.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    admin=user.is_admin,
                    password_hash=user.password_hash,
                )
            )
            return result.inserted_primary_key[0]

    def lookup_user_by_username(self, username: str) -> User | None:
        """Exact, case-sensitive lookup. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def lookup_user_by_oauth(self, provider: str, external_id: str) -> User | None:
        """Find the user that linked (provider, external_id). None if unlinked."""
        query = (
            select(_users)
            .select_from(_users.join(_oauth, _oauth.c.uid == _users.c.id))
            .where((_oauth.c.type == provider) & (_oauth.c.oid == external_id))
        )
        with self.engine.connect() as conn:
            row = conn.execute(query).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_password_hash(self, username: str, password_hash: str) -> bool:
        """Replace the stored hash. Returns False if the username does not exist."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update().where(_users.c.username == username).values(password_hash=password_hash)
            )
        return result.rowcount > 0

    def count_users(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_users)).scalar() or 0

    # ------------------------------------------------------------------
    # OAuth links
    # ------------------------------------------------------------------

    def insert_oauth_link(self, link: OauthLink) -> None:
        """Create or replace the link for (user_id, provider).

        Delete-then-insert inside one transaction keeps the upsert portable
        across SQLite and PostgreSQL while preserving the one-link-per-provider
        invariant enforced by the composite primary key.
        """
        with self.engine.begin() as conn:
            conn.execute(_oauth.delete().where((_oauth.c.uid == link.user_id) & (_oauth.c.type == link.provider)))
            conn.execute(
                _oauth.insert().values(
                    uid=link.user_id,
                    type=link.provider,
                    oid=link.external_subject,
                    token=link.token,
                )
            )

    def delete_oauth_link(self, user_id: int, provider: str) -> bool:
        """Remove the link. Returns False when there was nothing to remove."""
        with self.engine.begin() as conn:
            result = conn.execute(_oauth.delete().where((_oauth.c.uid == user_id) & (_oauth.c.type == provider)))
        return result.rowcount > 0

    def list_oauth_links_for_user(self, user_id: int) -> list[OauthLink]:
        """Return every link for the user, ordered by provider tag."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _oauth.select().where(_oauth.c.uid == user_id).order_by(_oauth.c.type)
            ).fetchall()
        return [_row_to_link(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        is_admin=bool(row.admin),
        password_hash=row.password_hash,
    )


def _row_to_link(row) -> OauthLink:
    # The token column is never handed back out of the store.
    return OauthLink(
        user_id=row.uid,
        provider=row.type,
        external_subject=row.oid,
    )
