"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (to mount SlowAPIMiddleware), api/routes/rest.py and
web/routes.py (to apply per-route limits with @limiter.limit()).

A single shared instance means all routes share the same in-memory counter
store. Instantiating one per module would give each module its own counters
and the limits would never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

# Applied to both password entry points: POST /login and GET /api/login [H2].
LOGIN_RATE_LIMIT = "10/minute"

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
