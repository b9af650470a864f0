"""
auth/workers.py -- Bounded thread pool for CPU-bound crypto.

Argon2 hashing and JWT signing/verification are CPU work. Running them on the
event loop would stall every other request; running them on starlette's
shared I/O threadpool would let a burst of logins starve database calls. They
get their own small pool instead, sized by Settings.crypto_workers.

argon2-cffi releases the GIL while hashing, so the pool gives real
parallelism for the expensive part.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, TypeVar

logger = logging.getLogger("pakreq.auth.workers")

T = TypeVar("T")


class CryptoPool:
    """Run blocking callables on a dedicated executor and await the result.

    Usage:
        pool = CryptoPool(max_workers=4)
        digest = await pool.run(hasher.hash, "1:secret")
        pool.shutdown()
    """

    def __init__(self, max_workers: int = 4) -> None:
        self.max_workers = max_workers
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pakreq-crypto")

    async def run(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        call = functools.partial(fn, *args, **kwargs)
        return await asyncio.get_running_loop().run_in_executor(self._executor, call)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
        logger.info("Crypto pool shut down")
