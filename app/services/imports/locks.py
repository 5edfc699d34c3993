"""
Per-practice lock serializing import runs inside this process.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from app.core.exceptions import ImportLockedError

logger = logging.getLogger("practice.imports.locks")


class TenantLockManager:
    """
    One asyncio lock per tenant so two runs of the same practice never
    interleave their "no match, create" decisions.

    A tenant only has an entry while one of its runs holds the lock.
    """
    _locks: Dict[str, asyncio.Lock] = {}

    @classmethod
    def get_lock(cls, tenant_id: str) -> asyncio.Lock:
        """Get or create the lock of a tenant."""
        if tenant_id not in cls._locks:
            cls._locks[tenant_id] = asyncio.Lock()
        return cls._locks[tenant_id]

    @classmethod
    def is_locked(cls, tenant_id: str) -> bool:
        """Check whether a run of the tenant is in progress in this process."""
        lock = cls._locks.get(tenant_id)
        return lock is not None and lock.locked()

    @classmethod
    @asynccontextmanager
    async def acquire(cls, tenant_id: str) -> AsyncIterator[None]:
        """
        Hold the tenant lock for the duration of a run.

        Raises:
            ImportLockedError: If a run of the same tenant already holds it
        """
        lock = cls.get_lock(tenant_id)
        if lock.locked():
            raise ImportLockedError(details={"tenant_id": tenant_id})
        await lock.acquire()
        logger.info(f"Acquired import lock for tenant '{tenant_id}'")
        try:
            yield
        finally:
            lock.release()
            if not lock.locked() and cls._locks.get(tenant_id) is lock:
                del cls._locks[tenant_id]
            logger.info(f"Released import lock for tenant '{tenant_id}'")
