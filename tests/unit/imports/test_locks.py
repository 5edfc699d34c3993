import pytest

from app.core.exceptions import ImportLockedError
from app.services.imports.locks import TenantLockManager


@pytest.mark.asyncio
async def test_second_run_of_a_practice_is_refused():
    async with TenantLockManager.acquire("practice-a"):
        assert TenantLockManager.is_locked("practice-a")
        assert not TenantLockManager.is_locked("practice-b")

        with pytest.raises(ImportLockedError):
            async with TenantLockManager.acquire("practice-a"):
                pass

        async with TenantLockManager.acquire("practice-b"):
            assert TenantLockManager.is_locked("practice-b")


@pytest.mark.asyncio
async def test_released_locks_are_forgotten():
    for tenant_id in ("practice-a", "practice-b", "practice-c"):
        async with TenantLockManager.acquire(tenant_id):
            assert tenant_id in TenantLockManager._locks

    assert not set(TenantLockManager._locks) & {"practice-a", "practice-b", "practice-c"}
    assert not TenantLockManager.is_locked("practice-a")


@pytest.mark.asyncio
async def test_lock_is_released_when_the_run_raises():
    with pytest.raises(RuntimeError):
        async with TenantLockManager.acquire("practice-a"):
            raise RuntimeError("boom")

    assert "practice-a" not in TenantLockManager._locks
    async with TenantLockManager.acquire("practice-a"):
        pass
