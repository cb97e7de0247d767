"""Lease-based resource locks (core domain).

A lock is an exclusive, expiring hold on one (resource_type, resource_id)
pair. Holders renew the lease with the renewal token handed out on acquire;
anyone can take over a resource once its lease has expired.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterator, Optional

from core.errors import LockLostError
from core.models import LockResult, LockStatus, ResourceLock, utc_now
from core.ports import LockStorePort

LOGGER = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT_MS = 5 * 60 * 1000
RENEW_RATIO = 0.5


def _held_ms(lock: ResourceLock, now: datetime) -> int:
    return int((now - lock.acquired_at).total_seconds() * 1000)


class LockManager:
    def __init__(self, store: LockStorePort, clock: Callable[[], datetime] = utc_now) -> None:
        self._store = store
        self._clock = clock

    def acquire(
        self,
        resource_type: str,
        resource_id: str,
        owner_id: str,
        timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS,
    ) -> Optional[ResourceLock]:
        """Take the lock, or return None when a live lock is held by anyone."""

        if timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")

        now = self._clock()
        lock = ResourceLock(
            id=uuid.uuid4().hex,
            resource_type=resource_type,
            resource_id=resource_id,
            owner_id=owner_id,
            acquired_at=now,
            expires_at=now + timedelta(milliseconds=timeout_ms),
            renewal_token=secrets.token_urlsafe(24),
            timeout_ms=timeout_ms,
        )
        if not self._store.insert_lock_if_free(lock):
            holder = self._store.find_live_lock(resource_type, resource_id, now)
            LOGGER.info(
                "Lock busy: %s/%s held by %s",
                resource_type,
                resource_id,
                holder.owner_id if holder else "unknown",
            )
            return None

        LOGGER.info(
            "Lock acquired: %s/%s by %s (expires in %sms)",
            resource_type,
            resource_id,
            owner_id,
            timeout_ms,
        )
        return lock

    def renew(self, lock_id: str, renewal_token: str, extension_ms: Optional[int] = None) -> LockResult:
        now = self._clock()
        lock = self._store.get_lock(lock_id)
        if lock is None:
            LOGGER.warning("Lock not found for renewal: %s", lock_id)
            return LockResult(success=False, reason="lock_not_found")
        if lock.renewal_token != renewal_token:
            LOGGER.warning("Invalid renewal token for lock: %s", lock_id)
            return LockResult(success=False, reason="invalid_token")
        if lock.expires_at <= now:
            LOGGER.warning("Lock already expired: %s", lock_id)
            return LockResult(success=False, reason="lock_expired")

        expires_at = now + timedelta(milliseconds=extension_ms or lock.timeout_ms)
        if not self._store.extend_lock(lock_id, renewal_token, now, expires_at):
            # Lost between the read and the write; report the current cause.
            current = self._store.get_lock(lock_id)
            if current is None:
                return LockResult(success=False, reason="lock_not_found")
            if current.renewal_token != renewal_token:
                return LockResult(success=False, reason="invalid_token")
            return LockResult(success=False, reason="lock_expired")

        LOGGER.debug(
            "Lock renewed: %s/%s extended to %s",
            lock.resource_type,
            lock.resource_id,
            expires_at.isoformat(),
        )
        return LockResult(success=True, expires_at=expires_at)

    def release(self, lock_id: str, renewal_token: str) -> LockResult:
        """Release the lock; releasing a lock that is already gone succeeds."""

        lock = self._store.get_lock(lock_id)
        if lock is None:
            LOGGER.debug("Lock already released or expired: %s", lock_id)
            return LockResult(success=True)
        if lock.renewal_token != renewal_token:
            LOGGER.warning("Cannot release lock %s: invalid renewal token", lock_id)
            return LockResult(success=False, reason="invalid_token")

        self._store.delete_lock(lock_id, renewal_token)
        held_ms = _held_ms(lock, self._clock())
        LOGGER.info(
            "Lock released: %s/%s (held for %sms)",
            lock.resource_type,
            lock.resource_id,
            held_ms,
        )
        return LockResult(success=True, held_ms=held_ms)

    def is_locked(self, resource_type: str, resource_id: str) -> LockStatus:
        lock = self._store.find_live_lock(resource_type, resource_id, self._clock())
        if lock is None:
            return LockStatus(locked=False)
        return LockStatus(locked=True, locked_by=lock.owner_id, expires_at=lock.expires_at)

    def cleanup_expired(self) -> int:
        removed = self._store.delete_expired_locks(self._clock())
        if removed:
            LOGGER.info("Cleaned up %s expired locks", removed)
        return removed

    def force_release_owner(self, owner_id: str) -> int:
        released = self._store.delete_owner_locks(owner_id)
        if released:
            LOGGER.warning("Force released %s locks for owner %s", released, owner_id)
        return released

    @contextmanager
    def scoped(
        self,
        resource_type: str,
        resource_id: str,
        owner_id: str,
        timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS,
        renew_ratio: float = RENEW_RATIO,
    ) -> Iterator[Optional["LeaseHandle"]]:
        """Hold the lock for the duration of the block.

        Yields None when the resource is busy. The lock is released on every
        exit path, including task cancellation.
        """

        lock = self.acquire(resource_type, resource_id, owner_id, timeout_ms)
        if lock is None:
            yield None
            return

        handle = LeaseHandle(self, lock, self._clock, renew_ratio)
        try:
            yield handle
        finally:
            self.release(handle.lock.id, handle.lock.renewal_token)


class LeaseHandle:
    """The holder's view of an acquired lock."""

    def __init__(
        self,
        manager: LockManager,
        lock: ResourceLock,
        clock: Callable[[], datetime] = utc_now,
        renew_ratio: float = RENEW_RATIO,
    ) -> None:
        self._manager = manager
        self._clock = clock
        self._renew_after = timedelta(milliseconds=lock.timeout_ms * renew_ratio)
        self._last_renewed_at = lock.acquired_at
        self.lock = lock
        self.expires_at = lock.expires_at

    def is_due(self) -> bool:
        return self._clock() - self._last_renewed_at >= self._renew_after

    def renew_if_due(self) -> bool:
        """Renew once the configured share of the lease has elapsed.

        Returns True when a renewal happened; raises LockLostError when the
        lease could not be renewed.
        """

        if not self.is_due():
            return False
        result = self._manager.renew(self.lock.id, self.lock.renewal_token)
        if not result.success:
            raise LockLostError(
                f"Lost lock on {self.lock.resource_type}/{self.lock.resource_id}: {result.reason}"
            )
        self._last_renewed_at = self._clock()
        self.expires_at = result.expires_at or self.expires_at
        return True
