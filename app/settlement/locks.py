"""
Cross-process locking for settlement work.

Two mechanisms are provided, and they are used at different seams:

1. DistributedLock (Redis, TTL-bounded)
   Serialises work that leaves the database, such as a seller transfer
   that calls the gateway between two transactions, or the global
   reconciliation sweep. A crashed worker never wedges a key because the
   lock expires on its own.

2. check_version (optimistic, row-level)
   Loads a row under select_for_update and verifies that the caller's
   copy is not stale. Orders and transactions bump their version on
   every save (see core.model_mixins.VersionedMixin).

Usage:

    from settlement.locks import DistributedLock

    with DistributedLock(f"escrow:release:{item.id}", ttl=60, blocking=False):
        EscrowService.release_escrow(item.id)

    with transaction.atomic():
        order = check_version(Order, order_id, expected_version=3)
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import TYPE_CHECKING, TypeVar

from django.db import models, transaction

from django_redis import get_redis_connection

from settlement.exceptions import LockAcquisitionError, OrderNotFoundError, StaleRecordError

if TYPE_CHECKING:
    from typing import Any

    from redis import Redis

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=models.Model)

LOCK_PREFIX = "lock:settlement:"


# =============================================================================
# Distributed Locks
# =============================================================================


class DistributedLock:
    """
    Redis lock with an owner token and a TTL.

    Ownership is tracked with a random token so that a worker whose lock
    already expired cannot delete a lock another worker has since taken.
    Release and extend are single Lua calls for the same reason.

    Args:
        key: Lock name, stored under the "lock:settlement:" prefix
        ttl: Seconds before Redis drops the lock on its own
        blocking: Wait for the lock (True) or fail immediately (False)
        timeout: Maximum seconds to wait in blocking mode
        poll_interval: Seconds between attempts in blocking mode

    Raises:
        LockAcquisitionError: From acquire()/__enter__ when the lock is held
    """

    RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    end
    return 0
    """

    EXTEND_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("expire", KEYS[1], ARGV[2])
    end
    return 0
    """

    def __init__(
        self,
        key: str,
        ttl: int = 60,
        blocking: bool = True,
        timeout: float = 5.0,
        poll_interval: float = 0.1,
    ) -> None:
        self.name = key
        self.key = f"{LOCK_PREFIX}{key}"
        self.ttl = ttl
        self.blocking = blocking
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._token: str | None = None
        self._client: Redis | None = None

    @property
    def client(self) -> Redis:
        if self._client is None:
            self._client = get_redis_connection("default")
        return self._client

    @property
    def is_held(self) -> bool:
        return self._token is not None

    def acquire(self) -> bool:
        """
        Take the lock or raise.

        Returns:
            True once the lock is held

        Raises:
            LockAcquisitionError: Lock held elsewhere (after the timeout
                when blocking)
        """
        token = uuid.uuid4().hex
        deadline = time.monotonic() + (self.timeout if self.blocking else 0)

        while True:
            if self.client.set(self.key, token, nx=True, ex=self.ttl):
                self._token = token
                return True
            if time.monotonic() >= deadline:
                break
            time.sleep(self.poll_interval)

        logger.info(
            "Lock busy",
            extra={"lock_key": self.key, "blocking": self.blocking},
        )
        raise LockAcquisitionError(
            f"Lock '{self.name}' is held by another worker",
            details={"key": self.key, "timeout": self.timeout if self.blocking else 0},
        )

    def release(self) -> bool:
        """Drop the lock if this instance still owns it. Safe to call twice."""
        if self._token is None:
            return False
        released = self.client.eval(self.RELEASE_SCRIPT, 1, self.key, self._token)
        self._token = None
        return bool(released)

    def extend(self, ttl: int | None = None) -> bool:
        """Reset the remaining TTL (defaults to the original TTL)."""
        if self._token is None:
            return False
        extended = self.client.eval(
            self.EXTEND_SCRIPT, 1, self.key, self._token, ttl or self.ttl
        )
        return bool(extended)

    def __enter__(self) -> DistributedLock:
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.release()
        return False


# =============================================================================
# Optimistic Locking
# =============================================================================


def check_version(model_class: type[M], pk: Any, expected_version: int) -> M:
    """
    Lock a row for update and verify it is still at the expected version.

    Must be called inside transaction.atomic(); the row lock lasts until
    the outer transaction ends.

    Args:
        model_class: Model with a VersionedMixin version column
        pk: Primary key of the row
        expected_version: Version the caller last read

    Returns:
        The locked instance

    Raises:
        OrderNotFoundError: Row does not exist
        StaleRecordError: Row was modified since the caller read it
    """
    with transaction.atomic():
        instance = model_class.objects.select_for_update().filter(pk=pk).first()
        if instance is None:
            raise OrderNotFoundError(
                f"{model_class.__name__} {pk} not found",
                details={"pk": str(pk)},
            )
        if instance.version != expected_version:
            raise StaleRecordError(
                f"{model_class.__name__} {pk} was modified concurrently "
                f"(expected version {expected_version}, found {instance.version})",
                details={
                    "pk": str(pk),
                    "expected_version": expected_version,
                    "current_version": instance.version,
                },
            )
        return instance


__all__ = ["DistributedLock", "check_version", "LOCK_PREFIX"]
