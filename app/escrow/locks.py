"""
Concurrency control for escrow writes.

Two mechanisms cooperate here:

1. **Conditional updates** (compare_and_set)
   - Every ledger transition is written as
     ``UPDATE ... WHERE id = ? AND version = ? AND status = ?``
   - Zero matched rows means another writer got there first
   - This is what makes release exactly-once, on any database

2. **Distributed locks** (DistributedLock)
   - Redis-based mutual exclusion across Celery workers
   - Used by per-entry worker tasks so a sweep and a retry of the same
     task don't both reach the gateway

Usage:

    from escrow.locks import DistributedLock, compare_and_set

    with transaction.atomic():
        entry = EscrowEntry.objects.select_for_update().get(pk=entry_id)
        entry.release()  # django-fsm transition, in memory only
        compare_and_set(
            entry,
            ["status", "released_at"],
            status=EscrowStatus.HELD,
        )

    with DistributedLock(f"escrow:auto-release:{entry_id}", ttl=60):
        ...
"""

from __future__ import annotations

import time
import uuid as uuid_module
from typing import TYPE_CHECKING, TypeVar

from django.db import models
from django.db.models import F
from django.utils import timezone

from django_redis import get_redis_connection

from escrow.exceptions import LockAcquisitionError, StaleRecordError

if TYPE_CHECKING:
    from collections.abc import Iterable
    from typing import Any

    from redis import Redis

T = TypeVar("T", bound=models.Model)


# =============================================================================
# Conditional Updates
# =============================================================================


def compare_and_set(instance: T, fields: Iterable[str], **expected: Any) -> T:
    """
    Persist ``fields`` only if the row still matches what we read.

    The row must still carry ``instance.version`` and every column in
    ``expected`` (typically the source status of the transition). On
    success the row's version is bumped and the in-memory instance is
    updated to match.

    Args:
        instance: Model instance with a ``version`` field, already mutated
        fields: Names of the fields to write
        **expected: Extra column values the row must still have

    Returns:
        The same instance, with version and updated_at refreshed

    Raises:
        StaleRecordError: If no row matched (concurrent modification)
    """
    model_class = type(instance)
    opts = model_class._meta
    now = timezone.now()

    values: dict[str, Any] = {}
    for name in fields:
        field = opts.get_field(name)
        values[field.attname] = getattr(instance, field.attname)
    values["version"] = F("version") + 1
    has_updated_at = any(f.name == "updated_at" for f in opts.concrete_fields)
    if has_updated_at:
        values["updated_at"] = now

    rows = model_class._default_manager.filter(
        pk=instance.pk,
        version=instance.version,
        **expected,
    ).update(**values)

    if rows == 0:
        model_name = model_class.__name__
        raise StaleRecordError(
            f"{model_name} {instance.pk} was modified by another writer",
            details={
                "pk": str(instance.pk),
                "expected_version": instance.version,
                "expected": {k: str(v) for k, v in expected.items()},
            },
        )

    instance.version += 1
    if has_updated_at:
        instance.updated_at = now
    return instance


# =============================================================================
# Distributed Locks
# =============================================================================


class DistributedLock:
    """
    Redis-based distributed lock with TTL.

    The TTL frees the lock if a worker dies mid-operation. A random token
    identifies the owner so one worker can never release another's lock.

    Example:
        try:
            with DistributedLock("escrow:payout:123", ttl=120, timeout=5.0):
                execute_payout()
        except LockAcquisitionError:
            # Another worker holds the lock
            return {"status": "lock_failed"}

    Args:
        key: Lock identifier (will be prefixed with "lock:")
        ttl: Lock TTL in seconds
        blocking: If True, acquire() polls until the lock is free
        timeout: Maximum wait in seconds (only if blocking=True)
    """

    RELEASE_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    EXTEND_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("expire", KEYS[1], ARGV[2])
    else
        return 0
    end
    """

    def __init__(
        self,
        key: str,
        ttl: int = 30,
        blocking: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self.key = f"lock:{key}"
        self.ttl = ttl
        self.blocking = blocking
        self.timeout = timeout
        self._token: str | None = None
        self._redis: Redis | None = None

    def _get_redis(self) -> Redis:
        if self._redis is None:
            self._redis = get_redis_connection("default")
        return self._redis

    def acquire(self) -> bool:
        """
        Acquire the lock.

        Raises:
            LockAcquisitionError: If the lock is held elsewhere (non-blocking)
                or could not be obtained within ``timeout`` (blocking)
        """
        self._token = str(uuid_module.uuid4())
        redis = self._get_redis()

        if self.blocking:
            deadline = time.monotonic() + self.timeout
            while time.monotonic() < deadline:
                if self._try_acquire(redis):
                    return True
                time.sleep(0.05)

            self._token = None
            raise LockAcquisitionError(
                f"Failed to acquire lock '{self.key}' within {self.timeout}s",
                details={"key": self.key, "timeout": self.timeout},
            )

        if not self._try_acquire(redis):
            self._token = None
            raise LockAcquisitionError(
                f"Lock '{self.key}' is already held",
                details={"key": self.key},
            )
        return True

    def _try_acquire(self, redis: Redis) -> bool:
        return bool(redis.set(self.key, self._token, nx=True, ex=self.ttl))

    def release(self) -> bool:
        """Release the lock if we still own it. Safe to call twice."""
        if self._token is None:
            return False

        result = self._get_redis().eval(self.RELEASE_SCRIPT, 1, self.key, self._token)
        self._token = None
        return bool(result)

    def extend(self, additional_ttl: int | None = None) -> bool:
        """Reset the TTL if we still own the lock."""
        if self._token is None:
            return False

        ttl = additional_ttl or self.ttl
        result = self._get_redis().eval(
            self.EXTEND_SCRIPT, 1, self.key, self._token, ttl
        )
        return bool(result)

    @property
    def is_held(self) -> bool:
        return self._token is not None

    def __enter__(self) -> DistributedLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> bool:
        self.release()
        return False


__all__ = [
    "DistributedLock",
    "compare_and_set",
]
