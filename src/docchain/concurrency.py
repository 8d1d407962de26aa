from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Protocol, TypeVar

from .errors import ResourceLockedError
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Clock(Protocol):
    """Monotonic time source, injectable so TTL behavior is testable."""

    def now(self) -> float:
        ...


class SystemClock:
    def now(self) -> float:
        return time.monotonic()


# ---------------------------------------------------------------------------
# Request deduplication
# ---------------------------------------------------------------------------

@dataclass
class _InFlight:
    future: Future[Any] = field(default_factory=Future)
    completed_at: float | None = None


class Deduplicator:
    """Collapse concurrent calls that share a key onto a single execution.

    The first caller for a key runs the work; callers arriving while it is in
    flight, or within ``grace_seconds`` of a successful completion, receive the
    same result. A failed execution, or a result rejected by ``keep_if``, is
    evicted immediately so the next caller retries; callers already waiting
    still observe that outcome.
    """

    def __init__(self, *, grace_seconds: float = 30.0, clock: Clock | None = None) -> None:
        self.grace_seconds = grace_seconds
        self.clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._entries: dict[str, _InFlight] = {}

    def run(self, key: str, fn: Callable[[], T], *, keep_if: Callable[[T], bool] | None = None) -> T:
        with self._lock:
            self._evict_locked(self.clock.now())
            entry = self._entries.get(key)
            leader = entry is None
            if entry is None:
                entry = _InFlight()
                self._entries[key] = entry

        if not leader:
            logger.debug("dedup join key=%s", key)
            return entry.future.result()

        try:
            result = fn()
        except BaseException as exc:
            with self._lock:
                if self._entries.get(key) is entry:
                    del self._entries[key]
            entry.future.set_exception(exc)
            raise
        with self._lock:
            entry.completed_at = self.clock.now()
            if keep_if is not None and not keep_if(result) and self._entries.get(key) is entry:
                del self._entries[key]
        entry.future.set_result(result)
        return result

    def in_flight(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and entry.completed_at is None

    def __len__(self) -> int:
        with self._lock:
            self._evict_locked(self.clock.now())
            return len(self._entries)

    def _evict_locked(self, now: float) -> None:
        expired = [
            key
            for key, entry in self._entries.items()
            if entry.completed_at is not None and now - entry.completed_at >= self.grace_seconds
        ]
        for key in expired:
            del self._entries[key]


# ---------------------------------------------------------------------------
# Idempotency
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class IdempotencyRecord:
    result: Any
    recorded_at: float


class IdempotencyTracker:
    """Remember operation results by key for ``ttl_seconds``."""

    def __init__(
        self,
        *,
        ttl_seconds: float = 3_600.0,
        sweep_interval_seconds: float = 300.0,
        clock: Clock | None = None,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._records: dict[str, IdempotencyRecord] = {}
        self._last_sweep = self.clock.now()

    def get(self, key: str) -> IdempotencyRecord | None:
        """Return the live record for ``key``, or None if absent or expired."""
        now = self.clock.now()
        with self._lock:
            self._maybe_sweep_locked(now)
            record = self._records.get(key)
            if record is None:
                return None
            if now - record.recorded_at >= self.ttl_seconds:
                del self._records[key]
                return None
            return record

    def set(self, key: str, result: Any) -> None:
        now = self.clock.now()
        with self._lock:
            self._maybe_sweep_locked(now)
            self._records[key] = IdempotencyRecord(result=result, recorded_at=now)
        logger.debug("idempotency record stored key=%s", key)

    def sweep(self) -> int:
        """Drop every expired record. Returns the number removed."""
        with self._lock:
            return self._sweep_locked(self.clock.now())

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _maybe_sweep_locked(self, now: float) -> None:
        if now - self._last_sweep >= self.sweep_interval_seconds:
            self._sweep_locked(now)

    def _sweep_locked(self, now: float) -> int:
        expired = [key for key, record in self._records.items() if now - record.recorded_at >= self.ttl_seconds]
        for key in expired:
            del self._records[key]
        self._last_sweep = now
        if expired:
            logger.debug("idempotency sweep removed=%d", len(expired))
        return len(expired)


# ---------------------------------------------------------------------------
# Locks
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LockToken:
    resource: str
    owner: str
    token: str
    acquired_at: float
    expires_at: float


class LockManager:
    """Advisory, exclusive, time-boxed locks keyed by resource id.

    A lock whose TTL has elapsed is treated as free and may be taken by any
    owner. Re-acquiring as the current owner refreshes the TTL.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 30.0,
        sweep_interval_seconds: float = 60.0,
        clock: Clock | None = None,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._held: dict[str, LockToken] = {}
        self._last_sweep = self.clock.now()

    def try_acquire(self, resource: str, owner: str, *, ttl_seconds: float | None = None) -> LockToken | None:
        """Acquire ``resource`` for ``owner`` without blocking.

        Returns:
            The new LockToken, or None when another owner holds a live lock.
        """
        now = self.clock.now()
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._maybe_sweep_locked(now)
            current = self._held.get(resource)
            if current is not None and current.expires_at > now and current.owner != owner:
                logger.debug("lock busy resource=%s holder=%s requester=%s", resource, current.owner, owner)
                return None
            token = LockToken(
                resource=resource,
                owner=owner,
                token=f"{owner}:{int(now * 1000)}:{uuid.uuid4().hex[:8]}",
                acquired_at=now,
                expires_at=now + ttl,
            )
            self._held[resource] = token
        logger.debug("lock acquired resource=%s owner=%s", resource, owner)
        return token

    def release(self, resource: str, owner: str) -> bool:
        """Release ``resource`` if ``owner`` holds it. Returns whether a lock was released."""
        with self._lock:
            current = self._held.get(resource)
            if current is None or current.owner != owner:
                return False
            del self._held[resource]
        logger.debug("lock released resource=%s owner=%s", resource, owner)
        return True

    def force_release(self, resource: str) -> bool:
        with self._lock:
            current = self._held.pop(resource, None)
        if current is None:
            return False
        logger.warning("lock force-released resource=%s owner=%s", resource, current.owner)
        return True

    def is_locked(self, resource: str) -> bool:
        return self.holder(resource) is not None

    def holder(self, resource: str) -> str | None:
        now = self.clock.now()
        with self._lock:
            current = self._held.get(resource)
            if current is None or current.expires_at <= now:
                return None
            return current.owner

    def sweep_expired(self) -> int:
        with self._lock:
            return self._sweep_locked(self.clock.now())

    def _maybe_sweep_locked(self, now: float) -> None:
        if now - self._last_sweep >= self.sweep_interval_seconds:
            self._sweep_locked(now)

    def _sweep_locked(self, now: float) -> int:
        expired = [resource for resource, token in self._held.items() if token.expires_at <= now]
        for resource in expired:
            del self._held[resource]
        self._last_sweep = now
        return len(expired)


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------

class ConcurrencyGuard:
    """Compose idempotency, deduplication and locking around one operation.

    Order of evaluation for ``run``:

    1. A live idempotency record short-circuits with the cached result.
    2. The call takes every lock key, failing fast with
       ``ResourceLockedError`` if any is held by another owner.
    3. With a ``dedup_key``, the work runs through the deduplicator, so a
       result completed inside the grace window is reused. Reuse only
       happens while this call holds the locks.
    4. The result is cached under the idempotency key when ``cache_if``
       accepts it, and the locks are released no matter how ``fn`` exits.
    """

    def __init__(
        self,
        *,
        locks: LockManager,
        idempotency: IdempotencyTracker,
        dedup: Deduplicator,
    ) -> None:
        self.locks = locks
        self.idempotency = idempotency
        self.dedup = dedup

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, *, clock: Clock | None = None) -> "ConcurrencyGuard":
        effective_clock = clock or SystemClock()
        return cls(
            locks=LockManager(ttl_seconds=settings.lock_ttl_seconds, clock=effective_clock),
            idempotency=IdempotencyTracker(
                ttl_seconds=settings.idempotency_ttl_seconds,
                sweep_interval_seconds=settings.idempotency_sweep_seconds,
                clock=effective_clock,
            ),
            dedup=Deduplicator(grace_seconds=settings.dedup_grace_seconds, clock=effective_clock),
        )

    def run(
        self,
        fn: Callable[[], T],
        *,
        lock_keys: Iterable[str],
        owner: str = "system",
        idempotency_key: str | None = None,
        dedup_key: str | None = None,
        cache_if: Callable[[T], bool] | None = None,
    ) -> T:
        if idempotency_key is not None:
            record = self.idempotency.get(idempotency_key)
            if record is not None:
                logger.debug("idempotency hit key=%s", idempotency_key)
                return record.result

        keys = list(dict.fromkeys(lock_keys))
        if not keys:
            raise ValueError("at least one lock key is required")

        def work() -> T:
            if idempotency_key is not None:
                record = self.idempotency.get(idempotency_key)
                if record is not None:
                    return record.result
            result = fn()
            if idempotency_key is not None and (cache_if is None or cache_if(result)):
                self.idempotency.set(idempotency_key, result)
            return result

        call_owner = f"{owner}#{uuid.uuid4().hex[:8]}"
        acquired: list[str] = []
        try:
            for key in keys:
                if self.locks.try_acquire(key, call_owner) is None:
                    raise ResourceLockedError(key, holder=self.locks.holder(key))
                acquired.append(key)
            if dedup_key is not None:
                return self.dedup.run(dedup_key, work, keep_if=cache_if)
            return work()
        finally:
            for key in reversed(acquired):
                self.locks.release(key, call_owner)
