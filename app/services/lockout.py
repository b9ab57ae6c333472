"""Account lockout engine.

Failed authentication attempts are tracked under three keys per attempt:
the identity alone, the origin alone, and the identity+origin pair. A lock
on any of them blocks the attempt. Lockout windows double with every lock a
key has ever received, up to a fixed ceiling.

State is held in process memory. Each worker keeps its own view, so the
effective threshold across N workers is N times the configured value.
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterator, Optional

from app.core.security import now_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockoutPolicy:
    max_attempts: int = 5
    base_duration: timedelta = timedelta(minutes=15)
    max_duration: timedelta = timedelta(hours=24)
    cap_exponent: int = 10
    cleanup_interval: timedelta = timedelta(hours=1)
    retention: timedelta = timedelta(hours=24)


@dataclass
class LockoutRecord:
    last_attempt_at: datetime
    failed_count: int = 0
    locked_until: Optional[datetime] = None
    total_lockouts: int = 0


@dataclass(frozen=True)
class LockoutStatus:
    is_locked: bool = False
    failed_attempts: int = 0
    remaining_minutes: int = 0
    total_lockouts: int = 0


@dataclass(frozen=True)
class LockoutStats:
    total_records: int
    locked_keys: int


def _ceil_minutes(delta: timedelta) -> int:
    return math.ceil(delta.total_seconds() / 60)


def tracking_keys(identity: str, origin: Optional[str] = None) -> list[str]:
    """Return the keys a single attempt is tracked under."""
    identity = identity.strip().lower()
    keys = [f"email:{identity}"]
    if origin:
        keys.append(f"ip:{origin}")
        keys.append(f"combo:{identity}:{origin}")
    return keys


class LockoutEngine:
    """In-memory brute-force defence with progressive backoff."""

    def __init__(
        self,
        policy: Optional[LockoutPolicy] = None,
        *,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.policy = policy or LockoutPolicy()
        self._clock = clock
        self._records: dict[str, LockoutRecord] = {}
        self._lock = threading.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, key: str) -> bool:
        return key in self._records

    def _existing(self, identity: str, origin: Optional[str]) -> Iterator[tuple[str, LockoutRecord]]:
        for key in tracking_keys(identity, origin):
            record = self._records.get(key)
            if record is not None:
                yield key, record

    def lockout_duration(self, total_lockouts: int) -> timedelta:
        """Window for a key's ``total_lockouts``-th lock.

        The first lock lasts exactly ``base_duration``; every later one doubles
        it, bounded by ``cap_exponent`` and ``max_duration``.
        """
        exponent = min(max(total_lockouts - 1, 0), self.policy.cap_exponent)
        return min(self.policy.base_duration * (2 ** exponent), self.policy.max_duration)

    def is_locked(self, identity: str, origin: Optional[str] = None) -> bool:
        now = self._clock()
        locked = False
        with self._lock:
            for _, record in self._existing(identity, origin):
                if record.locked_until is None:
                    continue
                if now < record.locked_until:
                    locked = True
                else:
                    # elapsed; total_lockouts is kept for the next escalation
                    record.locked_until = None
        return locked

    def record_failed_attempt(self, identity: str, origin: Optional[str] = None) -> bool:
        """Count a failed attempt. Returns True if it triggered a new lock."""
        now = self._clock()
        newly_locked = False
        with self._lock:
            for key in tracking_keys(identity, origin):
                record = self._records.get(key)
                if record is None:
                    record = LockoutRecord(last_attempt_at=now)
                    self._records[key] = record

                record.failed_count += 1
                record.last_attempt_at = now

                if record.failed_count >= self.policy.max_attempts:
                    record.total_lockouts += 1
                    duration = self.lockout_duration(record.total_lockouts)
                    record.locked_until = now + duration
                    record.failed_count = 0
                    newly_locked = True
                    logger.warning(
                        "Lockout triggered for %s (lockout #%d, %d minutes)",
                        key,
                        record.total_lockouts,
                        _ceil_minutes(duration),
                    )
        return newly_locked

    def clear_attempts(self, identity: str, origin: Optional[str] = None) -> None:
        with self._lock:
            for _, record in self._existing(identity, origin):
                record.failed_count = 0
                record.locked_until = None

    def full_reset(self, identity: str, origin: Optional[str] = None) -> None:
        """Forget every derived record, lifetime lock count included."""
        with self._lock:
            for key in tracking_keys(identity, origin):
                self._records.pop(key, None)

    def get_remaining_lockout_time(self, identity: str, origin: Optional[str] = None) -> int:
        """Minutes (rounded up) until the latest active lock elapses, else 0."""
        now = self._clock()
        remaining = 0
        with self._lock:
            for _, record in self._existing(identity, origin):
                if record.locked_until is not None and record.locked_until > now:
                    remaining = max(remaining, _ceil_minutes(record.locked_until - now))
        return remaining

    def get_failed_attempts(self, identity: str, origin: Optional[str] = None) -> int:
        with self._lock:
            return max((record.failed_count for _, record in self._existing(identity, origin)), default=0)

    def get_lockout_status(self, identity: str, origin: Optional[str] = None) -> LockoutStatus:
        now = self._clock()
        is_locked = False
        failed_attempts = 0
        remaining_minutes = 0
        total_lockouts = 0
        with self._lock:
            for _, record in self._existing(identity, origin):
                if record.locked_until is not None and now < record.locked_until:
                    is_locked = True
                    remaining_minutes = max(remaining_minutes, _ceil_minutes(record.locked_until - now))
                failed_attempts = max(failed_attempts, record.failed_count)
                total_lockouts = max(total_lockouts, record.total_lockouts)
        return LockoutStatus(
            is_locked=is_locked,
            failed_attempts=failed_attempts,
            remaining_minutes=remaining_minutes,
            total_lockouts=total_lockouts,
        )

    def get_stats(self) -> LockoutStats:
        now = self._clock()
        with self._lock:
            locked = sum(
                1 for record in self._records.values() if record.locked_until is not None and record.locked_until > now
            )
            return LockoutStats(total_records=len(self._records), locked_keys=locked)

    def cleanup(self) -> int:
        """Drop records that are unlocked and untouched for the retention window."""
        now = self._clock()
        expired_before = now - self.policy.retention
        with self._lock:
            stale = [
                key
                for key, record in self._records.items()
                if record.last_attempt_at < expired_before
                and (record.locked_until is None or record.locked_until < expired_before)
            ]
            for key in stale:
                del self._records[key]
        if stale:
            logger.debug("Lockout cleanup removed %d records", len(stale))
        return len(stale)

    async def _run_cleanup(self) -> None:
        interval = self.policy.cleanup_interval.total_seconds()
        while True:
            await asyncio.sleep(interval)
            try:
                self.cleanup()
            except Exception:  # noqa: BLE001
                logger.exception("Lockout cleanup failed")

    def start(self) -> None:
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        self._cleanup_task = asyncio.create_task(self._run_cleanup(), name="lockout-cleanup")

    async def stop(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @property
    def running(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()

    async def __aenter__(self) -> "LockoutEngine":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()
