"""Per-Service exponential backoff for repeated reconcile errors.

The first occurrence of an error for a Service is always surfaced. Repeats
of the same error (compared by a hash of its message) are throttled along a
fixed ladder: immediate, 1m, 5m, 15m, 60m. A different error for the same
Service resets the entry, so a new failure mode is never hidden behind the
backoff window of an older one.

Two consumers:
- should_log(): local log throttling. The ladder advances when an error is
  surfaced.
- filter_for_reconcile(): decides whether a failed reconcile is returned to
  the retry machinery or swallowed with a requeue delay. The ladder advances
  on every call, suppressed or not.

Entries idle for 24h are removed by purge_idle(), called from the periodic
reconciler.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

logger = logging.getLogger(__name__)

BACKOFF_LADDER: tuple[timedelta, ...] = (
    timedelta(0),
    timedelta(minutes=1),
    timedelta(minutes=5),
    timedelta(minutes=15),
    timedelta(minutes=60),
)

IDLE_ENTRY_TTL = timedelta(hours=24)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def hash_error(error: BaseException | str) -> str:
    """Hash an error message so identical failures compare equal."""
    return hashlib.md5(str(error).encode(), usedforsecurity=False).hexdigest()


@dataclass
class ErrorEntry:
    """Error history of one Service."""

    last_error: str
    error_hash: str
    last_error_time: datetime
    last_log_time: datetime
    count: int = 1
    current_index: int = 1
    next_index: int = 2


@dataclass(frozen=True)
class FilterDecision:
    """Outcome of filter_for_reconcile().

    Attributes:
        surface: Return the error to the retry machinery.
        requeue_after: Seconds until the next attempt when suppressed.
        reason: Why the error was suppressed or reset, empty otherwise.
    """

    surface: bool
    requeue_after: float | None = None
    reason: str = ""


class ErrorRateLimiter:
    """Tracks one ErrorEntry per Service key behind a single lock."""

    def __init__(
        self,
        clock: Clock | None = None,
        ladder: tuple[timedelta, ...] = BACKOFF_LADDER,
    ) -> None:
        self._clock = clock or _utcnow
        self._ladder = ladder
        self._lock = threading.Lock()
        self._entries: dict[str, ErrorEntry] = {}

    def should_log(self, service_key: str, error: BaseException | str) -> tuple[bool, str]:
        """Return (surface, reason) for a local log decision."""
        with self._lock:
            now = self._clock()
            started = self._start_or_reset(service_key, error, now)
            if started is not None:
                return True, started

            entry = self._entries[service_key]
            entry.count += 1
            entry.last_error_time = now
            elapsed = now - entry.last_log_time
            wait = self._wait(entry.current_index)

            if elapsed >= wait:
                self._surface(entry, error, now)
                return True, ""

            return False, f"rate limited (next log in {_fmt(wait - elapsed)})"

    def filter_for_reconcile(self, service_key: str, error: BaseException | str) -> FilterDecision:
        """Decide whether a reconcile failure is surfaced or requeued silently."""
        with self._lock:
            now = self._clock()
            started = self._start_or_reset(service_key, error, now)
            if started is not None:
                return FilterDecision(surface=True, reason=started)

            entry = self._entries[service_key]
            entry.count += 1
            entry.last_error_time = now
            elapsed = now - entry.last_log_time
            wait = self._wait(entry.next_index)

            if elapsed >= wait:
                self._surface(entry, error, now)
                return FilterDecision(surface=True)

            self._advance(entry)
            remaining = wait - elapsed
            return FilterDecision(
                surface=False,
                requeue_after=remaining.total_seconds(),
                reason=f"rate limited (next log in {_fmt(remaining)})",
            )

    def reset(self, service_key: str) -> None:
        """Forget a Service's error history, e.g. after a successful reconcile."""
        with self._lock:
            self._entries.pop(service_key, None)

    def reset_on_error_change(self, service_key: str, error: BaseException | str) -> bool:
        """Restart the ladder if ``error`` differs from the recorded one.

        Returns:
            True if the entry was reset.
        """
        with self._lock:
            entry = self._entries.get(service_key)
            if entry is None or entry.error_hash == hash_error(error):
                return False
            now = self._clock()
            entry.last_error = str(error)
            entry.error_hash = hash_error(error)
            entry.last_error_time = now
            entry.last_log_time = datetime.min.replace(tzinfo=UTC)
            entry.count = 1
            entry.current_index = 0
            entry.next_index = 1
            return True

    def purge_idle(self, ttl: timedelta = IDLE_ENTRY_TTL) -> int:
        """Drop entries whose last error is older than ``ttl``."""
        with self._lock:
            cutoff = self._clock() - ttl
            stale = [key for key, entry in self._entries.items() if entry.last_error_time < cutoff]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug("Purged idle error entries", extra={"purged": len(stale)})
        return len(stale)

    def backoff_index(self, service_key: str) -> int:
        with self._lock:
            entry = self._entries.get(service_key)
            return entry.current_index if entry else 0

    def next_backoff_index(self, service_key: str) -> int:
        with self._lock:
            entry = self._entries.get(service_key)
            return entry.next_index if entry else 0

    def error_count(self, service_key: str) -> int:
        with self._lock:
            entry = self._entries.get(service_key)
            return entry.count if entry else 0

    def required_wait(self, service_key: str) -> timedelta:
        """Wait the next should_log() call must observe before surfacing."""
        with self._lock:
            entry = self._entries.get(service_key)
            return self._wait(entry.current_index) if entry else timedelta(0)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _start_or_reset(self, service_key: str, error: BaseException | str, now: datetime) -> str | None:
        """Create or reset the entry for a first or new error.

        Returns the surface reason when the error must be surfaced right away,
        None when the existing entry applies.
        """
        error_hash = hash_error(error)
        entry = self._entries.get(service_key)
        if entry is not None and entry.error_hash == error_hash:
            return None

        self._entries[service_key] = ErrorEntry(
            last_error=str(error),
            error_hash=error_hash,
            last_error_time=now,
            last_log_time=now,
        )
        return "" if entry is None else "new error type"

    def _surface(self, entry: ErrorEntry, error: BaseException | str, now: datetime) -> None:
        entry.last_error = str(error)
        entry.last_error_time = now
        entry.last_log_time = now
        self._advance(entry)

    def _advance(self, entry: ErrorEntry) -> None:
        top = len(self._ladder) - 1
        entry.current_index = min(entry.current_index + 1, top)
        entry.next_index = min(entry.next_index + 1, top)

    def _wait(self, index: int) -> timedelta:
        if index < 0:
            return timedelta(0)
        return self._ladder[min(index, len(self._ladder) - 1)]


def _fmt(delta: timedelta) -> str:
    return f"{delta.total_seconds():.0f}s"
