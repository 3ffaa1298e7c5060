"""Periodic fleet-wide drift detection and correction.

Every interval the reconciler lists all managed Services, takes ONE router
snapshot and runs the DriftDetector over the whole fleet. Services with
drift are then corrected one by one under their per-key lock, after a fresh
re-analysis so a change made by the event path in the meantime is not
undone.

CONCURRENCY:
Passes run in worker threads. At most ``max_concurrent`` passes are in
flight; a tick that finds every slot busy is skipped. Shutdown waits for
in-flight passes to drain, then cancels the stragglers between operations.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .drift import DriftAnalysis, DriftDetector, build_correction_operations
from .executor import OperationExecutor
from .locks import KeyedLocks
from .models import ServiceResource
from .notifier import EventReason, Notifier, emit_operation_events
from .rate_limiter import ErrorRateLimiter
from .reconciler import ServiceReconciler
from .routers.router import Router
from .store import ResourceStore

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 900.0
DEFAULT_MAX_CONCURRENT_PASSES = 3
DEFAULT_DRAIN_TIMEOUT_SECONDS = 30.0


@dataclass
class PeriodicPassResult:
    """Result of one fleet-wide pass."""

    services: int = 0
    in_sync: int = 0
    corrected: int = 0
    failed: int = 0
    errors: list[Exception] = field(default_factory=list)
    cancelled: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return not self.errors and not self.failed and not self.cancelled


class PeriodicReconciler:
    """Ticks on a fixed interval and corrects drift across all managed Services."""

    def __init__(
        self,
        store: ResourceStore,
        router: Router,
        notifier: Notifier,
        reconciler: ServiceReconciler,
        finalizer: str,
        executor: OperationExecutor,
        rate_limiter: ErrorRateLimiter | None = None,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT_PASSES,
        drain_timeout: float = DEFAULT_DRAIN_TIMEOUT_SECONDS,
    ) -> None:
        self._store = store
        self._router = router
        self._notifier = notifier
        self._calculator = reconciler.calculator
        self._locks: KeyedLocks = reconciler.locks
        self._settle_claims = reconciler.settle_claims
        self._finalizer = finalizer
        self._executor = executor
        self._rate_limiter = rate_limiter if rate_limiter is not None else ErrorRateLimiter()
        self._detector = DriftDetector(self._calculator)
        self._interval = interval_seconds
        self._drain_timeout = drain_timeout

        self._max_concurrent = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._tasks: set[asyncio.Task[PeriodicPassResult]] = set()
        self._shutdown_event = asyncio.Event()
        self._cancel = threading.Event()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    @property
    def rate_limiter(self) -> ErrorRateLimiter:
        return self._rate_limiter

    async def run(self) -> None:
        """Run an initial pass, then one per interval until shutdown."""
        logger.info(
            "Starting periodic reconciler",
            extra={"interval_seconds": self._interval, "max_concurrent": self._max_concurrent},
        )

        while not self._shutdown_event.is_set():
            self.trigger()
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self._interval)
            except TimeoutError:
                pass

        await self._drain()
        logger.info("Periodic reconciler shutdown complete")

    def trigger(self) -> asyncio.Task[PeriodicPassResult] | None:
        """Start a pass in the background unless every slot is busy."""
        if self._semaphore.locked():
            logger.warning(
                "Skipping periodic pass, previous passes still running",
                extra={"in_flight": len(self._tasks)},
            )
            return None

        task = asyncio.create_task(self._guarded_pass())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def shutdown(self) -> None:
        """Signal the loop to stop; in-flight passes are drained by run()."""
        logger.info("Periodic reconciler shutdown requested")
        self._shutdown_event.set()

    async def _guarded_pass(self) -> PeriodicPassResult:
        async with self._semaphore:
            result = await asyncio.to_thread(self.run_pass, self._cancel)
        self._log_result(result)
        return result

    async def _drain(self) -> None:
        if not self._tasks:
            return
        _, pending = await asyncio.wait(set(self._tasks), timeout=self._drain_timeout)
        if pending:
            logger.warning(
                "Periodic passes still running after drain timeout, cancelling",
                extra={"pending": len(pending)},
            )
            self._cancel.set()
            await asyncio.wait(pending)

    # =========================================================================
    # Pass (runs in a worker thread)
    # =========================================================================

    def run_pass(self, cancel: threading.Event | None = None) -> PeriodicPassResult:
        """Detect and correct drift for every managed Service."""
        result = PeriodicPassResult()
        self._rate_limiter.purge_idle()

        try:
            resources = [r for r in self._store.list() if self._is_managed(r)]
            snapshot = self._router.list()
        except Exception as e:
            logger.error("Periodic pass could not read state", extra={"error": str(e)})
            result.errors.append(e)
            result.end_time = datetime.now(UTC)
            return result

        result.services = len(resources)
        analyses = self._detector.analyze_all(resources, snapshot)

        for analysis in analyses:
            if cancel is not None and cancel.is_set():
                result.cancelled = True
                break

            if analysis.error is not None:
                result.failed += 1
                result.errors.append(analysis.error)
                continue

            if not analysis.has_drift:
                result.in_sync += 1
            elif self._correct(analysis.resource, cancel):
                result.corrected += 1
            else:
                result.failed += 1
                continue

            self._notifier.emit(
                EventReason.PERIODIC_RECONCILIATION_COMPLETED,
                "Periodic reconciliation completed",
                {"service_key": analysis.service_key, **analysis.summary()},
            )

        result.end_time = datetime.now(UTC)
        return result

    def _is_managed(self, resource: ServiceResource) -> bool:
        return (
            not resource.being_deleted
            and resource.has_finalizer(self._finalizer)
            and self._calculator.qualifies(resource)
        )

    def _correct(self, resource: ServiceResource, cancel: threading.Event | None) -> bool:
        """Re-analyze under the Service lock and apply corrections.

        Returns:
            True if the Service ended the pass without drift.
        """
        key = resource.key
        with self._locks.hold(key):
            try:
                current = self._store.get(resource.namespace, resource.name)
                if current is None or not self._is_managed(current):
                    return True
                analysis = self._detector.analyze(current, self._router.list())
                if not analysis.has_drift:
                    logger.debug("Drift resolved before correction", extra={"service_key": key})
                    return True

                operations = build_correction_operations(analysis)
                self._notify_drift(analysis)
                self._executor.execute(operations, cancel)
                self._settle_claims(key, analysis.desired)
            except Exception as e:
                self._notifier.emit(
                    EventReason.DRIFT_CORRECTION_FAILED,
                    f"Drift correction failed: {e}",
                    {"service_key": key, "error": str(e)},
                )
                surface, reason = self._rate_limiter.should_log(key, e)
                if surface:
                    logger.error(
                        "Drift correction failed",
                        extra={"service_key": key, "error": str(e), "rate_limit_reason": reason},
                    )
                return False

        emit_operation_events(self._notifier, key, operations)
        self._notifier.emit(
            EventReason.DRIFT_CORRECTED,
            f"Corrected drift with {len(operations)} operation(s)",
            {"service_key": key, "operations": len(operations), **analysis.summary()},
        )
        logger.info(
            "Drift corrected",
            extra={"service_key": key, "operations": len(operations), **analysis.summary()},
        )
        return True

    def _notify_drift(self, analysis: DriftAnalysis) -> None:
        self._notifier.emit(
            EventReason.DRIFT_DETECTED,
            f"Drift detected: {len(analysis.missing)} missing, {len(analysis.wrong)} wrong, "
            f"{len(analysis.extra)} extra",
            {"service_key": analysis.service_key, **analysis.summary()},
        )

    def _log_result(self, result: PeriodicPassResult) -> None:
        extra = {
            "services": result.services,
            "in_sync": result.in_sync,
            "corrected": result.corrected,
            "failed": result.failed,
            "cancelled": result.cancelled,
            "duration_seconds": result.duration_seconds,
        }
        if result.success:
            logger.info("Periodic pass completed", extra=extra)
        else:
            logger.warning("Periodic pass completed with errors", extra=extra)
