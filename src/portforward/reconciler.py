"""Per-Service reconciliation state machine.

STATES:
    Absent -> NeedsFinalizer -> Managed -> PendingDeletion
                                        -> CleanupComplete
                                        -> CleanupFailedMaxRetries

Each call to reconcile() performs exactly one step for one Service key:

1. Service gone: remove router rules still owned by its identity
   (the deletion finished before cleanup could run).
2. Deletion marker set and finalizer present: one FinalizerLifecycle attempt.
3. No longer qualifying but finalized: drop the finalizer, leave router
   rules alone. Real cleanup belongs to the deletion path.
4. Qualifying without finalizer: attach it and requeue. One mutation per
   pass keeps every pass idempotent.
5. Managed: desired state -> router snapshot -> delta + takeovers ->
   executor. Success clears the error context; failure records one,
   except when rollback itself failed (nothing is persisted then).

The per-key lock is shared with the periodic reconciler, so the event path
and drift correction never interleave on the same Service.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from .config import AnnotationKeys
from .delta import ConflictDetector, plan_operations
from .desired_state import DesiredStateCalculator
from .errors import (
    CleanupError,
    ExecutionError,
    PassCancelledError,
    PortConflictError,
    RollbackError,
    RouterOperationError,
    ValidationError,
    error_code,
    is_retryable,
)
from .executor import OperationExecutor
from .finalizer import FinalizerLifecycle
from .locks import KeyedLocks
from .models import PortRule, ServiceResource
from .notifier import EventReason, Notifier, emit_operation_events
from .operations import Operation, OperationResult, Reason, count_takeovers
from .port_registry import PortRegistry
from .rate_limiter import ErrorRateLimiter
from .records import ChangeContext, CleanupStatus, ErrorContext, FailedPortOperation, OverallStatus
from .routers.router import Router
from .store import ResourceStore, StoreConflictError, StoreError

logger = logging.getLogger(__name__)

# Skip missing-Service cleanup for keys cleaned up this recently
RECENT_CLEANUP_WINDOW_SECONDS = 30.0


class ResourceState(str, Enum):
    """State a Service was left in by one reconcile step."""

    ABSENT = "absent"
    NEEDS_FINALIZER = "needs_finalizer"
    MANAGED = "managed"
    PENDING_DELETION = "pending_deletion"
    CLEANUP_COMPLETE = "cleanup_complete"
    CLEANUP_FAILED_MAX_RETRIES = "cleanup_failed_max_retries"


@dataclass
class ReconcileResult:
    """Result of a single reconcile step for one Service."""

    service_key: str
    state: ResourceState = ResourceState.ABSENT
    requeue: bool = False
    requeue_after: float | None = None
    operations: list[Operation] = field(default_factory=list)
    result: OperationResult | None = None
    error: Exception | None = None
    suppressed: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if the step succeeded."""
        return self.error is None


class ServiceReconciler:
    """Drives one Service through the state machine per call.

    Args:
        store: Where Services are read and persisted.
        router: Router collaborator.
        notifier: Receives operation, takeover and failure events.
        registry: Process-wide external port registry.
        keys: Annotation keys read and written on the Service.
        finalizer: Finalizer name attached to managed Services.
        lifecycle: Deletion sub-machine.
        rate_limiter: Throttles repeated identical failures.
        locks: Per-key locks shared with the periodic reconciler.
        cleanup_window: Seconds during which a cleaned-up key is not
            cleaned up again.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        store: ResourceStore,
        router: Router,
        notifier: Notifier,
        registry: PortRegistry,
        keys: AnnotationKeys,
        finalizer: str,
        lifecycle: FinalizerLifecycle,
        rate_limiter: ErrorRateLimiter | None = None,
        locks: KeyedLocks | None = None,
        cleanup_window: float = RECENT_CLEANUP_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._router = router
        self._notifier = notifier
        self._registry = registry
        self._keys = keys
        self._finalizer = finalizer
        self._lifecycle = lifecycle
        self._rate_limiter = rate_limiter if rate_limiter is not None else ErrorRateLimiter()
        self._locks = locks if locks is not None else KeyedLocks()
        self._cleanup_window = cleanup_window
        self._clock = clock

        self._calculator = DesiredStateCalculator(registry, keys.ports)
        self._detector = ConflictDetector(revalidate=router.list)
        self._executor = OperationExecutor(router, registry)

        self._cleaned_lock = threading.Lock()
        self._recently_cleaned: dict[str, float] = {}

    @property
    def calculator(self) -> DesiredStateCalculator:
        return self._calculator

    @property
    def locks(self) -> KeyedLocks:
        return self._locks

    @property
    def rate_limiter(self) -> ErrorRateLimiter:
        return self._rate_limiter

    def reconcile(
        self,
        namespace: str,
        name: str,
        cancel: threading.Event | None = None,
    ) -> ReconcileResult:
        """Run one state-machine step for ``namespace/name``.

        Never raises: every failure is reported on the result together with
        whether, and when, the key should be retried.
        """
        key = f"{namespace}/{name}"
        result = ReconcileResult(service_key=key)

        with self._locks.hold(key):
            try:
                self._step(namespace, name, result, cancel)
            except StoreConflictError as e:
                logger.info(
                    "Service changed during reconcile, requeueing",
                    extra={"service_key": key, "error": str(e)},
                )
                result.error = e
                result.requeue = True
            except Exception as e:
                surface, reason = self._rate_limiter.should_log(key, e)
                if surface:
                    logger.error(
                        "Reconcile failed",
                        extra={
                            "service_key": key,
                            "state": result.state.value,
                            "error": str(e),
                            "error_type": type(e).__name__,
                            "rate_limit_reason": reason,
                        },
                    )
                result.error = e
                result.requeue = True

        result.end_time = datetime.now(UTC)
        logger.debug(
            "Reconcile step finished",
            extra={
                "service_key": key,
                "state": result.state.value,
                "success": result.success,
                "requeue": result.requeue,
                "requeue_after": result.requeue_after,
                "duration_seconds": result.duration_seconds,
            },
        )
        return result

    def _step(
        self,
        namespace: str,
        name: str,
        result: ReconcileResult,
        cancel: threading.Event | None,
    ) -> None:
        resource = self._store.get(namespace, name)

        if resource is None:
            self._cleanup_missing(result, cancel)
            return

        if resource.being_deleted:
            if resource.has_finalizer(self._finalizer):
                self._handle_deletion(resource, result, cancel)
            return

        if not self._calculator.qualifies(resource):
            if resource.has_finalizer(self._finalizer):
                self._unmanage(resource)
            return

        if not resource.has_finalizer(self._finalizer):
            try:
                self._calculator.validate(resource)
            except ValidationError as e:
                # Only a valid annotation earns the finalizer
                self._handle_failure(resource, e, result, persist=False)
                return
            self._store.update(resource.with_finalizer(self._finalizer))
            logger.info("Added finalizer", extra={"service_key": resource.key, "finalizer": self._finalizer})
            result.state = ResourceState.NEEDS_FINALIZER
            result.requeue = True
            return

        self._reconcile_managed(resource, result, cancel)

    # =========================================================================
    # Managed
    # =========================================================================

    def _reconcile_managed(
        self,
        resource: ServiceResource,
        result: ReconcileResult,
        cancel: threading.Event | None,
    ) -> None:
        key = resource.key
        result.state = ResourceState.MANAGED
        self._log_trigger(resource)

        try:
            desired = self._calculator.calculate(resource)
            snapshot = self._router.list()
            operations = plan_operations(desired, snapshot, key, self._detector)
            result.operations = operations
            result.result = self._executor.execute(operations, cancel) if operations else OperationResult()
        except PassCancelledError as e:
            logger.info("Reconcile cancelled, requeueing", extra={"service_key": key})
            result.error = e
            result.result = e.result
            result.requeue = True
            return
        except RollbackError as e:
            # Router state is uncertain, so neither context is rewritten
            result.result = e.result
            self._handle_failure(resource, e, result, persist=False)
            return
        except Exception as e:
            if isinstance(e, ExecutionError):
                result.result = e.result
            self._handle_failure(resource, e, result, persist=True)
            return

        emit_operation_events(self._notifier, key, result.operations)
        self._rate_limiter.reset(key)
        self.settle_claims(key, desired)
        self._record_success(resource, desired)

        if result.operations:
            logger.info(
                "Service reconciled",
                extra={
                    "service_key": key,
                    "created": len(result.result.created),
                    "updated": len(result.result.updated),
                    "deleted": len(result.result.deleted),
                    "takeovers": count_takeovers(result.operations),
                },
            )

    def settle_claims(self, key: str, desired: list[PortRule]) -> None:
        """Match the registry to a converged Service.

        Every desired external port is held by the Service, even when a Delete
        of a stale rule on the same port released it. Other claims are dropped.
        """
        wanted = {rule.external_port for rule in desired}
        for port in sorted(wanted):
            self._registry.mark(port, key)
        for port in self._registry.ports_of(key):
            if port not in wanted:
                self._registry.release(port, key)

    def _log_trigger(self, resource: ServiceResource) -> None:
        context = ChangeContext.from_json(resource.annotations.get(self._keys.change_context))
        if context is None or not context.has_relevant_changes:
            return
        logger.info(
            "Reconciling service changes",
            extra={
                "service_key": resource.key,
                "ip_changed": context.ip_changed,
                "annotation_changed": context.annotation_changed,
                "spec_changed": context.spec_changed,
                "port_changes": len(context.port_changes),
            },
        )

    def _record_success(self, resource: ServiceResource, desired: list[PortRule]) -> None:
        updates: dict[str, str | None] = {self._keys.error_context: None}

        rules = [_rule_summary(rule) for rule in desired]
        context = ChangeContext.from_json(resource.annotations.get(self._keys.change_context))
        if context is None:
            context = ChangeContext(service_key=resource.key)
        if context.port_forward_rules != rules:
            updates[self._keys.change_context] = context.model_copy(
                update={"port_forward_rules": rules}
            ).to_json()

        updated = resource.with_annotations(updates)
        if updated.annotations == resource.annotations:
            return
        try:
            self._store.update(updated)
        except StoreError as e:
            logger.warning(
                "Failed to persist reconcile state",
                extra={"service_key": resource.key, "error": str(e)},
            )

    def _handle_failure(
        self,
        resource: ServiceResource,
        error: Exception,
        result: ReconcileResult,
        persist: bool,
    ) -> None:
        key = resource.key
        result.error = error
        if persist:
            self._record_error(resource, error, result.result)

        decision = self._rate_limiter.filter_for_reconcile(key, error)
        if decision.surface:
            self._notifier.emit(
                EventReason.PORT_FORWARD_FAILED,
                f"Port forward reconciliation failed: {error}",
                {"service_key": key, "error_code": error_code(error)},
            )
            logger.error(
                "Port forward reconciliation failed",
                extra={
                    "service_key": key,
                    "error_code": error_code(error),
                    "error": str(error),
                    "retryable": is_retryable(error),
                    "rate_limit_reason": decision.reason,
                },
            )
            result.requeue = is_retryable(error)
            return

        logger.debug(
            "Reconcile error suppressed",
            extra={"service_key": key, "reason": decision.reason, "requeue_after": decision.requeue_after},
        )
        result.suppressed = True
        if is_retryable(error):
            result.requeue = True
            result.requeue_after = decision.requeue_after

    def _record_error(
        self,
        resource: ServiceResource,
        error: Exception,
        op_result: OperationResult | None,
    ) -> None:
        previous = ErrorContext.from_json(resource.annotations.get(self._keys.error_context))
        now = datetime.now(UTC)
        partial = op_result is not None and bool(op_result.rolled_back)
        context = ErrorContext(
            timestamp=now,
            last_failure_time=now,
            failed_port_operations=_failed_port_operations(error, now),
            overall_status=OverallStatus.PARTIAL_FAILURE if partial else OverallStatus.COMPLETE_FAILURE,
            retry_count=previous.retry_count + 1 if previous else 0,
            last_error_code=error_code(error),
            last_error_message=str(error),
        )
        try:
            self._store.update(resource.with_annotations({self._keys.error_context: context.to_json()}))
        except StoreError as e:
            logger.warning(
                "Failed to persist error context",
                extra={"service_key": resource.key, "error": str(e)},
            )

    # =========================================================================
    # Unmanaged and deleted
    # =========================================================================

    def _unmanage(self, resource: ServiceResource) -> None:
        self._store.update(
            resource.without_finalizer(self._finalizer).with_annotations(
                {self._keys.error_context: None}
            )
        )
        self._rate_limiter.reset(resource.key)
        logger.info(
            "Service no longer managed, removed finalizer",
            extra={"service_key": resource.key, "finalizer": self._finalizer},
        )

    def _handle_deletion(
        self,
        resource: ServiceResource,
        result: ReconcileResult,
        cancel: threading.Event | None,
    ) -> None:
        result.state = ResourceState.PENDING_DELETION
        outcome = self._lifecycle.handle(resource, cancel)

        match outcome.status:
            case CleanupStatus.COMPLETED:
                result.state = ResourceState.CLEANUP_COMPLETE
            case CleanupStatus.FAILED_MAX_RETRIES:
                result.state = ResourceState.CLEANUP_FAILED_MAX_RETRIES
            case _:
                result.error = outcome.error
                result.requeue = True
                result.requeue_after = outcome.requeue_after
                return

        self._rate_limiter.reset(resource.key)
        self._mark_cleaned(resource.key)

    def _cleanup_missing(self, result: ReconcileResult, cancel: threading.Event | None) -> None:
        key = result.service_key
        if self._cleaned_recently(key):
            logger.debug("Skipping cleanup of recently cleaned service", extra={"service_key": key})
            return

        removal = self._lifecycle.remove_owned_rules(key, Reason.MISSING_SERVICE_CLEANUP, cancel)
        if removal.removed:
            logger.info(
                "Removed rules of missing service",
                extra={"service_key": key, "rules_removed": len(removal.removed)},
            )
        if not removal.complete:
            raise CleanupError(
                f"cleanup of missing service {key} incomplete: {len(removal.failed)} removal(s) failed, "
                f"{removal.remaining} rule(s) remain"
            )

        self._registry.release_service(key)
        self._rate_limiter.reset(key)
        self._mark_cleaned(key)

    def _mark_cleaned(self, key: str) -> None:
        now = self._clock()
        with self._cleaned_lock:
            self._recently_cleaned[key] = now
            expired = [k for k, t in self._recently_cleaned.items() if now - t > self._cleanup_window]
            for k in expired:
                del self._recently_cleaned[k]

    def _cleaned_recently(self, key: str) -> bool:
        with self._cleaned_lock:
            cleaned_at = self._recently_cleaned.get(key)
        return cleaned_at is not None and self._clock() - cleaned_at <= self._cleanup_window


def _rule_summary(rule: PortRule) -> str:
    return f"{rule.external_port}:{rule.internal_port}/{rule.protocol}"


def _failed_port_operations(error: Exception, now: datetime) -> list[FailedPortOperation]:
    match error:
        case RouterOperationError(operation=operation):
            config = operation.config
            return [
                FailedPortOperation(
                    port_mapping=config.identity.port_name if config.identity else config.name,
                    external_port=config.external_port,
                    protocol=config.protocol,
                    error_type=operation.type.value,
                    error_message=str(error.cause),
                    timestamp=now,
                )
            ]
        case PortConflictError():
            return [
                FailedPortOperation(
                    port_mapping=str(error.external_port),
                    external_port=error.external_port,
                    protocol="",
                    error_type=error_code(error),
                    error_message=str(error),
                    timestamp=now,
                )
            ]
        case _:
            return []
