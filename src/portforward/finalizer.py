"""Bounded-retry cleanup of router rules when a managed Service is deleted.

STATES:
    CleanupPending -> CleanupInProgress -> CleanupComplete
                                        -> CleanupFailedMaxRetries

The attempt counter is persisted on the Service itself before every attempt,
so retries survive controller restarts. Once the maximum is reached the
finalizer is removed regardless (fail-open): a router outage must never block
deletion of a platform resource forever.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from .errors import CleanupError
from .models import PortRule, RouterRule, ServiceResource, filter_owned
from .notifier import EventReason, Notifier
from .operations import Reason
from .port_registry import PortRegistry
from .records import CleanupAnnotations, CleanupStatus, FinalizerCleanupState
from .routers.router import Router
from .store import ResourceStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_INTERVAL_SECONDS = 30.0


@dataclass
class RemovalResult:
    """Outcome of removing every rule owned by one Service."""

    removed: list[PortRule] = field(default_factory=list)
    failed: list[tuple[RouterRule, Exception]] = field(default_factory=list)
    remaining: int = 0

    @property
    def complete(self) -> bool:
        return not self.failed and self.remaining == 0


@dataclass
class CleanupOutcome:
    """Result of one FinalizerLifecycle pass."""

    status: CleanupStatus
    attempts: int
    requeue_after: float | None = None
    removed: list[PortRule] = field(default_factory=list)
    error: Exception | None = None

    @property
    def terminal(self) -> bool:
        return self.status in (CleanupStatus.COMPLETED, CleanupStatus.FAILED_MAX_RETRIES)


class FinalizerLifecycle:
    """Runs the deletion sub-machine for Services carrying the finalizer."""

    def __init__(
        self,
        router: Router,
        store: ResourceStore,
        registry: PortRegistry,
        notifier: Notifier,
        finalizer: str,
        annotations: CleanupAnnotations,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_interval: float = DEFAULT_RETRY_INTERVAL_SECONDS,
    ) -> None:
        self._router = router
        self._store = store
        self._registry = registry
        self._notifier = notifier
        self._finalizer = finalizer
        self._annotations = annotations
        self._max_retries = max_retries
        self._retry_interval = retry_interval

    def read_state(self, resource: ServiceResource) -> FinalizerCleanupState:
        return FinalizerCleanupState.decode(
            resource.annotations.get(self._annotations.state),
            legacy_status=resource.annotations.get(self._annotations.legacy_status),
            legacy_attempts=resource.annotations.get(self._annotations.legacy_attempts),
        )

    def handle(self, resource: ServiceResource, cancel: threading.Event | None = None) -> CleanupOutcome:
        """Run one cleanup attempt for a Service being deleted.

        Raises:
            StoreError: If the Service could not be updated.
        """
        service_key = resource.key
        state = self.read_state(resource)

        if state.attempts >= self._max_retries:
            return self._give_up(resource, state)

        state = state.next_attempt()
        resource = self._store.update(resource.with_annotations({self._annotations.state: state.to_json()}))
        logger.info(
            "Finalizer cleanup attempt started",
            extra={
                "service_key": service_key,
                "attempt": state.attempts,
                "max_retries": self._max_retries,
            },
        )

        try:
            removal = self.remove_owned_rules(service_key, Reason.SERVICE_DELETION_FINALIZER, cancel)
        except Exception as e:
            return self._retry_later(resource, state, e)

        if not removal.complete:
            error = CleanupError(
                f"cleanup of {service_key} incomplete: {len(removal.failed)} removal(s) failed, "
                f"{removal.remaining} rule(s) remain"
            )
            return self._retry_later(resource, state, error, removal.removed)

        self._store.update(
            resource.without_finalizer(self._finalizer).with_annotations(self._annotations.clear())
        )
        self._registry.release_service(service_key)
        self._notifier.emit(
            EventReason.CLEANUP_COMPLETED,
            f"Removed {len(removal.removed)} port forward rule(s) for deleted service",
            {"service_key": service_key, "rules_removed": len(removal.removed), "attempt": state.attempts},
        )
        logger.info(
            "Finalizer cleanup completed",
            extra={"service_key": service_key, "rules_removed": len(removal.removed)},
        )
        return CleanupOutcome(
            status=CleanupStatus.COMPLETED,
            attempts=state.attempts,
            removed=removal.removed,
        )

    def remove_owned_rules(
        self,
        service_key: str,
        reason: Reason,
        cancel: threading.Event | None = None,
    ) -> RemovalResult:
        """Remove every router rule owned by a Service, best effort.

        Each rule is removed independently; a failure does not stop the
        others. The router is listed again afterwards to count leftovers.

        Raises:
            Exception: If the router cannot be listed.
        """
        result = RemovalResult()
        owned = filter_owned(self._router.list(), service_key)

        for rule in owned:
            if cancel is not None and cancel.is_set():
                break
            config = PortRule.from_router_rule(rule)
            try:
                self._router.remove(config)
            except Exception as e:
                logger.warning(
                    "Failed to remove port forward rule",
                    extra={
                        "service_key": service_key,
                        "rule_name": rule.name,
                        "external_port": rule.external_port,
                        "reason": reason.value,
                        "error": str(e),
                    },
                )
                result.failed.append((rule, e))
                continue

            self._registry.release(rule.external_port, service_key)
            result.removed.append(config)
            self._notifier.emit(
                EventReason.PORT_FORWARD_DELETED,
                f"Removed port forward {config.describe()}",
                {
                    "service_key": service_key,
                    "rule_name": rule.name,
                    "external_port": rule.external_port,
                    "protocol": rule.protocol,
                    "reason": reason.value,
                },
            )

        if owned:
            result.remaining = len(filter_owned(self._router.list(), service_key))
        return result

    def _retry_later(
        self,
        resource: ServiceResource,
        state: FinalizerCleanupState,
        error: Exception,
        removed: list[PortRule] | None = None,
    ) -> CleanupOutcome:
        state = state.failed(str(error))
        self._store.update(resource.with_annotations({self._annotations.state: state.to_json()}))
        logger.error(
            "Finalizer cleanup failed, will retry",
            extra={
                "service_key": resource.key,
                "attempt": state.attempts,
                "max_retries": self._max_retries,
                "retry_interval": self._retry_interval,
                "error": str(error),
            },
        )
        return CleanupOutcome(
            status=CleanupStatus.IN_PROGRESS,
            attempts=state.attempts,
            requeue_after=self._retry_interval,
            removed=removed or [],
            error=error if isinstance(error, CleanupError) else CleanupError(str(error)),
        )

    def _give_up(self, resource: ServiceResource, state: FinalizerCleanupState) -> CleanupOutcome:
        service_key = resource.key
        final = state.model_copy(update={"status": CleanupStatus.FAILED_MAX_RETRIES})
        self._notifier.emit(
            EventReason.CLEANUP_FAILED,
            f"Cleanup failed after {state.attempts} attempt(s); removing finalizer, "
            "router rules may need manual removal",
            {"service_key": service_key, "attempts": state.attempts, "last_error": state.last_error},
        )
        logger.error(
            "Finalizer cleanup exhausted retries, removing finalizer",
            extra={"service_key": service_key, "attempts": state.attempts, "last_error": state.last_error},
        )
        self._store.update(
            resource.without_finalizer(self._finalizer).with_annotations(
                {
                    self._annotations.state: final.to_json(),
                    self._annotations.legacy_status: None,
                    self._annotations.legacy_attempts: None,
                }
            )
        )
        self._registry.release_service(service_key)
        return CleanupOutcome(
            status=CleanupStatus.FAILED_MAX_RETRIES,
            attempts=state.attempts,
            error=CleanupError(state.last_error or "cleanup retries exhausted"),
        )
