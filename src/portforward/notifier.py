"""Outbound notifications for reconciliation outcomes.

The core emits opaque (reason, message, data) events. Transport belongs to
the notifier: structured logs, Kubernetes core/v1 Events, or both through
CompositeNotifier. A failing notifier never fails the reconcile.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

from kubernetes.client import (
    ApiException,
    CoreV1Api,
    CoreV1Event,
    V1EventSource,
    V1ObjectMeta,
    V1ObjectReference,
)

from .models import parse_service_key
from .operations import Operation, OperationType, Reason

logger = logging.getLogger(__name__)

EVENT_SOURCE_COMPONENT = "kube-port-forward-controller"


class EventReason(str, Enum):
    """Notification reasons."""

    PORT_FORWARD_CREATED = "PortForwardCreated"
    PORT_FORWARD_UPDATED = "PortForwardUpdated"
    PORT_FORWARD_DELETED = "PortForwardDeleted"
    PORT_FORWARD_FAILED = "PortForwardFailed"
    PORT_FORWARD_TAKEN_OWNERSHIP = "PortForwardTakenOwnership"
    DRIFT_DETECTED = "DriftDetected"
    DRIFT_CORRECTED = "DriftCorrected"
    DRIFT_CORRECTION_FAILED = "DriftCorrectionFailed"
    PERIODIC_RECONCILIATION_COMPLETED = "ServicePeriodicReconciliationCompleted"
    CLEANUP_COMPLETED = "CleanupCompleted"
    CLEANUP_FAILED = "CleanupFailed"

    @property
    def is_warning(self) -> bool:
        return self in WARNING_REASONS


WARNING_REASONS = frozenset(
    {
        EventReason.PORT_FORWARD_FAILED,
        EventReason.DRIFT_DETECTED,
        EventReason.DRIFT_CORRECTION_FAILED,
        EventReason.CLEANUP_FAILED,
    }
)


class Notifier(Protocol):
    def emit(self, reason: EventReason, message: str, data: dict[str, Any]) -> None:
        """Emit one event. ``data["service_key"]`` names the Service when known."""
        ...


class LoggingNotifier:
    """Writes events as structured log records."""

    def emit(self, reason: EventReason, message: str, data: dict[str, Any]) -> None:
        level = logging.WARNING if reason.is_warning else logging.INFO
        logger.log(level, message, extra={"event_reason": reason.value, **data})


class KubernetesEventNotifier:
    """Records events as core/v1 Events on the Service they concern.

    Events without a service key are dropped; pair with LoggingNotifier
    through CompositeNotifier to keep them.
    """

    def __init__(self, core_api: CoreV1Api, component: str = EVENT_SOURCE_COMPONENT) -> None:
        self._core_api = core_api
        self._component = component

    def emit(self, reason: EventReason, message: str, data: dict[str, Any]) -> None:
        service_key = data.get("service_key")
        if not service_key:
            return
        try:
            namespace, name = parse_service_key(service_key)
        except ValueError:
            logger.debug("Skipping event for invalid service key", extra={"service_key": service_key})
            return

        now = datetime.now(UTC)
        event = CoreV1Event(
            metadata=V1ObjectMeta(
                generate_name=f"{name}.",
                namespace=namespace,
            ),
            involved_object=V1ObjectReference(
                api_version="v1",
                kind="Service",
                name=name,
                namespace=namespace,
            ),
            reason=reason.value,
            message=message[:1024],
            type="Warning" if reason.is_warning else "Normal",
            source=V1EventSource(component=self._component),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        try:
            self._core_api.create_namespaced_event(namespace=namespace, body=event)
        except ApiException as e:
            logger.warning(
                "Failed to record Kubernetes event",
                extra={"service_key": service_key, "event_reason": reason.value, "status": e.status},
            )


class CompositeNotifier:
    """Fans one event out to several notifiers."""

    def __init__(self, *notifiers: Notifier) -> None:
        self._notifiers = notifiers

    def emit(self, reason: EventReason, message: str, data: dict[str, Any]) -> None:
        for notifier in self._notifiers:
            try:
                notifier.emit(reason, message, data)
            except Exception:
                logger.exception(
                    "Notifier failed",
                    extra={"notifier": type(notifier).__name__, "event_reason": reason.value},
                )


_OPERATION_EVENTS = {
    OperationType.CREATE: (EventReason.PORT_FORWARD_CREATED, "Created"),
    OperationType.UPDATE: (EventReason.PORT_FORWARD_UPDATED, "Updated"),
    OperationType.DELETE: (EventReason.PORT_FORWARD_DELETED, "Removed"),
}


def emit_operation_events(notifier: Notifier, service_key: str, operations: list[Operation]) -> None:
    """Emit one event per applied operation; takeovers get their own reason."""
    for operation in operations:
        reason, verb = _OPERATION_EVENTS[operation.type]
        if operation.reason == Reason.OWNERSHIP_TAKEOVER:
            reason, verb = EventReason.PORT_FORWARD_TAKEN_OWNERSHIP, "Took ownership of"
        notifier.emit(
            reason,
            f"{verb} port forward {operation.config.describe()}",
            {
                "service_key": service_key,
                "rule_name": operation.config.name,
                "external_port": operation.config.external_port,
                "protocol": operation.config.protocol,
                "reason": operation.reason.value,
            },
        )
