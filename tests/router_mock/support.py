"""Notifier, clock and builders shared by the reconciliation tests."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from portforward.config import DEFAULT_FINALIZER_NAME, DEFAULT_PORTS_ANNOTATION
from portforward.models import PortRule, RouterRule, RuleIdentity, ServicePort, ServiceResource
from portforward.notifier import EventReason

DEFAULT_IP = "192.168.1.100"


@dataclass(frozen=True)
class RecordedEvent:
    reason: EventReason
    message: str
    data: dict[str, Any]


@dataclass
class RecordingNotifier:
    """Keeps every emitted event in order."""

    events: list[RecordedEvent] = field(default_factory=list)

    def emit(self, reason: EventReason, message: str, data: dict[str, Any]) -> None:
        self.events.append(RecordedEvent(reason, message, dict(data)))

    def reasons(self, service_key: str | None = None) -> list[EventReason]:
        return [
            event.reason
            for event in self.events
            if service_key is None or event.data.get("service_key") == service_key
        ]

    def clear(self) -> None:
        self.events.clear()


class FakeClock:
    """Manually advanced clock.

    Calling the instance returns an aware datetime (rate limiter clock);
    ``monotonic()`` returns elapsed seconds (reconciler and poller clocks).
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._start = start or datetime(2024, 1, 1, tzinfo=UTC)
        self._elapsed = 0.0

    def __call__(self) -> datetime:
        return self._start + timedelta(seconds=self._elapsed)

    def monotonic(self) -> float:
        return self._elapsed

    def advance(self, seconds: float) -> None:
        self._elapsed += seconds


def make_service(
    name: str = "web",
    namespace: str = "default",
    ports: tuple[tuple[str, int, str], ...] = (("http", 80, "tcp"),),
    mapping: str | None = "http",
    ip: str | None = DEFAULT_IP,
    finalizers: tuple[str, ...] = (),
    annotations: dict[str, str] | None = None,
    deleting: bool = False,
) -> ServiceResource:
    """Build a Service; ``mapping`` is the ports annotation value (None omits it)."""
    all_annotations = dict(annotations or {})
    if mapping is not None:
        all_annotations[DEFAULT_PORTS_ANNOTATION] = mapping
    return ServiceResource(
        namespace=namespace,
        name=name,
        annotations=all_annotations,
        finalizers=list(finalizers),
        ports=[ServicePort(name=n, port=p, protocol=proto) for n, p, proto in ports],
        load_balancer_ip=ip,
        deletion_timestamp=datetime.now(UTC) if deleting else None,
    )


def managed_service(**kwargs: Any) -> ServiceResource:
    """A Service that already carries the finalizer."""
    return make_service(finalizers=(DEFAULT_FINALIZER_NAME,), **kwargs)


def port_rule(
    service_key: str,
    port_name: str,
    external_port: int,
    internal_port: int | None = None,
    protocol: str = "tcp",
    ip: str = DEFAULT_IP,
) -> PortRule:
    namespace, _, service = service_key.partition("/")
    identity = RuleIdentity(namespace=namespace, service=service, port_name=port_name)
    return PortRule.for_port(
        identity,
        external_port=external_port,
        internal_port=internal_port or external_port,
        protocol=protocol,
        destination_ip=ip,
    )


def router_rule(
    rule_id: str,
    name: str,
    external_port: int,
    internal_port: int | None = None,
    protocol: str = "tcp",
    ip: str = DEFAULT_IP,
    enabled: bool = True,
) -> RouterRule:
    return RouterRule(
        id=rule_id,
        name=name,
        external_port=external_port,
        internal_port=internal_port or external_port,
        protocol=protocol,
        destination_ip=ip,
        enabled=enabled,
    )
