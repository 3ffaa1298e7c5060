"""Change detection between two observations of a Service."""

from __future__ import annotations

from .desired_state import parse_port_mappings
from .errors import ParseError
from .models import ServicePort, ServiceResource
from .records import ChangeContext, ChangeType, PortChangeDetail


def analyze_changes(
    old: ServiceResource | None,
    new: ServiceResource,
    annotation_key: str,
) -> ChangeContext:
    """Compare two observations of a Service.

    With no previous observation the context is marked as initial sync.
    A newly set deletion marker short-circuits every other comparison.
    """
    context = ChangeContext(service_key=new.key)

    if old is None:
        context.is_initial_sync = True
        context.new_ip = new.load_balancer_ip
        context.new_annotation = new.annotations.get(annotation_key)
        return context

    if not old.being_deleted and new.being_deleted:
        context.deletion_changed = True
        return context

    if old.load_balancer_ip != new.load_balancer_ip:
        context.ip_changed = True
        context.old_ip = old.load_balancer_ip
        context.new_ip = new.load_balancer_ip

    old_annotation = old.annotations.get(annotation_key)
    new_annotation = new.annotations.get(annotation_key)
    if old_annotation != new_annotation:
        context.annotation_changed = True
        context.old_annotation = old_annotation
        context.new_annotation = new_annotation

    if old.ports != new.ports:
        context.spec_changed = True
        context.port_changes = analyze_port_changes(
            old.ports, new.ports, _external_ports(new_annotation)
        )

    return context


def analyze_port_changes(
    old_ports: list[ServicePort],
    new_ports: list[ServicePort],
    external_ports: dict[str, int] | None = None,
) -> list[PortChangeDetail]:
    """Diff declared ports keyed by (name, protocol), so renumbering shows as modified."""
    external_ports = external_ports or {}
    old_by_key = {(p.name, p.protocol): p for p in old_ports}
    new_by_key = {(p.name, p.protocol): p for p in new_ports}

    changes: list[PortChangeDetail] = []
    for key, port in old_by_key.items():
        if key not in new_by_key:
            changes.append(PortChangeDetail(change_type=ChangeType.REMOVED, old_port=port))

    for key, port in new_by_key.items():
        old_port = old_by_key.get(key)
        if old_port is None:
            changes.append(
                PortChangeDetail(
                    change_type=ChangeType.ADDED,
                    new_port=port,
                    external_port=external_ports.get(port.name, port.port),
                )
            )
        elif old_port != port:
            changes.append(
                PortChangeDetail(
                    change_type=ChangeType.MODIFIED,
                    old_port=old_port,
                    new_port=port,
                    external_port=external_ports.get(port.name, port.port),
                )
            )

    return changes


def _external_ports(annotation: str | None) -> dict[str, int]:
    if not annotation:
        return {}
    try:
        mappings = parse_port_mappings(annotation)
    except ParseError:
        # Reported by the reconcile itself
        return {}
    return {m.port_name: m.external_port for m in mappings if m.external_port is not None}
