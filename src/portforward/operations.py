"""Router operations planned by the delta, conflict and drift engines.

Operations live for one reconciliation pass: they are planned, handed to the
OperationExecutor and discarded. They are never persisted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from .models import PortRule, RouterRule


class OperationType(str, Enum):
    """Router primitive an operation maps to."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class Reason(str, Enum):
    """Why an operation was planned."""

    PORT_NOT_YET_EXISTS = "port_not_yet_exists"
    PORT_NO_LONGER_DESIRED = "port_no_longer_desired"
    CONFIGURATION_MISMATCH_SAFE = "configuration_mismatch_safe"
    OWNERSHIP_TAKEOVER = "ownership_takeover"
    DRIFT_MISSING_RULE = "drift_missing_rule"
    DRIFT_WRONG_RULE = "drift_wrong_rule"
    DRIFT_EXTRA_RULE = "drift_extra_rule"
    SERVICE_DELETION_FINALIZER = "service_deletion_finalizer"
    MISSING_SERVICE_CLEANUP = "missing_service_cleanup"


class MismatchType(str, Enum):
    """How a router rule differs from the desired rule for the same slot.

    Safe mismatches are corrected with a single in-place update. Risky ones
    touch fields the router cannot change in place and need Delete + Create.
    """

    OWNERSHIP = "ownership"
    NAME = "name"
    IP = "ip"
    ENABLED = "enabled"
    PORT = "port"
    PROTOCOL = "protocol"

    @property
    def is_safe(self) -> bool:
        return self in SAFE_MISMATCHES


SAFE_MISMATCHES = frozenset(
    {MismatchType.OWNERSHIP, MismatchType.NAME, MismatchType.IP, MismatchType.ENABLED}
)


def find_mismatches(current: RouterRule, desired: PortRule) -> list[MismatchType]:
    """List every difference between a router rule and a desired rule.

    Risky differences (ports, protocol) come first.
    """
    found: list[MismatchType] = []
    if current.external_port != desired.external_port or current.internal_port != desired.internal_port:
        found.append(MismatchType.PORT)
    if current.protocol.lower() != desired.protocol.lower():
        found.append(MismatchType.PROTOCOL)
    if desired.owner_key is not None and not current.owned_by(desired.owner_key):
        found.append(MismatchType.OWNERSHIP)
    if current.name != desired.name:
        found.append(MismatchType.NAME)
    if current.destination_ip != desired.destination_ip:
        found.append(MismatchType.IP)
    if current.enabled != desired.enabled:
        found.append(MismatchType.ENABLED)
    return found


def classify_mismatch(current: RouterRule, desired: PortRule) -> MismatchType | None:
    """Return the dominant mismatch, or None when the rule already matches.

    A risky mismatch wins over safe ones since no in-place update can fix it.
    """
    found = find_mismatches(current, desired)
    return found[0] if found else None


@dataclass(frozen=True)
class Operation:
    """A single planned router mutation.

    Attributes:
        type: Router primitive to invoke.
        config: Rule to create, the new config for an update, or the rule to delete.
        existing: Router rule being replaced or removed. For updates this is the
            pre-image re-applied on rollback.
        reason: Why the operation was planned.
    """

    type: OperationType
    config: PortRule
    reason: Reason
    existing: RouterRule | None = None

    def __str__(self) -> str:
        match self.type:
            case OperationType.CREATE:
                return f"CREATE rule port {self.config.describe()}"
            case OperationType.UPDATE:
                return f"UPDATE rule port {self.config.describe()}"
            case OperationType.DELETE:
                return f"DELETE rule port {self.config.external_port} ({self.config.protocol})"
        return f"UNKNOWN operation {self.type}"

    @classmethod
    def create(cls, config: PortRule, reason: Reason) -> Operation:
        return cls(type=OperationType.CREATE, config=config, reason=reason)

    @classmethod
    def update(cls, config: PortRule, existing: RouterRule, reason: Reason) -> Operation:
        return cls(type=OperationType.UPDATE, config=config, reason=reason, existing=existing)

    @classmethod
    def delete(cls, existing: RouterRule, reason: Reason) -> Operation:
        """Delete a router rule; the config is its re-applicable image."""
        return cls(
            type=OperationType.DELETE,
            config=PortRule.from_router_rule(existing),
            reason=reason,
            existing=existing,
        )


def order_operations(operations: list[Operation]) -> list[Operation]:
    """Sequence deletes first, then updates, then creates.

    Deletes free the slots that paired creates in a port-triple swap need.
    Relative order within each group is preserved.
    """
    rank = {OperationType.DELETE: 0, OperationType.UPDATE: 1, OperationType.CREATE: 2}
    return sorted(operations, key=lambda op: rank[op.type])


def count_takeovers(operations: list[Operation]) -> int:
    return sum(1 for op in operations if op.reason == Reason.OWNERSHIP_TAKEOVER)


@dataclass
class OperationResult:
    """Outcome of executing an operation list for one pass."""

    created: list[PortRule] = field(default_factory=list)
    updated: list[PortRule] = field(default_factory=list)
    deleted: list[PortRule] = field(default_factory=list)
    failed: list[Exception] = field(default_factory=list)
    rolled_back: list[Operation] = field(default_factory=list)
    skipped: list[Operation] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed

    @property
    def applied_count(self) -> int:
        return len(self.created) + len(self.updated) + len(self.deleted)

    def record(self, operation: Operation) -> None:
        """Append a succeeded operation's config to the matching bucket."""
        match operation.type:
            case OperationType.CREATE:
                self.created.append(operation.config)
            case OperationType.UPDATE:
                self.updated.append(operation.config)
            case OperationType.DELETE:
                self.deleted.append(operation.config)
