"""Exception taxonomy for the port-forward reconciliation core.

ERROR CLASSES:
- ValidationError: malformed or ambiguous desired input. Surfaced, never retried.
- PortConflictError: external port already claimed by another Service.
- RouterOperationError: a single router primitive failed; the pass is rolled back
  and retried on the next requeue or periodic tick.
- RollbackError: the compensating action itself failed. Always surfaced together
  with the error that triggered the rollback.
- CleanupError: a router failure on the finalizer path. Retried up to the
  configured maximum, then force-resolved.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .operations import Operation, OperationResult

# Valid annotation examples included in every parse error
VALID_MAPPING_EXAMPLES = "Valid format: 'portname' or 'portname:externalPort'. Example: 'http,https:8443'"


class PortForwardError(Exception):
    """Base class for all reconciliation errors."""

    pass


# =============================================================================
# Desired-state errors
# =============================================================================


class ValidationError(PortForwardError):
    """Raised when the desired state of a Service cannot be computed."""

    pass


class ParseError(ValidationError):
    """Raised when the ports annotation contains a malformed token."""

    def __init__(self, token: str, detail: str) -> None:
        self.token = token
        self.detail = detail
        super().__init__(f"invalid port mapping '{token}': {detail}. {VALID_MAPPING_EXAMPLES}")


class UnknownPortError(ValidationError):
    """Raised when the annotation references a port the Service does not declare."""

    def __init__(self, port_name: str, service_key: str, available: list[str]) -> None:
        self.port_name = port_name
        self.service_key = service_key
        self.available = available
        super().__init__(
            f"port mapping references non-existent port '{port_name}' in service "
            f"{service_key} - available ports: {', '.join(available) or 'none'}. "
            f"{VALID_MAPPING_EXAMPLES}"
        )


class DuplicatePortError(ValidationError):
    """Raised when two annotation tokens resolve to the same external port."""

    def __init__(self, external_port: int, service_key: str) -> None:
        self.external_port = external_port
        self.service_key = service_key
        super().__init__(f"duplicate external port {external_port} within service {service_key}")


class MissingAddressError(ValidationError):
    """Raised when a Service has no resolved destination address."""

    pass


class PortConflictError(PortForwardError):
    """Raised when an external port is already claimed by another Service."""

    def __init__(self, external_port: int, owner: str, requested_by: str) -> None:
        self.external_port = external_port
        self.owner = owner
        self.requested_by = requested_by
        super().__init__(
            f"port already claimed: external port {external_port} is used by service {owner}"
        )


# =============================================================================
# Router errors
# =============================================================================


class RouterError(PortForwardError):
    """Raised by router adapters when a primitive call fails."""

    pass


class RuleNotFoundError(RouterError):
    """Raised when an update or removal targets a rule the router does not hold."""

    pass


# =============================================================================
# Execution errors
# =============================================================================


class ExecutionError(PortForwardError):
    """Base class for failures while applying an operation list.

    Attributes:
        result: Partial OperationResult accumulated before the failure.
    """

    def __init__(self, message: str, result: OperationResult | None = None) -> None:
        super().__init__(message)
        self.result = result


class RouterOperationError(ExecutionError):
    """Raised when a router primitive failed and the pass was rolled back."""

    def __init__(
        self,
        operation: Operation,
        cause: Exception,
        result: OperationResult | None = None,
    ) -> None:
        self.operation = operation
        self.cause = cause
        super().__init__(f"operation failed: {operation}: {cause}", result)


class RollbackError(ExecutionError):
    """Raised when compensating an already-applied operation failed.

    Attributes:
        original: The error that triggered the rollback.
        failed_rollback: The operation whose compensation failed.
        uncompensated: Operations left applied on the router, newest first.
    """

    def __init__(
        self,
        original: Exception,
        failed_rollback: Operation,
        rollback_cause: Exception,
        uncompensated: list[Operation],
        result: OperationResult | None = None,
    ) -> None:
        self.original = original
        self.failed_rollback = failed_rollback
        self.rollback_cause = rollback_cause
        self.uncompensated = uncompensated
        super().__init__(
            f"{original}, rollback also failed: {failed_rollback}: {rollback_cause} "
            f"({len(uncompensated)} operation(s) left applied)",
            result,
        )


class PassCancelledError(ExecutionError):
    """Raised when cancellation was observed between two operations."""

    pass


class CleanupError(PortForwardError):
    """Raised when finalizer cleanup could not remove every owned rule."""

    pass


def error_code(exc: BaseException) -> str:
    """Map an exception to the stable code persisted in the error context."""
    match exc:
        case ValidationError():
            return "validation_error"
        case PortConflictError():
            return "port_conflict"
        case RollbackError():
            return "rollback_error"
        case PassCancelledError():
            return "cancelled"
        case ExecutionError() | RouterError():
            return "router_error"
        case CleanupError():
            return "cleanup_error"
        case _:
            return "internal_error"


def is_retryable(exc: BaseException) -> bool:
    """Return True if the platform retry machinery should requeue after this error."""
    return not isinstance(exc, ValidationError | PortConflictError)
