"""Fail-fast execution of planned router operations with rollback.

Operations are applied strictly in the order given. On the first failure
every already-applied operation is compensated in reverse order and the rest
of the list is abandoned. The compensation for each completed operation:

    Completed op            Compensation
    ----------------------  ---------------------------------------------
    Create                  remove the created rule
    Update, pre-image held  update back to the pre-image
                            (rule gone on the router: re-create the pre-image)
    Update, no pre-image    cannot be compensated, raises RollbackError
    Delete                  re-create the deleted rule

Compensation stops at the first failing step so the router is left exactly
at the last successfully compensated state, which the RollbackError reports.
"""

from __future__ import annotations

import logging
import threading

from .errors import (
    PassCancelledError,
    RollbackError,
    RouterError,
    RouterOperationError,
    RuleNotFoundError,
)
from .models import PortRule
from .operations import Operation, OperationResult, OperationType
from .port_registry import PortRegistry
from .routers.router import Router

logger = logging.getLogger(__name__)


class OperationExecutor:
    """Applies operation lists against a router.

    Successful Creates and Updates record the owner's claim in the port
    registry, successful Deletes release it; compensations do the inverse.
    """

    def __init__(self, router: Router, registry: PortRegistry | None = None) -> None:
        self._router = router
        self._registry = registry

    def execute(
        self,
        operations: list[Operation],
        cancel: threading.Event | None = None,
    ) -> OperationResult:
        """Apply operations in order.

        Args:
            operations: Operations, already sequenced by the planner.
            cancel: Checked between operations; an in-flight router call is
                never interrupted.

        Returns:
            OperationResult with every applied config.

        Raises:
            RouterOperationError: An operation failed and the pass was rolled back.
            PassCancelledError: Cancellation was observed and the pass was rolled back.
            RollbackError: A compensation failed; the error names what is left applied.
        """
        result = OperationResult()
        completed: list[Operation] = []

        for index, operation in enumerate(operations):
            if cancel is not None and cancel.is_set():
                result.skipped.extend(operations[index:])
                error = PassCancelledError(
                    f"pass cancelled after {len(completed)} of {len(operations)} operation(s)",
                    result,
                )
                result.failed.append(error)
                logger.warning(
                    "Reconciliation pass cancelled, rolling back",
                    extra={"completed": len(completed), "skipped": len(result.skipped)},
                )
                self._rollback(completed, error, result)
                raise error

            try:
                self._apply(operation)
            # Any failure, typed or not, must be compensated
            except Exception as e:
                result.skipped.extend(operations[index + 1 :])
                error = RouterOperationError(operation, e, result)
                result.failed.append(error)
                logger.error(
                    "Router operation failed, rolling back",
                    extra={
                        "operation": str(operation),
                        "reason": operation.reason.value,
                        "error": str(e),
                        "completed": len(completed),
                    },
                )
                self._rollback(completed, error, result)
                raise error from e

            completed.append(operation)
            result.record(operation)
            logger.info(
                "Router operation applied",
                extra={
                    "operation": str(operation),
                    "reason": operation.reason.value,
                    "rule_name": operation.config.name,
                },
            )

        return result

    def _apply(self, operation: Operation) -> None:
        config = operation.config
        match operation.type:
            case OperationType.CREATE:
                self._router.add(config)
                self._mark(config)
            case OperationType.UPDATE:
                port = operation.existing.external_port if operation.existing else config.external_port
                self._router.update(port, config)
                self._mark(config)
            case OperationType.DELETE:
                self._router.remove(config)
                self._release(config)

    def _rollback(
        self,
        completed: list[Operation],
        original: Exception,
        result: OperationResult,
    ) -> None:
        pending = list(reversed(completed))
        for index, operation in enumerate(pending):
            try:
                self._compensate(operation)
            except Exception as e:
                uncompensated = pending[index:]
                logger.error(
                    "Rollback failed, router left partially applied",
                    extra={
                        "operation": str(operation),
                        "error": str(e),
                        "uncompensated": [str(op) for op in uncompensated],
                    },
                )
                raise RollbackError(original, operation, e, uncompensated, result) from e

            result.rolled_back.append(operation)
            logger.info("Rolled back operation", extra={"operation": str(operation)})

    def _compensate(self, operation: Operation) -> None:
        config = operation.config
        match (operation.type, operation.existing):
            case (OperationType.CREATE, _):
                self._router.remove(config)
                self._release(config)
            case (OperationType.UPDATE, None):
                raise RouterError(f"no pre-image captured for {operation}")
            case (OperationType.UPDATE, existing):
                pre_image = PortRule.from_router_rule(existing)
                try:
                    self._router.update(config.external_port, pre_image)
                except RuleNotFoundError:
                    logger.info(
                        "Rule vanished during rollback, re-creating pre-image",
                        extra={"rule_name": pre_image.name, "external_port": pre_image.external_port},
                    )
                    self._router.add(pre_image)
            case (OperationType.DELETE, _):
                self._router.add(config)
                self._mark(config)

    def _mark(self, config: PortRule) -> None:
        if self._registry is not None and config.owner_key is not None:
            self._registry.mark(config.external_port, config.owner_key)

    def _release(self, config: PortRule) -> None:
        if self._registry is not None and config.owner_key is not None:
            self._registry.release(config.external_port, config.owner_key)
