"""Tests for fail-fast execution with rollback."""

import threading

import pytest

from portforward.errors import (
    PassCancelledError,
    RollbackError,
    RouterError,
    RouterOperationError,
)
from portforward.executor import OperationExecutor
from portforward.operations import Operation, OperationType, Reason
from portforward.port_registry import PortRegistry
from router_mock import MockRouter, port_rule, router_rule

SERVICE = "default/web"


def create(port: int, name: str = "http") -> Operation:
    return Operation.create(port_rule(SERVICE, f"{name}{port}", port), Reason.PORT_NOT_YET_EXISTS)


class TestExecute:
    def test_applies_in_order(self, router: MockRouter, registry: PortRegistry) -> None:
        existing = router.seed("default/web:old", 70)
        to_update = router.seed("default/web:http", 80, destination_ip="10.0.0.9")
        ops = [
            Operation.delete(existing, Reason.PORT_NO_LONGER_DESIRED),
            Operation.update(port_rule(SERVICE, "http", 80), to_update, Reason.CONFIGURATION_MISMATCH_SAFE),
            create(90),
        ]

        result = OperationExecutor(router, registry).execute(ops)

        assert [c.operation for c in router.mutation_calls] == ["remove", "update", "add"]
        assert result.success
        assert result.applied_count == 3
        assert len(result.created) == len(result.updated) == len(result.deleted) == 1
        assert router.get(80).destination_ip == "192.168.1.100"
        assert router.get(80).id == to_update.id

    def test_registry_follows_router(self, router: MockRouter, registry: PortRegistry) -> None:
        existing = router.seed("default/web:old", 70)
        registry.claim(70, SERVICE)

        OperationExecutor(router, registry).execute(
            [Operation.delete(existing, Reason.PORT_NO_LONGER_DESIRED), create(90)]
        )

        assert registry.snapshot() == {90: SERVICE}

    def test_empty_list(self, router: MockRouter) -> None:
        result = OperationExecutor(router).execute([])

        assert result.success
        assert router.calls == []

    def test_create_failure_rolls_back_earlier_creates(self, router: MockRouter, registry: PortRegistry) -> None:
        """[Create A, Create B], B fails: neither A nor B remains."""
        router.fail_on("add", 443)

        with pytest.raises(RouterOperationError) as exc_info:
            OperationExecutor(router, registry).execute([create(80), create(443)])

        result = exc_info.value.result
        assert len(result.failed) == 1
        assert [op.config.external_port for op in result.rolled_back] == [80]
        assert router.rules() == []
        assert registry.snapshot() == {}
        assert exc_info.value.operation.config.external_port == 443

    def test_failure_skips_remaining(self, router: MockRouter) -> None:
        router.fail_on("add", 80)

        with pytest.raises(RouterOperationError) as exc_info:
            OperationExecutor(router).execute([create(80), create(81), create(82)])

        assert [op.config.external_port for op in exc_info.value.result.skipped] == [81, 82]
        assert [c.external_port for c in router.calls_of("add")] == [80]

    def test_untyped_failure_is_compensated(self, router: MockRouter) -> None:
        router.fail_on("add", 81, RuntimeError("boom"))

        with pytest.raises(RouterOperationError) as exc_info:
            OperationExecutor(router).execute([create(80), create(81)])

        assert isinstance(exc_info.value.cause, RuntimeError)
        assert router.rules() == []


class TestRollback:
    """Compensation table and rollback safety."""

    def _mixed_pass(self, router: MockRouter) -> list[Operation]:
        gone = router.seed("default/web:gone", 70)
        stale = router.seed("default/web:http", 80, 8080, destination_ip="10.0.0.9")
        manual = router.seed("manual-rule", 90)
        router.seed("other/app:ssh", 22)
        return [
            Operation.delete(gone, Reason.PORT_NO_LONGER_DESIRED),
            Operation.update(port_rule(SERVICE, "http", 80, 8080), stale, Reason.CONFIGURATION_MISMATCH_SAFE),
            Operation.update(port_rule(SERVICE, "alt", 90), manual, Reason.OWNERSHIP_TAKEOVER),
            create(443),
            create(8443),
        ]

    @pytest.mark.parametrize("failing", [1, 2, 3, 4, 5])
    def test_state_restored_for_every_failure_point(self, failing: int) -> None:
        router = MockRouter()
        ops = self._mixed_pass(router)
        before = router.state()
        router.fail_mutation(failing)

        with pytest.raises(RouterOperationError) as exc_info:
            OperationExecutor(router).execute(ops)

        assert router.state() == before
        assert len(exc_info.value.result.rolled_back) == failing - 1

    def test_rollback_runs_in_reverse(self, router: MockRouter) -> None:
        router.fail_on("add", 82)

        with pytest.raises(RouterOperationError):
            OperationExecutor(router).execute([create(80), create(81), create(82)])

        removes = [c.external_port for c in router.calls_of("remove")]
        assert removes == [81, 80]

    def test_update_rollback_recreates_vanished_rule(self, router: MockRouter) -> None:
        stale = router.seed("default/web:http", 80, destination_ip="10.0.0.9")
        ops = [
            Operation.update(port_rule(SERVICE, "http", 80), stale, Reason.CONFIGURATION_MISMATCH_SAFE),
            create(443),
        ]

        # Remove the updated rule out of band when the create is attempted
        original_add = router.add

        def add_and_lose(rule):
            if rule.external_port == 443:
                router.remove(port_rule(SERVICE, "http", 80))
                raise RouterError("controller busy")
            original_add(rule)

        router.add = add_and_lose  # type: ignore[method-assign]

        with pytest.raises(RouterOperationError):
            OperationExecutor(router).execute(ops)

        restored = router.get(80)
        assert restored is not None
        assert restored.destination_ip == "10.0.0.9"
        assert restored.name == "default/web:http"

    def test_delete_rollback_recreates(self, router: MockRouter, registry: PortRegistry) -> None:
        gone = router.seed("default/web:gone", 70)
        registry.claim(70, SERVICE)
        router.fail_on("add", 80)

        with pytest.raises(RouterOperationError):
            OperationExecutor(router, registry).execute(
                [Operation.delete(gone, Reason.PORT_NO_LONGER_DESIRED), create(80)]
            )

        assert router.get(70).name == "default/web:gone"
        assert registry.owner_of(70) == SERVICE

    def test_update_without_pre_image_cannot_be_compensated(self, router: MockRouter) -> None:
        router.seed("default/web:http", 80, destination_ip="10.0.0.9")
        update = Operation(
            type=OperationType.UPDATE,
            config=port_rule(SERVICE, "http", 80),
            reason=Reason.CONFIGURATION_MISMATCH_SAFE,
        )
        router.fail_on("add", 443)

        with pytest.raises(RollbackError) as exc_info:
            OperationExecutor(router).execute([update, create(443)])

        assert exc_info.value.failed_rollback == update
        assert exc_info.value.uncompensated == [update]

    def test_failed_compensation_reports_what_is_left(self, router: MockRouter) -> None:
        router.fail_on("add", 82)
        router.fail_on("remove", 81)

        with pytest.raises(RollbackError) as exc_info:
            OperationExecutor(router).execute([create(80), create(81), create(82)])

        error = exc_info.value
        assert isinstance(error.original, RouterOperationError)
        assert [op.config.external_port for op in error.uncompensated] == [81, 80]
        # Compensation stops at the first failing step
        assert router.get(80) is not None
        assert router.get(81) is not None
        assert "rollback also failed" in str(error)


class TestCancellation:
    def test_cancel_before_start(self, router: MockRouter) -> None:
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(PassCancelledError) as exc_info:
            OperationExecutor(router).execute([create(80)], cancel)

        assert len(exc_info.value.result.skipped) == 1
        assert router.mutation_calls == []

    def test_cancel_between_operations_rolls_back(self, router: MockRouter) -> None:
        cancel = threading.Event()
        original_add = router.add

        def add_then_cancel(rule):
            original_add(rule)
            cancel.set()

        router.add = add_then_cancel  # type: ignore[method-assign]

        with pytest.raises(PassCancelledError) as exc_info:
            OperationExecutor(router).execute([create(80), create(81)], cancel)

        assert router.rules() == []
        assert [op.config.external_port for op in exc_info.value.result.skipped] == [81]
