"""Tests for notifiers and operation events."""

import logging
from unittest.mock import MagicMock

import pytest
from kubernetes.client import ApiException, CoreV1Event

from portforward.notifier import (
    CompositeNotifier,
    EventReason,
    KubernetesEventNotifier,
    LoggingNotifier,
    emit_operation_events,
)
from portforward.operations import Operation, Reason
from router_mock import RecordingNotifier, port_rule, router_rule

KEY = "default/web"


class TestLoggingNotifier:
    def test_levels_follow_reason(self, caplog: pytest.LogCaptureFixture) -> None:
        notifier = LoggingNotifier()

        with caplog.at_level(logging.INFO, logger="portforward.notifier"):
            notifier.emit(EventReason.PORT_FORWARD_CREATED, "Created", {"service_key": KEY})
            notifier.emit(EventReason.PORT_FORWARD_FAILED, "Failed", {"service_key": KEY})

        assert [r.levelno for r in caplog.records] == [logging.INFO, logging.WARNING]
        assert caplog.records[0].event_reason == "PortForwardCreated"
        assert caplog.records[0].service_key == KEY


class TestKubernetesEventNotifier:
    def test_event_recorded_on_service(self) -> None:
        core_api = MagicMock()

        KubernetesEventNotifier(core_api).emit(
            EventReason.DRIFT_DETECTED, "Drift detected", {"service_key": KEY}
        )

        kwargs = core_api.create_namespaced_event.call_args.kwargs
        event = kwargs["body"]
        assert isinstance(event, CoreV1Event)
        assert kwargs["namespace"] == "default"
        assert event.involved_object.kind == "Service"
        assert event.involved_object.name == "web"
        assert event.reason == "DriftDetected"
        assert event.type == "Warning"
        assert event.metadata.generate_name == "web."

    def test_event_without_service_dropped(self) -> None:
        core_api = MagicMock()

        KubernetesEventNotifier(core_api).emit(EventReason.PERIODIC_RECONCILIATION_COMPLETED, "done", {})

        core_api.create_namespaced_event.assert_not_called()

    def test_api_failure_is_logged_not_raised(self) -> None:
        core_api = MagicMock()
        core_api.create_namespaced_event.side_effect = ApiException(status=403, reason="Forbidden")

        KubernetesEventNotifier(core_api).emit(EventReason.PORT_FORWARD_CREATED, "Created", {"service_key": KEY})


class TestCompositeNotifier:
    def test_fans_out_and_survives_failures(self) -> None:
        broken = MagicMock()
        broken.emit.side_effect = RuntimeError("boom")
        recording = RecordingNotifier()

        CompositeNotifier(broken, recording).emit(EventReason.CLEANUP_COMPLETED, "done", {"service_key": KEY})

        broken.emit.assert_called_once()
        assert recording.reasons() == [EventReason.CLEANUP_COMPLETED]


def test_operation_events() -> None:
    notifier = RecordingNotifier()
    manual = router_rule("r1", "manual", 443)
    operations = [
        Operation.create(port_rule(KEY, "http", 80), Reason.PORT_NOT_YET_EXISTS),
        Operation.update(port_rule(KEY, "https", 443), manual, Reason.OWNERSHIP_TAKEOVER),
        Operation.delete(router_rule("r2", "default/web:old", 8080), Reason.PORT_NO_LONGER_DESIRED),
    ]

    emit_operation_events(notifier, KEY, operations)

    assert notifier.reasons(KEY) == [
        EventReason.PORT_FORWARD_CREATED,
        EventReason.PORT_FORWARD_TAKEN_OWNERSHIP,
        EventReason.PORT_FORWARD_DELETED,
    ]
    assert notifier.events[1].data["reason"] == "ownership_takeover"
    assert notifier.events[2].data["external_port"] == 8080
