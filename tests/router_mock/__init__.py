"""Router and platform doubles for reconciliation tests.

Usage:
    from router_mock import MockRouter, RecordingNotifier, make_service

    router = MockRouter()
    router.seed("manual-rule", 80, 8080)
    router.fail_next("add")
"""

from .router import MockRouter, RouterCall
from .support import (
    DEFAULT_IP,
    FakeClock,
    RecordedEvent,
    RecordingNotifier,
    make_service,
    managed_service,
    port_rule,
    router_rule,
)

__all__ = [
    "DEFAULT_IP",
    "FakeClock",
    "MockRouter",
    "RecordedEvent",
    "RecordingNotifier",
    "RouterCall",
    "make_service",
    "managed_service",
    "port_rule",
    "router_rule",
]
