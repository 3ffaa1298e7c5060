"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for router_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from portforward.config import DEFAULT_FINALIZER_NAME, DEFAULT_PORTS_ANNOTATION, AnnotationKeys  # noqa: E402
from portforward.finalizer import FinalizerLifecycle  # noqa: E402
from portforward.port_registry import PortRegistry  # noqa: E402
from portforward.rate_limiter import ErrorRateLimiter  # noqa: E402
from portforward.reconciler import ServiceReconciler  # noqa: E402
from portforward.store import InMemoryResourceStore  # noqa: E402
from router_mock import FakeClock, MockRouter, RecordingNotifier  # noqa: E402


@pytest.fixture
def keys() -> AnnotationKeys:
    return AnnotationKeys.from_ports_annotation(DEFAULT_PORTS_ANNOTATION)


@pytest.fixture
def registry() -> PortRegistry:
    return PortRegistry()


@pytest.fixture
def router() -> MockRouter:
    return MockRouter()


@pytest.fixture
def store() -> InMemoryResourceStore:
    return InMemoryResourceStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rate_limiter(clock: FakeClock) -> ErrorRateLimiter:
    return ErrorRateLimiter(clock=clock)


@pytest.fixture
def reconciler(
    router: MockRouter,
    store: InMemoryResourceStore,
    registry: PortRegistry,
    notifier: RecordingNotifier,
    keys: AnnotationKeys,
    rate_limiter: ErrorRateLimiter,
    clock: FakeClock,
) -> ServiceReconciler:
    lifecycle = FinalizerLifecycle(
        router=router,
        store=store,
        registry=registry,
        notifier=notifier,
        finalizer=DEFAULT_FINALIZER_NAME,
        annotations=keys.cleanup,
        max_retries=3,
        retry_interval=30.0,
    )
    return ServiceReconciler(
        store=store,
        router=router,
        notifier=notifier,
        registry=registry,
        keys=keys,
        finalizer=DEFAULT_FINALIZER_NAME,
        lifecycle=lifecycle,
        rate_limiter=rate_limiter,
        clock=clock.monotonic,
    )
