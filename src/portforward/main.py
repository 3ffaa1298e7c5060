"""Main entry point for the port-forward operator.

Wires the reconciliation core to its collaborators:
- Services come from the Kubernetes API (KubernetesResourceStore)
- Rules live on a UniFi controller (UnifiRouter)
- Events go to structured logs and core/v1 Events (CompositeNotifier)

Two loops then run side by side until SIGTERM/SIGINT: the ServicePoller
dispatching per-Service reconciles, and the PeriodicReconciler correcting
fleet-wide drift.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from dataclasses import dataclass
from datetime import UTC, datetime

from kubernetes import client as kube_client
from kubernetes import config as kube_config

from .config import Config, ConfigurationError
from .errors import RouterError
from .executor import OperationExecutor
from .finalizer import FinalizerLifecycle
from .locks import KeyedLocks
from .notifier import CompositeNotifier, KubernetesEventNotifier, LoggingNotifier, Notifier
from .periodic import PeriodicReconciler
from .poller import ServicePoller
from .port_registry import PortRegistry
from .rate_limiter import ErrorRateLimiter
from .reconciler import ServiceReconciler
from .routers.router import Router
from .routers.unifi import UnifiRouter
from .store import KubernetesResourceStore, ResourceStore

# LogRecord attributes that are not structured extras
_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Configure structured logging with JSON output for production."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from client libraries
    for noisy in ("httpx", "httpcore", "kubernetes", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


@dataclass
class Operator:
    """The wired-up reconciliation host."""

    registry: PortRegistry
    reconciler: ServiceReconciler
    periodic: PeriodicReconciler
    poller: ServicePoller

    async def run(self) -> None:
        await asyncio.gather(self.poller.run(), self.periodic.run())

    def shutdown(self) -> None:
        self.poller.shutdown()
        self.periodic.shutdown()


def build_operator(config: Config, store: ResourceStore, router: Router, notifier: Notifier) -> Operator:
    """Assemble every component around one port registry, rate limiter and lock table."""
    keys = config.annotations
    registry = PortRegistry()
    rate_limiter = ErrorRateLimiter()
    locks = KeyedLocks()

    lifecycle = FinalizerLifecycle(
        router=router,
        store=store,
        registry=registry,
        notifier=notifier,
        finalizer=config.finalizer_name,
        annotations=keys.cleanup,
        max_retries=config.finalizer_max_retries,
        retry_interval=float(config.finalizer_retry_interval_seconds),
    )
    reconciler = ServiceReconciler(
        store=store,
        router=router,
        notifier=notifier,
        registry=registry,
        keys=keys,
        finalizer=config.finalizer_name,
        lifecycle=lifecycle,
        rate_limiter=rate_limiter,
        locks=locks,
    )
    periodic = PeriodicReconciler(
        store=store,
        router=router,
        notifier=notifier,
        reconciler=reconciler,
        finalizer=config.finalizer_name,
        executor=OperationExecutor(router, registry),
        rate_limiter=rate_limiter,
        interval_seconds=float(config.periodic_interval_seconds),
        max_concurrent=config.max_concurrent_passes,
    )
    poller = ServicePoller(
        store=store,
        reconciler=reconciler,
        keys=keys,
        interval_seconds=float(config.poll_interval_seconds),
    )
    return Operator(registry=registry, reconciler=reconciler, periodic=periodic, poller=poller)


def load_kubernetes_api() -> kube_client.CoreV1Api:
    """Load in-cluster credentials, falling back to the local kubeconfig."""
    try:
        kube_config.load_incluster_config()
    except kube_config.ConfigException:
        logging.getLogger(__name__).warning("Failed to load in-cluster config, trying local kubeconfig")
        kube_config.load_kube_config()
    return kube_client.CoreV1Api()


async def main() -> int:
    """Run the operator.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        setup_logging()
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    setup_logging(config.effective_log_level)
    logger.info(
        "Starting port-forward operator",
        extra={
            "router_url": config.router.url,
            "site": config.router.site,
            "watch_namespace": config.watch_namespace or "<all>",
            "ports_annotation": config.ports_annotation,
            "periodic_interval_seconds": config.periodic_interval_seconds,
        },
    )

    try:
        core_api = load_kubernetes_api()
    except Exception as e:
        logger.error("Failed to load Kubernetes configuration", extra={"error": str(e)})
        return 1

    store = KubernetesResourceStore(core_api, config.watch_namespace)
    notifier = CompositeNotifier(LoggingNotifier(), KubernetesEventNotifier(core_api))
    router = UnifiRouter(config.router)
    operator = build_operator(config, store, router, notifier)

    try:
        rules = await asyncio.to_thread(router.list)
    except RouterError as e:
        logger.error("Router unreachable at startup", extra={"error": str(e), "router_url": config.router.url})
        router.close()
        return 1
    operator.registry.sync_from_rules(rules)

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        operator.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await operator.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1
    finally:
        router.close()

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for the operator."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
