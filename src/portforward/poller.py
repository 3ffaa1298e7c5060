"""Polling dispatcher that feeds the reconciler one key at a time.

Stands in for a platform watch: every poll interval the Services in scope
are listed and compared with the previous observation. New, changed and
vanished keys are dispatched to ServiceReconciler in worker threads, never
more than one at a time per key. Requeue and requeue-after results are
honoured at poll granularity; an immediate requeue is dispatched right away.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable

from .change_detection import analyze_changes
from .config import AnnotationKeys
from .models import ServiceResource, parse_service_key
from .reconciler import ReconcileResult, ServiceReconciler
from .records import ChangeContext
from .store import ResourceStore, StoreError

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 10.0
DEFAULT_MAX_WORKERS = 4


class ServicePoller:
    """Lists Services on an interval and dispatches reconciles for changed keys.

    Args:
        store: Resource store to list Services from.
        reconciler: State machine invoked per key.
        keys: Annotation keys; the change context is persisted under
            ``keys.change_context`` before a changed key is reconciled.
        interval_seconds: Seconds between polls.
        retry_delay: Delay before retrying a failed key without requeue_after.
        max_workers: Concurrent reconciles across different keys.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        store: ResourceStore,
        reconciler: ServiceReconciler,
        keys: AnnotationKeys,
        interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        retry_delay: float | None = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._reconciler = reconciler
        self._keys = keys
        self._interval = interval_seconds
        self._retry_delay = retry_delay if retry_delay is not None else interval_seconds
        self._clock = clock

        self._observed: dict[str, ServiceResource] = {}
        self._contexts: dict[str, ChangeContext] = {}
        self._due: dict[str, float] = {}
        self._in_flight: set[str] = set()
        self._dirty: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()

        self._semaphore = asyncio.Semaphore(max_workers)
        self._shutdown_event = asyncio.Event()
        self._cancel = threading.Event()

    @property
    def pending(self) -> dict[str, float]:
        """Keys waiting for a requeue, with the monotonic time they are due."""
        return dict(self._due)

    async def run(self) -> None:
        """Poll until shutdown, then wait for in-flight reconciles."""
        logger.info("Starting service poller", extra={"interval_seconds": self._interval})

        while not self._shutdown_event.is_set():
            await self.poll_once()
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self._interval)
            except TimeoutError:
                pass

        self._cancel.set()
        await self.wait_idle()
        logger.info("Service poller shutdown complete")

    def shutdown(self) -> None:
        """Signal the poller to stop."""
        logger.info("Service poller shutdown requested")
        self._shutdown_event.set()

    async def poll_once(self) -> None:
        """List Services once and dispatch every key that needs a reconcile."""
        try:
            resources = await asyncio.to_thread(self._store.list)
        except Exception as e:
            logger.error("Failed to list services", extra={"error": str(e)})
            return

        keys = self._observe(resources)
        now = self._clock()
        keys.update(key for key, due in self._due.items() if due <= now)

        for key in sorted(keys):
            self._dispatch(key)

    async def wait_idle(self) -> None:
        """Wait until no reconcile is running, including immediate requeues."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    def _observe(self, resources: list[ServiceResource]) -> set[str]:
        current = {resource.key: resource for resource in resources}
        changed: set[str] = set()

        for key, resource in current.items():
            old = self._observed.get(key)
            if old is not None and old.resource_version == resource.resource_version:
                continue

            context = analyze_changes(old, resource, self._keys.ports)
            if old is None or context.has_relevant_changes:
                changed.add(key)
            if context.has_relevant_changes:
                self._contexts[key] = context
                logger.debug(
                    "Service change observed",
                    extra={
                        "service_key": key,
                        "ip_changed": context.ip_changed,
                        "annotation_changed": context.annotation_changed,
                        "spec_changed": context.spec_changed,
                        "deletion_changed": context.deletion_changed,
                    },
                )

        for key in self._observed.keys() - current.keys():
            changed.add(key)
            self._contexts.pop(key, None)

        self._observed = current
        return changed

    def _dispatch(self, key: str) -> None:
        if key in self._in_flight:
            self._dirty.add(key)
            return

        self._due.pop(key, None)
        self._in_flight.add(key)
        task = asyncio.create_task(self._process(key, self._contexts.pop(key, None)))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _process(self, key: str, context: ChangeContext | None) -> None:
        try:
            async with self._semaphore:
                result = await asyncio.to_thread(self._work, key, context)
        except Exception as e:
            logger.exception("Reconcile dispatch failed", extra={"service_key": key})
            result = ReconcileResult(service_key=key, error=e, requeue=True)
        finally:
            self._in_flight.discard(key)

        self._schedule(key, result)

    def _work(self, key: str, context: ChangeContext | None) -> ReconcileResult:
        namespace, name = parse_service_key(key)
        if context is not None:
            self._record_change(namespace, name, context)
        return self._reconciler.reconcile(namespace, name, self._cancel)

    def _record_change(self, namespace: str, name: str, context: ChangeContext) -> None:
        try:
            resource = self._store.get(namespace, name)
            if resource is None or resource.being_deleted:
                return
            previous = ChangeContext.from_json(resource.annotations.get(self._keys.change_context))
            if previous is not None:
                context = context.model_copy(update={"port_forward_rules": previous.port_forward_rules})
            self._store.update(resource.with_annotations({self._keys.change_context: context.to_json()}))
        except StoreError as e:
            logger.warning(
                "Failed to persist change context",
                extra={"service_key": f"{namespace}/{name}", "error": str(e)},
            )

    def _schedule(self, key: str, result: ReconcileResult) -> None:
        now = self._clock()
        if key in self._dirty:
            self._dirty.discard(key)
            delay: float | None = 0.0
        elif result.requeue_after is not None:
            delay = result.requeue_after
        elif result.requeue:
            delay = 0.0 if result.success else self._retry_delay
        else:
            delay = None

        if delay is None:
            return
        if delay <= 0 and not self._shutdown_event.is_set():
            self._dispatch(key)
            return
        self._due[key] = now + delay
