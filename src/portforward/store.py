"""Resource-store collaborators: where Services are read and persisted.

Only annotations and finalizers are ever written back. Writes carry the
observed resourceVersion, so a concurrent modification surfaces as a
StoreConflictError instead of silently overwriting.
"""

from __future__ import annotations

import copy
import logging
import threading
from datetime import UTC, datetime
from typing import Protocol

from kubernetes.client import ApiClient, ApiException, CoreV1Api

from .errors import PortForwardError
from .models import ServiceResource

logger = logging.getLogger(__name__)


class StoreError(PortForwardError):
    """Raised when the resource store cannot be read or written."""

    pass


class StoreConflictError(StoreError):
    """Raised when the Service changed since it was read."""

    pass


class ResourceStore(Protocol):
    def get(self, namespace: str, name: str) -> ServiceResource | None:
        """Return the Service, or None if it does not exist."""
        ...

    def list(self) -> list[ServiceResource]:
        """Return every Service in scope."""
        ...

    def update(self, resource: ServiceResource) -> ServiceResource:
        """Persist annotations and finalizers, returning the stored copy."""
        ...


class InMemoryResourceStore:
    """Dict-backed store with resourceVersion checks and deletion semantics.

    A Service marked for deletion is removed once its last finalizer is
    dropped, as the platform would do.
    """

    def __init__(self, resources: list[ServiceResource] | None = None) -> None:
        self._lock = threading.Lock()
        self._resources: dict[str, ServiceResource] = {}
        self._version = 0
        for resource in resources or []:
            self.put(resource)

    def put(self, resource: ServiceResource) -> ServiceResource:
        """Create or replace a Service unconditionally (the platform side)."""
        with self._lock:
            stored = self._stamp(resource)
            self._resources[resource.key] = stored
            return stored

    def delete(self, namespace: str, name: str) -> None:
        """Request deletion: set the marker, or remove outright without finalizers."""
        key = f"{namespace}/{name}"
        with self._lock:
            resource = self._resources.get(key)
            if resource is None:
                return
            if not resource.finalizers:
                del self._resources[key]
                return
            if resource.deletion_timestamp is None:
                self._resources[key] = self._stamp(
                    resource.model_copy(update={"deletion_timestamp": datetime.now(UTC)})
                )

    def get(self, namespace: str, name: str) -> ServiceResource | None:
        with self._lock:
            return self._resources.get(f"{namespace}/{name}")

    def list(self) -> list[ServiceResource]:
        with self._lock:
            return list(self._resources.values())

    def update(self, resource: ServiceResource) -> ServiceResource:
        with self._lock:
            current = self._resources.get(resource.key)
            if current is None:
                raise StoreError(f"service {resource.key} not found")
            if resource.resource_version and resource.resource_version != current.resource_version:
                raise StoreConflictError(
                    f"service {resource.key} was modified (have {resource.resource_version}, "
                    f"stored {current.resource_version})"
                )

            updated = current.model_copy(
                update={
                    "annotations": dict(resource.annotations),
                    "finalizers": list(resource.finalizers),
                }
            )
            if updated.being_deleted and not updated.finalizers:
                del self._resources[resource.key]
                return updated

            stored = self._stamp(updated)
            self._resources[resource.key] = stored
            return stored

    def _stamp(self, resource: ServiceResource) -> ServiceResource:
        self._version += 1
        return resource.model_copy(update={"resource_version": str(self._version)})


class KubernetesResourceStore:
    """Services of a live cluster through the core/v1 API.

    Args:
        core_api: Configured CoreV1Api client.
        namespace: Namespace to watch; empty for all namespaces.
    """

    def __init__(self, core_api: CoreV1Api, namespace: str = "") -> None:
        self._core_api = core_api
        self._namespace = namespace
        self._serializer = ApiClient()

    def get(self, namespace: str, name: str) -> ServiceResource | None:
        try:
            service = self._core_api.read_namespaced_service(name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise StoreError(f"failed to read service {namespace}/{name}: {e.reason}") from e
        return self._to_resource(service)

    def list(self) -> list[ServiceResource]:
        try:
            if self._namespace:
                services = self._core_api.list_namespaced_service(namespace=self._namespace)
            else:
                services = self._core_api.list_service_for_all_namespaces()
        except ApiException as e:
            raise StoreError(f"failed to list services: {e.reason}") from e
        return [self._to_resource(service) for service in services.items or []]

    def update(self, resource: ServiceResource) -> ServiceResource:
        """Replace annotations and finalizers on the live object.

        The live object is re-read, patched in memory and replaced with the
        resourceVersion the caller observed.
        """
        try:
            live = self._core_api.read_namespaced_service(name=resource.name, namespace=resource.namespace)
        except ApiException as e:
            raise StoreError(f"failed to read service {resource.key}: {e.reason}") from e

        body = copy.deepcopy(live)
        body.metadata.annotations = dict(resource.annotations) or None
        body.metadata.finalizers = list(resource.finalizers) or None
        if resource.resource_version:
            body.metadata.resource_version = resource.resource_version

        try:
            stored = self._core_api.replace_namespaced_service(
                name=resource.name,
                namespace=resource.namespace,
                body=body,
            )
        except ApiException as e:
            if e.status == 409:
                raise StoreConflictError(f"service {resource.key} was modified concurrently") from e
            if e.status == 404:
                raise StoreError(f"service {resource.key} no longer exists") from e
            raise StoreError(f"failed to update service {resource.key}: {e.reason}") from e

        logger.debug(
            "Service updated",
            extra={"service_key": resource.key, "resource_version": stored.metadata.resource_version},
        )
        return self._to_resource(stored)

    def _to_resource(self, service: object) -> ServiceResource:
        return ServiceResource.from_manifest(self._serializer.sanitize_for_serialization(service))
