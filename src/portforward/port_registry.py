"""Process-wide registry of claimed external ports.

An external port forwarded by the router can only serve one Service. The
registry records which Service claimed each port so that a second Service
asking for the same port is rejected before anything reaches the router.

Thread Safety:
    All methods take one lock for a short, I/O-free critical section. Router
    calls always happen outside the lock.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable

from .errors import PortConflictError
from .models import RouterRule

logger = logging.getLogger(__name__)


class PortRegistry:
    """Maps external ports to the key of the Service that claimed them.

    Owned by the reconciliation host and injected into the desired-state
    calculator and the operation executor.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._claims: dict[int, str] = {}

    def claim(self, external_port: int, service_key: str) -> None:
        """Claim a port for a Service. Re-claiming an own port is a no-op.

        Raises:
            PortConflictError: If another Service holds the port.
        """
        with self._lock:
            owner = self._claims.get(external_port)
            if owner is not None and owner != service_key:
                raise PortConflictError(external_port, owner, service_key)
            self._claims[external_port] = service_key

    def claim_all(self, external_ports: Iterable[int], service_key: str) -> None:
        """Claim several ports atomically: either all are claimed or none.

        Raises:
            PortConflictError: If any port is held by another Service.
        """
        ports = list(external_ports)
        with self._lock:
            for port in ports:
                owner = self._claims.get(port)
                if owner is not None and owner != service_key:
                    raise PortConflictError(port, owner, service_key)
            for port in ports:
                self._claims[port] = service_key

    def mark(self, external_port: int, service_key: str) -> None:
        """Record a claim unconditionally (the router already holds the rule)."""
        with self._lock:
            self._claims[external_port] = service_key

    def release(self, external_port: int, service_key: str | None = None) -> bool:
        """Release a port. With a service key, only that Service's claim is released.

        Returns:
            True if a claim was removed.
        """
        with self._lock:
            owner = self._claims.get(external_port)
            if owner is None or (service_key is not None and owner != service_key):
                return False
            del self._claims[external_port]
            return True

    def release_service(self, service_key: str) -> list[int]:
        """Release every port claimed by a Service, returning the freed ports."""
        with self._lock:
            freed = [port for port, owner in self._claims.items() if owner == service_key]
            for port in freed:
                del self._claims[port]
        if freed:
            logger.debug(
                "Released external ports",
                extra={"service_key": service_key, "ports": sorted(freed)},
            )
        return freed

    def owner_of(self, external_port: int) -> str | None:
        with self._lock:
            return self._claims.get(external_port)

    def ports_of(self, service_key: str) -> list[int]:
        with self._lock:
            return sorted(port for port, owner in self._claims.items() if owner == service_key)

    def snapshot(self) -> dict[int, str]:
        """Copy of all claims."""
        with self._lock:
            return dict(self._claims)

    def sync_from_rules(self, rules: Iterable[RouterRule]) -> int:
        """Rebuild the registry from the managed rules currently on the router.

        Foreign rules (names that do not parse to an identity) are ignored.

        Returns:
            Number of claims recorded.
        """
        claims: dict[int, str] = {}
        for rule in rules:
            identity = rule.identity
            if identity is not None and rule.external_port > 0:
                claims[rule.external_port] = identity.service_key
        with self._lock:
            self._claims = claims
        logger.info("Port registry synchronized with router", extra={"claims": len(claims)})
        return len(claims)
