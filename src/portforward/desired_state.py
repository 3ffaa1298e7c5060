"""Desired-state calculation from a Service's ports annotation.

The annotation is a comma-separated list of tokens:

    http             forward external port = declared port number of "http"
    https:8443       forward external port 8443 to the declared "https" port

Every matched declared port yields exactly one PortRule. External ports are
claimed in the injected PortRegistry so two Services can never forward the
same external port.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .errors import (
    DuplicatePortError,
    MissingAddressError,
    ParseError,
    UnknownPortError,
    ValidationError,
)
from .models import MAX_PORT, MIN_PORT, PortRule, RuleIdentity, ServiceResource
from .port_registry import PortRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PortMapping:
    """One parsed annotation token."""

    port_name: str
    external_port: int | None = None


def parse_port_mappings(annotation: str) -> list[PortMapping]:
    """Parse the ports annotation into mappings.

    Empty tokens (``"http,,https"``) are skipped.

    Raises:
        ParseError: On a malformed token or a port name mapped twice.
    """
    mappings: list[PortMapping] = []
    seen: set[str] = set()

    for raw in annotation.split(","):
        token = raw.strip()
        if not token:
            continue

        mapping = _parse_token(token)
        if mapping.port_name in seen:
            raise ParseError(token, f"port '{mapping.port_name}' is mapped more than once")
        seen.add(mapping.port_name)
        mappings.append(mapping)

    return mappings


def _parse_token(token: str) -> PortMapping:
    parts = token.split(":")

    if len(parts) > 2:
        raise ParseError(token, "too many colons")

    port_name = parts[0].strip()
    if not port_name:
        raise ParseError(token, "port name cannot be empty")
    if any(ch.isspace() for ch in port_name):
        raise ParseError(token, "port name cannot contain whitespace")

    if len(parts) == 1:
        return PortMapping(port_name=port_name)

    raw_port = parts[1].strip()
    if not raw_port.isdigit():
        raise ParseError(
            token, f"external port '{raw_port}' must be a number between {MIN_PORT}-{MAX_PORT}"
        )
    external_port = int(raw_port)
    if not MIN_PORT <= external_port <= MAX_PORT:
        raise ParseError(
            token, f"external port {external_port} out of valid range ({MIN_PORT}-{MAX_PORT})"
        )
    return PortMapping(port_name=port_name, external_port=external_port)


class DesiredStateCalculator:
    """Turns one Service into the list of port rules it should own on the router."""

    def __init__(self, registry: PortRegistry, annotation_key: str) -> None:
        self._registry = registry
        self._annotation_key = annotation_key

    @property
    def annotation_key(self) -> str:
        return self._annotation_key

    def qualifies(self, resource: ServiceResource) -> bool:
        """A Service is managed when it carries the annotation and has an address."""
        return self._annotation_key in resource.annotations and bool(resource.load_balancer_ip)

    def validate(self, resource: ServiceResource) -> list[PortRule]:
        """Compute the desired rules without claiming any external port.

        Raises the same errors as :meth:`calculate`, except PortConflictError.
        """
        return self._build_rules(resource)

    def calculate(self, resource: ServiceResource) -> list[PortRule]:
        """Compute the desired rules for a Service and claim their external ports.

        Raises:
            MissingAddressError: If the Service has no destination address.
            ParseError: On a malformed annotation token.
            UnknownPortError: If a token names a port the Service does not declare.
            DuplicatePortError: If two tokens resolve to the same external port.
            ValidationError: If the annotation is missing or produces no rules.
            PortConflictError: If another Service already claimed an external port.
        """
        rules = self._build_rules(resource)
        external_ports = sorted(rule.external_port for rule in rules)
        self._registry.claim_all(external_ports, resource.key)

        logger.debug(
            "Calculated desired state",
            extra={
                "service_key": resource.key,
                "rule_count": len(rules),
                "external_ports": external_ports,
            },
        )
        return rules

    def _build_rules(self, resource: ServiceResource) -> list[PortRule]:
        if not resource.load_balancer_ip:
            raise MissingAddressError(f"service {resource.key} has no LoadBalancer IP")

        annotation = resource.annotations.get(self._annotation_key)
        if annotation is None:
            raise ValidationError(f"service {resource.key} has no {self._annotation_key} annotation")

        mappings = {m.port_name: m for m in parse_port_mappings(annotation)}

        declared = {port.name for port in resource.ports if port.name}
        for port_name in mappings:
            if port_name not in declared:
                raise UnknownPortError(port_name, resource.key, resource.available_ports())

        rules: list[PortRule] = []
        external_ports: set[int] = set()

        for port in resource.ports:
            mapping = mappings.get(port.name)
            if mapping is None or not port.name:
                continue

            external_port = mapping.external_port or port.port
            if external_port in external_ports:
                raise DuplicatePortError(external_port, resource.key)
            external_ports.add(external_port)

            identity = RuleIdentity(
                namespace=resource.namespace,
                service=resource.name,
                port_name=port.name,
            )
            rules.append(
                PortRule.for_port(
                    identity,
                    external_port=external_port,
                    internal_port=port.port,
                    protocol=port.protocol,
                    destination_ip=resource.load_balancer_ip,
                )
            )

        if not rules:
            raise ValidationError(
                f"no valid port configurations generated from annotation '{annotation}' "
                f"for service {resource.key}. Available ports: "
                f"{', '.join(resource.available_ports()) or 'none'}"
            )

        return rules
