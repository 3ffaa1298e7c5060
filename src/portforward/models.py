"""Pydantic models for Services, desired port rules and router snapshots.

These models provide:
1. Type-safe parsing of Service manifests (live cluster objects and YAML files)
2. A structured ownership identity for router rules
3. The triple key (external port, internal port, protocol) that uniquely
   identifies a port-forward rule on the router
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

MIN_PORT = 1
MAX_PORT = 65535

DEFAULT_INTERFACE = "wan"
ANY_SOURCE = "any"

PortNumber = Annotated[int, Field(ge=MIN_PORT, le=MAX_PORT)]

# (external port, internal port, protocol)
RuleKey = tuple[int, int, str]

VALID_PROTOCOLS = frozenset({"tcp", "udp", "tcp_udp"})

PROTOCOL_ALIASES: dict[str, str] = {
    "TCP": "tcp",
    "UDP": "udp",
    "TCP_UDP": "tcp_udp",
    "TCPV4": "tcp",
    "UDPV4": "udp",
    "IPV4_TCP": "tcp",
    "IPV4_UDP": "udp",
}


def normalize_protocol(protocol: str) -> str:
    """Normalize protocol spellings ("TCP", "tcp/udp", "IPv4-UDP") to router form.

    Raises:
        ValueError: If the protocol is empty or unknown.
    """
    cleaned = protocol.strip().upper().replace("/", "_").replace("-", "_")
    if not cleaned:
        raise ValueError("protocol cannot be empty")
    normalized = PROTOCOL_ALIASES.get(cleaned, cleaned.lower())
    if normalized not in VALID_PROTOCOLS:
        raise ValueError(f"protocol must be one of {sorted(VALID_PROTOCOLS)}: {protocol}")
    return normalized


def rule_key(external_port: int, internal_port: int, protocol: str) -> RuleKey:
    """Build the uniqueness key of a port-forward rule."""
    return (external_port, internal_port, protocol.lower())


# =============================================================================
# Rule identity
# =============================================================================


class RuleIdentity(BaseModel):
    """Structured owner of a router rule: one port of one Service.

    The router only stores an opaque display name, rendered as
    ``namespace/service:port``. Ownership is decided by parsing that name back
    into its three parts and comparing them exactly, so ``default/api`` never
    claims rules of ``default/api-service``.
    """

    model_config = ConfigDict(frozen=True)

    namespace: Annotated[str, Field(min_length=1)]
    service: Annotated[str, Field(min_length=1)]
    port_name: Annotated[str, Field(min_length=1)]

    @property
    def service_key(self) -> str:
        """Key of the owning Service (``namespace/name``)."""
        return f"{self.namespace}/{self.service}"

    @property
    def display_name(self) -> str:
        """Rule name as stored on the router."""
        return f"{self.service_key}:{self.port_name}"

    @classmethod
    def parse(cls, name: str) -> RuleIdentity | None:
        """Parse a router display name, returning None for foreign names."""
        head, sep, port_name = name.partition(":")
        if not sep or not port_name or ":" in port_name:
            return None
        parts = head.split("/")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            return None
        return cls(namespace=parts[0], service=parts[1], port_name=port_name)


def parse_service_key(service_key: str) -> tuple[str, str]:
    """Split ``namespace/name`` into its parts.

    Raises:
        ValueError: If the key is not of the form ``namespace/name``.
    """
    namespace, sep, name = service_key.partition("/")
    if not sep or not namespace or not name or "/" in name:
        raise ValueError(f"service key must be 'namespace/name': {service_key}")
    return namespace, name


# =============================================================================
# Services
# =============================================================================


class ServicePort(BaseModel):
    """A port declared on a Service."""

    model_config = ConfigDict(extra="ignore")

    name: str = ""
    port: PortNumber
    protocol: str = "tcp"

    @field_validator("protocol")
    @classmethod
    def validate_protocol(cls, v: str) -> str:
        return normalize_protocol(v)


class ServiceResource(BaseModel):
    """The subset of a platform Service the controller reads and writes.

    Instances are treated as immutable snapshots: mutators return copies that
    are then persisted through the resource store.
    """

    model_config = ConfigDict(extra="ignore")

    namespace: Annotated[str, Field(min_length=1)]
    name: Annotated[str, Field(min_length=1)]
    annotations: dict[str, str] = Field(default_factory=dict)
    finalizers: list[str] = Field(default_factory=list)
    ports: list[ServicePort] = Field(default_factory=list)
    load_balancer_ip: str | None = None
    deletion_timestamp: datetime | None = None
    resource_version: str | None = None

    @property
    def key(self) -> str:
        """Service key (``namespace/name``)."""
        return f"{self.namespace}/{self.name}"

    @property
    def being_deleted(self) -> bool:
        return self.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def with_finalizer(self, finalizer: str) -> ServiceResource:
        """Return a copy carrying the finalizer."""
        if finalizer in self.finalizers:
            return self
        return self.model_copy(update={"finalizers": [*self.finalizers, finalizer]})

    def without_finalizer(self, finalizer: str) -> ServiceResource:
        """Return a copy without the finalizer."""
        return self.model_copy(
            update={"finalizers": [f for f in self.finalizers if f != finalizer]}
        )

    def with_annotations(self, updates: dict[str, str | None]) -> ServiceResource:
        """Return a copy with annotations set, or removed where the value is None."""
        annotations = dict(self.annotations)
        for key, value in updates.items():
            if value is None:
                annotations.pop(key, None)
            else:
                annotations[key] = value
        return self.model_copy(update={"annotations": annotations})

    def available_ports(self) -> list[str]:
        """Human-readable list of declared ports, e.g. ``http(80)``."""
        return [f"{p.name}({p.port})" for p in self.ports]

    @classmethod
    def from_manifest(cls, manifest: dict[str, Any]) -> ServiceResource:
        """Build from a Service manifest in API (camelCase) form.

        Accepts both YAML manifests and live objects serialized by the
        Kubernetes client. The destination address is the first load-balancer
        ingress entry carrying an IP.
        """
        metadata = manifest.get("metadata") or {}
        spec = manifest.get("spec") or {}
        status = manifest.get("status") or {}

        ingress = (status.get("loadBalancer") or {}).get("ingress") or []
        lb_ip = next((entry["ip"] for entry in ingress if entry.get("ip")), None)

        return cls(
            namespace=metadata.get("namespace") or "default",
            name=metadata.get("name", ""),
            annotations=metadata.get("annotations") or {},
            finalizers=metadata.get("finalizers") or [],
            ports=[
                {
                    "name": port.get("name") or "",
                    "port": port.get("port"),
                    "protocol": port.get("protocol") or "TCP",
                }
                for port in spec.get("ports") or []
            ],
            load_balancer_ip=lb_ip,
            deletion_timestamp=metadata.get("deletionTimestamp"),
            resource_version=metadata.get("resourceVersion"),
        )


# =============================================================================
# Port rules
# =============================================================================


class PortRule(BaseModel):
    """A desired port-forward rule.

    ``name`` is the display name written to the router; ``identity`` is the
    structured owner it was rendered from. Pre-images of foreign rules carry
    no identity.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    identity: RuleIdentity | None = None
    external_port: PortNumber
    internal_port: PortNumber
    protocol: str
    destination_ip: str
    enabled: bool = True
    interface: str = DEFAULT_INTERFACE
    source: str = ANY_SOURCE

    @property
    def key(self) -> RuleKey:
        return rule_key(self.external_port, self.internal_port, self.protocol)

    @property
    def owner_key(self) -> str | None:
        """Service key of the owner, or None for foreign rules."""
        return self.identity.service_key if self.identity else None

    @classmethod
    def for_port(
        cls,
        identity: RuleIdentity,
        external_port: int,
        internal_port: int,
        protocol: str,
        destination_ip: str,
    ) -> PortRule:
        """Build the desired rule for one port of a Service."""
        return cls(
            name=identity.display_name,
            identity=identity,
            external_port=external_port,
            internal_port=internal_port,
            protocol=protocol,
            destination_ip=destination_ip,
        )

    @classmethod
    def from_router_rule(cls, rule: RouterRule) -> PortRule:
        """Capture a router rule as a config that can be re-applied."""
        return cls(
            name=rule.name,
            identity=rule.identity,
            external_port=rule.external_port,
            internal_port=rule.internal_port,
            protocol=rule.protocol,
            destination_ip=rule.destination_ip,
            enabled=rule.enabled,
            interface=rule.interface,
            source=rule.source,
        )

    def describe(self) -> str:
        return (
            f"{self.external_port} -> {self.destination_ip}:{self.internal_port} ({self.protocol})"
        )


class RouterRule(BaseModel):
    """A port-forward rule as reported by the router. Read-only input."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    external_port: int
    internal_port: int
    protocol: str = "tcp"
    destination_ip: str = ""
    enabled: bool = True
    interface: str = DEFAULT_INTERFACE
    source: str = ANY_SOURCE

    @property
    def key(self) -> RuleKey:
        return rule_key(self.external_port, self.internal_port, self.protocol)

    @property
    def identity(self) -> RuleIdentity | None:
        return RuleIdentity.parse(self.name)

    def owned_by(self, service_key: str) -> bool:
        """Return True if the display name parses to an identity of this Service."""
        identity = self.identity
        return identity is not None and identity.service_key == service_key


def filter_owned(rules: list[RouterRule], service_key: str) -> list[RouterRule]:
    """Select the rules owned by one Service."""
    return [rule for rule in rules if rule.owned_by(service_key)]
