"""Tests for the Pydantic models."""

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from portforward.models import (
    PortRule,
    RouterRule,
    RuleIdentity,
    ServicePort,
    ServiceResource,
    filter_owned,
    normalize_protocol,
    parse_service_key,
)
from router_mock import router_rule


class TestRuleIdentity:
    """Tests for structured rule ownership."""

    def test_display_name_round_trip(self) -> None:
        identity = RuleIdentity(namespace="default", service="web", port_name="http")

        assert identity.display_name == "default/web:http"
        assert RuleIdentity.parse("default/web:http") == identity

    @pytest.mark.parametrize(
        "name",
        ["manual-rule", "web:http", "default/web", "default/web:", "/web:http", "a/b/c:http", "a/b:c:d", ""],
    )
    def test_foreign_names_do_not_parse(self, name: str) -> None:
        assert RuleIdentity.parse(name) is None

    def test_prefix_of_another_service_is_not_an_owner(self) -> None:
        """default/api must not claim rules of default/api-service."""
        rule = router_rule("r1", "default/api-service:http", 80)

        assert rule.owned_by("default/api-service")
        assert not rule.owned_by("default/api")

    def test_filter_owned(self) -> None:
        rules = [
            router_rule("r1", "default/web:http", 80),
            router_rule("r2", "default/web-2:http", 81),
            router_rule("r3", "manual-rule", 82),
            router_rule("r4", "other/web:http", 83),
        ]

        assert [r.id for r in filter_owned(rules, "default/web")] == ["r1"]


class TestProtocols:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("TCP", "tcp"), ("udp", "udp"), ("tcp/udp", "tcp_udp"), ("IPv4-UDP", "udp"), (" TCP ", "tcp")],
    )
    def test_normalize(self, raw: str, expected: str) -> None:
        assert normalize_protocol(raw) == expected

    @pytest.mark.parametrize("raw", ["", "sctp", "icmp"])
    def test_invalid(self, raw: str) -> None:
        with pytest.raises(ValueError):
            normalize_protocol(raw)

    def test_service_port_normalizes_protocol(self) -> None:
        assert ServicePort(name="dns", port=53, protocol="UDP").protocol == "udp"


class TestServiceKey:
    def test_parse(self) -> None:
        assert parse_service_key("default/web") == ("default", "web")

    @pytest.mark.parametrize("key", ["web", "/web", "default/", "a/b/c"])
    def test_invalid(self, key: str) -> None:
        with pytest.raises(ValueError):
            parse_service_key(key)


class TestServiceResource:
    """Tests for ServiceResource parsing and copy-on-write mutators."""

    def test_from_manifest(self) -> None:
        manifest = {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {
                "name": "web",
                "namespace": "apps",
                "annotations": {"kube-port-forward-controller/ports": "http"},
                "finalizers": ["example.com/f"],
                "resourceVersion": "42",
                "deletionTimestamp": "2024-01-01T00:00:00Z",
            },
            "spec": {"ports": [{"name": "http", "port": 80, "protocol": "TCP"}, {"port": 53, "protocol": "UDP"}]},
            "status": {"loadBalancer": {"ingress": [{"hostname": "lb.example"}, {"ip": "10.0.0.5"}]}},
        }

        resource = ServiceResource.from_manifest(manifest)

        assert resource.key == "apps/web"
        assert resource.load_balancer_ip == "10.0.0.5"
        assert resource.resource_version == "42"
        assert resource.being_deleted
        assert resource.has_finalizer("example.com/f")
        assert [(p.name, p.port, p.protocol) for p in resource.ports] == [("http", 80, "tcp"), ("", 53, "udp")]

    def test_from_manifest_defaults(self) -> None:
        resource = ServiceResource.from_manifest({"metadata": {"name": "web"}})

        assert resource.namespace == "default"
        assert resource.load_balancer_ip is None
        assert resource.ports == []
        assert not resource.being_deleted

    def test_invalid_port_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ServiceResource.from_manifest({"metadata": {"name": "web"}, "spec": {"ports": [{"port": 70000}]}})

    def test_mutators_return_copies(self) -> None:
        resource = ServiceResource(namespace="default", name="web", annotations={"a": "1", "b": "2"})

        finalized = resource.with_finalizer("f")
        annotated = resource.with_annotations({"a": None, "c": "3"})

        assert resource.finalizers == []
        assert finalized.finalizers == ["f"]
        assert finalized.with_finalizer("f") is finalized
        assert finalized.without_finalizer("f").finalizers == []
        assert annotated.annotations == {"b": "2", "c": "3"}
        assert resource.annotations == {"a": "1", "b": "2"}

    def test_being_deleted(self) -> None:
        resource = ServiceResource(namespace="default", name="web", deletion_timestamp=datetime.now(UTC))
        assert resource.being_deleted


class TestRules:
    def test_rule_key_is_case_insensitive_on_protocol(self) -> None:
        rule = RouterRule(id="r1", external_port=80, internal_port=8080, protocol="TCP")
        assert rule.key == (80, 8080, "tcp")

    def test_from_router_rule_keeps_identity(self) -> None:
        rule = router_rule("r1", "default/web:http", 80, 8080, ip="10.0.0.9", enabled=False)

        config = PortRule.from_router_rule(rule)

        assert config.owner_key == "default/web"
        assert config.identity == RuleIdentity(namespace="default", service="web", port_name="http")
        assert config.destination_ip == "10.0.0.9"
        assert config.enabled is False

    def test_foreign_rule_has_no_owner(self) -> None:
        config = PortRule.from_router_rule(router_rule("r1", "manual-rule", 80))
        assert config.owner_key is None

    def test_port_range_validated(self) -> None:
        with pytest.raises(ValidationError):
            PortRule(name="x", external_port=0, internal_port=80, protocol="tcp", destination_ip="10.0.0.1")
