"""Tests for desired-state calculation from the ports annotation."""

import pytest

from portforward.config import DEFAULT_PORTS_ANNOTATION
from portforward.desired_state import DesiredStateCalculator, PortMapping, parse_port_mappings
from portforward.errors import (
    DuplicatePortError,
    MissingAddressError,
    ParseError,
    PortConflictError,
    UnknownPortError,
    ValidationError,
)
from portforward.port_registry import PortRegistry
from router_mock import make_service


@pytest.fixture
def calculator(registry: PortRegistry) -> DesiredStateCalculator:
    return DesiredStateCalculator(registry, DEFAULT_PORTS_ANNOTATION)


class TestParsePortMappings:
    def test_plain_and_mapped_tokens(self) -> None:
        assert parse_port_mappings("http, https:8443") == [
            PortMapping("http"),
            PortMapping("https", 8443),
        ]

    def test_empty_tokens_skipped(self) -> None:
        assert parse_port_mappings("http,,") == [PortMapping("http")]

    @pytest.mark.parametrize(
        "annotation",
        ["http:80:81", ":80", "http:abc", "http:0", "http:65536", "ht tp", "http,http:8080"],
    )
    def test_malformed(self, annotation: str) -> None:
        with pytest.raises(ParseError) as exc_info:
            parse_port_mappings(annotation)

        assert "Valid format" in str(exc_info.value)


class TestDesiredStateCalculator:
    """Tests for DesiredStateCalculator."""

    def test_default_external_port_is_declared_port(self, calculator: DesiredStateCalculator) -> None:
        service = make_service(ports=(("http", 80, "tcp"),), mapping="http")

        [rule] = calculator.calculate(service)

        assert rule.name == "default/web:http"
        assert rule.owner_key == "default/web"
        assert (rule.external_port, rule.internal_port, rule.protocol) == (80, 80, "tcp")
        assert rule.destination_ip == "192.168.1.100"

    def test_mapped_external_port(self, calculator: DesiredStateCalculator) -> None:
        service = make_service(ports=(("https", 443, "tcp"),), mapping="https:8443")

        [rule] = calculator.calculate(service)

        assert (rule.external_port, rule.internal_port) == (8443, 443)

    def test_only_annotated_ports_forwarded(self, calculator: DesiredStateCalculator) -> None:
        service = make_service(
            ports=(("http", 80, "tcp"), ("metrics", 9090, "tcp"), ("dns", 53, "udp")),
            mapping="http,dns:5353",
        )

        rules = calculator.calculate(service)

        assert [(r.external_port, r.protocol) for r in rules] == [(80, "tcp"), (5353, "udp")]

    def test_rules_have_unique_triples(self, calculator: DesiredStateCalculator) -> None:
        service = make_service(
            ports=(("a", 80, "tcp"), ("b", 81, "tcp"), ("c", 82, "udp")),
            mapping="a:1080,b,c",
        )

        rules = calculator.calculate(service)

        assert len({r.key for r in rules}) == len(rules)

    def test_claims_ports(self, calculator: DesiredStateCalculator, registry: PortRegistry) -> None:
        calculator.calculate(make_service(mapping="http:8080"))

        assert registry.owner_of(8080) == "default/web"

    def test_missing_address(self, calculator: DesiredStateCalculator) -> None:
        with pytest.raises(MissingAddressError):
            calculator.calculate(make_service(ip=None))

    def test_missing_annotation(self, calculator: DesiredStateCalculator) -> None:
        with pytest.raises(ValidationError):
            calculator.calculate(make_service(mapping=None))

    def test_unknown_port_lists_available(self, calculator: DesiredStateCalculator) -> None:
        service = make_service(ports=(("http", 80, "tcp"),), mapping="https")

        with pytest.raises(UnknownPortError) as exc_info:
            calculator.calculate(service)

        assert exc_info.value.available == ["http(80)"]
        assert "non-existent port 'https'" in str(exc_info.value)

    def test_duplicate_external_port(self, calculator: DesiredStateCalculator) -> None:
        service = make_service(ports=(("http", 80, "tcp"), ("alt", 8080, "tcp")), mapping="http,alt:80")

        with pytest.raises(DuplicatePortError) as exc_info:
            calculator.calculate(service)

        assert exc_info.value.external_port == 80

    def test_empty_annotation_produces_no_rules(self, calculator: DesiredStateCalculator) -> None:
        with pytest.raises(ValidationError) as exc_info:
            calculator.calculate(make_service(mapping=" , "))

        assert "no valid port configurations" in str(exc_info.value)

    def test_conflict_with_other_service(self, calculator: DesiredStateCalculator, registry: PortRegistry) -> None:
        calculator.calculate(make_service(name="web", mapping="http"))

        with pytest.raises(PortConflictError) as exc_info:
            calculator.calculate(make_service(name="other", mapping="http"))

        assert exc_info.value.owner == "default/web"
        assert registry.ports_of("default/other") == []

    def test_validate_claims_nothing(self, calculator: DesiredStateCalculator, registry: PortRegistry) -> None:
        rules = calculator.validate(make_service(mapping="http:8080"))

        assert [r.external_port for r in rules] == [8080]
        assert registry.snapshot() == {}

    def test_validate_rejects_malformed_annotation(self, calculator: DesiredStateCalculator) -> None:
        with pytest.raises(ParseError):
            calculator.validate(make_service(mapping="http:99999"))

    def test_recalculation_is_idempotent(self, calculator: DesiredStateCalculator) -> None:
        service = make_service()

        assert calculator.calculate(service) == calculator.calculate(service)

    def test_qualifies(self, calculator: DesiredStateCalculator) -> None:
        assert calculator.qualifies(make_service())
        assert not calculator.qualifies(make_service(mapping=None))
        assert not calculator.qualifies(make_service(ip=None))
