"""Fleet-wide drift detection against one router snapshot.

For every managed Service the desired rules are recomputed and matched
against the ENTIRE snapshot, not just the Service's own rules, so manual
rules squatting on a desired slot surface as ownership drift:

- Missing: desired, with no router rule on its external port and protocol.
- Wrong:   a router rule on the desired slot that differs from the desired
           rule. Same triple gives a safe mismatch (ownership, name, ip,
           enabled) fixed with one Update. Same external port and protocol
           but another internal port gives a risky PORT mismatch, replaced
           with Delete + Create.
- Extra:   owned by the Service but matching no desired rule.

Each router rule is classified at most once per Service.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .desired_state import DesiredStateCalculator
from .models import PortRule, RouterRule, RuleKey, ServiceResource, filter_owned
from .operations import (
    MismatchType,
    Operation,
    Reason,
    classify_mismatch,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleMismatch:
    """A router rule on a desired slot that does not match the desired rule."""

    current: RouterRule
    desired: PortRule
    mismatch: MismatchType

    @property
    def is_safe(self) -> bool:
        return self.mismatch.is_safe


@dataclass
class DriftAnalysis:
    """Drift of one Service. Built fresh each pass and discarded after correction."""

    service_key: str
    resource: ServiceResource
    desired: list[PortRule] = field(default_factory=list)
    current: list[RouterRule] = field(default_factory=list)
    missing: list[PortRule] = field(default_factory=list)
    wrong: list[RuleMismatch] = field(default_factory=list)
    extra: list[RouterRule] = field(default_factory=list)
    error: Exception | None = None

    @property
    def has_drift(self) -> bool:
        return bool(self.missing or self.wrong or self.extra)

    def summary(self) -> dict[str, int]:
        return {
            "desired": len(self.desired),
            "current": len(self.current),
            "missing": len(self.missing),
            "wrong": len(self.wrong),
            "extra": len(self.extra),
        }


class DriftDetector:
    """Classifies Missing/Wrong/Extra rules for every managed Service."""

    def __init__(self, calculator: DesiredStateCalculator) -> None:
        self._calculator = calculator

    def analyze_all(
        self,
        resources: list[ServiceResource],
        snapshot: list[RouterRule],
    ) -> list[DriftAnalysis]:
        """Analyze every Service against the same snapshot.

        A Service whose desired state cannot be computed gets an analysis
        carrying the error; the rest of the fleet is still analyzed.
        """
        analyses: list[DriftAnalysis] = []
        for resource in resources:
            try:
                analysis = self.analyze(resource, snapshot)
            except Exception as e:
                logger.error(
                    "Failed to analyze drift for service",
                    extra={"service_key": resource.key, "error": str(e)},
                )
                analysis = DriftAnalysis(service_key=resource.key, resource=resource, error=e)
            analyses.append(analysis)
        return analyses

    def analyze(self, resource: ServiceResource, snapshot: list[RouterRule]) -> DriftAnalysis:
        """Analyze one Service.

        Raises:
            ValidationError: If the desired state cannot be computed.
            PortConflictError: If a desired port is claimed by another Service.
        """
        service_key = resource.key
        desired = self._calculator.calculate(resource)
        analysis = DriftAnalysis(
            service_key=service_key,
            resource=resource,
            desired=desired,
            current=filter_owned(snapshot, service_key),
        )

        exact: dict[RuleKey, list[RouterRule]] = {}
        by_slot: dict[tuple[int, str], list[RouterRule]] = {}
        for rule in snapshot:
            exact.setdefault(rule.key, []).append(rule)
            by_slot.setdefault((rule.external_port, rule.protocol.lower()), []).append(rule)

        consumed: set[str] = set()

        for config in desired:
            matched = _pick(exact.get(config.key, []), service_key, consumed)
            if matched is not None:
                consumed.add(matched.id)
                mismatch = classify_mismatch(matched, config)
                if mismatch is not None:
                    analysis.wrong.append(RuleMismatch(matched, config, mismatch))
                continue

            slot = (config.external_port, config.protocol.lower())
            occupant = _pick(by_slot.get(slot, []), service_key, consumed)
            if occupant is not None:
                consumed.add(occupant.id)
                analysis.wrong.append(RuleMismatch(occupant, config, MismatchType.PORT))
                continue

            analysis.missing.append(config)

        analysis.extra = [rule for rule in analysis.current if rule.id not in consumed]

        if analysis.has_drift:
            logger.info(
                "Drift detected",
                extra={"service_key": service_key, **analysis.summary()},
            )
        return analysis


def _pick(candidates: list[RouterRule], service_key: str, consumed: set[str]) -> RouterRule | None:
    """Prefer an owned rule over a foreign one; skip rules already classified."""
    available = [rule for rule in candidates if rule.id not in consumed]
    for rule in available:
        if rule.owned_by(service_key):
            return rule
    return available[0] if available else None


def build_correction_operations(analysis: DriftAnalysis) -> list[Operation]:
    """Turn a drift analysis into an ordered operation list.

    Deletes (extra rules and the current side of risky mismatches) come
    first, then safe Updates, then Creates (missing rules and the desired side
    of risky mismatches), so each Delete frees its slot before the paired Create.
    """
    deletes: list[Operation] = [
        Operation.delete(rule, Reason.DRIFT_EXTRA_RULE) for rule in analysis.extra
    ]
    updates: list[Operation] = []
    creates: list[Operation] = []

    for wrong in analysis.wrong:
        if wrong.is_safe:
            reason = (
                Reason.OWNERSHIP_TAKEOVER
                if wrong.mismatch == MismatchType.OWNERSHIP
                else Reason.DRIFT_WRONG_RULE
            )
            updates.append(Operation.update(wrong.desired, wrong.current, reason))
        else:
            deletes.append(Operation.delete(wrong.current, Reason.DRIFT_WRONG_RULE))
            creates.append(Operation.create(wrong.desired, Reason.DRIFT_WRONG_RULE))

    creates.extend(Operation.create(config, Reason.DRIFT_MISSING_RULE) for config in analysis.missing)
    return deletes + updates + creates
