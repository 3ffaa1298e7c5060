"""Delta calculation between a Service's desired rules and the router snapshot.

DELTA ENGINE:
Both sides are keyed by the (external port, internal port, protocol) triple.
The router cannot change that triple on an existing rule, so a matched pair
can only differ in safe fields (name, destination, enabled) and is fixed with
one Update. A changed triple shows up as one unmatched key on each side and
becomes Delete + Create.

CONFLICT DETECTION:
A router rule that occupies a desired triple but is not owned by the Service
(a manual rule, or one left behind by a renamed Service) is taken over with
an Update that rewrites its identity and keeps its router-assigned ID.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from .models import PortRule, RouterRule, RuleKey, filter_owned
from .operations import (
    MismatchType,
    Operation,
    Reason,
    classify_mismatch,
    find_mismatches,
    order_operations,
)

logger = logging.getLogger(__name__)

# Returns a fresh router snapshot; used to re-validate takeover candidates
SnapshotProvider = Callable[[], list[RouterRule]]


def calculate_delta(
    desired: list[PortRule],
    owned: list[RouterRule],
    exclude: set[RuleKey] | None = None,
) -> list[Operation]:
    """Diff desired rules against the router rules a Service already owns.

    Args:
        desired: Desired rules of one Service.
        owned: Router rules owned by that Service.
        exclude: Triples already handled by a takeover in the same pass;
            no Create is emitted for them.

    Returns:
        Deletes, then Updates, then Creates.
    """
    exclude = exclude or set()
    desired_by_key = {rule.key: rule for rule in desired}

    current_by_key: dict[RuleKey, RouterRule] = {}
    operations: list[Operation] = []

    for rule in owned:
        if rule.key in current_by_key:
            # Second owned rule on the same triple, only one can survive
            operations.append(Operation.delete(rule, Reason.PORT_NO_LONGER_DESIRED))
            continue
        current_by_key[rule.key] = rule

    for key, rule in current_by_key.items():
        if key not in desired_by_key:
            operations.append(Operation.delete(rule, Reason.PORT_NO_LONGER_DESIRED))

    for key, config in desired_by_key.items():
        existing = current_by_key.get(key)
        if existing is None:
            if key not in exclude:
                operations.append(Operation.create(config, Reason.PORT_NOT_YET_EXISTS))
            continue

        mismatch = classify_mismatch(existing, config)
        if mismatch is None:
            continue
        operations.append(Operation.update(config, existing, Reason.CONFIGURATION_MISMATCH_SAFE))

    return order_operations(operations)


class ConflictDetector:
    """Finds foreign router rules occupying a Service's desired triples.

    Args:
        revalidate: Optional provider of a fresh snapshot. Candidates whose
            router ID is gone from it are dropped, so the desired rule falls
            through to a plain Create instead of updating a vanished rule.
    """

    def __init__(self, revalidate: SnapshotProvider | None = None) -> None:
        self._revalidate = revalidate

    def detect(
        self,
        desired: list[PortRule],
        snapshot: list[RouterRule],
        service_key: str,
    ) -> list[Operation]:
        """Plan ownership-takeover Updates for one Service."""
        foreign_by_key: dict[RuleKey, RouterRule] = {}
        for rule in snapshot:
            if rule.owned_by(service_key) or rule.key in foreign_by_key:
                continue
            foreign_by_key[rule.key] = rule

        candidates: list[tuple[PortRule, RouterRule]] = [
            (config, foreign_by_key[config.key])
            for config in desired
            if config.key in foreign_by_key
        ]
        if not candidates:
            return []

        if self._revalidate is not None:
            candidates = self._filter_vanished(candidates, self._revalidate(), service_key)

        operations: list[Operation] = []
        for config, existing in candidates:
            mismatches = [m for m in find_mismatches(existing, config) if m.is_safe]
            logger.info(
                "Port conflict detected, taking ownership",
                extra={
                    "service_key": service_key,
                    "existing_rule": existing.name,
                    "existing_id": existing.id,
                    "new_rule_name": config.name,
                    "external_port": config.external_port,
                    "internal_port": config.internal_port,
                    "protocol": config.protocol,
                    "mismatches": [m.value for m in mismatches],
                },
            )
            operations.append(Operation.update(config, existing, Reason.OWNERSHIP_TAKEOVER))

        return operations

    def _filter_vanished(
        self,
        candidates: list[tuple[PortRule, RouterRule]],
        fresh: list[RouterRule],
        service_key: str,
    ) -> list[tuple[PortRule, RouterRule]]:
        fresh_ids = {rule.id for rule in fresh}

        kept: list[tuple[PortRule, RouterRule]] = []
        for config, existing in candidates:
            if existing.id in fresh_ids:
                kept.append((config, existing))
                continue
            logger.info(
                "Takeover candidate vanished before scheduling",
                extra={
                    "service_key": service_key,
                    "existing_id": existing.id,
                    "existing_rule": existing.name,
                    "external_port": existing.external_port,
                },
            )
        return kept


def plan_operations(
    desired: list[PortRule],
    snapshot: list[RouterRule],
    service_key: str,
    detector: ConflictDetector | None = None,
) -> list[Operation]:
    """Plan every operation needed to converge one Service.

    Takeovers come from the full snapshot; the delta only sees owned rules
    and skips Creates for triples a takeover already covers.
    """
    detector = detector or ConflictDetector()
    takeovers = detector.detect(desired, snapshot, service_key)
    taken = {op.config.key for op in takeovers}

    delta = calculate_delta(desired, filter_owned(snapshot, service_key), exclude=taken)
    operations = order_operations(takeovers + delta)

    if operations:
        logger.debug(
            "Planned operations",
            extra={
                "service_key": service_key,
                "operations": [str(op) for op in operations],
                "takeovers": len(takeovers),
            },
        )
    return operations


def is_risky(mismatch: MismatchType | None) -> bool:
    """A risky mismatch needs Delete + Create instead of an Update."""
    return mismatch is not None and not mismatch.is_safe
