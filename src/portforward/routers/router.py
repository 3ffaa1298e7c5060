"""Router collaborator interface.

The reconciliation core depends only on this protocol. Every call is
synchronous and individually fallible; implementations raise RouterError
(or RuleNotFoundError when an update finds no rule to rewrite). Removing an
absent rule is a no-op.
``list`` must return one self-consistent snapshot per call. No atomicity is
assumed across calls.
"""

from __future__ import annotations

from typing import Protocol

from ..models import PortRule, RouterRule


class Router(Protocol):
    """Port-forward rule table of a single router endpoint."""

    def list(self) -> list[RouterRule]:
        """Return every port-forward rule on the router."""
        ...

    def add(self, rule: PortRule) -> None:
        """Create a rule."""
        ...

    def update(self, external_port: int, rule: PortRule) -> None:
        """Rewrite the rule currently on ``external_port``, keeping its router ID."""
        ...

    def remove(self, rule: PortRule) -> None:
        """Delete the rule matching the external port and protocol of ``rule``."""
        ...
