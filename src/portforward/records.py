"""Records persisted as JSON annotations on the owning Service.

RECORDS:
- ChangeContext: what changed between two observations of a Service.
  Versionless, append-only schema; unknown fields are ignored and missing
  fields default, so older and newer controllers can read each other's
  annotations.
- ErrorContext: the latest failed reconcile, inspectable without log access.
- FinalizerCleanupState: bounded-retry deletion state. This is the only state
  that must survive a restart. It is versioned and can also be read from the
  legacy status/attempts annotation pair.

Decoders never raise on corrupt input: a warning is logged and the record is
treated as absent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .models import ServicePort

logger = logging.getLogger(__name__)

CLEANUP_STATE_VERSION = 1

ModelT = TypeVar("ModelT", bound=BaseModel)


# =============================================================================
# Change context
# =============================================================================


class ChangeType(str, Enum):
    """Kind of change to one declared Service port."""

    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"


class PortChangeDetail(BaseModel):
    """A declared port that was added, removed or modified."""

    model_config = ConfigDict(extra="ignore")

    change_type: ChangeType
    old_port: ServicePort | None = None
    new_port: ServicePort | None = None
    external_port: int | None = None


class ChangeContext(BaseModel):
    """What triggered a reconcile, and the rules the last success produced."""

    model_config = ConfigDict(extra="ignore")

    ip_changed: bool = False
    old_ip: str | None = None
    new_ip: str | None = None

    annotation_changed: bool = False
    old_annotation: str | None = None
    new_annotation: str | None = None

    spec_changed: bool = False
    port_changes: list[PortChangeDetail] = Field(default_factory=list)

    deletion_changed: bool = False
    is_initial_sync: bool = False
    service_key: str = ""
    port_forward_rules: list[str] = Field(default_factory=list)

    @property
    def has_relevant_changes(self) -> bool:
        """True if anything that affects router rules changed."""
        if self.is_initial_sync:
            return False
        return self.ip_changed or self.annotation_changed or self.spec_changed or self.deletion_changed

    def to_json(self) -> str:
        return self.model_dump_json(exclude_none=True)

    @classmethod
    def from_json(cls, raw: str | None) -> ChangeContext | None:
        return _decode(cls, raw, "change context")


# =============================================================================
# Error context
# =============================================================================


class OverallStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    COMPLETE_FAILURE = "complete_failure"


class FailedPortOperation(BaseModel):
    """One port whose operation failed in the last pass."""

    model_config = ConfigDict(extra="ignore")

    port_mapping: str
    external_port: int
    protocol: str
    error_type: str
    error_message: str
    timestamp: datetime


class ErrorContext(BaseModel):
    """Latest reconcile failure of a Service."""

    model_config = ConfigDict(extra="ignore")

    timestamp: datetime
    last_failure_time: datetime
    failed_port_operations: list[FailedPortOperation] = Field(default_factory=list)
    overall_status: OverallStatus = OverallStatus.COMPLETE_FAILURE
    retry_count: Annotated[int, Field(ge=0)] = 0
    last_error_code: str | None = None
    last_error_message: str | None = None

    def to_json(self) -> str:
        return self.model_dump_json(exclude_none=True)

    @classmethod
    def from_json(cls, raw: str | None) -> ErrorContext | None:
        return _decode(cls, raw, "error context")


# =============================================================================
# Finalizer cleanup state
# =============================================================================


@dataclass(frozen=True)
class CleanupAnnotations:
    """Annotation keys holding cleanup state: the current record and the legacy pair."""

    state: str
    legacy_status: str
    legacy_attempts: str

    def clear(self) -> dict[str, str | None]:
        return {self.state: None, self.legacy_status: None, self.legacy_attempts: None}


class CleanupStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED_MAX_RETRIES = "failed_max_retries"


class FinalizerCleanupState(BaseModel):
    """Durable attempt counter and status of finalizer cleanup."""

    model_config = ConfigDict(extra="ignore")

    version: Literal[1] = CLEANUP_STATE_VERSION
    attempts: Annotated[int, Field(ge=0)] = 0
    status: CleanupStatus = CleanupStatus.PENDING
    last_error: str | None = None
    updated_at: datetime | None = None

    def next_attempt(self) -> FinalizerCleanupState:
        """Return the state recorded before a cleanup attempt starts."""
        return self.model_copy(
            update={
                "attempts": self.attempts + 1,
                "status": CleanupStatus.IN_PROGRESS,
                "updated_at": datetime.now(UTC),
            }
        )

    def failed(self, error: str) -> FinalizerCleanupState:
        return self.model_copy(update={"last_error": error, "updated_at": datetime.now(UTC)})

    def to_json(self) -> str:
        return self.model_dump_json(exclude_none=True)

    @classmethod
    def decode(
        cls,
        raw: str | None,
        legacy_status: str | None = None,
        legacy_attempts: str | None = None,
    ) -> FinalizerCleanupState:
        """Read the state, falling back to the legacy annotation pair.

        Missing or corrupt input yields a fresh PENDING state.
        """
        state = _decode(cls, raw, "cleanup state")
        if state is not None:
            return state

        if legacy_status is None and legacy_attempts is None:
            return cls()

        attempts = 0
        if legacy_attempts is not None:
            try:
                attempts = max(int(legacy_attempts), 0)
            except ValueError:
                logger.warning(
                    "Ignoring invalid legacy cleanup attempts",
                    extra={"value": legacy_attempts},
                )

        status = CleanupStatus.PENDING
        if legacy_status is not None:
            try:
                status = CleanupStatus(legacy_status)
            except ValueError:
                logger.warning(
                    "Ignoring invalid legacy cleanup status",
                    extra={"value": legacy_status},
                )

        return cls(attempts=attempts, status=status)


def _decode(model: type[ModelT], raw: str | None, label: str) -> ModelT | None:
    if not raw:
        return None
    try:
        return model.model_validate_json(raw)
    except ValidationError as e:
        logger.warning("Ignoring unreadable annotation", extra={"record": label, "error": str(e)})
        return None
