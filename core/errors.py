"""
Pipeline Errors - Error Taxonomy and Stage Outcomes

Every failure the enrichment pipeline can encounter falls into one of the
classes below. Only ConfigurationError is allowed to escape a run; all other
failures are captured per unit of work and aggregated into the run result.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Final, Optional

from core.models import FieldSource


# =============================================================================
# Exceptions
# =============================================================================


class PipelineError(Exception):
    """Base class for all enrichment pipeline errors."""


class TransientNetworkError(PipelineError):
    """Network failure, timeout or non-2xx response. Skip the unit and continue."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimited(TransientNetworkError):
    """Provider asked us to slow down (HTTP 429)."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class MalformedUpstreamData(PipelineError):
    """A provider returned a payload or item that cannot be interpreted."""


class PersistenceError(PipelineError):
    """The persistence gateway rejected a write."""


class ConfigurationError(PipelineError):
    """
    Required credentials are missing.

    Fatal: raised before any work starts.
    """

    def __init__(self, missing: list[str]):
        self.missing = list(missing)
        super().__init__("Missing required configuration: " + ", ".join(self.missing))


# =============================================================================
# Stage Outcomes
# =============================================================================


class StageStatus(Enum):
    """Result of a single enrichment stage for a single record."""

    ENRICHED = "enriched"
    NO_MATCH = "no_match"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class StageOutcome:
    """
    Explicit result of an enrichment stage.

    `fields` is applied to the record as one merge. A NO_MATCH outcome
    usually carries only the stage's `*_checked_at` marker.
    """

    stage: str
    status: StageStatus
    fields: dict[str, Any] = field(default_factory=dict)
    source: Optional[FieldSource] = None
    error: Optional[Exception] = None

    @classmethod
    def enriched(cls, stage: str, fields: dict[str, Any], source: FieldSource) -> "StageOutcome":
        return cls(stage=stage, status=StageStatus.ENRICHED, fields=fields, source=source)

    @classmethod
    def no_match(cls, stage: str, fields: dict[str, Any], source: FieldSource) -> "StageOutcome":
        return cls(stage=stage, status=StageStatus.NO_MATCH, fields=fields, source=source)

    @classmethod
    def skipped(cls, stage: str) -> "StageOutcome":
        return cls(stage=stage, status=StageStatus.SKIPPED)

    @classmethod
    def failed(cls, stage: str, error: Exception) -> "StageOutcome":
        return cls(stage=stage, status=StageStatus.FAILED, error=error)

    @property
    def has_fields(self) -> bool:
        return bool(self.fields) and self.source is not None


# =============================================================================
# Error Aggregation
# =============================================================================


DEFAULT_MAX_ERRORS: Final[int] = 50


class ErrorLog:
    """
    Bounded list of error messages for a run.

    Keeps the first `limit` messages and counts the rest.
    """

    def __init__(self, limit: int = DEFAULT_MAX_ERRORS):
        if limit < 0:
            raise ValueError("limit cannot be negative")
        self.limit = limit
        self.total = 0
        self._messages: list[str] = []

    def add(self, unit: str, error: BaseException | str) -> None:
        self.total += 1
        if len(self._messages) < self.limit:
            self._messages.append(f"{unit}: {error}")

    @property
    def messages(self) -> list[str]:
        return list(self._messages)

    @property
    def dropped(self) -> int:
        return self.total - len(self._messages)

    def __len__(self) -> int:
        return self.total
