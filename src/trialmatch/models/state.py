"""Pipeline run state.

ARCHITECTURE:
    CREATED → ANALYZING_PROFILE → DISCOVERING_TRIALS → SCORING_ELIGIBILITY
        → AWAITING_REVIEW → GENERATING_REPORT → COMPLETED   (FAILED from any non-terminal state)

One versioned record is handed to every stage and returned in full. Stages
only add to it. The whole record round-trips through JSON so a run
suspended for review can be saved and resumed in another process.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from trialmatch import errors
from trialmatch.models.eligibility import EligibilityAssessment, EligibilityStatus, EligibilitySummary
from trialmatch.models.profile import Demographics, PatientProfile
from trialmatch.models.report import ClinicalReport
from trialmatch.models.trial import CandidateTrial

STATE_SCHEMA_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PipelineStatus(str, Enum):
    CREATED = "created"
    ANALYZING_PROFILE = "analyzing_profile"
    DISCOVERING_TRIALS = "discovering_trials"
    SCORING_ELIGIBILITY = "scoring_eligibility"
    AWAITING_REVIEW = "awaiting_review"
    GENERATING_REPORT = "generating_report"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineStatus.COMPLETED, PipelineStatus.FAILED)


ALLOWED_TRANSITIONS: dict[PipelineStatus, set[PipelineStatus]] = {
    PipelineStatus.CREATED: {PipelineStatus.ANALYZING_PROFILE},
    PipelineStatus.ANALYZING_PROFILE: {PipelineStatus.DISCOVERING_TRIALS},
    PipelineStatus.DISCOVERING_TRIALS: {PipelineStatus.SCORING_ELIGIBILITY},
    PipelineStatus.SCORING_ELIGIBILITY: {PipelineStatus.AWAITING_REVIEW},
    PipelineStatus.AWAITING_REVIEW: {PipelineStatus.GENERATING_REPORT},
    PipelineStatus.GENERATING_REPORT: {PipelineStatus.COMPLETED},
    PipelineStatus.COMPLETED: set(),
    PipelineStatus.FAILED: set(),
}

for _status in ALLOWED_TRANSITIONS:
    if not _status.is_terminal:
        ALLOWED_TRANSITIONS[_status].add(PipelineStatus.FAILED)


class StageStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    SUSPENDED = "suspended"


class StageMetadata(BaseModel):
    """Timing and outcome for one stage execution."""

    stage: str
    started_at: datetime
    duration_ms: float = 0.0
    status: StageStatus
    counts: dict[str, int] = Field(default_factory=dict)
    detail: str | None = None


class ReviewAction(str, Enum):
    APPROVE = "approve"
    MODIFY = "modify"
    REJECT = "reject"


class ReviewDecision(BaseModel):
    """External reviewer signal that resumes a suspended run."""

    action: ReviewAction
    reviewer: str | None = None
    notes: str | None = None
    excluded_trial_ids: list[str] = Field(default_factory=list)
    status_overrides: dict[str, EligibilityStatus] = Field(default_factory=dict)
    decided_at: datetime = Field(default_factory=utcnow)


class RunOptions(BaseModel):
    """Caller options for a pipeline run. None means use the configured default."""

    enable_review: bool | None = None
    max_trials: int | None = Field(None, ge=1)
    include_completed_trials: bool = False
    max_literature_results: int | None = Field(None, ge=0)
    deadline_seconds: float | None = Field(None, gt=0)
    use_llm: bool = False


class RunError(BaseModel):
    """Serialized PipelineError."""

    kind: str
    message: str
    stage: str | None = None

    @classmethod
    def from_exception(cls, exc: errors.PipelineError) -> "RunError":
        return cls(kind=exc.kind, message=exc.message, stage=exc.stage)


class PipelineRunState(BaseModel):
    """Accumulated state of one pipeline run."""

    schema_version: Literal[1] = STATE_SCHEMA_VERSION
    run_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    status: PipelineStatus = PipelineStatus.CREATED
    patient_data: str
    demographics: Demographics | None = None
    options: RunOptions = Field(default_factory=RunOptions)

    profile: PatientProfile | None = None
    trials: list[CandidateTrial] = Field(default_factory=list)
    assessments: list[EligibilityAssessment] = Field(default_factory=list)
    summary: EligibilitySummary | None = None
    review: ReviewDecision | None = None
    report: ClinicalReport | None = None

    stages: list[StageMetadata] = Field(default_factory=list)
    api_calls: dict[str, int] = Field(default_factory=dict)
    missing_enrichments: list[str] = Field(default_factory=list)
    error: RunError | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    elapsed_ms: float = 0.0

    def transition(self, target: PipelineStatus) -> None:
        """Move to ``target`` or raise InvalidTransition."""
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise errors.InvalidTransition(
                f"Cannot move from {self.status.value} to {target.value}"
            )
        self.status = target
        self.updated_at = utcnow()

    def record_stage(self, metadata: StageMetadata) -> None:
        self.stages.append(metadata)
        self.updated_at = utcnow()

    def add_api_calls(self, counts: dict[str, int]) -> None:
        for source, count in counts.items():
            self.api_calls[source] = self.api_calls.get(source, 0) + count

    def note_missing(self, enrichment: str) -> None:
        if enrichment not in self.missing_enrichments:
            self.missing_enrichments.append(enrichment)

    def fail(self, exc: errors.PipelineError, discard_results: bool = False) -> None:
        """Move to FAILED, optionally dropping partial results."""
        if discard_results:
            self.trials = []
            self.assessments = []
            self.summary = None
            self.report = None
        self.error = RunError.from_exception(exc)
        if self.status != PipelineStatus.FAILED:
            self.transition(PipelineStatus.FAILED)

    def stage_names(self, status: StageStatus | None = StageStatus.COMPLETED) -> list[str]:
        return [s.stage for s in self.stages if status is None or s.status == status]

    def total_api_calls(self) -> int:
        return sum(count for source, count in self.api_calls.items() if source != "cache_hits")

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
