"""Error taxonomy for the trial matching pipeline.

Every error raised out of the pipeline is a PipelineError carrying the
stage that failed and a taxonomy ``kind``, so callers can tell a bad
input apart from an unavailable upstream or a cancelled run.

Key Design:
- ValidationError here is unrelated to pydantic's; import the module
  (``from trialmatch import errors``) where both are in scope
- MalformedResponse subclasses SourceUnavailable so retry policy treats
  them alike
"""

from typing import Any


class PipelineError(Exception):
    """Base exception for pipeline failures."""

    kind = "pipeline_error"

    def __init__(self, message: str, stage: str | None = None):
        super().__init__(message)
        self.message = message
        self.stage = stage

    def to_dict(self) -> dict[str, Any]:
        """Structured error payload for callers."""
        return {
            "error": self.message,
            "kind": self.kind,
            "stage": self.stage,
        }

    def __str__(self) -> str:
        if self.stage:
            return f"[{self.stage}] {self.message}"
        return self.message


class ValidationError(PipelineError):
    """Malformed input to a stage."""

    kind = "validation"


class StageValidationError(ValidationError):
    """A stage produced output that failed schema validation."""

    kind = "stage_validation"


class SourceUnavailable(PipelineError):
    """Upstream network or HTTP failure."""

    kind = "source_unavailable"

    def __init__(self, message: str, source: str | None = None, stage: str | None = None):
        super().__init__(message, stage=stage)
        self.source = source

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["source"] = self.source
        return data


class MalformedResponse(SourceUnavailable):
    """Upstream returned a body we could not parse."""

    kind = "malformed_response"


class RecursionGuardTripped(PipelineError):
    """A fallback search attempted to fall back again."""

    kind = "recursion_guard"


class Cancelled(PipelineError):
    """Run cancelled by deadline or external request."""

    kind = "cancelled"


class ReviewRejected(PipelineError):
    """Reviewer rejected the scored trial list."""

    kind = "rejected"


class InvalidTransition(PipelineError):
    """Illegal pipeline state transition."""

    kind = "invalid_transition"


class RunNotFound(PipelineError):
    """No persisted run for the requested id."""

    kind = "not_found"


class StageFailed(PipelineError):
    """Unexpected exception raised inside a stage."""

    kind = "stage_failed"
