"""Human review checkpoint between scoring and report assembly.

The checkpoint never decides on its own. When enabled, the orchestrator
suspends the run at AWAITING_REVIEW and only ``apply`` with an explicit
ReviewDecision moves it on.
"""

import logging

from trialmatch import errors
from trialmatch.models.state import PipelineRunState, ReviewAction, ReviewDecision, StageStatus
from trialmatch.stages.base import StageResult

logger = logging.getLogger(__name__)


class ReviewCheckpoint:
    name = "human_review"

    def __init__(self, enabled: bool = False):
        self.enabled = enabled

    def is_enabled(self, state: PipelineRunState) -> bool:
        if state.options.enable_review is not None:
            return state.options.enable_review
        return self.enabled

    def skip(self, state: PipelineRunState) -> StageResult:
        return StageResult(state.model_copy(deep=True), status=StageStatus.SKIPPED, detail="review disabled")

    def suspend(self, state: PipelineRunState) -> StageResult:
        return StageResult(
            state.model_copy(deep=True),
            status=StageStatus.SUSPENDED,
            counts={"pending_assessments": len(state.assessments)},
        )

    def apply(self, state: PipelineRunState, decision: ReviewDecision) -> StageResult:
        """Apply a reviewer decision to a suspended run.

        Raises:
            ReviewRejected: If the reviewer rejected the run
        """
        if decision.action == ReviewAction.REJECT:
            who = decision.reviewer or "reviewer"
            reason = f": {decision.notes}" if decision.notes else ""
            raise errors.ReviewRejected(f"Run rejected by {who}{reason}", stage=self.name)

        new_state = state.model_copy(deep=True)
        new_state.review = decision
        excluded = 0
        overridden = 0

        if decision.action == ReviewAction.MODIFY:
            dropped = set(decision.excluded_trial_ids)
            kept = [a for a in new_state.assessments if a.nct_id not in dropped]
            excluded = len(new_state.assessments) - len(kept)

            for assessment in kept:
                override = decision.status_overrides.get(assessment.nct_id)
                if override is not None and override != assessment.status:
                    assessment.status = override
                    assessment.reviewer_override = True
                    overridden += 1

            new_state.assessments = kept

        logger.info(
            f"Review {decision.action.value} for run {state.run_id}: "
            f"{excluded} excluded, {overridden} overridden"
        )
        return StageResult(
            new_state,
            counts={"excluded": excluded, "overridden": overridden},
            detail=decision.action.value,
        )

    def validate_output(self, state: PipelineRunState) -> None:
        if state.review is not None and state.review.action == ReviewAction.MODIFY:
            unknown = set(state.review.status_overrides) - {t.nct_id for t in state.trials}
            if unknown:
                raise errors.StageValidationError(
                    f"Overrides reference unknown trials: {', '.join(sorted(unknown))}",
                    stage=self.name,
                )
