"""Clinical report assembly.

ARCHITECTURE:
    PipelineRunState (profile, trials, assessments, review) → DropoutRiskModel (optional, per eligible trial)
        → ClinicalReport + WorkflowMetadata

Key Design:
- Eligible entries are ELIGIBLE and POTENTIALLY_ELIGIBLE assessments ordered by score
- The dropout-risk model is an external collaborator; its failures are absorbed
  and listed in missing_enrichments
- Workflow metadata is derived from the state alone so it can be refreshed
  after the report stage itself has been recorded
"""

import asyncio
import logging
from typing import Protocol

from trialmatch import errors
from trialmatch.models.eligibility import EligibilityAssessment, EligibilityStatus
from trialmatch.models.profile import PatientProfile
from trialmatch.models.report import (
    ClinicalReport,
    ContactInformation,
    DropoutRiskPrediction,
    EligibleTrialEntry,
    IneligibleTrialEntry,
    WorkflowMetadata,
)
from trialmatch.models.state import PipelineRunState, StageStatus
from trialmatch.models.trial import CandidateTrial
from trialmatch.stages.base import StageResult

logger = logging.getLogger(__name__)

MISSING_DROPOUT_RISK = "dropout_risk"
MAX_LITERATURE_SUPPORT = 10
DEFAULT_EXCLUSION_REASON = "Eligibility criteria not met"


class DropoutRiskModel(Protocol):
    """Predicts the chance a patient drops out of a given trial."""

    async def predict(self, profile: PatientProfile, trial: CandidateTrial) -> DropoutRiskPrediction: ...


def confidence_score(assessments: list[EligibilityAssessment]) -> float:
    """Average match score of the candidate trials, or 0."""
    scores = [a.match_score for a in assessments if a.status.is_candidate]
    return round(sum(scores) / len(scores), 4) if scores else 0.0


def workflow_metadata(state: PipelineRunState) -> WorkflowMetadata:
    agents = state.stage_names(StageStatus.COMPLETED)
    return WorkflowMetadata(
        run_id=state.run_id,
        execution_time_ms=round(state.elapsed_ms, 2),
        agents_activated=list(dict.fromkeys(agents)),
        api_calls_made=state.total_api_calls(),
        api_calls_by_source=dict(state.api_calls),
        confidence_score=confidence_score(state.assessments),
        missing_enrichments=list(state.missing_enrichments),
        review_status=state.review.action.value if state.review else "skipped",
    )


def next_steps(trial: CandidateTrial, assessment: EligibilityAssessment) -> list[str]:
    contact = trial.central_contact or "the study coordinator"
    steps = [f"Contact {contact} to discuss enrollment"]
    if assessment.status == EligibilityStatus.POTENTIALLY_ELIGIBLE:
        steps.append("Confirm remaining eligibility criteria at a screening visit")
    if assessment.exclusion_conflicts:
        steps.append("Review exclusion criteria with the treating physician")
    if assessment.safety_flags:
        steps.append("Review drug safety findings before referral")
    steps.append("Share the trial summary with the patient")
    return steps


def alternatives(trial: CandidateTrial) -> list[str]:
    recommendations = []
    if trial.condition:
        recommendations.append(f"Search for other trials in {trial.condition}")
    recommendations.append("Re-evaluate eligibility if clinical status changes")
    return recommendations


class ReportBuilder:
    """Assemble the ClinicalReport from the accumulated run state."""

    name = "report_generation"

    def __init__(self, dropout_model: DropoutRiskModel | None = None):
        self.dropout_model = dropout_model

    async def predict_dropout(
        self, profile: PatientProfile, trials: list[CandidateTrial]
    ) -> tuple[dict[str, DropoutRiskPrediction], bool]:
        """Run the dropout model for each trial. Returns (predictions by nct_id, any_failed)."""
        if self.dropout_model is None or not trials:
            return {}, False

        results = await asyncio.gather(
            *(self.dropout_model.predict(profile, trial) for trial in trials),
            return_exceptions=True,
        )

        predictions = {}
        failed = False
        for trial, result in zip(trials, results):
            if isinstance(result, Exception):
                logger.warning(f"Dropout risk prediction failed for {trial.nct_id}: {result}")
                failed = True
                continue
            predictions[trial.nct_id] = result
        return predictions, failed

    def eligible_entry(
        self,
        trial: CandidateTrial,
        assessment: EligibilityAssessment,
        prediction: DropoutRiskPrediction | None = None,
    ) -> EligibleTrialEntry:
        return EligibleTrialEntry(
            nct_id=trial.nct_id,
            title=trial.title,
            match_score=assessment.match_score,
            status=assessment.status.value,
            eligibility_reasoning=assessment.reasoning,
            literature_support=[ref.title for ref in trial.literature],
            contact_information=ContactInformation(
                central_contact=trial.central_contact,
                overall_official=trial.overall_official,
                locations=[site.display() for site in trial.locations if site.display()],
            ),
            url=trial.url,
            next_steps=next_steps(trial, assessment),
            dropout_risk=prediction,
        )

    def ineligible_entry(self, trial: CandidateTrial, assessment: EligibilityAssessment) -> IneligibleTrialEntry:
        reason = "; ".join(assessment.exclusion_conflicts) or DEFAULT_EXCLUSION_REASON
        return IneligibleTrialEntry(
            nct_id=trial.nct_id,
            title=trial.title,
            exclusion_reason=reason,
            alternative_recommendations=alternatives(trial),
        )

    def recommendations_text(self, state: PipelineRunState, eligible: list[EligibleTrialEntry]) -> str:
        if not eligible:
            return (
                "No matching trials were identified. Consider broadening the search "
                "or re-running as new trials open."
            )
        best = eligible[0]
        text = (
            f"{len(eligible)} trial(s) match this patient. "
            f"Strongest match: {best.nct_id} ({best.title}) with a score of {best.match_score:.2f}."
        )
        if state.summary and state.summary.safety_concerns:
            text += f" {len(state.summary.safety_concerns)} drug safety concern(s) need review before referral."
        if state.missing_enrichments:
            text += f" Missing enrichments: {', '.join(state.missing_enrichments)}."
        return text

    async def build(self, state: PipelineRunState) -> tuple[ClinicalReport, bool]:
        """Build the report. Returns (report, dropout_failed)."""
        if state.profile is None:
            raise errors.ValidationError("Report assembly requires a patient profile", stage=self.name)

        trials = {t.nct_id: t for t in state.trials}
        candidates = sorted(
            (a for a in state.assessments if a.status.is_candidate and a.nct_id in trials),
            key=lambda a: a.match_score,
            reverse=True,
        )
        predictions, dropout_failed = await self.predict_dropout(
            state.profile, [trials[a.nct_id] for a in candidates]
        )

        eligible = [self.eligible_entry(trials[a.nct_id], a, predictions.get(a.nct_id)) for a in candidates]
        ineligible = [
            self.ineligible_entry(trials[a.nct_id], a)
            for a in state.assessments
            if a.status == EligibilityStatus.INELIGIBLE and a.nct_id in trials
        ]

        citations = []
        for assessment in candidates:
            for ref in trials[assessment.nct_id].literature:
                citations.append(ref.citation())
        literature = list(dict.fromkeys(citations))[:MAX_LITERATURE_SUPPORT]

        flags = list(state.summary.safety_concerns) if state.summary else []
        for assessment in state.assessments:
            flags.extend(assessment.safety_flags)

        report = ClinicalReport(
            patient_summary=state.profile.summary(),
            eligible_trials=eligible,
            ineligible_trials=ineligible,
            recommendations=self.recommendations_text(state, eligible),
            literature_support=literature,
            safety_flags=list(dict.fromkeys(flags)),
            reviewer_notes=state.review.notes if state.review else None,
            workflow_metadata=workflow_metadata(state),
        )
        return report, dropout_failed

    async def run(self, state: PipelineRunState) -> StageResult:
        report, dropout_failed = await self.build(state)

        new_state = state.model_copy(deep=True)
        if dropout_failed:
            new_state.note_missing(MISSING_DROPOUT_RISK)
            report.workflow_metadata.missing_enrichments = list(new_state.missing_enrichments)
        new_state.report = report

        counts = {
            "eligible": len(report.eligible_trials),
            "ineligible": len(report.ineligible_trials),
            "safety_flags": len(report.safety_flags),
        }
        return StageResult(new_state, counts=counts)

    def validate_output(self, state: PipelineRunState) -> None:
        if state.report is None:
            raise errors.StageValidationError("Report assembly produced no report", stage=self.name)
