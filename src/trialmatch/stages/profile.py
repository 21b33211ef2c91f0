"""Profile analysis stage."""

from trialmatch import errors
from trialmatch.extraction import ProfileExtractor
from trialmatch.models.state import PipelineRunState
from trialmatch.stages.base import StageResult


class ProfileAnalysisStage:
    """Run the ProfileExtractor over the run's patient text."""

    name = "profile_analysis"

    def __init__(self, extractor: ProfileExtractor):
        self.extractor = extractor

    async def run(self, state: PipelineRunState) -> StageResult:
        result = await self.extractor.extract(
            state.patient_data,
            demographics=state.demographics,
            use_llm=state.options.use_llm,
        )

        new_state = state.model_copy(deep=True)
        new_state.profile = result.profile
        for enrichment in result.missing_enrichments:
            new_state.note_missing(enrichment)

        counts = {
            "medications": len(result.profile.medications),
            "comorbidities": len(result.profile.comorbidities),
            "lab_values": len(result.profile.lab_values.present()),
        }
        return StageResult(new_state, counts=counts, detail="llm" if result.used_llm else "regex")

    def validate_output(self, state: PipelineRunState) -> None:
        if state.profile is None:
            raise errors.StageValidationError("Profile analysis produced no profile", stage=self.name)
