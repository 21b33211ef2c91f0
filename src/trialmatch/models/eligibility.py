"""Eligibility assessment models."""

from enum import Enum

from pydantic import BaseModel, Field, model_validator

from trialmatch.models.safety import DrugInteraction


class EligibilityStatus(str, Enum):
    """Eligibility verdicts derived from match score thresholds."""

    ELIGIBLE = "ELIGIBLE"
    POTENTIALLY_ELIGIBLE = "POTENTIALLY_ELIGIBLE"
    INELIGIBLE = "INELIGIBLE"
    REQUIRES_REVIEW = "REQUIRES_REVIEW"

    @property
    def is_candidate(self) -> bool:
        """Whether the trial should be offered to the patient."""
        return self in (EligibilityStatus.ELIGIBLE, EligibilityStatus.POTENTIALLY_ELIGIBLE)


class ScoringConfig(BaseModel):
    """Weights and thresholds for eligibility scoring.

    The defaults are calibration placeholders, not clinically validated values.
    """

    age_weight: float = Field(0.3, ge=0.0, le=1.0)
    location_weight: float = Field(0.2, ge=0.0, le=1.0)
    medication_weight: float = Field(0.3, ge=0.0, le=1.0)
    exclusion_weight: float = Field(0.2, ge=0.0, le=1.0)
    eligible_threshold: float = Field(0.8, ge=0.0, le=1.0)
    potentially_eligible_threshold: float = Field(0.6, ge=0.0, le=1.0)
    ineligible_threshold: float = Field(0.4, ge=0.0, le=1.0)
    top_n: int = Field(5, ge=1)

    @model_validator(mode="after")
    def check_consistency(self) -> "ScoringConfig":
        total = self.age_weight + self.location_weight + self.medication_weight + self.exclusion_weight
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Scoring weights must sum to 1.0, got {total:.4f}")
        if not (self.ineligible_threshold <= self.potentially_eligible_threshold <= self.eligible_threshold):
            raise ValueError("Thresholds must satisfy ineligible <= potentially_eligible <= eligible")
        return self


class AgeEligibility(BaseModel):
    eligible: bool
    reason: str
    patient_age: int
    trial_min_age: str | None = None
    trial_max_age: str | None = None


class LocationEligibility(BaseModel):
    eligible: bool
    reason: str
    available_locations: list[str] = Field(default_factory=list)


class BiomarkerEligibility(BaseModel):
    eligible: bool
    reason: str
    required_biomarkers: list[str] = Field(default_factory=list)
    patient_biomarkers: list[str] = Field(default_factory=list)


class EligibilityAssessment(BaseModel):
    """Deterministic eligibility verdict for one candidate trial."""

    nct_id: str
    title: str | None = None
    status: EligibilityStatus
    match_score: float = Field(..., ge=0.0, le=1.0)
    inclusion_matches: list[str] = Field(default_factory=list)
    exclusion_conflicts: list[str] = Field(default_factory=list)
    age_eligibility: AgeEligibility
    location_eligibility: LocationEligibility
    biomarker_eligibility: BiomarkerEligibility
    drug_interactions: list[DrugInteraction] = Field(default_factory=list)
    reasoning: str = ""
    recommendations: list[str] = Field(default_factory=list)
    safety_flags: list[str] = Field(default_factory=list)
    reviewer_override: bool = False


class EligibilitySummary(BaseModel):
    """Aggregates over all assessments in a run."""

    total_trials_assessed: int = 0
    eligible_trials: int = 0
    potentially_eligible_trials: int = 0
    ineligible_trials: int = 0
    requires_review_trials: int = 0
    average_match_score: float = 0.0
    top_recommendations: list[str] = Field(default_factory=list)
    safety_concerns: list[str] = Field(default_factory=list)
