"""Data models for trialmatch."""

from trialmatch.models.eligibility import (
    AgeEligibility,
    BiomarkerEligibility,
    EligibilityAssessment,
    EligibilityStatus,
    EligibilitySummary,
    LocationEligibility,
    ScoringConfig,
)
from trialmatch.models.literature import LiteratureReference
from trialmatch.models.profile import BloodPressure, Demographics, LabValues, PatientProfile
from trialmatch.models.report import ClinicalReport, DropoutRiskPrediction, RiskLevel, WorkflowMetadata
from trialmatch.models.safety import DrugInteraction, SafetySignal, Severity
from trialmatch.models.state import (
    PipelineRunState,
    PipelineStatus,
    ReviewAction,
    ReviewDecision,
    RunOptions,
    StageMetadata,
    StageStatus,
)
from trialmatch.models.trial import (
    AgeBucket,
    CandidateTrial,
    EligibilityCriteria,
    FallbackSearch,
    TrialLocation,
    TrialSearch,
    TrialStatus,
)

__all__ = [
    "PatientProfile",
    "LabValues",
    "BloodPressure",
    "Demographics",
    "CandidateTrial",
    "EligibilityCriteria",
    "TrialLocation",
    "TrialSearch",
    "FallbackSearch",
    "TrialStatus",
    "AgeBucket",
    "LiteratureReference",
    "SafetySignal",
    "DrugInteraction",
    "Severity",
    "EligibilityStatus",
    "EligibilityAssessment",
    "EligibilitySummary",
    "AgeEligibility",
    "LocationEligibility",
    "BiomarkerEligibility",
    "ScoringConfig",
    "ClinicalReport",
    "DropoutRiskPrediction",
    "RiskLevel",
    "WorkflowMetadata",
    "PipelineRunState",
    "PipelineStatus",
    "StageMetadata",
    "StageStatus",
    "ReviewAction",
    "ReviewDecision",
    "RunOptions",
]
