"""Pipeline stages, in execution order."""

from trialmatch.stages.base import Stage, StageResult
from trialmatch.stages.discovery import TrialDiscoveryStage
from trialmatch.stages.profile import ProfileAnalysisStage
from trialmatch.stages.report import DropoutRiskModel, ReportBuilder
from trialmatch.stages.review import ReviewCheckpoint
from trialmatch.stages.scoring import EligibilityScoringStage

__all__ = [
    "Stage",
    "StageResult",
    "ProfileAnalysisStage",
    "TrialDiscoveryStage",
    "EligibilityScoringStage",
    "ReviewCheckpoint",
    "ReportBuilder",
    "DropoutRiskModel",
]
