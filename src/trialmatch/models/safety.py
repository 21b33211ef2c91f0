"""Drug safety models."""

from enum import Enum

from pydantic import BaseModel, Field


class Severity(str, Enum):
    """Severity of a safety finding, ordered LOW < CRITICAL."""

    LOW = "LOW"
    MODERATE = "MODERATE"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    @classmethod
    def highest(cls, severities: list["Severity"]) -> "Severity":
        if not severities:
            return cls.LOW
        return max(severities, key=lambda s: s.rank)


_SEVERITY_ORDER = [Severity.LOW, Severity.MODERATE, Severity.HIGH, Severity.CRITICAL]


class DrugInteraction(BaseModel):
    """Interaction finding between a patient medication and another drug."""

    medication: str
    interaction: str
    severity: Severity
    recommendation: str


class SafetySignal(BaseModel):
    """Safety information for one drug from FDA labeling."""

    drug_name: str
    severity: Severity = Severity.LOW
    warnings: list[str] = Field(default_factory=list)
    contraindications: list[str] = Field(default_factory=list)
    boxed_warning: str | None = None
    age_warnings: list[str] = Field(default_factory=list)
    interactions: list[DrugInteraction] = Field(default_factory=list)
    label_found: bool = True
