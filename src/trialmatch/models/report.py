"""Clinical report models."""

import textwrap
from enum import Enum

from pydantic import BaseModel, Field
from rich.console import Console
from rich.panel import Panel


class RiskLevel(str, Enum):
    LOW = "LOW"
    MODERATE = "MODERATE"
    HIGH = "HIGH"
    VERY_HIGH = "VERY_HIGH"


class RiskFactor(BaseModel):
    factor: str
    impact: float = Field(..., ge=0.0, le=1.0)
    description: str
    mitigation: str | None = None


class DropoutRiskPrediction(BaseModel):
    """Output contract of an external dropout-risk model."""

    overall_risk: float = Field(..., ge=0.0, le=1.0)
    risk_level: RiskLevel
    confidence: float = Field(..., ge=0.0, le=1.0)
    risk_factors: list[RiskFactor] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    model_version: str | None = None


class ContactInformation(BaseModel):
    central_contact: str | None = None
    overall_official: str | None = None
    locations: list[str] = Field(default_factory=list)


class EligibleTrialEntry(BaseModel):
    nct_id: str
    title: str
    match_score: float
    status: str
    eligibility_reasoning: str
    literature_support: list[str] = Field(default_factory=list)
    contact_information: ContactInformation = Field(default_factory=ContactInformation)
    url: str | None = None
    next_steps: list[str] = Field(default_factory=list)
    dropout_risk: DropoutRiskPrediction | None = None


class IneligibleTrialEntry(BaseModel):
    nct_id: str
    title: str
    exclusion_reason: str
    alternative_recommendations: list[str] = Field(default_factory=list)


class WorkflowMetadata(BaseModel):
    """Run-level metadata attached to every report."""

    run_id: str
    execution_time_ms: float
    agents_activated: list[str] = Field(default_factory=list)
    api_calls_made: int = 0
    api_calls_by_source: dict[str, int] = Field(default_factory=dict)
    confidence_score: float = Field(0.0, ge=0.0, le=1.0)
    missing_enrichments: list[str] = Field(default_factory=list)
    review_status: str = "skipped"


class ClinicalReport(BaseModel):
    """Final output of a pipeline run."""

    patient_summary: str
    eligible_trials: list[EligibleTrialEntry] = Field(default_factory=list)
    ineligible_trials: list[IneligibleTrialEntry] = Field(default_factory=list)
    recommendations: str = ""
    literature_support: list[str] = Field(default_factory=list)
    safety_flags: list[str] = Field(default_factory=list)
    reviewer_notes: str | None = None
    workflow_metadata: WorkflowMetadata

    def to_report(self) -> str:
        """Pretty report output with Rich formatting."""
        console = Console(width=80, force_terminal=True)

        lines = [f"[bold cyan]{self.patient_summary}[/bold cyan]", ""]

        if self.eligible_trials:
            lines.append("[bold]Matching trials[/bold]")
            for entry in self.eligible_trials:
                style = "bold green" if entry.status == "ELIGIBLE" else "bold yellow"
                lines.append(
                    f"  [{style}]{entry.nct_id}[/{style}] {entry.title} "
                    f"({entry.match_score:.0%})"
                )
        else:
            lines.append("[dim]No matching trials found.[/dim]")

        if self.ineligible_trials:
            lines.append("")
            lines.append(f"[dim]{len(self.ineligible_trials)} trial(s) screened out[/dim]")

        if self.safety_flags:
            lines.append("")
            lines.append("[bold red]Safety flags[/bold red]")
            lines.extend(f"  - {flag}" for flag in self.safety_flags)

        if self.workflow_metadata.missing_enrichments:
            lines.append("")
            missing = ", ".join(self.workflow_metadata.missing_enrichments)
            lines.append(f"[yellow]Missing enrichments:[/yellow] {missing}")

        if self.recommendations:
            lines.append("")
            lines.append(textwrap.fill(self.recommendations, width=74))

        meta = self.workflow_metadata
        subtitle = (
            f"{meta.execution_time_ms:.0f} ms | {meta.api_calls_made} API calls | "
            f"confidence {meta.confidence_score:.1%}"
        )
        panel = Panel(
            "\n".join(lines),
            title="[bold white]Clinical Trial Match Report[/bold white]",
            subtitle=subtitle,
            border_style="blue",
            padding=(1, 2),
        )

        with console.capture() as capture:
            console.print(panel)
        return capture.get()
