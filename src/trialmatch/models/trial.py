"""Candidate trial and registry search request models."""

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from trialmatch.models.literature import LiteratureReference


class TrialStatus(str, Enum):
    """ClinicalTrials.gov overall status values used in filters."""

    RECRUITING = "RECRUITING"
    ACTIVE_NOT_RECRUITING = "ACTIVE_NOT_RECRUITING"
    NOT_YET_RECRUITING = "NOT_YET_RECRUITING"
    ENROLLING_BY_INVITATION = "ENROLLING_BY_INVITATION"
    COMPLETED = "COMPLETED"


class AgeBucket(str, Enum):
    """Registry age groups. Upstream filtering works on these, not exact ages."""

    CHILD = "CHILD"
    ADULT = "ADULT"
    OLDER_ADULT = "OLDER_ADULT"


def age_bucket(age: int) -> AgeBucket:
    """Map an age in years to the registry age group."""
    if age < 18:
        return AgeBucket.CHILD
    if age < 65:
        return AgeBucket.ADULT
    return AgeBucket.OLDER_ADULT


DEFAULT_STATUSES = [TrialStatus.RECRUITING, TrialStatus.ACTIVE_NOT_RECRUITING]

BROADENED_STATUSES = [
    TrialStatus.RECRUITING,
    TrialStatus.ACTIVE_NOT_RECRUITING,
    TrialStatus.NOT_YET_RECRUITING,
    TrialStatus.ENROLLING_BY_INVITATION,
    TrialStatus.COMPLETED,
]


class TrialContact(BaseModel):
    name: str | None = None
    phone: str | None = None
    email: str | None = None


class TrialLocation(BaseModel):
    """A trial site."""

    facility: str | None = None
    city: str | None = None
    state: str | None = None
    country: str | None = None
    status: str | None = None
    contacts: list[TrialContact] = Field(default_factory=list)

    def display(self) -> str:
        """Format as "facility, city, state, country", skipping empty parts."""
        return ", ".join(p for p in (self.facility, self.city, self.state, self.country) if p)


class EligibilityCriteria(BaseModel):
    """Parsed eligibility section of a registry record."""

    inclusion: list[str] = Field(default_factory=list)
    exclusion: list[str] = Field(default_factory=list)
    minimum_age: str | None = None
    maximum_age: str | None = None
    sex: str | None = None


class CandidateTrial(BaseModel):
    """A trial returned by the registry search, enriched during the run."""

    nct_id: str = Field(..., description="Registry identifier (NCT number)")
    title: str = ""
    status: str | None = None
    phase: str | None = None
    study_type: str | None = None
    condition: str | None = None
    intervention: str | None = None
    eligibility: EligibilityCriteria = Field(default_factory=EligibilityCriteria)
    locations: list[TrialLocation] = Field(default_factory=list)
    central_contact: str | None = None
    overall_official: str | None = None
    url: str
    enrollment_count: int | None = None
    start_date: str | None = None
    completion_date: str | None = None
    last_update: str | None = None
    literature: list[LiteratureReference] = Field(default_factory=list)
    match_reasons: list[str] = Field(default_factory=list)
    is_synthetic: bool = Field(default=False, description="True for the offline fallback trial")

    @classmethod
    def registry_url(cls, nct_id: str) -> str:
        return f"https://clinicaltrials.gov/study/{nct_id}"

    def literature_query(self) -> str:
        """Query used to find supporting literature for this trial."""
        return f"{self.intervention or ''} {self.condition or ''}".strip()


class _SearchParams(BaseModel):
    model_config = ConfigDict(frozen=True)

    condition: str
    secondary_conditions: list[str] = Field(default_factory=list)
    age: int | None = Field(None, gt=0)
    sex: str = "ALL"
    statuses: list[TrialStatus] = Field(default_factory=lambda: list(DEFAULT_STATUSES))
    location: str | None = None
    phases: list[str] = Field(default_factory=list)
    max_results: int = Field(10, ge=1, le=100)
    sort: Literal["relevance", "date"] = "relevance"


class TrialSearch(_SearchParams):
    """A primary registry search. May be broadened exactly once."""

    is_fallback: Literal[False] = False

    def broaden(self) -> "FallbackSearch":
        """Relax filters: drop secondary terms, sex, phase and location; widen statuses."""
        return FallbackSearch(
            condition=self.condition,
            age=self.age,
            statuses=list(BROADENED_STATUSES),
            max_results=self.max_results,
            sort=self.sort,
        )


class FallbackSearch(_SearchParams):
    """A broadened search. Has no broaden(); it can never fall back again."""

    is_fallback: Literal[True] = True


SearchRequest = TrialSearch | FallbackSearch
