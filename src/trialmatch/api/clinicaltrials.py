"""ClinicalTrials.gov API client for candidate trial discovery.

ARCHITECTURE:
    TrialSearch | FallbackSearch → ClinicalTrials.gov API v2 → CandidateTrial[]

Key Design:
- Condition query is the union (OR) of primary and secondary terms
- Patient age is sent as a registry age group, never as an exact age
- Free-text eligibility is split into inclusion/exclusion lines
- Mock mode returns one synthetic trial when the registry is unreachable;
  the synthetic path never issues further requests
- Search requests are typed: only a TrialSearch can be broadened
"""

import logging
import re
from typing import Any

from pydantic import ValidationError as ModelValidationError

from trialmatch.api.base import SourceClient
from trialmatch.config.settings import get_settings
from trialmatch.errors import MalformedResponse, RecursionGuardTripped, SourceUnavailable
from trialmatch.models.trial import (
    CandidateTrial,
    EligibilityCriteria,
    FallbackSearch,
    SearchRequest,
    TrialContact,
    TrialLocation,
    TrialSearch,
    age_bucket,
)

logger = logging.getLogger(__name__)

SYNTHETIC_NCT_ID = "NCT00000000"

_INCLUSION_HEADER = re.compile(r"inclusion\s+criteria\s*:", re.IGNORECASE)
_EXCLUSION_HEADER = re.compile(r"exclusion\s+criteria\s*:", re.IGNORECASE)
_BULLET_SPLIT = re.compile(r"\n|\s[•·]\s|^[•·]\s")
_BULLET_PREFIX = re.compile(r"^\s*(?:[-*•·]+|\d+[.)]|[a-z][.)])\s*", re.IGNORECASE)


def _split_criteria_lines(section: str) -> list[str]:
    lines = []
    for raw in _BULLET_SPLIT.split(section):
        line = _BULLET_PREFIX.sub("", raw).strip()
        if line:
            lines.append(line)
    return lines


def parse_eligibility_criteria(text: str | None) -> tuple[list[str], list[str]]:
    """Split registry eligibility text into inclusion and exclusion lines.

    Sections are located by their "Inclusion Criteria:" / "Exclusion Criteria:"
    headers. A missing header yields an empty list for that section.

    Returns:
        Tuple of (inclusion, exclusion)
    """
    if not text:
        return [], []

    inclusion_match = _INCLUSION_HEADER.search(text)
    exclusion_match = _EXCLUSION_HEADER.search(text)

    inclusion_text = ""
    exclusion_text = ""

    if inclusion_match:
        end = len(text)
        if exclusion_match and exclusion_match.start() > inclusion_match.end():
            end = exclusion_match.start()
        inclusion_text = text[inclusion_match.end():end]

    if exclusion_match:
        end = len(text)
        if inclusion_match and inclusion_match.start() > exclusion_match.end():
            end = inclusion_match.start()
        exclusion_text = text[exclusion_match.end():end]

    return _split_criteria_lines(inclusion_text), _split_criteria_lines(exclusion_text)


def _has_study_list(data: Any) -> bool:
    if not isinstance(data, dict):
        return False
    studies = data.get("studies", [])
    return isinstance(studies, list) and all(isinstance(study, dict) for study in studies)


def synthetic_trial(condition: str) -> CandidateTrial:
    """Well-formed placeholder trial used when the registry is unavailable in mock mode."""
    return CandidateTrial(
        nct_id=SYNTHETIC_NCT_ID,
        title="Mock Trial for Offline Demo",
        status="RECRUITING",
        phase="PHASE3",
        study_type="INTERVENTIONAL",
        condition=condition,
        intervention="Investigational Therapy X",
        eligibility=EligibilityCriteria(
            inclusion=[
                "Adults aged 18-75",
                "Confirmed diagnosis matching query condition",
                "Stable first-line therapy for >=3 months",
            ],
            exclusion=[
                "Pregnancy or breastfeeding",
                "Severe renal impairment",
                "Recent participation in conflicting trial",
            ],
            minimum_age="18 Years",
            maximum_age="75 Years",
            sex="ALL",
        ),
        locations=[
            TrialLocation(
                facility="Mock Clinical Research Center",
                city="Atlanta",
                state="GA",
                country="USA",
                status="RECRUITING",
                contacts=[TrialContact(name="Dr. Demo Researcher", phone="404-555-1000")],
            )
        ],
        central_contact="Trial Navigator Desk",
        overall_official="Dr. Principal Investigator",
        url=CandidateTrial.registry_url(SYNTHETIC_NCT_ID),
        enrollment_count=150,
        start_date="2024-01-01",
        completion_date="2026-12-31",
        is_synthetic=True,
    )


class TrialRegistryClient(SourceClient):
    """Client for ClinicalTrials.gov API v2.

    API Documentation: https://clinicaltrials.gov/data-api/api
    """

    SOURCE_KEY = "clinicaltrials"

    def __init__(self, *args: Any, mock_mode: bool | None = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.mock_mode = get_settings().mock_mode if mock_mode is None else mock_mode

    def _build_params(self, search: SearchRequest) -> dict[str, Any]:
        """Build query parameters for a search request."""
        conditions = [search.condition, *search.secondary_conditions]
        params: dict[str, Any] = {
            "query.cond": " OR ".join(conditions),
            "filter.overallStatus": "|".join(s.value for s in search.statuses),
            "pageSize": search.max_results,
            "format": "json",
        }

        term_parts = []
        if search.age is not None:
            term_parts.append(f"AREA[StdAge]{age_bucket(search.age).value}")
        if search.sex and search.sex.upper() not in ("ALL", ""):
            term_parts.append(f"AREA[Sex]{search.sex.upper()}")
        if search.phases:
            term_parts.append(f"AREA[Phase]({' OR '.join(search.phases)})")
        if term_parts:
            params["query.term"] = " AND ".join(term_parts)

        if search.location:
            params["query.locn"] = search.location
        if search.sort == "date":
            params["sort"] = "LastUpdatePostDate:desc"

        return params

    def _parse_study(self, study: dict[str, Any]) -> CandidateTrial | None:
        """Parse a study from the API response.

        Returns:
            CandidateTrial, or None if the record has no NCT id
        """
        protocol = study.get("protocolSection") or {}

        id_module = protocol.get("identificationModule") or {}
        nct_id = id_module.get("nctId")
        if not nct_id:
            return None

        status_module = protocol.get("statusModule") or {}
        design_module = protocol.get("designModule") or {}
        conditions_module = protocol.get("conditionsModule") or {}
        arms_module = protocol.get("armsInterventionsModule") or {}
        eligibility_module = protocol.get("eligibilityModule") or {}
        contacts_module = protocol.get("contactsLocationsModule") or {}

        phases = design_module.get("phases") or []
        conditions = conditions_module.get("conditions") or []
        interventions = arms_module.get("interventions") or []

        inclusion, exclusion = parse_eligibility_criteria(eligibility_module.get("eligibilityCriteria"))

        locations = [
            TrialLocation(
                facility=loc.get("facility"),
                city=loc.get("city"),
                state=loc.get("state"),
                country=loc.get("country"),
                status=loc.get("status"),
                contacts=[
                    TrialContact(name=c.get("name"), phone=c.get("phone"), email=c.get("email"))
                    for c in loc.get("contacts") or []
                ],
            )
            for loc in contacts_module.get("locations") or []
        ]

        central_contacts = contacts_module.get("centralContacts") or []
        officials = contacts_module.get("overallOfficials") or []

        return CandidateTrial(
            nct_id=nct_id,
            title=id_module.get("briefTitle") or id_module.get("officialTitle") or "",
            status=status_module.get("overallStatus"),
            phase=phases[0] if phases else None,
            study_type=design_module.get("studyType"),
            condition=conditions[0] if conditions else None,
            intervention=interventions[0].get("name") if interventions else None,
            eligibility=EligibilityCriteria(
                inclusion=inclusion,
                exclusion=exclusion,
                minimum_age=eligibility_module.get("minimumAge"),
                maximum_age=eligibility_module.get("maximumAge"),
                sex=eligibility_module.get("sex"),
            ),
            locations=locations,
            central_contact=central_contacts[0].get("name") if central_contacts else None,
            overall_official=officials[0].get("name") if officials else None,
            url=CandidateTrial.registry_url(nct_id),
            enrollment_count=(design_module.get("enrollmentInfo") or {}).get("count"),
            start_date=(status_module.get("startDateStruct") or {}).get("date"),
            completion_date=(status_module.get("completionDateStruct") or {}).get("date"),
            last_update=(status_module.get("lastUpdatePostDateStruct") or {}).get("date"),
        )

    async def search(self, search: SearchRequest) -> list[CandidateTrial]:
        """Search the registry.

        Args:
            search: TrialSearch or FallbackSearch request

        Returns:
            Parsed trials, at most ``search.max_results``

        Raises:
            SourceUnavailable: If the registry is unreachable and mock mode is off
            MalformedResponse: If the response has no usable study list
        """
        params = self._build_params(search)
        logger.info(
            f"Searching ClinicalTrials.gov for '{search.condition}'"
            f"{' (fallback)' if search.is_fallback else ''}"
        )

        try:
            result = await self._get_json(self.base_url, params, validate=_has_study_list)
        except SourceUnavailable as e:
            if not self.mock_mode:
                raise
            logger.warning(f"ClinicalTrials.gov unavailable, returning synthetic trial: {e}")
            return [synthetic_trial(search.condition)]

        trials = []
        for study in result.value.get("studies", []):
            try:
                trial = self._parse_study(study)
            except (AttributeError, TypeError, ModelValidationError) as e:
                raise MalformedResponse(
                    f"Unparseable study record from ClinicalTrials.gov: {e}", source=self.SOURCE_KEY
                ) from e
            if trial is not None:
                trials.append(trial)
            if len(trials) >= search.max_results:
                break

        logger.info(f"Found {len(trials)} trial(s){' [cached]' if result.hit else ''}")
        return trials

    def broaden(self, search: SearchRequest) -> FallbackSearch:
        """Broaden a primary search. A FallbackSearch can never be broadened."""
        if not isinstance(search, TrialSearch):
            raise RecursionGuardTripped(
                "Fallback search attempted to trigger another fallback", stage="trial_discovery"
            )
        return search.broaden()
