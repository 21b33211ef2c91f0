"""Patient profile extraction from free-text records.

ARCHITECTURE:
    Free text + Demographics → regex extraction → (optional) LLM fill-in → (optional) ICD-10 lookup → PatientProfile

Key Design:
- Deterministic regex pass is always run and is sufficient on its own
- First matching pattern wins; patterns are ordered most to least specific
- Implausible lab values are dropped with a warning rather than failing
- Age falls back to demographics, then to a fixed default, so it is always positive
- LLM and ICD-10 enrichment only fill fields the regex pass left empty
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from trialmatch import errors
from trialmatch.api.icd10 import DiagnosisCodeClient
from trialmatch.llm.service import LLMService
from trialmatch.models.profile import (
    DEFAULT_AGE,
    UNKNOWN_CONDITION,
    BloodPressure,
    Demographics,
    LabValues,
    PatientProfile,
)

logger = logging.getLogger(__name__)

_I = re.IGNORECASE
_CLAUSE = r"([^.;]+)"

AGE_PATTERNS = [
    re.compile(r"(\d{1,3})[\s-]*(?:years?|yrs?)[\s-]*(?:old)?", _I),
    re.compile(r"\bage\s*(?:is|:)?\s*(\d{1,3})", _I),
    re.compile(r"(\d{1,3})\s*(?:y/o|yo|y\.o\.)", _I),
    re.compile(r"\bage[:\s]*(\d{1,3})", _I),
]

DIAGNOSIS_PATTERNS = [
    re.compile(rf"diagnosed\s+with\s+{_CLAUSE}", _I),
    re.compile(rf"primary\s+diagnosis[:\s]+{_CLAUSE}", _I),
    re.compile(rf"has\s+a\s+history\s+of\s+{_CLAUSE}", _I),
    re.compile(rf"\bcondition[:\s]+{_CLAUSE}", _I),
    re.compile(rf"\bdisease[:\s]+{_CLAUSE}", _I),
    re.compile(rf"\bdiagnosis[:\s]+{_CLAUSE}", _I),
    re.compile(rf"presenting\s+with\s+{_CLAUSE}", _I),
    re.compile(rf"chief\s+complaint[:\s]+{_CLAUSE}", _I),
    re.compile(rf"reason\s+for\s+visit[:\s]+{_CLAUSE}", _I),
    re.compile(rf"medical\s+condition[:\s]+{_CLAUSE}", _I),
    re.compile(rf"suffering\s+from\s+{_CLAUSE}", _I),
    re.compile(rf"affected\s+by\s+{_CLAUSE}", _I),
    re.compile(rf"\bhas\s+{_CLAUSE}", _I),
    re.compile(rf"patient\s+with\s+{_CLAUSE}", _I),
    re.compile(rf"case\s+of\s+{_CLAUSE}", _I),
    re.compile(rf"history\s+of\s+{_CLAUSE}", _I),
    re.compile(rf"status\s+post\s+{_CLAUSE}", _I),
    re.compile(rf"\bs/p\s+{_CLAUSE}", _I),
]

DIAGNOSIS_CODE_PATTERNS = [
    re.compile(r"icd-?10(?:\s*code)?[:\s]*([a-z]\d{2}(?:\.\d+)?)\b", _I),
    re.compile(r"diagnosis\s+code[:\s]*([a-z]\d{2}(?:\.\d+)?)\b", _I),
    re.compile(r"\bcode[:\s]*([a-z]\d{2}(?:\.\d+)?)\b", _I),
]

MEDICATION_PATTERNS = [
    re.compile(rf"current\s+medications?[:\s]+{_CLAUSE}", _I),
    re.compile(rf"medications?\s+include[:\s]+{_CLAUSE}", _I),
    re.compile(rf"\btaking[:\s]+{_CLAUSE}", _I),
    re.compile(rf"\bon\s+medications?[:\s]+{_CLAUSE}", _I),
    re.compile(rf"prescribed\s+medications?[:\s]+{_CLAUSE}", _I),
    re.compile(rf"drug\s+therapy[:\s]+{_CLAUSE}", _I),
    re.compile(rf"medication\s+list[:\s]+{_CLAUSE}", _I),
    re.compile(rf"current\s+therapy[:\s]+{_CLAUSE}", _I),
]

_NUMBER = r"(\d+(?:\.\d+)?)"
_GAP = r"[^\d.;]{0,20}?"

# (field, patterns, plausible min, plausible max)
LAB_PATTERNS: list[tuple[str, list[re.Pattern], float, float]] = [
    ("hba1c", [
        re.compile(rf"hemoglobin\s+a1c{_GAP}{_NUMBER}", _I),
        re.compile(rf"hba1c{_GAP}{_NUMBER}", _I),
        re.compile(rf"\ba1c{_GAP}{_NUMBER}", _I),
    ], 3.0, 20.0),
    ("egfr", [
        # lowercase "e" keeps the EGFR biomarker from matching
        re.compile(rf"\be(?i:gfr){_GAP}{_NUMBER}"),
        re.compile(rf"estimated\s+gfr{_GAP}{_NUMBER}", _I),
        re.compile(rf"glomerular\s+filtration\s+rate{_GAP}{_NUMBER}", _I),
    ], 5.0, 200.0),
    ("creatinine", [
        re.compile(rf"creatinine{_GAP}{_NUMBER}", _I),
    ], 0.1, 20.0),
    ("glucose", [
        re.compile(rf"glucose{_GAP}{_NUMBER}", _I),
        re.compile(rf"blood\s+sugar{_GAP}{_NUMBER}", _I),
    ], 20.0, 1000.0),
    ("cholesterol", [
        re.compile(rf"cholesterol{_GAP}{_NUMBER}", _I),
        re.compile(rf"\bldl{_GAP}{_NUMBER}", _I),
        re.compile(rf"\bhdl{_GAP}{_NUMBER}", _I),
    ], 50.0, 1000.0),
]

BLOOD_PRESSURE_PATTERNS = [
    re.compile(r"blood\s+pressure[^\d;]{0,20}?(\d{2,3})\s*[/\\-]\s*(\d{2,3})", _I),
    re.compile(r"\bbp[:\s]*(\d{2,3})\s*[/\\-]\s*(\d{2,3})", _I),
    re.compile(r"(\d{2,3})\s*/\s*(\d{2,3})\s*mm\s*hg", _I),
]
SYSTOLIC_RANGE = (70, 300)
DIASTOLIC_RANGE = (40, 200)

COMORBIDITY_PATTERNS = [
    re.compile(rf"comorbidit(?:y|ies)[:\s]+{_CLAUSE}", _I),
    re.compile(rf"additional\s+history[:\s]+{_CLAUSE}", _I),
    re.compile(rf"past\s+medical\s+history[:\s]+{_CLAUSE}", _I),
    re.compile(rf"\bpmh[:\s]+{_CLAUSE}", _I),
    re.compile(rf"concurrent\s+conditions?[:\s]+{_CLAUSE}", _I),
    re.compile(rf"associated\s+conditions?[:\s]+{_CLAUSE}", _I),
    re.compile(rf"(?<!a\s)history\s+of[:\s]+{_CLAUSE}", _I),
]

LOCATION_PATTERNS = [
    re.compile(rf"lives\s+in\s+{_CLAUSE}", _I),
    re.compile(rf"resides\s+in\s+{_CLAUSE}", _I),
    re.compile(rf"\blocation[:\s]+{_CLAUSE}", _I),
    re.compile(rf"\bcity[:\s]+{_CLAUSE}", _I),
    re.compile(rf"\baddress[:\s]+{_CLAUSE}", _I),
    re.compile(rf"\bresidence[:\s]+{_CLAUSE}", _I),
]

INSURANCE_PATTERNS = [
    re.compile(rf"insurance\s+provider[:\s]+{_CLAUSE}", _I),
    re.compile(rf"insurance[:\s]+{_CLAUSE}", _I),
    re.compile(rf"covered\s+by\s+{_CLAUSE}", _I),
    re.compile(rf"\bpayer[:\s]+{_CLAUSE}", _I),
    re.compile(rf"\bcoverage[:\s]+{_CLAUSE}", _I),
]

HOSPITALIZATION_PATTERNS = [
    re.compile(r"recent\s+hospitali[sz]ation[:\s]+(yes|no)\b", _I),
    re.compile(r"hospitali[sz]ed[:\s]+(yes|no)\b", _I),
    re.compile(r"recently\s+hospitali[sz]ed\s+(yes|no)\b", _I),
    re.compile(r"hospital\s+admission[:\s]+(yes|no)\b", _I),
    re.compile(r"\binpatient[:\s]+(yes|no)\b", _I),
    re.compile(r"\badmitted[:\s]+(yes|no)\b", _I),
]

SMOKING_PATTERNS = [
    re.compile(rf"smoking\s+history[:\s]+{_CLAUSE}", _I),
    re.compile(rf"tobacco\s+use[:\s]+{_CLAUSE}", _I),
    re.compile(rf"cigarette\s+smoking[:\s]+{_CLAUSE}", _I),
    re.compile(rf"pack\s+years[:\s]+{_CLAUSE}", _I),
    re.compile(r"\b((?:never|former|current|non)[\s-]?smoker)\b", _I),
    re.compile(rf"\b(?:smokes|smoked|smoking)[:\s]+{_CLAUSE}", _I),
]

PERFORMANCE_PATTERNS = [
    re.compile(r"\becog\s*(?:ps|performance\s+status)?[:\s]*(\d)", _I),
    re.compile(rf"performance\s+status[:\s]+{_CLAUSE}", _I),
    re.compile(rf"karnofsky\s+score[:\s]+{_CLAUSE}", _I),
    re.compile(rf"functional\s+status[:\s]+{_CLAUSE}", _I),
    re.compile(r"\bps[:\s]+(\d)\b", _I),
]

BIOMARKER_PATTERNS = [
    re.compile(rf"biomarkers?[:\s]+{_CLAUSE}", _I),
    re.compile(rf"molecular\s+markers?[:\s]+{_CLAUSE}", _I),
    re.compile(rf"genetic\s+testing[:\s]+{_CLAUSE}", _I),
    re.compile(rf"mutation\s+status[:\s]+{_CLAUSE}", _I),
    re.compile(rf"protein\s+expression[:\s]+{_CLAUSE}", _I),
]

PRIOR_TREATMENT_PATTERNS = [
    re.compile(rf"prior\s+treatments?[:\s]+{_CLAUSE}", _I),
    re.compile(rf"previous\s+therap(?:y|ies)[:\s]+{_CLAUSE}", _I),
    re.compile(rf"treatment\s+history[:\s]+{_CLAUSE}", _I),
    re.compile(rf"past\s+treatments?[:\s]+{_CLAUSE}", _I),
    re.compile(rf"prior\s+therapy[:\s]+{_CLAUSE}", _I),
    re.compile(rf"chemotherapy\s+history[:\s]+{_CLAUSE}", _I),
]

_DOSAGE = re.compile(
    r"\d+(?:\.\d+)?\s*(?:mg|mcg|g|ml|units?|iu|tablets?|caps(?:ules)?)\b"
    r"|\b(?:once|twice|three\s+times)\s+(?:daily|a\s+day)\b"
    r"|\b(?:daily|bid|tid|qid|qd|qhs|prn)\b",
    _I,
)
_LEADING_ARTICLE = re.compile(r"^(?:the|a|an)\s+", _I)
_LEADING_AND = re.compile(r"^and\s+", _I)


def _first_match(text: str, patterns: list[re.Pattern]) -> re.Match | None:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            return match
    return None


def _first_group(text: str, patterns: list[re.Pattern]) -> str | None:
    match = _first_match(text, patterns)
    if match is None:
        return None
    value = match.group(1).strip(" ,:")
    return value or None


def split_list(value: str | None) -> list[str]:
    """Split a captured clause on commas, semicolons and newlines."""
    if not value:
        return []
    items = []
    for entry in re.split(r"[,;\n]", value):
        cleaned = _LEADING_AND.sub("", entry.strip()).strip()
        if cleaned:
            items.append(cleaned)
    return items


def clean_diagnosis(diagnosis: str) -> str:
    first_clause = diagnosis.split(",")[0]
    return _LEADING_ARTICLE.sub("", re.sub(r"\s+", " ", first_clause)).strip()


def clean_medication(medication: str) -> str:
    return re.sub(r"\s+", " ", _DOSAGE.sub("", medication)).strip(" ,-")


def _plausible(value: float, name: str, minimum: float, maximum: float) -> float | None:
    if value < minimum or value > maximum:
        logger.warning(f"Implausible {name} value {value}, skipping")
        return None
    return value


@dataclass
class ExtractionResult:
    """Profile plus the enrichments that could not be applied."""

    profile: PatientProfile
    used_llm: bool = False
    missing_enrichments: list[str] = field(default_factory=list)


class ProfileExtractor:
    """Convert free text plus optional demographics into a PatientProfile.

    Args:
        llm_service: Used only when ``extract(..., use_llm=True)``
        code_client: Resolves ICD-10 codes when ``resolve_codes`` is set
        resolve_codes: Look up a diagnosis code when the text has none
    """

    def __init__(
        self,
        llm_service: LLMService | None = None,
        code_client: DiagnosisCodeClient | None = None,
        resolve_codes: bool = False,
    ):
        self.llm_service = llm_service
        self.code_client = code_client
        self.resolve_codes = resolve_codes

    def _extract_age(self, text: str, demographics: Demographics | None) -> tuple[int, bool]:
        """Return (age, was_stated)."""
        fallback = demographics.age if demographics and demographics.age else None

        match = _first_match(text, AGE_PATTERNS)
        if match:
            age = int(match.group(1))
            if 0 < age <= 150:
                return age, True
            logger.warning(f"Invalid age extracted: {age}, using default")

        if fallback:
            return fallback, True
        logger.warning(f"Missing age, using default: {DEFAULT_AGE}")
        return DEFAULT_AGE, False

    def _extract_labs(self, text: str) -> LabValues:
        values: dict[str, Any] = {}
        for name, patterns, minimum, maximum in LAB_PATTERNS:
            match = _first_match(text, patterns)
            if match:
                value = _plausible(float(match.group(1)), name, minimum, maximum)
                if value is not None:
                    values[name] = value

        bp_match = _first_match(text, BLOOD_PRESSURE_PATTERNS)
        if bp_match:
            systolic = int(bp_match.group(1))
            diastolic = int(bp_match.group(2))
            if (
                SYSTOLIC_RANGE[0] <= systolic <= SYSTOLIC_RANGE[1]
                and DIASTOLIC_RANGE[0] <= diastolic <= DIASTOLIC_RANGE[1]
            ):
                values["blood_pressure"] = BloodPressure(systolic=systolic, diastolic=diastolic)
            else:
                logger.warning(f"Implausible blood pressure {systolic}/{diastolic}, skipping")

        return LabValues(**values)

    def _extract_performance(self, text: str) -> str | None:
        value = _first_group(text, PERFORMANCE_PATTERNS)
        if value is None:
            return None
        if value.isdigit():
            return f"ECOG {value}"
        return value

    def parse(self, patient_data: str, demographics: Demographics | None = None) -> PatientProfile:
        """Deterministic regex extraction.

        Raises:
            ValidationError: If the record is empty
        """
        if not patient_data or not patient_data.strip():
            raise errors.ValidationError("Patient data is empty", stage="profile_analysis")

        text = re.sub(r"\s+", " ", patient_data).strip()

        age, _ = self._extract_age(text, demographics)

        diagnosis_raw = _first_group(text, DIAGNOSIS_PATTERNS)
        diagnosis = clean_diagnosis(diagnosis_raw) if diagnosis_raw else ""
        if not diagnosis:
            logger.warning(f"Missing diagnosis, using default: {UNKNOWN_CONDITION}")
            diagnosis = UNKNOWN_CONDITION

        code = _first_group(text, DIAGNOSIS_CODE_PATTERNS)

        medications = [
            med for med in (clean_medication(m) for m in split_list(_first_group(text, MEDICATION_PATTERNS)))
            if med
        ]

        hospitalization = _first_group(text, HOSPITALIZATION_PATTERNS)

        location = _first_group(text, LOCATION_PATTERNS)
        if not location and demographics and demographics.location:
            location = demographics.location

        try:
            profile = PatientProfile(
                diagnosis=diagnosis,
                diagnosis_code=code.upper() if code else None,
                age=age,
                medications=medications,
                comorbidities=split_list(_first_group(text, COMORBIDITY_PATTERNS)),
                biomarkers=split_list(_first_group(text, BIOMARKER_PATTERNS)),
                prior_treatments=split_list(_first_group(text, PRIOR_TREATMENT_PATTERNS)),
                lab_values=self._extract_labs(text),
                location=location,
                insurance=_first_group(text, INSURANCE_PATTERNS),
                recent_hospitalization=(hospitalization or "").lower() == "yes",
                smoking_history=_first_group(text, SMOKING_PATTERNS),
                performance_status=self._extract_performance(text),
            )
        except PydanticValidationError as e:
            raise errors.ValidationError(f"Extracted profile is invalid: {e}", stage="profile_analysis") from e

        logger.info(
            f"Extracted profile: diagnosis={profile.diagnosis!r} age={profile.age} "
            f"medications={len(profile.medications)} comorbidities={len(profile.comorbidities)}"
        )
        return profile

    def _merge_llm_fields(
        self, profile: PatientProfile, fields: dict[str, Any], age_stated: bool
    ) -> PatientProfile:
        updates: dict[str, Any] = {}
        for name, value in fields.items():
            if name == "age":
                if not age_stated:
                    updates["age"] = value
                continue
            if name == "diagnosis":
                if profile.diagnosis == UNKNOWN_CONDITION:
                    updates["diagnosis"] = value
                continue
            if not getattr(profile, name):
                updates[name] = value

        if not updates:
            return profile
        logger.info(f"LLM filled profile fields: {sorted(updates)}")
        return PatientProfile.model_validate({**profile.model_dump(), **updates})

    async def extract(
        self,
        patient_data: str,
        demographics: Demographics | None = None,
        use_llm: bool = False,
    ) -> ExtractionResult:
        """Run regex extraction plus any configured enrichments."""
        profile = self.parse(patient_data, demographics)
        result = ExtractionResult(profile=profile)

        if use_llm and self.llm_service is not None:
            text = re.sub(r"\s+", " ", patient_data).strip()
            _, age_stated = self._extract_age(text, demographics)
            fields = await self.llm_service.extract_profile(patient_data)
            if fields:
                result.profile = self._merge_llm_fields(result.profile, fields, age_stated)
                result.used_llm = True
            else:
                result.missing_enrichments.append("llm_profile")

        if (
            self.resolve_codes
            and self.code_client is not None
            and result.profile.diagnosis_code is None
            and result.profile.diagnosis != UNKNOWN_CONDITION
        ):
            try:
                code = await self.code_client.best_code(result.profile.diagnosis)
            except errors.SourceUnavailable as e:
                logger.warning(f"Diagnosis code lookup failed: {e}")
                result.missing_enrichments.append("diagnosis_code")
            else:
                if code:
                    result.profile = result.profile.model_copy(update={"diagnosis_code": code})

        return result
