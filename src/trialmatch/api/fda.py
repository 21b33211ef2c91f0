"""FDA OpenFDA API client for drug safety lookups.

ARCHITECTURE:
    Patient medications → openFDA /drug/label.json (one call per drug, concurrent) → SafetySignal[]

Key Design:
- One upstream call per drug, gathered concurrently under the shared rate limiter
- Partial success: a failed drug is logged and skipped, the rest are returned
- 404 means no label for that drug, not an error
- Severity is classified from label text that mentions the patient's other
  medications or comorbidities; a boxed warning is at least HIGH
"""

import asyncio
import logging
from typing import Any

from trialmatch.api.base import SourceClient
from trialmatch.models.safety import DrugInteraction, SafetySignal, Severity

logger = logging.getLogger(__name__)

# Drug classes with well-known interacting agents
KNOWN_INTERACTIONS = {
    "warfarin": ["aspirin", "ibuprofen", "acetaminophen"],
    "digoxin": ["furosemide", "spironolactone"],
    "metformin": ["insulin", "sulfonylurea"],
    "lisinopril": ["spironolactone", "potassium"],
}

ELDERLY_AGE = 65
PEDIATRIC_AGE = 18


def classify_severity(text: str) -> Severity:
    """Map free-text label language to a severity."""
    lowered = text.lower()
    if "contraindicated" in lowered or "should not be used" in lowered:
        return Severity.CRITICAL
    if any(term in lowered for term in ("major", "severe", "serious", "fatal")):
        return Severity.HIGH
    if any(term in lowered for term in ("moderate", "caution", "monitor")):
        return Severity.MODERATE
    return Severity.LOW


def check_interactions(medications: list[str]) -> list[DrugInteraction]:
    """Find pairs in the medication list covered by the known interaction table."""
    interactions = []
    for medication in medications:
        others = [m for m in medications if m is not medication and m.lower() != medication.lower()]
        for drug_class, interacting in KNOWN_INTERACTIONS.items():
            if drug_class not in medication.lower():
                continue
            match = next(
                (other for other in others if any(drug in other.lower() for drug in interacting)),
                None,
            )
            if match:
                interactions.append(DrugInteraction(
                    medication=f"{medication} + {match}",
                    interaction=f"Potential interaction between {medication} and {match}",
                    severity=Severity.MODERATE,
                    recommendation="Monitor patient closely for adverse effects",
                ))
    return interactions


def _label_texts(label: dict[str, Any], field: str) -> list[str]:
    value = label.get(field) or []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value if v]


class DrugSafetyClient(SourceClient):
    """Client for openFDA drug labeling.

    Uses the /drug/label.json endpoint, which carries boxed warnings,
    contraindications, warnings and drug interaction sections.
    """

    SOURCE_KEY = "openfda"

    @property
    def label_url(self) -> str:
        return f"{self.base_url}/label.json"

    async def _query_label(self, drug_name: str, limit: int) -> list[dict[str, Any]]:
        """Fetch label records for one drug by brand or generic name."""
        params = {
            "search": f'openfda.brand_name:"{drug_name}" OR openfda.generic_name:"{drug_name}"',
            "limit": limit,
        }
        result = await self._get_json(
            self.label_url,
            params,
            not_found={"results": []},
            validate=lambda data: isinstance(data, dict) and isinstance(data.get("results", []), list),
        )
        return result.value.get("results", [])

    def _build_signal(
        self,
        drug_name: str,
        labels: list[dict[str, Any]],
        other_medications: list[str],
        comorbidities: list[str],
        age: int | None,
        include_boxed_warning: bool,
    ) -> SafetySignal:
        if not labels:
            return SafetySignal(drug_name=drug_name, label_found=False)

        label = labels[0]
        severities: list[Severity] = []
        context_terms = [t.lower() for t in [*other_medications, *comorbidities] if t]

        contraindications = _label_texts(label, "contraindications")
        for text in contraindications:
            if any(term in text.lower() for term in context_terms):
                severities.append(Severity.CRITICAL)

        interactions: list[DrugInteraction] = []
        for text in _label_texts(label, "drug_interactions"):
            lowered = text.lower()
            for other in other_medications:
                if other and other.lower() in lowered:
                    severity = classify_severity(text)
                    severities.append(severity)
                    interactions.append(DrugInteraction(
                        medication=f"{drug_name} + {other}",
                        interaction=text[:300],
                        severity=severity,
                        recommendation="Review concurrent use with prescribing clinician",
                    ))

        warnings = _label_texts(label, "warnings") or _label_texts(label, "warnings_and_cautions")

        age_warnings: list[str] = []
        if age is not None:
            geriatric = _label_texts(label, "geriatric_use")
            pediatric = _label_texts(label, "pediatric_use")
            if age >= ELDERLY_AGE and (geriatric or any("elderly" in w.lower() for w in warnings)):
                age_warnings.append(f"{drug_name}: label contains elderly-use precautions")
                severities.append(Severity.MODERATE)
            if age < PEDIATRIC_AGE and (pediatric or any("pediatric" in w.lower() for w in warnings)):
                age_warnings.append(f"{drug_name}: label contains pediatric-use precautions")
                severities.append(Severity.HIGH)

        boxed = _label_texts(label, "boxed_warning")
        boxed_warning = " ".join(boxed)[:500] if boxed and include_boxed_warning else None
        if boxed_warning:
            severities.append(Severity.HIGH)

        return SafetySignal(
            drug_name=drug_name,
            severity=Severity.highest(severities),
            warnings=[w[:300] for w in warnings[:3]],
            contraindications=[c[:300] for c in contraindications[:3]],
            boxed_warning=boxed_warning,
            age_warnings=age_warnings,
            interactions=interactions,
        )

    async def lookup(
        self,
        drug_names: list[str],
        include_boxed_warning: bool = True,
        limit_per_drug: int = 1,
        age: int | None = None,
        comorbidities: list[str] | None = None,
    ) -> list[SafetySignal]:
        """Look up safety information for each drug concurrently.

        Args:
            drug_names: Patient medications
            include_boxed_warning: Whether boxed warnings raise severity
            limit_per_drug: Label records fetched per drug
            age: Patient age, for elderly/pediatric precautions
            comorbidities: Patient comorbidities, matched against contraindications

        Returns:
            One SafetySignal per drug that could be looked up. Drugs whose
            lookup failed are omitted.
        """
        names = [name.strip() for name in drug_names if name and name.strip()]
        if not names:
            return []

        results = await asyncio.gather(
            *(self._query_label(name, limit_per_drug) for name in names),
            return_exceptions=True,
        )

        known = check_interactions(names)
        signals = []
        for name, result in zip(names, results):
            if isinstance(result, Exception):
                logger.warning(f"Drug safety lookup failed for {name}: {result}")
                continue
            others = [n for n in names if n.lower() != name.lower()]
            signal = self._build_signal(
                name, result, others, comorbidities or [], age, include_boxed_warning
            )
            for interaction in known:
                if interaction.medication.lower().startswith(name.lower()):
                    signal.interactions.append(interaction)
                    signal.severity = Severity.highest([signal.severity, interaction.severity])
            signals.append(signal)

        return signals
