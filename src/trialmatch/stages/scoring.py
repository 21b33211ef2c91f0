"""Eligibility scoring stage.

ARCHITECTURE:
    PatientProfile + CandidateTrial[] → (drug safety, once per run)
        → per trial: age / location / medication / exclusion checks → weighted score
        → EligibilityStatus by threshold → EligibilitySummary

Key Design:
- Deterministic: the score is the sum of the weights of the satisfied checks and
  the status is a pure function of the score and the configured thresholds
- Any exclusion conflict caps the status at POTENTIALLY_ELIGIBLE
- Biomarker eligibility is advisory and never contributes to the score
- Drug safety is looked up once for the whole run and attached to every assessment;
  a lookup failure is recorded as a missing enrichment, never fatal
"""

import logging

from trialmatch import errors
from trialmatch.api.fda import DrugSafetyClient
from trialmatch.models.eligibility import (
    AgeEligibility,
    BiomarkerEligibility,
    EligibilityAssessment,
    EligibilityStatus,
    EligibilitySummary,
    LocationEligibility,
    ScoringConfig,
)
from trialmatch.models.profile import PatientProfile
from trialmatch.models.safety import DrugInteraction, SafetySignal, Severity
from trialmatch.models.state import PipelineRunState
from trialmatch.models.trial import CandidateTrial
from trialmatch.stages.base import StageResult
from trialmatch.stages.criteria import (
    NO_MAX_AGE,
    NO_MIN_AGE,
    lines_containing,
    matching_sites,
    parse_age_bound,
)

logger = logging.getLogger(__name__)

MISSING_DRUG_SAFETY = "drug_safety"

FLAGGED_SEVERITIES = (Severity.HIGH, Severity.CRITICAL)


def check_age(profile: PatientProfile, trial: CandidateTrial) -> AgeEligibility:
    min_text = trial.eligibility.minimum_age
    max_text = trial.eligibility.maximum_age

    if not min_text and not max_text:
        return AgeEligibility(eligible=True, reason="No age restriction", patient_age=profile.age)

    minimum = parse_age_bound(min_text, NO_MIN_AGE)
    maximum = parse_age_bound(max_text, NO_MAX_AGE)
    eligible = minimum <= profile.age <= maximum

    if eligible:
        reason = f"Age {profile.age} within range {min_text or 'N/A'} - {max_text or 'N/A'}"
    elif profile.age < minimum:
        reason = f"Age {profile.age} below minimum {min_text}"
    else:
        reason = f"Age {profile.age} above maximum {max_text}"

    return AgeEligibility(
        eligible=eligible,
        reason=reason,
        patient_age=profile.age,
        trial_min_age=min_text,
        trial_max_age=max_text,
    )


def check_location(profile: PatientProfile, trial: CandidateTrial) -> LocationEligibility:
    all_sites = [site.display() for site in trial.locations if site.display()]

    if not profile.location:
        return LocationEligibility(
            eligible=True,
            reason="No patient location provided; all sites considered",
            available_locations=all_sites,
        )

    sites = matching_sites(profile.location, trial.locations)
    if sites:
        return LocationEligibility(
            eligible=True,
            reason=f"Trial site near {profile.location}",
            available_locations=[site.display() for site in sites],
        )

    return LocationEligibility(
        eligible=False,
        reason=f"No trial sites near {profile.location}",
        available_locations=all_sites,
    )


def check_medications(profile: PatientProfile, trial: CandidateTrial) -> list[str]:
    """Inclusion lines mentioning a patient medication."""
    hits = lines_containing(trial.eligibility.inclusion, profile.medications)
    return list(dict.fromkeys(f"Medication {term}: {line}" for line, term in hits))


def check_exclusions(profile: PatientProfile, trial: CandidateTrial) -> list[str]:
    """Exclusion lines mentioning a patient comorbidity."""
    hits = lines_containing(trial.eligibility.exclusion, profile.comorbidities)
    return list(dict.fromkeys(f"Excluded for {term}: {line}" for line, term in hits))


def check_biomarkers(profile: PatientProfile, trial: CandidateTrial) -> BiomarkerEligibility:
    if not profile.biomarkers:
        return BiomarkerEligibility(eligible=True, reason="No biomarkers on record")

    inclusion_text = " ".join(trial.eligibility.inclusion).lower()
    required = [b for b in profile.biomarkers if b.lower() in inclusion_text]
    excluded = lines_containing(trial.eligibility.exclusion, profile.biomarkers)

    if excluded:
        terms = ", ".join(dict.fromkeys(term for _, term in excluded))
        return BiomarkerEligibility(
            eligible=False,
            reason=f"Exclusion criteria mention {terms}",
            required_biomarkers=required,
            patient_biomarkers=list(profile.biomarkers),
        )

    reason = f"Inclusion criteria mention {', '.join(required)}" if required else "No biomarker requirements found"
    return BiomarkerEligibility(
        eligible=True,
        reason=reason,
        required_biomarkers=required,
        patient_biomarkers=list(profile.biomarkers),
    )


def classify(score: float, has_conflicts: bool, config: ScoringConfig) -> EligibilityStatus:
    """Map a score to a status. Exclusion conflicts cap at POTENTIALLY_ELIGIBLE."""
    if score >= config.eligible_threshold:
        status = EligibilityStatus.ELIGIBLE
    elif score >= config.potentially_eligible_threshold:
        status = EligibilityStatus.POTENTIALLY_ELIGIBLE
    elif score < config.ineligible_threshold:
        status = EligibilityStatus.INELIGIBLE
    else:
        status = EligibilityStatus.REQUIRES_REVIEW

    if has_conflicts and status == EligibilityStatus.ELIGIBLE:
        return EligibilityStatus.POTENTIALLY_ELIGIBLE
    return status


def safety_flags(signals: list[SafetySignal]) -> list[str]:
    flags = []
    for signal in signals:
        if signal.severity in FLAGGED_SEVERITIES:
            detail = signal.boxed_warning or (signal.contraindications[0] if signal.contraindications else None)
            flag = f"{signal.severity.value}: {signal.drug_name}"
            if detail:
                flag += f" ({detail[:120]})"
            flags.append(flag)
        for interaction in signal.interactions:
            if interaction.severity in FLAGGED_SEVERITIES:
                flags.append(f"{interaction.severity.value}: {interaction.interaction}")
    return list(dict.fromkeys(flags))


def _interactions(signals: list[SafetySignal]) -> list[DrugInteraction]:
    found: dict[tuple[str, str], DrugInteraction] = {}
    for signal in signals:
        for interaction in signal.interactions:
            found.setdefault((interaction.medication.lower(), interaction.interaction), interaction)
    return list(found.values())


class EligibilityScoringStage:
    """Score every discovered trial against the patient profile."""

    name = "eligibility_scoring"

    def __init__(self, config: ScoringConfig | None = None, safety_client: DrugSafetyClient | None = None):
        self.config = config or ScoringConfig()
        self.safety_client = safety_client

    async def fetch_safety(self, profile: PatientProfile) -> tuple[list[SafetySignal], bool]:
        """Look up drug safety for the patient's medications.

        Returns:
            Tuple of (signals, failed). ``failed`` is True when the lookup was
            attempted and could not complete.
        """
        if self.safety_client is None or not profile.medications:
            return [], False

        try:
            signals = await self.safety_client.lookup(
                profile.medications,
                age=profile.age,
                comorbidities=profile.comorbidities,
            )
        except errors.SourceUnavailable as e:
            logger.warning(f"Drug safety lookup unavailable: {e}")
            return [], True

        if not signals:
            logger.warning("Drug safety lookup returned nothing for any medication")
            return [], True
        return signals, False

    def assess(
        self,
        profile: PatientProfile,
        trial: CandidateTrial,
        signals: list[SafetySignal] | None = None,
    ) -> EligibilityAssessment:
        signals = signals or []
        config = self.config

        age = check_age(profile, trial)
        location = check_location(profile, trial)
        medication_matches = check_medications(profile, trial)
        conflicts = check_exclusions(profile, trial)
        biomarkers = check_biomarkers(profile, trial)

        score = 0.0
        if age.eligible:
            score += config.age_weight
        if location.eligible:
            score += config.location_weight
        if medication_matches:
            score += config.medication_weight
        if not conflicts:
            score += config.exclusion_weight
        score = min(1.0, max(0.0, round(score, 4)))

        status = classify(score, bool(conflicts), config)
        flags = safety_flags(signals)

        return EligibilityAssessment(
            nct_id=trial.nct_id,
            title=trial.title,
            status=status,
            match_score=score,
            inclusion_matches=medication_matches,
            exclusion_conflicts=conflicts,
            age_eligibility=age,
            location_eligibility=location,
            biomarker_eligibility=biomarkers,
            drug_interactions=_interactions(signals),
            reasoning=self._reasoning(status, score, age, location, medication_matches, conflicts),
            recommendations=self._recommendations(status, location, conflicts, flags),
            safety_flags=flags,
        )

    def _reasoning(
        self,
        status: EligibilityStatus,
        score: float,
        age: AgeEligibility,
        location: LocationEligibility,
        medication_matches: list[str],
        conflicts: list[str],
    ) -> str:
        parts = [f"{status.value.replace('_', ' ').title()} (score {score:.2f}).", age.reason + ".", location.reason + "."]
        if medication_matches:
            parts.append(f"{len(medication_matches)} inclusion criterion(s) mention current medications.")
        else:
            parts.append("No inclusion criteria mention current medications.")
        if conflicts:
            parts.append(f"{len(conflicts)} exclusion conflict(s) with comorbidities.")
        return " ".join(parts)

    def _recommendations(
        self,
        status: EligibilityStatus,
        location: LocationEligibility,
        conflicts: list[str],
        flags: list[str],
    ) -> list[str]:
        recommendations = []
        if status.is_candidate:
            recommendations.append("Contact the trial coordinator to confirm eligibility")
        elif status == EligibilityStatus.REQUIRES_REVIEW:
            recommendations.append("Clinician review of eligibility criteria recommended")
        if conflicts:
            recommendations.append("Review exclusion criteria against comorbidities with the study team")
        if not location.eligible:
            recommendations.append("Discuss travel to the nearest trial site")
        if flags:
            recommendations.append("Review drug safety findings before referral")
        return recommendations

    def summarize(self, assessments: list[EligibilityAssessment], flags: list[str] | None = None) -> EligibilitySummary:
        counts = {status: 0 for status in EligibilityStatus}
        for assessment in assessments:
            counts[assessment.status] += 1

        average = sum(a.match_score for a in assessments) / len(assessments) if assessments else 0.0
        # sorted() is stable, so equal scores keep discovery order
        candidates = sorted(
            (a for a in assessments if a.status.is_candidate),
            key=lambda a: a.match_score,
            reverse=True,
        )

        concerns = list(flags or [])
        for assessment in assessments:
            concerns.extend(assessment.safety_flags)

        return EligibilitySummary(
            total_trials_assessed=len(assessments),
            eligible_trials=counts[EligibilityStatus.ELIGIBLE],
            potentially_eligible_trials=counts[EligibilityStatus.POTENTIALLY_ELIGIBLE],
            ineligible_trials=counts[EligibilityStatus.INELIGIBLE],
            requires_review_trials=counts[EligibilityStatus.REQUIRES_REVIEW],
            average_match_score=round(average, 4),
            top_recommendations=[a.nct_id for a in candidates[: self.config.top_n]],
            safety_concerns=list(dict.fromkeys(concerns)),
        )

    async def run(self, state: PipelineRunState) -> StageResult:
        if state.profile is None:
            raise errors.ValidationError("Eligibility scoring requires a patient profile", stage=self.name)

        signals, safety_failed = await self.fetch_safety(state.profile)
        assessments = [self.assess(state.profile, trial, signals) for trial in state.trials]

        new_state = state.model_copy(deep=True)
        new_state.assessments = assessments
        new_state.summary = self.summarize(assessments, safety_flags(signals))
        if safety_failed:
            new_state.note_missing(MISSING_DRUG_SAFETY)

        summary = new_state.summary
        counts = {
            "assessed": summary.total_trials_assessed,
            "eligible": summary.eligible_trials,
            "potentially_eligible": summary.potentially_eligible_trials,
            "ineligible": summary.ineligible_trials,
            "requires_review": summary.requires_review_trials,
            "safety_signals": len(signals),
        }
        logger.info(
            f"Scored {summary.total_trials_assessed} trial(s): "
            f"{summary.eligible_trials} eligible, {summary.potentially_eligible_trials} potentially eligible"
        )
        return StageResult(new_state, counts=counts)

    def validate_output(self, state: PipelineRunState) -> None:
        if state.summary is None:
            raise errors.StageValidationError("Eligibility scoring produced no summary", stage=self.name)
        assessed = {a.nct_id for a in state.assessments}
        if assessed != {t.nct_id for t in state.trials}:
            raise errors.StageValidationError("Assessments do not cover the discovered trials", stage=self.name)
