"""Trial discovery stage.

ARCHITECTURE:
    PatientProfile → TrialSearch → registry (+ at most one FallbackSearch) → max_trials cap
        → PubMed per unique (intervention + condition) query → CandidateTrial[] with literature

Key Design:
- Search terms: diagnosis first, then comorbidities, biomarkers and prior treatments
- Broadening happens at most once and only from a TrialSearch; a FallbackSearch
  has no broaden() so it cannot recurse
- Fallback is bounded by a timeout; on timeout the primary results stand
- Literature lookups run concurrently, one per unique query, and a failed lookup
  leaves that trial with no literature instead of failing the stage
"""

import asyncio
import logging

from trialmatch import errors
from trialmatch.api.clinicaltrials import TrialRegistryClient
from trialmatch.api.pubmed import LiteratureClient
from trialmatch.models.literature import LiteratureReference
from trialmatch.models.profile import PatientProfile
from trialmatch.models.state import PipelineRunState, RunOptions
from trialmatch.models.trial import (
    DEFAULT_STATUSES,
    CandidateTrial,
    SearchRequest,
    TrialSearch,
    TrialStatus,
)
from trialmatch.stages.base import StageResult
from trialmatch.stages.criteria import matching_sites

logger = logging.getLogger(__name__)

MISSING_LITERATURE = "literature"


def merge_trials(primary: list[CandidateTrial], extra: list[CandidateTrial]) -> list[CandidateTrial]:
    """Append trials from ``extra`` whose ids are not already present."""
    seen = {t.nct_id for t in primary}
    merged = list(primary)
    for trial in extra:
        if trial.nct_id not in seen:
            seen.add(trial.nct_id)
            merged.append(trial)
    return merged


def match_reasons(profile: PatientProfile, trial: CandidateTrial) -> list[str]:
    """Advisory annotations explaining why a trial surfaced."""
    reasons = []

    haystack = f"{trial.condition or ''} {trial.title}".lower()
    for term in profile.search_terms():
        if term.lower() in haystack:
            reasons.append(f"Condition match: {term}")

    eligibility = trial.eligibility
    if eligibility.minimum_age or eligibility.maximum_age:
        reasons.append(
            f"Age criteria specified: {eligibility.minimum_age or 'N/A'} - {eligibility.maximum_age or 'N/A'}"
        )

    if profile.location:
        sites = matching_sites(profile.location, trial.locations)
        if sites:
            reasons.append(f"Location match: {sites[0].display()}")

    return reasons


class TrialDiscoveryStage:
    """Find candidate trials for a profile and attach supporting literature."""

    name = "trial_discovery"

    def __init__(
        self,
        registry: TrialRegistryClient,
        literature: LiteratureClient,
        min_results_threshold: int = 3,
        fallback_timeout: float = 30.0,
        default_max_trials: int = 10,
        default_literature_results: int = 5,
    ):
        self.registry = registry
        self.literature = literature
        self.min_results_threshold = min_results_threshold
        self.fallback_timeout = fallback_timeout
        self.default_max_trials = default_max_trials
        self.default_literature_results = default_literature_results

    def build_search(self, profile: PatientProfile, options: RunOptions) -> TrialSearch:
        terms = profile.search_terms()
        statuses = list(DEFAULT_STATUSES)
        if options.include_completed_trials:
            statuses.append(TrialStatus.COMPLETED)

        return TrialSearch(
            condition=terms[0],
            secondary_conditions=terms[1:],
            age=profile.age,
            statuses=statuses,
            location=profile.location,
            max_results=options.max_trials or self.default_max_trials,
        )

    async def search_with_fallback(self, search: SearchRequest) -> tuple[list[CandidateTrial], int]:
        """Run a search, broadening once if it under-returns.

        Returns:
            Tuple of (trials, number of fallback searches issued: 0 or 1)

        Raises:
            SourceUnavailable: If the primary search fails
        """
        trials = await self.registry.search(search)

        if len(trials) >= self.min_results_threshold or not isinstance(search, TrialSearch):
            return trials, 0

        if any(t.is_synthetic for t in trials):
            return trials, 0

        fallback = self.registry.broaden(search)
        logger.info(
            f"Only {len(trials)} trial(s) found (< {self.min_results_threshold}), "
            f"issuing one broadened search"
        )
        try:
            extra = await asyncio.wait_for(self.registry.search(fallback), timeout=self.fallback_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Fallback search exceeded {self.fallback_timeout}s, keeping primary results")
            return trials, 1
        except errors.SourceUnavailable as e:
            logger.warning(f"Fallback search failed, keeping primary results: {e}")
            return trials, 1

        return merge_trials(trials, extra), 1

    async def attach_literature(self, trials: list[CandidateTrial], max_results: int) -> list[str]:
        """Attach literature to each trial, one lookup per unique query.

        Returns:
            nct_ids of trials whose literature lookup failed
        """
        if max_results <= 0:
            return []

        queries: dict[str, list[CandidateTrial]] = {}
        for trial in trials:
            query = trial.literature_query()
            if query:
                queries.setdefault(query, []).append(trial)

        unique_queries = list(queries)
        results = await asyncio.gather(
            *(self.literature.search(q, max_results) for q in unique_queries),
            return_exceptions=True,
        )

        failed: list[str] = []
        for query, result in zip(unique_queries, results):
            sharing = queries[query]
            if isinstance(result, Exception):
                ids = ", ".join(t.nct_id for t in sharing)
                logger.warning(f"Literature lookup failed for '{query}' ({ids}): {result}")
                failed.extend(t.nct_id for t in sharing)
                continue
            refs: list[LiteratureReference] = result
            for trial in sharing:
                trial.literature = [ref.model_copy(deep=True) for ref in refs]

        return failed

    async def run(self, state: PipelineRunState) -> StageResult:
        if state.profile is None:
            raise errors.ValidationError("Trial discovery requires a patient profile", stage=self.name)

        search = self.build_search(state.profile, state.options)
        try:
            trials, fallbacks = await self.search_with_fallback(search)
        except errors.PipelineError as e:
            e.stage = e.stage or self.name
            raise

        max_trials = state.options.max_trials or self.default_max_trials
        trials = [t.model_copy(deep=True) for t in trials[:max_trials]]

        max_literature = state.options.max_literature_results
        if max_literature is None:
            max_literature = self.default_literature_results
        failed = await self.attach_literature(trials, max_literature)

        for trial in trials:
            trial.match_reasons = match_reasons(state.profile, trial)

        new_state = state.model_copy(deep=True)
        new_state.trials = trials
        if failed:
            new_state.note_missing(MISSING_LITERATURE)

        counts = {
            "trials": len(trials),
            "fallback_searches": fallbacks,
            "literature_failures": len(failed),
        }
        detail = f"literature unavailable for: {', '.join(failed)}" if failed else None
        logger.info(f"Discovered {len(trials)} trial(s) for '{search.condition}'")
        return StageResult(new_state, counts=counts, detail=detail)

    def validate_output(self, state: PipelineRunState) -> None:
        ids = [t.nct_id for t in state.trials]
        if len(ids) != len(set(ids)):
            raise errors.StageValidationError("Duplicate trial identifiers in discovery output", stage=self.name)
