"""Pipeline orchestrator and public entry points.

ARCHITECTURE:
    run(patient_data) → PipelineOrchestrator.start → execute:
        ProfileAnalysisStage → TrialDiscoveryStage → EligibilityScoringStage
        → ReviewCheckpoint (suspend at AWAITING_REVIEW, or skip) → ReportBuilder → COMPLETED
    resume(run_id, decision) → RunStore.load → execute from AWAITING_REVIEW

Key Design:
- Async context manager for HTTP session lifecycle of every source client
- Stages run strictly in sequence; each gets the full state and returns an augmented copy
- Every transition goes through PipelineRunState.transition and every state change
  is saved to the RunStore
- Transition guard: stage output is re-validated with pydantic before the run moves on
- Deadline: each stage runs under asyncio.wait_for with the remaining budget; on expiry
  the run is FAILED with Cancelled and partial results are discarded
- API calls are attributed per stage through a context-local counter
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

import pydantic

from trialmatch import errors
from trialmatch.api.clinicaltrials import TrialRegistryClient
from trialmatch.api.fda import DrugSafetyClient
from trialmatch.api.icd10 import DiagnosisCodeClient
from trialmatch.api.pubmed import LiteratureClient
from trialmatch.cache import RateLimitedCache, get_default_cache, track_api_calls
from trialmatch.config.settings import Settings, get_settings
from trialmatch.extraction import ProfileExtractor
from trialmatch.llm.service import LLMService
from trialmatch.models.eligibility import ScoringConfig
from trialmatch.models.profile import Demographics
from trialmatch.models.state import (
    PipelineRunState,
    PipelineStatus,
    ReviewDecision,
    RunOptions,
    StageMetadata,
    StageStatus,
    utcnow,
)
from trialmatch.persistence import InMemoryRunStore, RunStore
from trialmatch.stages.base import Stage, StageResult
from trialmatch.stages.discovery import TrialDiscoveryStage
from trialmatch.stages.profile import ProfileAnalysisStage
from trialmatch.stages.report import DropoutRiskModel, ReportBuilder, workflow_metadata
from trialmatch.stages.review import ReviewCheckpoint
from trialmatch.stages.scoring import EligibilityScoringStage
from trialmatch.utils.logging_config import get_logger

logger = logging.getLogger(__name__)

_default_store: InMemoryRunStore | None = None


def get_default_store() -> InMemoryRunStore:
    """Process-wide store shared by module-level run() and resume()."""
    global _default_store
    if _default_store is None:
        _default_store = InMemoryRunStore()
    return _default_store


def _coerce(model: type[pydantic.BaseModel], value: Any, what: str) -> Any:
    if value is None or isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except pydantic.ValidationError as e:
        raise errors.ValidationError(f"Invalid {what}: {e.errors()[0]['msg']}") from e


class PipelineOrchestrator:
    """
    Drives one run through the stage sequence.

    Collaborators are injectable so tests can substitute clients, stores and
    the cache; anything not supplied is built from Settings.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        cache: RateLimitedCache | None = None,
        store: RunStore | None = None,
        scoring_config: ScoringConfig | None = None,
        dropout_model: DropoutRiskModel | None = None,
        registry: TrialRegistryClient | None = None,
        literature: LiteratureClient | None = None,
        safety: DrugSafetyClient | None = None,
        codes: DiagnosisCodeClient | None = None,
        llm_service: LLMService | None = None,
    ):
        self.settings = settings or get_settings()
        get_logger(enable_console_logging=self.settings.console_logging, level=self.settings.log_level)
        self.cache = cache or get_default_cache()
        self.store = store if store is not None else get_default_store()
        settings = self.settings

        self.registry = registry or TrialRegistryClient(
            cache=self.cache, max_retries=settings.max_retries, mock_mode=settings.mock_mode
        )
        self.literature = literature or LiteratureClient(
            cache=self.cache, max_retries=settings.max_retries, api_key=settings.ncbi_api_key
        )
        if safety is None and settings.enable_drug_safety:
            safety = DrugSafetyClient(cache=self.cache, max_retries=settings.max_retries)
        self.safety = safety
        if codes is None and settings.resolve_diagnosis_codes:
            codes = DiagnosisCodeClient(cache=self.cache, max_retries=settings.max_retries)
        self.codes = codes
        self.llm_service = llm_service or LLMService(
            model=settings.llm_model, temperature=settings.llm_temperature
        )

        self.profile_stage = ProfileAnalysisStage(
            ProfileExtractor(
                llm_service=self.llm_service,
                code_client=self.codes,
                resolve_codes=self.codes is not None,
            )
        )
        self.discovery_stage = TrialDiscoveryStage(
            self.registry,
            self.literature,
            min_results_threshold=settings.min_results_threshold,
            fallback_timeout=settings.fallback_timeout_seconds,
            default_max_trials=settings.default_max_trials,
            default_literature_results=settings.max_literature_results,
        )
        self.scoring_stage = EligibilityScoringStage(scoring_config, safety_client=self.safety)
        self.review = ReviewCheckpoint(enabled=settings.enable_human_review)
        self.report_builder = ReportBuilder(dropout_model)

    def _clients(self) -> list[Any]:
        return [c for c in (self.registry, self.literature, self.safety, self.codes) if c is not None]

    async def __aenter__(self):
        for client in self._clients():
            await client.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        for client in self._clients():
            await client.__aexit__(exc_type, exc_val, exc_tb)

    async def start(
        self,
        patient_data: str,
        demographics: Demographics | dict[str, Any] | None = None,
        options: RunOptions | dict[str, Any] | None = None,
    ) -> PipelineRunState:
        """Create a run and drive it until it completes or suspends for review."""
        state = PipelineRunState(
            patient_data=patient_data or "",
            demographics=_coerce(Demographics, demographics, "demographics"),
            options=_coerce(RunOptions, options, "options") or RunOptions(),
        )
        self.store.save(state)
        logger.info(f"Starting run {state.run_id}")
        return await self.execute(state)

    async def resume(self, run_id: str, decision: ReviewDecision | dict[str, Any]) -> PipelineRunState:
        """Continue a run suspended at the review checkpoint.

        Raises:
            RunNotFound: If no run with ``run_id`` was saved
            InvalidTransition: If the run is not awaiting review
            ReviewRejected: If the decision rejects the run
        """
        decision = _coerce(ReviewDecision, decision, "review decision")
        state = self.store.load(run_id)
        if state.status != PipelineStatus.AWAITING_REVIEW:
            raise errors.InvalidTransition(
                f"Run {run_id} is {state.status.value}, not awaiting review",
                stage=self.review.name,
            )
        logger.info(f"Resuming run {run_id} with review decision '{decision.action.value}'")
        return await self.execute(state, decision)

    async def execute(self, state: PipelineRunState, decision: ReviewDecision | None = None) -> PipelineRunState:
        """Drive ``state`` forward from its current status."""
        loop = asyncio.get_running_loop()
        deadline = None
        if state.options.deadline_seconds is not None:
            deadline = loop.time() + state.options.deadline_seconds

        base_elapsed = state.elapsed_ms
        started = time.perf_counter()

        def touch(s: PipelineRunState) -> PipelineRunState:
            s.elapsed_ms = base_elapsed + (time.perf_counter() - started) * 1000
            return s

        current = self.profile_stage.name
        try:
            sequence: list[tuple[PipelineStatus, Stage]] = [
                (PipelineStatus.ANALYZING_PROFILE, self.profile_stage),
                (PipelineStatus.DISCOVERING_TRIALS, self.discovery_stage),
                (PipelineStatus.SCORING_ELIGIBILITY, self.scoring_stage),
            ]
            for target, stage in sequence:
                if not self._precedes(state.status, target):
                    continue
                current = stage.name
                state.transition(target)
                self.store.save(touch(state))
                state = await self._run_stage(state, stage, stage.run, deadline)

            if state.status == PipelineStatus.SCORING_ELIGIBILITY:
                current = self.review.name
                state.transition(PipelineStatus.AWAITING_REVIEW)
                if self.review.is_enabled(state):
                    state = await self._run_stage(state, self.review, self._async(self.review.suspend), deadline)
                    self.store.save(touch(state))
                    logger.info(f"Run {state.run_id} suspended for review")
                    return state
                state = await self._run_stage(state, self.review, self._async(self.review.skip), deadline)

            elif state.status == PipelineStatus.AWAITING_REVIEW:
                current = self.review.name
                if decision is None:
                    raise errors.ValidationError("A review decision is required to resume", stage=current)
                state = await self._run_stage(
                    state,
                    self.review,
                    self._async(lambda s: self.review.apply(s, decision)),
                    deadline,
                )

            current = self.report_builder.name
            state.transition(PipelineStatus.GENERATING_REPORT)
            self.store.save(touch(state))
            state = await self._run_stage(state, self.report_builder, self.report_builder.run, deadline)

            touch(state)
            state.report.workflow_metadata = workflow_metadata(state)
            state.transition(PipelineStatus.COMPLETED)
            self.store.save(state)
            logger.info(
                f"Run {state.run_id} completed in {state.elapsed_ms:.0f} ms "
                f"with {state.total_api_calls()} API call(s)"
            )
            return state

        except errors.Cancelled as e:
            self._fail(touch(state), e, discard_results=True)
            raise
        except errors.PipelineError as e:
            e.stage = e.stage or current
            self._fail(touch(state), e)
            raise
        except asyncio.CancelledError:
            self._fail(touch(state), errors.Cancelled("Run cancelled", stage=current), discard_results=True)
            raise
        except Exception as e:
            failure = errors.StageFailed(f"{type(e).__name__}: {e}", stage=current)
            self._fail(touch(state), failure)
            raise failure from e

    @staticmethod
    def _precedes(status: PipelineStatus, target: PipelineStatus) -> bool:
        order = list(PipelineStatus)
        return order.index(status) < order.index(target)

    @staticmethod
    def _async(fn: Callable[[PipelineRunState], StageResult]) -> Callable[[PipelineRunState], Awaitable[StageResult]]:
        async def call(state: PipelineRunState) -> StageResult:
            return fn(state)

        return call

    def _fail(self, state: PipelineRunState, exc: errors.PipelineError, discard_results: bool = False) -> None:
        if state.status.is_terminal:
            return
        state.fail(exc, discard_results=discard_results)
        self.store.save(state)
        logger.warning(f"Run {state.run_id} failed at {exc.stage or 'unknown stage'}: {exc.kind}: {exc.message}")

    async def _run_stage(
        self,
        state: PipelineRunState,
        stage: Stage,
        call: Callable[[PipelineRunState], Awaitable[StageResult]],
        deadline: float | None,
    ) -> PipelineRunState:
        """Run one stage under the deadline, record its metadata and validate its output."""
        started_at = utcnow()
        start = time.perf_counter()

        with track_api_calls() as calls:
            try:
                remaining = None
                if deadline is not None:
                    remaining = deadline - asyncio.get_running_loop().time()
                    if remaining <= 0:
                        raise errors.Cancelled("Run deadline exceeded", stage=stage.name)
                try:
                    result = await asyncio.wait_for(call(state), timeout=remaining)
                except asyncio.TimeoutError:
                    raise errors.Cancelled(
                        f"Run deadline of {state.options.deadline_seconds}s exceeded", stage=stage.name
                    ) from None
            except pydantic.ValidationError as e:
                raise errors.StageValidationError(
                    f"Stage produced invalid data: {e.errors()[0]['msg']}", stage=stage.name
                ) from e
            except errors.PipelineError as e:
                e.stage = e.stage or stage.name
                state.add_api_calls(dict(calls))
                state.record_stage(StageMetadata(
                    stage=stage.name,
                    started_at=started_at,
                    duration_ms=(time.perf_counter() - start) * 1000,
                    status=StageStatus.FAILED,
                    detail=f"{e.kind}: {e.message}",
                ))
                raise

        new_state = result.state
        new_state.add_api_calls(dict(calls))
        new_state.record_stage(StageMetadata(
            stage=stage.name,
            started_at=started_at,
            duration_ms=(time.perf_counter() - start) * 1000,
            status=result.status,
            counts=result.counts,
            detail=result.detail,
        ))
        logger.info(f"Stage {stage.name} {result.status.value} in {new_state.stages[-1].duration_ms:.0f} ms")

        self._validate(stage, new_state)
        return new_state

    @staticmethod
    def _validate(stage: Stage, state: PipelineRunState) -> None:
        """Transition guard: the whole state must still satisfy its schema."""
        try:
            PipelineRunState.model_validate(state.model_dump())
        except pydantic.ValidationError as e:
            raise errors.StageValidationError(
                f"Stage output failed validation ({e.error_count()} error(s)): {e.errors()[0]['msg']}",
                stage=stage.name,
            ) from e
        stage.validate_output(state)


def result_payload(state: PipelineRunState) -> dict[str, Any]:
    """Caller-facing dict for a completed or suspended run."""
    if state.status == PipelineStatus.AWAITING_REVIEW:
        return {
            "run_id": state.run_id,
            "status": state.status.value,
            "assessments": [a.model_dump(mode="json") for a in state.assessments],
        }
    if state.report is None:
        raise errors.InvalidTransition(f"Run {state.run_id} has no report ({state.status.value})")
    return {
        "clinical_report": state.report.model_dump(mode="json"),
        "workflow_metadata": state.report.workflow_metadata.model_dump(mode="json"),
    }


async def run(
    patient_data: str,
    demographics: Demographics | dict[str, Any] | None = None,
    options: RunOptions | dict[str, Any] | None = None,
    orchestrator: PipelineOrchestrator | None = None,
) -> dict[str, Any]:
    """Match a patient against clinical trials.

    Args:
        patient_data: Free-text patient record
        demographics: Optional ``{age, location}``
        options: Optional run options (enable_review, max_trials, include_completed_trials,
            max_literature_results, deadline_seconds, use_llm)
        orchestrator: Pre-built orchestrator; one is created from settings if omitted

    Returns:
        ``{"clinical_report", "workflow_metadata"}``, or
        ``{"run_id", "status": "awaiting_review", "assessments"}`` when suspended for review

    Raises:
        PipelineError: Subclass carrying ``stage`` and ``kind``
    """
    if orchestrator is not None:
        return result_payload(await orchestrator.start(patient_data, demographics, options))

    async with PipelineOrchestrator() as orch:
        return result_payload(await orch.start(patient_data, demographics, options))


async def resume(
    run_id: str,
    decision: ReviewDecision | dict[str, Any],
    orchestrator: PipelineOrchestrator | None = None,
) -> dict[str, Any]:
    """Resume a run suspended for review with an explicit decision."""
    if orchestrator is not None:
        return result_payload(await orchestrator.resume(run_id, decision))

    async with PipelineOrchestrator() as orch:
        return result_payload(await orch.resume(run_id, decision))
