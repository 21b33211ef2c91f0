"""Tests for the pipeline orchestrator."""

import asyncio
import logging

import httpx
import pytest
from unittest.mock import AsyncMock

from trialmatch import errors
from trialmatch.api.clinicaltrials import TrialRegistryClient
from trialmatch.api.pubmed import LiteratureClient
from trialmatch.config.settings import Settings
from trialmatch.engine import PipelineOrchestrator, resume, run
from trialmatch.models.report import DropoutRiskPrediction, RiskLevel
from trialmatch.models.state import PipelineRunState, PipelineStatus, StageStatus
from trialmatch.persistence import InMemoryRunStore, JsonFileRunStore

SCENARIO_A_TEXT = (
    "65-year-old patient diagnosed with Type 2 Diabetes. "
    "Current medications: Metformin 500mg, Lisinopril 10mg. "
    "HbA1c 7.2%. Comorbidities: hypertension. Lives in Atlanta, GA."
)

ELIGIBILITY_TEXT = (
    "Inclusion Criteria:\n* Adults 18-75 with type 2 diabetes\n* Stable metformin therapy\n\n"
    "Exclusion Criteria:\n* Type 1 diabetes\n* Pregnancy"
)


def study(nct_id: str, exclusion_extra: str = "", city: str = "Atlanta", state: str = "Georgia") -> dict:
    return {
        "protocolSection": {
            "identificationModule": {"nctId": nct_id, "briefTitle": f"Metformin study {nct_id}"},
            "statusModule": {"overallStatus": "RECRUITING"},
            "conditionsModule": {"conditions": ["Type 2 Diabetes"]},
            "armsInterventionsModule": {"interventions": [{"name": "Metformin"}]},
            "eligibilityModule": {
                "eligibilityCriteria": ELIGIBILITY_TEXT + exclusion_extra,
                "minimumAge": "18 Years",
                "maximumAge": "75 Years",
            },
            "contactsLocationsModule": {
                "centralContacts": [{"name": "Study Desk"}],
                "locations": [{"facility": "Research Center", "city": city, "state": state}],
            },
        }
    }


STUDIES = [
    study("NCT10000001"),
    study("NCT10000002", exclusion_extra="\n* Uncontrolled hypertension"),
    study("NCT10000003", city="Seattle", state="Washington"),
]


def registry_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"studies": STUDIES})


def pubmed_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith("esearch.fcgi"):
        return httpx.Response(200, json={"esearchresult": {"idlist": ["999"]}})
    return httpx.Response(200, json={"result": {"999": {
        "uid": "999", "title": "Metformin in T2D", "fulljournalname": "Diabetes Care", "pubdate": "2022",
    }}})


@pytest.fixture
def settings():
    return Settings(
        enable_drug_safety=False,
        resolve_diagnosis_codes=False,
        enable_human_review=False,
        mock_mode=False,
        min_results_threshold=3,
    )


@pytest.fixture
def store():
    return InMemoryRunStore()


@pytest.fixture
def build(settings, cache, store, client_kwargs, mock_http):
    """Build an orchestrator whose clients talk to MockTransport handlers."""

    def _build(registry=registry_handler, literature=pubmed_handler, **kwargs):
        registry_client = TrialRegistryClient(**client_kwargs, mock_mode=False)
        literature_client = LiteratureClient(**client_kwargs, api_key="")
        mock_http(registry_client, registry)
        mock_http(literature_client, literature)
        kwargs.setdefault("store", store)
        return PipelineOrchestrator(
            settings=settings,
            cache=cache,
            registry=registry_client,
            literature=literature_client,
            **kwargs,
        )

    return _build


def only_run_id(store: InMemoryRunStore) -> str:
    assert len(store) == 1
    return next(iter(store._runs))


class FixedDropoutModel:
    async def predict(self, profile, trial):
        if trial.nct_id == "NCT10000002":
            raise RuntimeError("model unavailable")
        return DropoutRiskPrediction(overall_risk=0.2, risk_level=RiskLevel.LOW, confidence=0.7)


class TestRun:
    """Tests for an uninterrupted run."""

    @pytest.mark.asyncio
    async def test_full_run(self, build, store):
        async with build() as orch:
            result = await run(SCENARIO_A_TEXT, options={"max_literature_results": 1}, orchestrator=orch)

        report = result["clinical_report"]
        metadata = result["workflow_metadata"]

        eligible = {e["nct_id"]: e for e in report["eligible_trials"]}
        assert eligible["NCT10000001"]["status"] == "ELIGIBLE"
        assert eligible["NCT10000002"]["status"] == "POTENTIALLY_ELIGIBLE"
        assert eligible["NCT10000003"]["match_score"] == 0.8
        assert eligible["NCT10000001"]["contact_information"]["locations"] == ["Research Center, Atlanta, Georgia"]
        assert eligible["NCT10000001"]["literature_support"] == ["Metformin in T2D"]
        assert report["literature_support"] == ["Metformin in T2D (Diabetes Care, 2022)"]
        assert report["eligible_trials"][0]["nct_id"] == "NCT10000001"

        assert metadata["agents_activated"] == [
            "profile_analysis", "trial_discovery", "eligibility_scoring", "report_generation",
        ]
        assert metadata["api_calls_by_source"]["clinicaltrials"] == 1
        assert metadata["api_calls_by_source"]["pubmed"] == 2
        assert metadata["api_calls_made"] == 3
        assert metadata["confidence_score"] == pytest.approx((1.0 + 0.8 + 0.8) / 3, abs=1e-4)
        assert metadata["review_status"] == "skipped"

        state = store.load(metadata["run_id"])
        assert state.status == PipelineStatus.COMPLETED
        review_stage = next(s for s in state.stages if s.stage == "human_review")
        assert review_stage.status == StageStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_empty_patient_data(self, build, store):
        async with build() as orch:
            with pytest.raises(errors.ValidationError) as exc_info:
                await run("   ", orchestrator=orch)

        assert exc_info.value.stage == "profile_analysis"
        assert store.load(only_run_id(store)).status == PipelineStatus.FAILED

    @pytest.mark.asyncio
    async def test_registry_failure_is_fatal(self, build, store):
        async with build(registry=lambda request: httpx.Response(503)) as orch:
            with pytest.raises(errors.SourceUnavailable) as exc_info:
                await run(SCENARIO_A_TEXT, orchestrator=orch)

        assert exc_info.value.stage == "trial_discovery"
        assert exc_info.value.to_dict()["kind"] == "source_unavailable"

        state = store.load(only_run_id(store))
        assert state.status == PipelineStatus.FAILED
        assert state.error.kind == "source_unavailable"
        assert state.stages[-1].stage == "trial_discovery"
        assert state.stages[-1].status == StageStatus.FAILED
        assert state.api_calls["clinicaltrials"] == 3

    @pytest.mark.asyncio
    async def test_literature_outage_still_completes(self, build):
        async with build(literature=lambda request: httpx.Response(500)) as orch:
            result = await run(SCENARIO_A_TEXT, orchestrator=orch)

        assert result["workflow_metadata"]["missing_enrichments"] == ["literature"]
        assert all(e["literature_support"] == [] for e in result["clinical_report"]["eligible_trials"])

    @pytest.mark.asyncio
    async def test_deadline_cancels_run(self, build, store):
        """On deadline expiry the run is FAILED with Cancelled and partial results are discarded."""
        orch = build()

        async def slow_search(request):
            await asyncio.sleep(5)
            return []

        orch.registry.search = AsyncMock(side_effect=slow_search)
        with pytest.raises(errors.Cancelled) as exc_info:
            await orch.start(SCENARIO_A_TEXT, options={"deadline_seconds": 0.05})
        await orch.__aexit__(None, None, None)

        assert exc_info.value.kind == "cancelled"
        state = store.load(only_run_id(store))
        assert state.status == PipelineStatus.FAILED
        assert state.error.kind == "cancelled"
        assert state.trials == []
        assert state.assessments == []
        assert state.report is None

    @pytest.mark.asyncio
    async def test_transition_guard(self, build, store):
        """Duplicate trial ids in discovery output fail validation for that stage."""
        duplicate = {"studies": [study("NCT10000001"), study("NCT10000001"), study("NCT10000001")]}
        async with build(registry=lambda request: httpx.Response(200, json=duplicate)) as orch:
            with pytest.raises(errors.StageValidationError) as exc_info:
                await run(SCENARIO_A_TEXT, orchestrator=orch)

        assert exc_info.value.stage == "trial_discovery"
        assert store.load(only_run_id(store)).error.kind == "stage_validation"

    @pytest.mark.asyncio
    async def test_dropout_model_failure_absorbed(self, build):
        async with build(dropout_model=FixedDropoutModel()) as orch:
            result = await run(SCENARIO_A_TEXT, orchestrator=orch)

        eligible = {e["nct_id"]: e for e in result["clinical_report"]["eligible_trials"]}
        assert eligible["NCT10000001"]["dropout_risk"]["risk_level"] == "LOW"
        assert eligible["NCT10000002"]["dropout_risk"] is None
        assert "dropout_risk" in result["workflow_metadata"]["missing_enrichments"]

    @pytest.mark.asyncio
    async def test_malformed_registry_body_fails_run(self, build, store):
        async with build(registry=lambda request: httpx.Response(200, json={"studies": ["garbage"]})) as orch:
            with pytest.raises(errors.MalformedResponse) as exc_info:
                await run(SCENARIO_A_TEXT, orchestrator=orch)

        assert exc_info.value.stage == "trial_discovery"
        state = store.load(only_run_id(store))
        assert state.status == PipelineStatus.FAILED
        assert state.error.kind == "malformed_response"

    @pytest.mark.asyncio
    async def test_unexpected_stage_exception_fails_run(self, build, store):
        """A non-pipeline exception inside a stage still leaves the run FAILED and tagged."""
        orch = build()
        orch.scoring_stage.run = AsyncMock(side_effect=RuntimeError("scoring blew up"))

        async with orch:
            with pytest.raises(errors.StageFailed) as exc_info:
                await run(SCENARIO_A_TEXT, orchestrator=orch)

        assert exc_info.value.stage == "eligibility_scoring"
        assert exc_info.value.to_dict()["kind"] == "stage_failed"
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        state = store.load(only_run_id(store))
        assert state.status == PipelineStatus.FAILED
        assert state.error.kind == "stage_failed"
        assert state.error.stage == "eligibility_scoring"

    def test_log_level_applied_to_package_logger(self, settings, cache, store):
        package_logger = logging.getLogger("trialmatch")
        previous = package_logger.level
        try:
            PipelineOrchestrator(settings=settings.model_copy(update={"log_level": "DEBUG"}), cache=cache, store=store)
            assert package_logger.level == logging.DEBUG
        finally:
            package_logger.setLevel(previous)


class TestReview:
    """Tests for suspension at the review checkpoint and resumption."""

    @pytest.mark.asyncio
    async def test_suspend_and_approve_matches_uninterrupted_run(self, build):
        async with build() as orch:
            baseline = await run(SCENARIO_A_TEXT, orchestrator=orch)
            suspended = await run(SCENARIO_A_TEXT, options={"enable_review": True}, orchestrator=orch)

            assert suspended["status"] == "awaiting_review"
            assert len(suspended["assessments"]) == 3

            resumed = await resume(suspended["run_id"], {"action": "approve", "reviewer": "dr.who"}, orchestrator=orch)

        for key in ("patient_summary", "eligible_trials", "ineligible_trials", "literature_support", "safety_flags"):
            assert resumed["clinical_report"][key] == baseline["clinical_report"][key]
        assert resumed["workflow_metadata"]["review_status"] == "approve"
        assert "human_review" in resumed["workflow_metadata"]["agents_activated"]

    @pytest.mark.asyncio
    async def test_resume_from_file_store_in_new_orchestrator(self, build, tmp_path):
        """A suspended run can be resumed by a different orchestrator sharing the store directory."""
        async with build(store=JsonFileRunStore(tmp_path)) as first:
            suspended = await run(SCENARIO_A_TEXT, options={"enable_review": True}, orchestrator=first)

        assert (tmp_path / f"{suspended['run_id']}.json").exists()

        async with build(store=JsonFileRunStore(tmp_path)) as second:
            resumed = await resume(suspended["run_id"], {"action": "approve"}, orchestrator=second)

        assert len(resumed["clinical_report"]["eligible_trials"]) == 3

    @pytest.mark.asyncio
    async def test_modify_applies_overrides(self, build):
        async with build() as orch:
            suspended = await run(SCENARIO_A_TEXT, options={"enable_review": True}, orchestrator=orch)
            resumed = await resume(
                suspended["run_id"],
                {
                    "action": "modify",
                    "notes": "Seattle site too far",
                    "excluded_trial_ids": ["NCT10000003"],
                    "status_overrides": {"NCT10000002": "INELIGIBLE"},
                },
                orchestrator=orch,
            )

        report = resumed["clinical_report"]
        assert [e["nct_id"] for e in report["eligible_trials"]] == ["NCT10000001"]
        assert report["ineligible_trials"][0]["nct_id"] == "NCT10000002"
        assert report["ineligible_trials"][0]["exclusion_reason"].startswith("Excluded for hypertension")
        assert report["reviewer_notes"] == "Seattle site too far"

    @pytest.mark.asyncio
    async def test_reject_fails_run(self, build, store):
        async with build() as orch:
            suspended = await run(SCENARIO_A_TEXT, options={"enable_review": True}, orchestrator=orch)
            with pytest.raises(errors.ReviewRejected) as exc_info:
                await resume(suspended["run_id"], {"action": "reject", "notes": "not appropriate"}, orchestrator=orch)

        assert exc_info.value.kind == "rejected"
        state = store.load(suspended["run_id"])
        assert state.status == PipelineStatus.FAILED
        assert state.error.kind == "rejected"

    @pytest.mark.asyncio
    async def test_resume_requires_suspended_run(self, build):
        async with build() as orch:
            done = await run(SCENARIO_A_TEXT, orchestrator=orch)
            with pytest.raises(errors.InvalidTransition):
                await resume(done["workflow_metadata"]["run_id"], {"action": "approve"}, orchestrator=orch)
            with pytest.raises(errors.RunNotFound):
                await resume("missing", {"action": "approve"}, orchestrator=orch)


class TestRunStores:
    """Tests for the run stores."""

    @pytest.mark.parametrize("make_store", [
        lambda tmp_path: InMemoryRunStore(),
        lambda tmp_path: JsonFileRunStore(tmp_path / "runs"),
    ])
    def test_save_load_delete(self, make_store, tmp_path):
        store = make_store(tmp_path)
        state = PipelineRunState(patient_data="record", status=PipelineStatus.AWAITING_REVIEW)

        store.save(state)
        assert store.load(state.run_id) == state

        store.delete(state.run_id)
        with pytest.raises(errors.RunNotFound):
            store.load(state.run_id)

    @pytest.mark.parametrize("run_id", ["", "../escape", ".hidden", "a\\b"])
    def test_file_store_rejects_unsafe_ids(self, tmp_path, run_id):
        with pytest.raises(errors.ValidationError):
            JsonFileRunStore(tmp_path).load(run_id)
