"""Live integration tests for the external sources.

These tests make REAL API calls to ClinicalTrials.gov, PubMed, openFDA and
the NLM ICD-10 search service.
Deselected by default; run with: pytest tests/integration -m integration -v -s
"""

import pytest

from trialmatch import run
from trialmatch.api.clinicaltrials import TrialRegistryClient
from trialmatch.api.fda import DrugSafetyClient
from trialmatch.api.icd10 import DiagnosisCodeClient
from trialmatch.api.pubmed import LiteratureClient
from trialmatch.models.trial import TrialSearch


class TestRegistryLive:
    """ClinicalTrials.gov v2 search."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_diabetes_search(self):
        async with TrialRegistryClient(mock_mode=False) as client:
            trials = await client.search(TrialSearch(condition="Type 2 Diabetes", age=65, max_results=5))

        assert 1 <= len(trials) <= 5
        assert all(t.nct_id.startswith("NCT") for t in trials)
        assert len({t.nct_id for t in trials}) == len(trials)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_fallback_search(self):
        async with TrialRegistryClient(mock_mode=False) as client:
            fallback = client.broaden(TrialSearch(condition="Asthma", location="Atlanta, GA", max_results=3))
            trials = await client.search(fallback)

        assert len(trials) <= 3


class TestLiteratureLive:
    """PubMed E-utilities search."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_returns_articles(self):
        async with LiteratureClient() as client:
            refs = await client.search("Metformin Type 2 Diabetes", max_results=3)

        assert 1 <= len(refs) <= 3
        assert all(ref.url.startswith("https://pubmed.ncbi.nlm.nih.gov/") for ref in refs)


class TestDrugSafetyLive:
    """openFDA drug label lookup."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metformin_label(self):
        async with DrugSafetyClient() as client:
            signals = await client.lookup(["Metformin"], age=70)

        assert len(signals) == 1
        signal = signals[0]
        print(f"\nMetformin severity: {signal.severity.value}")
        assert signal.drug_name == "Metformin"
        assert signal.label_found


class TestDiagnosisCodeLive:
    """NLM ICD-10-CM search."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_type_2_diabetes_code(self):
        async with DiagnosisCodeClient() as client:
            code = await client.best_code("Type 2 diabetes mellitus")

        assert code is not None
        assert code.startswith("E11")


class TestPipelineLive:
    """End-to-end run against the live sources."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_scenario_a(self):
        result = await run(
            "65-year-old patient diagnosed with Type 2 Diabetes. "
            "Current medications: Metformin 500mg, Lisinopril 10mg. "
            "HbA1c 7.2%. Comorbidities: hypertension. Lives in Atlanta, GA.",
            options={"max_trials": 5, "max_literature_results": 2},
        )

        metadata = result["workflow_metadata"]
        print(f"\nAPI calls: {metadata['api_calls_by_source']}")
        assert metadata["api_calls_made"] >= 1
        assert "trial_discovery" in metadata["agents_activated"]
        for entry in result["clinical_report"]["eligible_trials"]:
            assert 0.0 <= entry["match_score"] <= 1.0
