"""Tests for external source clients."""

import httpx
import pytest

from trialmatch.api.clinicaltrials import (
    SYNTHETIC_NCT_ID,
    TrialRegistryClient,
    parse_eligibility_criteria,
)
from trialmatch.api.fda import DrugSafetyClient, check_interactions, classify_severity
from trialmatch.api.icd10 import DiagnosisCodeClient
from trialmatch.api.pubmed import LiteratureClient
from trialmatch.errors import MalformedResponse, RecursionGuardTripped, SourceUnavailable
from trialmatch.models.safety import Severity
from trialmatch.models.trial import FallbackSearch, TrialSearch, TrialStatus


def study(nct_id: str, **extra) -> dict:
    protocol = {
        "identificationModule": {"nctId": nct_id, "briefTitle": f"Trial {nct_id}"},
        "statusModule": {
            "overallStatus": "RECRUITING",
            "startDateStruct": {"date": "2024-01"},
            "lastUpdatePostDateStruct": {"date": "2024-06-01"},
        },
        "designModule": {"phases": ["PHASE2"], "studyType": "INTERVENTIONAL", "enrollmentInfo": {"count": 120}},
        "conditionsModule": {"conditions": ["Type 2 Diabetes"]},
        "armsInterventionsModule": {"interventions": [{"name": "Metformin"}]},
        "eligibilityModule": {
            "eligibilityCriteria": "Inclusion Criteria:\n* Adults with T2D\n* On metformin\n\nExclusion Criteria:\n* Pregnancy",
            "minimumAge": "18 Years",
            "maximumAge": "80 Years",
            "sex": "ALL",
        },
        "contactsLocationsModule": {
            "centralContacts": [{"name": "Jane Coordinator"}],
            "overallOfficials": [{"name": "Dr. Lead"}],
            "locations": [
                {
                    "facility": "Emory",
                    "city": "Atlanta",
                    "state": "Georgia",
                    "country": "United States",
                    "contacts": [{"name": "Site Desk", "phone": "555-0100"}],
                }
            ],
        },
    }
    protocol.update(extra)
    return {"protocolSection": protocol}


class TestParseEligibilityCriteria:
    """Tests for splitting free-text eligibility criteria."""

    def test_splits_sections_and_bullets(self):
        text = (
            "Inclusion Criteria:\n* Age 18 or older\n* Diagnosis of T2D\n\n"
            "Exclusion Criteria:\n* Pregnancy\n* Severe renal impairment"
        )
        inclusion, exclusion = parse_eligibility_criteria(text)

        assert inclusion == ["Age 18 or older", "Diagnosis of T2D"]
        assert exclusion == ["Pregnancy", "Severe renal impairment"]

    def test_numbered_lines(self):
        inclusion, _ = parse_eligibility_criteria("Inclusion Criteria:\n1. First\n2) Second")
        assert inclusion == ["First", "Second"]

    def test_missing_exclusion_header(self):
        inclusion, exclusion = parse_eligibility_criteria("Inclusion Criteria:\n- Only inclusion")
        assert inclusion == ["Only inclusion"]
        assert exclusion == []

    def test_empty_text(self):
        assert parse_eligibility_criteria(None) == ([], [])
        assert parse_eligibility_criteria("") == ([], [])


class TestTrialRegistryClient:
    """Tests for TrialRegistryClient."""

    @pytest.mark.asyncio
    async def test_context_manager(self, client_kwargs):
        """Test async context manager."""
        async with TrialRegistryClient(**client_kwargs, mock_mode=False) as client:
            assert client._client is not None

        assert client._client is None

    def test_build_params(self, client_kwargs):
        client = TrialRegistryClient(**client_kwargs, mock_mode=False)
        search = TrialSearch(
            condition="Type 2 Diabetes",
            secondary_conditions=["hypertension"],
            age=70,
            location="Atlanta, GA",
            phases=["PHASE2", "PHASE3"],
            sort="date",
        )

        params = client._build_params(search)

        assert params["query.cond"] == "Type 2 Diabetes OR hypertension"
        assert params["filter.overallStatus"] == "RECRUITING|ACTIVE_NOT_RECRUITING"
        assert params["query.term"] == "AREA[StdAge]OLDER_ADULT AND AREA[Phase](PHASE2 OR PHASE3)"
        assert params["query.locn"] == "Atlanta, GA"
        assert params["sort"] == "LastUpdatePostDate:desc"

    def test_parse_study(self, client_kwargs):
        client = TrialRegistryClient(**client_kwargs, mock_mode=False)

        trial = client._parse_study(study("NCT11111111"))

        assert trial.nct_id == "NCT11111111"
        assert trial.url == "https://clinicaltrials.gov/study/NCT11111111"
        assert trial.phase == "PHASE2"
        assert trial.intervention == "Metformin"
        assert trial.eligibility.inclusion == ["Adults with T2D", "On metformin"]
        assert trial.eligibility.exclusion == ["Pregnancy"]
        assert trial.locations[0].contacts[0].phone == "555-0100"
        assert trial.central_contact == "Jane Coordinator"
        assert trial.enrollment_count == 120

    def test_parse_study_without_id(self, client_kwargs):
        client = TrialRegistryClient(**client_kwargs, mock_mode=False)
        assert client._parse_study({"protocolSection": {}}) is None

    @pytest.mark.asyncio
    async def test_search_parses_and_caps(self, client_kwargs, mock_http):
        client = TrialRegistryClient(**client_kwargs, mock_mode=False)
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"studies": [study(f"NCT0000000{i}") for i in range(1, 6)]})

        mock_http(client, handler)
        trials = await client.search(TrialSearch(condition="Type 2 Diabetes", max_results=3))

        assert [t.nct_id for t in trials] == ["NCT00000001", "NCT00000002", "NCT00000003"]
        assert requests[0].url.params["query.cond"] == "Type 2 Diabetes"
        await client.close()

    @pytest.mark.asyncio
    async def test_search_retries_then_raises(self, client_kwargs, mock_http):
        """Upstream failures are retried up to max_retries, then SourceUnavailable propagates."""
        client = TrialRegistryClient(**client_kwargs, mock_mode=False)
        attempts = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal attempts
            attempts += 1
            return httpx.Response(503)

        mock_http(client, handler)
        with pytest.raises(SourceUnavailable) as exc_info:
            await client.search(TrialSearch(condition="Type 2 Diabetes"))

        assert attempts == 3
        assert exc_info.value.source == "clinicaltrials"
        await client.close()

    @pytest.mark.asyncio
    async def test_retry_recovers(self, client_kwargs, mock_http):
        client = TrialRegistryClient(**client_kwargs, mock_mode=False)
        responses = [httpx.Response(500), httpx.Response(200, json={"studies": [study("NCT22222222")]})]

        mock_http(client, lambda request: responses.pop(0))
        trials = await client.search(TrialSearch(condition="Asthma"))

        assert [t.nct_id for t in trials] == ["NCT22222222"]
        await client.close()

    @pytest.mark.asyncio
    async def test_malformed_response(self, client_kwargs, mock_http):
        client = TrialRegistryClient(**client_kwargs, mock_mode=False)

        mock_http(client, lambda request: httpx.Response(200, json={"studies": "oops"}))
        with pytest.raises(MalformedResponse):
            await client.search(TrialSearch(condition="Asthma"))
        await client.close()

    @pytest.mark.asyncio
    async def test_non_object_study_is_malformed(self, client_kwargs, mock_http):
        """A study list holding non-objects is rejected and retried like any malformed body."""
        client = TrialRegistryClient(**client_kwargs, mock_mode=False)
        attempts = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal attempts
            attempts += 1
            return httpx.Response(200, json={"studies": ["x"]})

        mock_http(client, handler)
        with pytest.raises(MalformedResponse) as exc_info:
            await client.search(TrialSearch(condition="Asthma"))

        assert attempts == 3
        assert exc_info.value.source == "clinicaltrials"
        await client.close()

    @pytest.mark.asyncio
    async def test_malformed_nested_record(self, client_kwargs, mock_http):
        client = TrialRegistryClient(**client_kwargs, mock_mode=False)
        bad = study("NCT33333333", contactsLocationsModule={"locations": ["Atlanta"]})

        mock_http(client, lambda request: httpx.Response(200, json={"studies": [bad]}))
        with pytest.raises(MalformedResponse) as exc_info:
            await client.search(TrialSearch(condition="Asthma"))

        assert exc_info.value.kind == "malformed_response"
        await client.close()

    @pytest.mark.asyncio
    async def test_timeout_maps_to_source_unavailable(self, client_kwargs, mock_http):
        client = TrialRegistryClient(**client_kwargs, mock_mode=False)

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        mock_http(client, handler)
        with pytest.raises(SourceUnavailable):
            await client.search(TrialSearch(condition="Asthma"))
        await client.close()

    @pytest.mark.asyncio
    async def test_mock_mode_returns_synthetic_trial(self, client_kwargs, mock_http):
        """In mock mode an unreachable registry yields exactly one synthetic trial."""
        client = TrialRegistryClient(**client_kwargs, mock_mode=True)

        mock_http(client, lambda request: httpx.Response(503))
        trials = await client.search(TrialSearch(condition="Type 2 Diabetes"))

        assert len(trials) == 1
        assert trials[0].nct_id == SYNTHETIC_NCT_ID
        assert trials[0].is_synthetic
        assert trials[0].condition == "Type 2 Diabetes"
        await client.close()

    def test_broaden_from_primary(self, client_kwargs):
        client = TrialRegistryClient(**client_kwargs, mock_mode=False)
        search = TrialSearch(condition="Asthma", secondary_conditions=["COPD"], location="Boston", sex="FEMALE")

        fallback = client.broaden(search)

        assert isinstance(fallback, FallbackSearch)
        assert fallback.is_fallback
        assert fallback.secondary_conditions == []
        assert fallback.location is None
        assert fallback.sex == "ALL"
        assert TrialStatus.COMPLETED in fallback.statuses
        assert TrialStatus.NOT_YET_RECRUITING in fallback.statuses

    def test_broaden_fallback_trips_guard(self, client_kwargs):
        client = TrialRegistryClient(**client_kwargs, mock_mode=False)
        fallback = TrialSearch(condition="Asthma").broaden()

        assert not hasattr(fallback, "broaden")
        with pytest.raises(RecursionGuardTripped) as exc_info:
            client.broaden(fallback)
        assert exc_info.value.kind == "recursion_guard"


class TestLiteratureClient:
    """Tests for LiteratureClient."""

    @pytest.mark.asyncio
    async def test_search_fetches_summaries_in_one_batch(self, client_kwargs, mock_http):
        client = LiteratureClient(**client_kwargs, api_key="")
        paths = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            if request.url.path.endswith("esearch.fcgi"):
                return httpx.Response(200, json={"esearchresult": {"idlist": ["111", "222"]}})
            assert request.url.params["id"] == "111,222"
            return httpx.Response(200, json={
                "result": {
                    "uids": ["111", "222"],
                    "111": {
                        "uid": "111",
                        "title": "First",
                        "authors": [{"name": "Smith J"}],
                        "fulljournalname": "NEJM",
                        "pubdate": "2023",
                    },
                    "222": {"uid": "222", "title": "Second", "source": "Lancet"},
                }
            })

        mock_http(client, handler)
        refs = await client.search("metformin Type 2 Diabetes", max_results=2)

        assert [r.pmid for r in refs] == ["111", "222"]
        assert refs[0].citation() == "First (NEJM, 2023)"
        assert refs[1].journal == "Lancet"
        assert refs[0].url == "https://pubmed.ncbi.nlm.nih.gov/111/"
        assert len(paths) == 2
        await client.close()

    @pytest.mark.asyncio
    async def test_no_ids_skips_summary_call(self, client_kwargs, mock_http):
        client = LiteratureClient(**client_kwargs, api_key="")
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(200, json={"esearchresult": {"idlist": []}})

        mock_http(client, handler)
        assert await client.search("nothing here") == []
        assert calls == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_empty_query_makes_no_request(self, client_kwargs, mock_http):
        client = LiteratureClient(**client_kwargs, api_key="")

        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        mock_http(client, handler)
        assert await client.search("   ") == []
        await client.close()


class TestDrugSafety:
    """Tests for severity classification and DrugSafetyClient."""

    def test_classify_severity(self):
        assert classify_severity("Use is contraindicated with nitrates") == Severity.CRITICAL
        assert classify_severity("Serious bleeding may occur") == Severity.HIGH
        assert classify_severity("Monitor potassium") == Severity.MODERATE
        assert classify_severity("No known effect") == Severity.LOW

    def test_known_interactions(self):
        interactions = check_interactions(["Warfarin", "Aspirin"])
        assert len(interactions) == 1
        assert interactions[0].medication == "Warfarin + Aspirin"
        assert interactions[0].severity == Severity.MODERATE

    @pytest.mark.asyncio
    async def test_partial_success(self, client_kwargs, mock_http):
        """A failing drug is skipped; the others are still returned."""
        client = DrugSafetyClient(**client_kwargs)

        def handler(request: httpx.Request) -> httpx.Response:
            if "Badrug" in request.url.params["search"]:
                return httpx.Response(500)
            return httpx.Response(200, json={"results": [{"warnings": ["Lactic acidosis may occur."]}]})

        mock_http(client, handler)
        signals = await client.lookup(["Metformin", "Badrug"])

        assert [s.drug_name for s in signals] == ["Metformin"]
        assert signals[0].warnings == ["Lactic acidosis may occur."]
        await client.close()

    @pytest.mark.asyncio
    async def test_not_found_means_no_label(self, client_kwargs, mock_http):
        client = DrugSafetyClient(**client_kwargs)

        mock_http(client, lambda request: httpx.Response(404))
        signals = await client.lookup(["Unknownium"])

        assert len(signals) == 1
        assert signals[0].label_found is False
        assert signals[0].severity == Severity.LOW
        await client.close()

    @pytest.mark.asyncio
    async def test_contraindication_with_comorbidity_is_critical(self, client_kwargs, mock_http):
        client = DrugSafetyClient(**client_kwargs)
        label = {
            "contraindications": ["Contraindicated in patients with severe renal impairment."],
            "boxed_warning": ["WARNING: LACTIC ACIDOSIS"],
        }

        mock_http(client, lambda request: httpx.Response(200, json={"results": [label]}))
        signals = await client.lookup(["Metformin"], comorbidities=["renal impairment"])

        assert signals[0].severity == Severity.CRITICAL
        assert signals[0].boxed_warning == "WARNING: LACTIC ACIDOSIS"
        await client.close()

    @pytest.mark.asyncio
    async def test_boxed_warning_is_high(self, client_kwargs, mock_http):
        client = DrugSafetyClient(**client_kwargs)

        mock_http(client, lambda request: httpx.Response(200, json={"results": [{"boxed_warning": ["Bleeding risk"]}]}))
        signals = await client.lookup(["Warfarin"])

        assert signals[0].severity == Severity.HIGH
        await client.close()


class TestDiagnosisCodeClient:
    """Tests for DiagnosisCodeClient."""

    @pytest.mark.asyncio
    async def test_lookup(self, client_kwargs, mock_http):
        client = DiagnosisCodeClient(**client_kwargs)

        mock_http(client, lambda request: httpx.Response(
            200, json=[2, ["E11.9", "E11.65"], None, [["E11.9", "Type 2 diabetes mellitus without complications"], ["E11.65", "Type 2 diabetes mellitus with hyperglycemia"]]]
        ))
        matches = await client.lookup("type 2 diabetes")

        assert [m.code for m in matches] == ["E11.9", "E11.65"]
        assert await client.best_code("type 2 diabetes") == "E11.9"
        await client.close()

    @pytest.mark.asyncio
    async def test_short_text_skipped(self, client_kwargs):
        client = DiagnosisCodeClient(**client_kwargs)
        assert await client.lookup("ab") == []
        await client.close()

    @pytest.mark.asyncio
    async def test_malformed_payload(self, client_kwargs, mock_http):
        client = DiagnosisCodeClient(**client_kwargs)

        mock_http(client, lambda request: httpx.Response(200, json={"unexpected": True}))
        with pytest.raises(MalformedResponse):
            await client.lookup("asthma")
        await client.close()
