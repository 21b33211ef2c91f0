"""Shared fixtures."""

import httpx
import pytest
from tenacity import wait_none

from trialmatch.cache import RateLimitedCache
from trialmatch.config.sources import SourceConfig
from trialmatch.models.literature import LiteratureReference
from trialmatch.models.profile import LabValues, PatientProfile
from trialmatch.models.trial import CandidateTrial, EligibilityCriteria, TrialLocation


class FakeClock:
    """Manually advanced monotonic clock. ``sleep`` advances it instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _make_trial(nct_id: str, **overrides) -> CandidateTrial:
    data = {
        "nct_id": nct_id,
        "title": f"Study {nct_id}",
        "status": "RECRUITING",
        "condition": "Type 2 Diabetes",
        "intervention": "Drug X",
        "url": CandidateTrial.registry_url(nct_id),
    }
    data.update(overrides)
    return CandidateTrial(**data)


def _route(client, handler) -> None:
    """Route a SourceClient's requests through ``handler``."""
    client._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def make_trial():
    """Factory for CandidateTrial with sensible defaults."""
    return _make_trial


@pytest.fixture
def mock_http():
    """Install an httpx.MockTransport handler on a SourceClient."""
    return _route


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def test_sources():
    """Source configs with generous limits so tests never wait on real time."""
    return {
        name: SourceConfig(
            name=name,
            base_url=f"https://{name}.test/api",
            requests_per_second=100,
            timeout=5.0,
            cache_ttl=60.0,
        )
        for name in ("clinicaltrials", "pubmed", "openfda", "icd10")
    }


@pytest.fixture
def cache(test_sources, fake_clock):
    return RateLimitedCache(sources=test_sources, clock=fake_clock, sleep=fake_clock.sleep)


@pytest.fixture
def client_kwargs(cache):
    """Common SourceClient arguments: shared test cache, no retry backoff."""
    return {"cache": cache, "max_retries": 3, "retry_wait": wait_none()}


@pytest.fixture
def scenario_a_profile():
    return PatientProfile(
        diagnosis="Type 2 Diabetes",
        age=65,
        medications=["Metformin", "Lisinopril"],
        comorbidities=["hypertension"],
        lab_values=LabValues(hba1c=7.2),
        location="Atlanta, GA",
    )


@pytest.fixture
def scenario_a_trial():
    """Trial every check passes for the Scenario A profile."""
    return _make_trial(
        "NCT01000001",
        title="Metformin Add-on Study in Type 2 Diabetes",
        intervention="Metformin",
        eligibility=EligibilityCriteria(
            inclusion=["Type 2 diabetes on stable metformin therapy", "HbA1c between 7% and 10%"],
            exclusion=["Type 1 diabetes", "Pregnancy"],
            minimum_age="18 Years",
            maximum_age="75 Years",
        ),
        locations=[TrialLocation(facility="Emory Clinic", city="Atlanta", state="Georgia", country="United States")],
        central_contact="Study Desk",
    )


@pytest.fixture
def sample_reference():
    return LiteratureReference(
        pmid="12345",
        title="Metformin outcomes in older adults",
        authors=["Smith J", "Doe A"],
        journal="Diabetes Care",
        publication_date="2023 Jan",
        url=LiteratureReference.pubmed_url("12345"),
    )
