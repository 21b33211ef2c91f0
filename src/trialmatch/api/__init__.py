"""API clients for external data sources."""

from trialmatch.api.clinicaltrials import TrialRegistryClient
from trialmatch.api.fda import DrugSafetyClient
from trialmatch.api.icd10 import DiagnosisCodeClient
from trialmatch.api.pubmed import LiteratureClient

__all__ = ["TrialRegistryClient", "LiteratureClient", "DrugSafetyClient", "DiagnosisCodeClient"]
