"""Clinical trial matching pipeline."""

from trialmatch import errors
from trialmatch.engine import PipelineOrchestrator, resume, run
from trialmatch.persistence import InMemoryRunStore, JsonFileRunStore

__version__ = "0.1.0"

__all__ = [
    "run",
    "resume",
    "PipelineOrchestrator",
    "InMemoryRunStore",
    "JsonFileRunStore",
    "errors",
]
