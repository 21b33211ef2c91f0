"""Run state persistence.

A run suspended for human review is saved in full and resumed later,
possibly from another process. Both stores serialize through pydantic
JSON so every save is a real round-trip.
"""

import logging
from pathlib import Path
from typing import Protocol

from trialmatch import errors
from trialmatch.models.state import PipelineRunState

logger = logging.getLogger(__name__)


class RunStore(Protocol):
    def save(self, state: PipelineRunState) -> None: ...

    def load(self, run_id: str) -> PipelineRunState: ...

    def delete(self, run_id: str) -> None: ...


class InMemoryRunStore:
    """Process-local store. Holds JSON, not live objects."""

    def __init__(self):
        self._runs: dict[str, str] = {}

    def save(self, state: PipelineRunState) -> None:
        self._runs[state.run_id] = state.model_dump_json()

    def load(self, run_id: str) -> PipelineRunState:
        try:
            payload = self._runs[run_id]
        except KeyError:
            raise errors.RunNotFound(f"No run with id {run_id}") from None
        return PipelineRunState.model_validate_json(payload)

    def delete(self, run_id: str) -> None:
        self._runs.pop(run_id, None)

    def __contains__(self, run_id: str) -> bool:
        return run_id in self._runs

    def __len__(self) -> int:
        return len(self._runs)


class JsonFileRunStore:
    """One ``<run_id>.json`` file per run under ``directory``."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, run_id: str) -> Path:
        if not run_id or "/" in run_id or "\\" in run_id or run_id.startswith("."):
            raise errors.ValidationError(f"Invalid run id: {run_id!r}")
        return self.directory / f"{run_id}.json"

    def save(self, state: PipelineRunState) -> None:
        path = self._path(state.run_id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(state.model_dump_json(indent=2), encoding="utf-8")
        tmp.replace(path)
        logger.debug(f"Saved run {state.run_id} ({state.status.value}) to {path}")

    def load(self, run_id: str) -> PipelineRunState:
        path = self._path(run_id)
        if not path.exists():
            raise errors.RunNotFound(f"No run with id {run_id}")
        return PipelineRunState.model_validate_json(path.read_text(encoding="utf-8"))

    def delete(self, run_id: str) -> None:
        self._path(run_id).unlink(missing_ok=True)
