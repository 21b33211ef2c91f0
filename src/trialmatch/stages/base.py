"""Common stage contract.

Every stage takes the full PipelineRunState and returns an augmented copy
in a StageResult; the orchestrator owns timing, transitions and persistence.
"""

from dataclasses import dataclass, field
from typing import Protocol

from trialmatch.models.state import PipelineRunState, StageStatus


@dataclass
class StageResult:
    """Augmented state plus what the stage wants recorded in its metadata."""

    state: PipelineRunState
    status: StageStatus = StageStatus.COMPLETED
    counts: dict[str, int] = field(default_factory=dict)
    detail: str | None = None


class Stage(Protocol):
    name: str

    async def run(self, state: PipelineRunState) -> StageResult: ...

    def validate_output(self, state: PipelineRunState) -> None: ...
