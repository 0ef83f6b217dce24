from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from .errors import StageFailure

logger = logging.getLogger(__name__)


class PipelinePhase(enum.IntEnum):
    IDLE = 0
    BOOTSTRAPPING = 1
    CONFIGURING = 2
    PACKAGE_INSTALLING = 3
    CLEANING = 4
    UNMOUNTED = 5
    ASSEMBLING = 6
    DONE = 7
    FAILED = 99

    @property
    def terminal(self) -> bool:
        return self in (PipelinePhase.DONE, PipelinePhase.FAILED)


@dataclass(frozen=True)
class Stage:
    """A single named unit of work over the shared build context."""

    name: str
    phase: PipelinePhase
    action: Callable[[Any], None]
    ignorable_failure: bool = False


@dataclass
class StageRecord:
    name: str
    phase: PipelinePhase
    ignorable: bool
    status: str = "pending"  # success|failed|skipped
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "phase": self.phase.name,
            "ignorable": self.ignorable,
            "status": self.status,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "error": self.error,
        }


def validate_stages(stages: Sequence[Stage]) -> None:
    seen: set[str] = set()
    last = PipelinePhase.IDLE
    for stage in stages:
        if stage.name in seen:
            raise ValueError(f"Duplicate stage name: {stage.name}")
        seen.add(stage.name)
        if stage.phase.terminal or stage.phase in (PipelinePhase.IDLE, PipelinePhase.ASSEMBLING):
            raise ValueError(f"Stage {stage.name} has non-runnable phase {stage.phase.name}")
        if stage.phase < last:
            raise ValueError(f"Stage {stage.name} ({stage.phase.name}) runs after {last.name}")
        last = stage.phase


class StageRunner:
    """Run stages strictly in order with a two-tier failure policy.

    A failing stage flagged ``ignorable_failure`` is logged and the run
    continues. Any other failure stops dispatch: the remaining stages are
    recorded as skipped and StageFailure is raised. Only Exception counts as
    a stage failure; interrupts propagate untouched.
    """

    def __init__(
        self,
        stages: Sequence[Stage],
        *,
        on_phase: Optional[Callable[[PipelinePhase], None]] = None,
    ) -> None:
        validate_stages(stages)
        self.stages = list(stages)
        self.records: List[StageRecord] = [
            StageRecord(name=s.name, phase=s.phase, ignorable=s.ignorable_failure) for s in self.stages
        ]
        self._on_phase = on_phase
        self._phase = PipelinePhase.IDLE

    def _enter(self, phase: PipelinePhase) -> None:
        if phase == self._phase:
            return
        self._phase = phase
        if self._on_phase is not None:
            self._on_phase(phase)

    def run(self, ctx: Any) -> List[StageRecord]:
        for idx, (stage, record) in enumerate(zip(self.stages, self.records)):
            self._enter(stage.phase)
            logger.info("Running stage %s", stage.name)
            record.started_at = time.time()
            try:
                stage.action(ctx)
            except Exception as e:
                record.finished_at = time.time()
                record.status = "failed"
                record.error = str(e)
                if stage.ignorable_failure:
                    logger.warning("Ignoring failure in stage %s: %s", stage.name, e)
                    continue
                logger.error("Stage %s failed: %s", stage.name, e)
                for later in self.records[idx + 1:]:
                    later.status = "skipped"
                raise StageFailure(stage.name, e) from e
            except BaseException:
                record.finished_at = time.time()
                record.status = "failed"
                record.error = "interrupted"
                for later in self.records[idx + 1:]:
                    later.status = "skipped"
                raise
            record.finished_at = time.time()
            record.status = "success"
        return self.records

    @property
    def ignored_failures(self) -> List[StageRecord]:
        return [r for r in self.records if r.ignorable and r.status == "failed"]
