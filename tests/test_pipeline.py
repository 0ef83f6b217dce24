from typing import List

import pytest

from liveiso_builder.errors import BuildInterrupted, StageFailure
from liveiso_builder.pipeline import PipelinePhase, Stage, StageRunner, validate_stages

BOOT = PipelinePhase.BOOTSTRAPPING
CONF = PipelinePhase.CONFIGURING
INST = PipelinePhase.PACKAGE_INSTALLING
CLEAN = PipelinePhase.CLEANING


def _recorder(log: List[str], name: str):
    def action(ctx) -> None:
        log.append(name)

    return action


def _failing(exc: BaseException):
    def action(ctx) -> None:
        raise exc

    return action


def test_stages_run_in_order_and_phases_are_reported() -> None:
    log: List[str] = []
    phases: List[PipelinePhase] = []
    runner = StageRunner(
        [
            Stage("a", BOOT, _recorder(log, "a")),
            Stage("b", CONF, _recorder(log, "b")),
            Stage("c", CONF, _recorder(log, "c")),
            Stage("d", CLEAN, _recorder(log, "d")),
        ],
        on_phase=phases.append,
    )

    records = runner.run(ctx=None)

    assert log == ["a", "b", "c", "d"]
    assert phases == [BOOT, CONF, CLEAN]
    assert [r.status for r in records] == ["success"] * 4


def test_ignorable_failure_continues() -> None:
    log: List[str] = []
    runner = StageRunner(
        [
            Stage("reconfigure", INST, _failing(RuntimeError("no tzdata")), ignorable_failure=True),
            Stage("after", INST, _recorder(log, "after")),
        ]
    )

    runner.run(ctx=None)

    assert log == ["after"]
    assert [r.name for r in runner.ignored_failures] == ["reconfigure"]
    assert runner.records[0].error == "no tzdata"


def test_fatal_failure_skips_later_stages() -> None:
    log: List[str] = []
    runner = StageRunner(
        [
            Stage("install:base", INST, _recorder(log, "base")),
            Stage("install:desktop", INST, _failing(RuntimeError("apt exploded"))),
            Stage("install:installer", INST, _recorder(log, "installer")),
            Stage("final_cleanup", CLEAN, _recorder(log, "cleanup")),
        ]
    )

    with pytest.raises(StageFailure) as excinfo:
        runner.run(ctx=None)

    assert excinfo.value.stage_name == "install:desktop"
    assert isinstance(excinfo.value.cause, RuntimeError)
    assert log == ["base"]
    assert [r.status for r in runner.records] == ["success", "failed", "skipped", "skipped"]


def test_interrupt_propagates_untouched() -> None:
    runner = StageRunner(
        [
            Stage("bootstrap", BOOT, _failing(BuildInterrupted(15))),
            Stage("mount_virtual_filesystems", BOOT, _recorder([], "m")),
        ]
    )

    with pytest.raises(BuildInterrupted):
        runner.run(ctx=None)

    assert runner.records[0].error == "interrupted"
    assert runner.records[1].status == "skipped"


def test_ignorable_flag_does_not_swallow_interrupts() -> None:
    runner = StageRunner([Stage("autoclean", CLEAN, _failing(KeyboardInterrupt()), ignorable_failure=True)])
    with pytest.raises(KeyboardInterrupt):
        runner.run(ctx=None)


@pytest.mark.parametrize(
    "stages, message",
    [
        ([Stage("a", BOOT, print), Stage("a", CONF, print)], "Duplicate"),
        ([Stage("a", CONF, print), Stage("b", BOOT, print)], "runs after"),
        ([Stage("a", PipelinePhase.ASSEMBLING, print)], "non-runnable"),
        ([Stage("a", PipelinePhase.DONE, print)], "non-runnable"),
    ],
)
def test_validate_stages_rejects_bad_lists(stages, message) -> None:
    with pytest.raises(ValueError, match=message):
        validate_stages(stages)


def test_terminal_phases() -> None:
    assert PipelinePhase.DONE.terminal
    assert PipelinePhase.FAILED.terminal
    assert not PipelinePhase.UNMOUNTED.terminal
