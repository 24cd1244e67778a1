"""
Grading pipeline state machine.

Each stage moves the schedule from a set of allowed states into its
``*_START`` state when it is kicked off, and into its ``*_DONE`` state when
the background work finishes.
"""
from dataclasses import dataclass
from typing import Dict, FrozenSet

from ezmark.schemas import Progress, ScheduleResult


@dataclass(frozen=True)
class Stage:
    name: str
    allowed_from: FrozenSet[Progress]
    start: Progress
    done: Progress


MATCH = Stage(
    name="MATCH",
    allowed_from=frozenset({Progress.UPLOADED, Progress.MATCH_START, Progress.MATCH_DONE}),
    start=Progress.MATCH_START,
    done=Progress.MATCH_DONE,
)

OBJECTIVE = Stage(
    name="OBJECTIVE",
    allowed_from=frozenset({Progress.MATCH_DONE, Progress.OBJECTIVE_START}),
    start=Progress.OBJECTIVE_START,
    done=Progress.OBJECTIVE_DONE,
)

SUBJECTIVE = Stage(
    name="SUBJECTIVE",
    allowed_from=frozenset({Progress.OBJECTIVE_DONE, Progress.SUBJECTIVE_START}),
    start=Progress.SUBJECTIVE_START,
    done=Progress.SUBJECTIVE_DONE,
)

RESULT = Stage(
    name="RESULT",
    allowed_from=frozenset({Progress.SUBJECTIVE_DONE, Progress.RESULT_START, Progress.RESULT_DONE}),
    start=Progress.RESULT_START,
    done=Progress.RESULT_DONE,
)

STAGES: Dict[str, Stage] = {s.name: s for s in (MATCH, OBJECTIVE, SUBJECTIVE, RESULT)}


class InvalidTransition(Exception):
    def __init__(self, stage: Stage, current: Progress):
        self.stage = stage
        self.current = current
        allowed = ", ".join(sorted(p.value for p in stage.allowed_from))
        super().__init__(
            f"Cannot start {stage.name} while schedule is {current.value} (expected one of: {allowed})"
        )


def begin_stage(result: ScheduleResult, stage: Stage) -> ScheduleResult:
    """Validate the transition and move the result into the stage's start state."""
    if result.progress not in stage.allowed_from:
        raise InvalidTransition(stage, result.progress)
    result.progress = stage.start
    result.error = None
    return result


def finish_stage(result: ScheduleResult, stage: Stage) -> ScheduleResult:
    result.progress = stage.done
    result.error = None
    return result


def mark_uploaded(pdf_url: str) -> ScheduleResult:
    """A fresh upload throws away whatever an earlier run produced."""
    return ScheduleResult(progress=Progress.UPLOADED, pdf_url=pdf_url)
