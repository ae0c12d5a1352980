"""Run / Step / WorkOrder states and the legal transitions between them."""

from __future__ import annotations

from enum import Enum, IntEnum
from typing import Dict, FrozenSet, Optional, Sequence

from flowrun.domain.errors import ValidationFailed


class RunState(str, Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CRASHED = "crashed"
    KILLED = "killed"
    LOST = "lost"


class WorkOrderState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CRASHED = "crashed"
    KILLED = "killed"
    LOST = "lost"


class StepExitReason(str, Enum):
    SUCCESS = "success"
    FAIL = "fail"
    CRASH = "crash"
    KILL = "kill"
    LOST = "lost"


class RunPriority(IntEnum):
    IMMEDIATE = 0
    NORMAL = 1


FINAL_RUN_STATES: FrozenSet[RunState] = frozenset(
    {RunState.SUCCESS, RunState.FAILED, RunState.CRASHED, RunState.KILLED, RunState.LOST}
)
# states that occupy a concurrency slot
ACTIVE_RUN_STATES: FrozenSet[RunState] = frozenset({RunState.CLAIMED, RunState.RUNNING})

RUN_TRANSITIONS: Dict[RunState, FrozenSet[RunState]] = {
    RunState.PENDING: frozenset({RunState.CLAIMED, RunState.KILLED}),
    RunState.CLAIMED: frozenset(
        {RunState.RUNNING, RunState.FAILED, RunState.CRASHED, RunState.KILLED, RunState.LOST}
    ),
    RunState.RUNNING: frozenset(
        {RunState.SUCCESS, RunState.FAILED, RunState.CRASHED, RunState.KILLED, RunState.LOST}
    ),
}

# exit reasons a worker may report on complete_run
_EXIT_REASONS: Dict[str, RunState] = {
    "success": RunState.SUCCESS,
    "fail": RunState.FAILED,
    "failed": RunState.FAILED,
    "crash": RunState.CRASHED,
    "crashed": RunState.CRASHED,
    "exception": RunState.CRASHED,
    "kill": RunState.KILLED,
    "killed": RunState.KILLED,
    "cancel": RunState.KILLED,
}

_STEP_STATES: Dict[Optional[str], str] = {
    None: "running",
    StepExitReason.SUCCESS.value: "success",
    StepExitReason.FAIL.value: "failed",
    StepExitReason.CRASH.value: "crashed",
    StepExitReason.KILL.value: "killed",
    StepExitReason.LOST.value: "lost",
}

LOST_AFTER_CLAIM = "LostAfterClaim"
LOST_AFTER_START = "LostAfterStart"


def is_final(state: str | RunState) -> bool:
    return RunState(state) in FINAL_RUN_STATES


def can_transition(current: str | RunState, target: str | RunState) -> bool:
    return RunState(target) in RUN_TRANSITIONS.get(RunState(current), frozenset())


def sources_for(target: RunState) -> FrozenSet[RunState]:
    """All states from which ``target`` may be reached."""
    return frozenset(src for src, dests in RUN_TRANSITIONS.items() if target in dests)


def run_state_for_exit_reason(exit_reason: str) -> RunState:
    try:
        return _EXIT_REASONS[exit_reason]
    except KeyError:
        raise ValidationFailed(f"unknown exit reason: {exit_reason}", field="exit_reason")


def parse_step_exit_reason(exit_reason: str) -> StepExitReason:
    aliases = {"failed": "fail", "crashed": "crash", "killed": "kill", "cancel": "kill"}
    try:
        return StepExitReason(aliases.get(exit_reason, exit_reason))
    except ValueError:
        raise ValidationFailed(f"unknown exit reason: {exit_reason}", field="exit_reason")


def step_state(exit_reason: Optional[str]) -> str:
    return _STEP_STATES.get(exit_reason, "failed")


def derive_work_order_state(run_states: Sequence[str | RunState]) -> WorkOrderState:
    """WorkOrder state from its runs, oldest first.

    running while any run is claimed/running, pending while the only unfinished
    runs are pending, otherwise the most recent run's terminal state.
    """
    states = [RunState(s) for s in run_states]
    if not states:
        return WorkOrderState.PENDING

    unfinished = [s for s in states if s not in FINAL_RUN_STATES]
    if unfinished:
        if any(s in ACTIVE_RUN_STATES for s in unfinished):
            return WorkOrderState.RUNNING
        return WorkOrderState.PENDING

    return WorkOrderState(states[-1].value)
