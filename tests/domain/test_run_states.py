import pytest

from flowrun.domain.errors import ValidationFailed
from flowrun.domain.states import (
    RunState,
    StepExitReason,
    WorkOrderState,
    can_transition,
    derive_work_order_state,
    is_final,
    parse_step_exit_reason,
    run_state_for_exit_reason,
    sources_for,
    step_state,
)


def test_legal_transitions():
    assert can_transition("pending", "claimed")
    assert can_transition("claimed", "running")
    assert can_transition("running", "success")
    assert can_transition("claimed", "lost")
    assert not can_transition("pending", "running")
    assert not can_transition("claimed", "success")


@pytest.mark.parametrize("state", ["success", "failed", "crashed", "killed", "lost"])
def test_final_states_have_no_exit(state):
    assert is_final(state)
    for target in RunState:
        assert not can_transition(state, target)


def test_sources_for_lost():
    assert sources_for(RunState.LOST) == {RunState.CLAIMED, RunState.RUNNING}


def test_exit_reasons():
    assert run_state_for_exit_reason("success") == RunState.SUCCESS
    assert run_state_for_exit_reason("fail") == RunState.FAILED
    assert run_state_for_exit_reason("exception") == RunState.CRASHED
    assert run_state_for_exit_reason("cancel") == RunState.KILLED
    with pytest.raises(ValidationFailed):
        run_state_for_exit_reason("lost")
    with pytest.raises(ValidationFailed):
        run_state_for_exit_reason("bogus")


def test_step_exit_reasons():
    assert parse_step_exit_reason("failed") == StepExitReason.FAIL
    assert parse_step_exit_reason("lost") == StepExitReason.LOST
    assert step_state(None) == "running"
    assert step_state("crash") == "crashed"
    with pytest.raises(ValidationFailed):
        parse_step_exit_reason("nope")


@pytest.mark.parametrize(
    "runs, expected",
    [
        ([], WorkOrderState.PENDING),
        (["pending"], WorkOrderState.PENDING),
        (["claimed"], WorkOrderState.RUNNING),
        (["failed", "pending"], WorkOrderState.PENDING),
        (["failed", "running"], WorkOrderState.RUNNING),
        (["failed", "success"], WorkOrderState.SUCCESS),
        (["success", "lost"], WorkOrderState.LOST),
    ],
)
def test_work_order_state_follows_its_runs(runs, expected):
    assert derive_work_order_state(runs) == expected
