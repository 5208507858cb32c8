import pytest

from conductor.phases import IDLE, LOCKDOWN, PhaseCommand, PhaseMachine, PhaseState, transition


def test_advance_walks_the_pipeline_until_the_review_gate() -> None:
    machine = PhaseMachine()
    visited = []
    while machine.dispatch(PhaseCommand.advance()):
        visited.append(machine.state.path)

    assert visited == [
        "plan.analyzing",
        "plan.drafting",
        "plan.reviewing_plan",
        "plan.approved",
        "build.scaffolding",
        "build.codegen",
        "build.verifying",
        "build.complete",
        "review.locked",
    ]

    assert machine.dispatch(PhaseCommand.unlock_gate()) is True
    assert machine.dispatch(PhaseCommand.advance()) is True
    assert machine.state.path == "deploy"
    assert machine.dispatch(PhaseCommand.advance()) is False


def test_unlock_gate_only_applies_in_review_locked() -> None:
    codegen = PhaseState("build", "codegen")

    assert transition(codegen, PhaseCommand.unlock_gate()) is None
    assert transition(PhaseState("review", "locked"), PhaseCommand.unlock_gate()) == PhaseState(
        "review", "unlocked"
    )


def test_set_phase_accepts_only_known_phases() -> None:
    machine = PhaseMachine()

    assert machine.dispatch(PhaseCommand.set_phase("build")) is True
    assert machine.state.path == "build.scaffolding"
    assert machine.dispatch(PhaseCommand.set_phase("ship")) is False
    assert machine.dispatch(PhaseCommand.set_phase("security_lockdown")) is False
    assert machine.state.path == "build.scaffolding"


def test_security_violation_locks_down_until_retry() -> None:
    machine = PhaseMachine(state=PhaseState("build", "codegen"))

    assert machine.dispatch(PhaseCommand.security_violation("fs-write")) is True
    assert machine.state == LOCKDOWN
    assert machine.locked_down is True
    assert machine.violation_policy == "fs-write"
    assert machine.error == "VIOLATION: fs-write"

    assert machine.dispatch(PhaseCommand.advance()) is False
    assert machine.dispatch(PhaseCommand.reset()) is False
    assert machine.dispatch(PhaseCommand.set_phase("plan")) is False
    assert machine.state == LOCKDOWN

    assert machine.dispatch(PhaseCommand.retry()) is True
    assert machine.state.path == "plan.analyzing"
    assert machine.violation_policy is None
    assert machine.error is None


def test_build_failure_retries_from_scaffolding() -> None:
    machine = PhaseMachine(state=PhaseState("build", "verifying"))

    assert machine.dispatch(PhaseCommand.fail("tests failed")) is True
    assert machine.state.path == "build.failure"
    assert machine.error == "tests failed"
    assert machine.dispatch(PhaseCommand.advance()) is False

    assert machine.dispatch(PhaseCommand.retry()) is True
    assert machine.state.path == "build.scaffolding"
    assert machine.error is None


def test_fail_outside_build_is_ignored() -> None:
    assert transition(PhaseState("plan", "drafting"), PhaseCommand.fail("nope")) is None


def test_reset_returns_to_idle_with_a_new_run_label() -> None:
    machine = PhaseMachine(state=PhaseState("review", "unlocked"), error="stale")
    label = machine.run_label

    assert machine.dispatch(PhaseCommand.reset()) is True
    assert machine.state == IDLE
    assert machine.error is None
    assert machine.run_label != label
    assert machine.run_label.startswith("RUN-")


def test_unknown_command_is_a_no_op() -> None:
    machine = PhaseMachine()

    assert machine.dispatch(PhaseCommand("TELEPORT")) is False
    assert machine.state == IDLE
    assert machine.history == []


def test_history_is_capped() -> None:
    machine = PhaseMachine(history_limit=3)
    for _ in range(6):
        machine.dispatch(PhaseCommand.advance())

    assert len(machine.history) == 3
    assert machine.history[-1]["to"] == "build.codegen"


def test_phase_state_validates_paths() -> None:
    assert PhaseState.from_path("build.codegen") == PhaseState("build", "codegen")
    assert PhaseState.from_path("deploy").path == "deploy"

    with pytest.raises(ValueError):
        PhaseState.from_path("build.deploying")
    with pytest.raises(ValueError):
        PhaseState.from_path("review")
    with pytest.raises(ValueError):
        PhaseState("launch")
