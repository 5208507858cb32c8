"""Hierarchical phase state machine.

The machine is a flat transition function over ``PhaseState(phase, substate)``
values. It is driven only by explicit commands; runtime events never move it
except through the engine translating a security violation into the
``SECURITY_VIOLATION`` command.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal
from uuid import uuid4

logger = logging.getLogger(__name__)

CommandName = Literal[
    "ADVANCE", "SET_PHASE", "UNLOCK_GATE", "RETRY", "SECURITY_VIOLATION", "RESET", "FAIL"
]

PHASE_ORDER = ("plan", "build", "review", "deploy")
SUBSTATES: dict[str, tuple[str, ...]] = {
    "idle": (),
    "plan": ("analyzing", "drafting", "reviewing_plan", "approved"),
    "build": ("scaffolding", "codegen", "verifying", "complete", "failure"),
    "review": ("locked", "unlocked"),
    "deploy": (),
    "security_lockdown": (),
}

# Linear ADVANCE edges inside a phase and across phases. Leaves without an
# entry (deploy, build.failure, review.locked, security_lockdown) do not advance.
_ADVANCE: dict[str, str] = {
    "idle": "plan.analyzing",
    "plan.analyzing": "plan.drafting",
    "plan.drafting": "plan.reviewing_plan",
    "plan.reviewing_plan": "plan.approved",
    "plan.approved": "build.scaffolding",
    "build.scaffolding": "build.codegen",
    "build.codegen": "build.verifying",
    "build.verifying": "build.complete",
    "build.complete": "review.locked",
    "review.unlocked": "deploy",
}
_RETRY: dict[str, str] = {
    "build.failure": "build.scaffolding",
    "security_lockdown": "plan.analyzing",
}


@dataclass(frozen=True, slots=True)
class PhaseState:
    phase: str
    substate: str | None = None

    def __post_init__(self) -> None:
        if self.phase not in SUBSTATES:
            raise ValueError(f"Unknown phase: {self.phase}")
        allowed = SUBSTATES[self.phase]
        if allowed and self.substate not in allowed:
            raise ValueError(f"Unknown substate for {self.phase}: {self.substate}")
        if not allowed and self.substate is not None:
            raise ValueError(f"Phase {self.phase} has no substates")

    @property
    def path(self) -> str:
        if self.substate is None:
            return self.phase
        return f"{self.phase}.{self.substate}"

    @classmethod
    def from_path(cls, path: str) -> PhaseState:
        phase, _, substate = path.partition(".")
        return cls(phase, substate or None)

    @classmethod
    def initial(cls, phase: str) -> PhaseState:
        substates = SUBSTATES[phase]
        return cls(phase, substates[0] if substates else None)

    def __str__(self) -> str:
        return self.path


IDLE = PhaseState("idle")
LOCKDOWN = PhaseState("security_lockdown")


@dataclass(frozen=True, slots=True)
class PhaseCommand:
    name: str
    target: str | None = None
    policy: str | None = None
    message: str | None = None

    @classmethod
    def advance(cls) -> PhaseCommand:
        return cls("ADVANCE")

    @classmethod
    def set_phase(cls, target: str) -> PhaseCommand:
        return cls("SET_PHASE", target=target)

    @classmethod
    def unlock_gate(cls) -> PhaseCommand:
        return cls("UNLOCK_GATE")

    @classmethod
    def retry(cls) -> PhaseCommand:
        return cls("RETRY")

    @classmethod
    def security_violation(cls, policy: str) -> PhaseCommand:
        return cls("SECURITY_VIOLATION", policy=policy)

    @classmethod
    def reset(cls) -> PhaseCommand:
        return cls("RESET")

    @classmethod
    def fail(cls, message: str) -> PhaseCommand:
        return cls("FAIL", message=message)


def transition(state: PhaseState, command: PhaseCommand) -> PhaseState | None:
    """Return the next state, or ``None`` when ``command`` has no edge from ``state``."""
    name = command.name
    if name == "SECURITY_VIOLATION":
        return LOCKDOWN
    if state == LOCKDOWN:
        if name == "RETRY":
            return PhaseState.from_path(_RETRY[LOCKDOWN.path])
        return None

    if name == "ADVANCE":
        target = _ADVANCE.get(state.path)
        return PhaseState.from_path(target) if target else None
    if name == "SET_PHASE":
        if command.target not in PHASE_ORDER:
            return None
        return PhaseState.initial(command.target)
    if name == "UNLOCK_GATE":
        if state.path == "review.locked":
            return PhaseState("review", "unlocked")
        return None
    if name == "RETRY":
        target = _RETRY.get(state.path)
        return PhaseState.from_path(target) if target else None
    if name == "FAIL":
        if state.phase == "build" and state.substate != "failure":
            return PhaseState("build", "failure")
        return None
    if name == "RESET":
        return IDLE
    return None


def _new_run_label() -> str:
    return f"RUN-{uuid4().hex[:8]}"


@dataclass(slots=True)
class PhaseMachine:
    state: PhaseState = IDLE
    violation_policy: str | None = None
    error: str | None = None
    run_label: str = field(default_factory=_new_run_label)
    history: list[dict[str, Any]] = field(default_factory=list)
    history_limit: int = 50

    def dispatch(self, command: PhaseCommand) -> bool:
        target = transition(self.state, command)
        if target is None:
            logger.debug("Phase command %s ignored in %s", command.name, self.state.path)
            return False

        previous = self.state
        self.state = target
        if command.name == "SECURITY_VIOLATION":
            self.violation_policy = command.policy
            self.error = f"VIOLATION: {command.policy}"
            logger.warning("Security lockdown from %s (policy=%s)", previous.path, command.policy)
        elif command.name == "FAIL":
            self.error = command.message
        elif command.name == "RETRY":
            self.error = None
            self.violation_policy = None
        elif command.name == "RESET":
            self.error = None
            self.violation_policy = None
            self.run_label = _new_run_label()

        self.history.append(
            {
                "command": command.name,
                "from": previous.path,
                "to": target.path,
                "at": datetime.now(UTC).replace(microsecond=0).isoformat(),
            }
        )
        del self.history[: -self.history_limit]
        return True

    @property
    def locked_down(self) -> bool:
        return self.state == LOCKDOWN
