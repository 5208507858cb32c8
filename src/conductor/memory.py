from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Literal

Role = Literal["PLAN", "BUILD", "REVIEW", "DEPLOY"]
OutputKind = Literal["shell", "agent"]
OutputStatus = Literal["idle", "running", "awaiting", "success", "error"]
TaskStatus = Literal["pending", "active", "complete", "skipped", "failed"]

ROLE_ORDER: tuple[Role, ...] = ("PLAN", "BUILD", "REVIEW", "DEPLOY")
OUTPUT_KINDS = {"shell", "agent"}
OUTPUT_STATUSES = {"idle", "running", "awaiting", "success", "error"}
TERMINAL_STATUSES = {"success", "error"}
TASK_STATUSES = {"pending", "active", "complete", "skipped", "failed"}


def iso_from_millis(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, UTC).replace(microsecond=0).isoformat()


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class PendingAction:
    request_id: str
    command: str
    risk_level: str = "high"
    kind: str = "permission"


@dataclass(slots=True)
class OutputItem:
    id: str
    kind: OutputKind
    command: str
    role: Role
    content: str = ""
    status: OutputStatus = "idle"
    timestamp: str = field(default_factory=_utcnow_iso)
    pending_action: PendingAction | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def append(self, text: str) -> None:
        self.content = f"{self.content}{text}"


@dataclass(slots=True)
class TaskItem:
    id: str
    text: str
    status: TaskStatus
    phase: Role
    parent_id: str | None = None


@dataclass(slots=True)
class TokenCounters:
    input: int = 0
    output: int = 0
    total: int = 0

    def add(self, input_tokens: int, output_tokens: int) -> None:
        self.input += input_tokens
        self.output += output_tokens
        self.total += input_tokens + output_tokens


@dataclass(slots=True)
class RoleMemory:
    outputs: list[OutputItem] = field(default_factory=list)
    tasks: list[TaskItem] = field(default_factory=list)
    token_counters: TokenCounters = field(default_factory=TokenCounters)


class RoleMemoryStore:
    """Per-role output timelines, task lists and token counters.

    Outputs are also kept in an arena keyed by output id so that correlated
    updates never have to scan a role's timeline.
    """

    def __init__(self, memories: dict[Role, RoleMemory] | None = None) -> None:
        self._memories: dict[Role, RoleMemory] = {role: RoleMemory() for role in ROLE_ORDER}
        self._arena: dict[str, OutputItem] = {}
        if memories:
            for role, memory in memories.items():
                self._memories[role] = memory
                for output in memory.outputs:
                    self._arena[output.id] = output

    def __getitem__(self, role: Role) -> RoleMemory:
        return self._memories[role]

    def __iter__(self) -> Iterator[Role]:
        return iter(ROLE_ORDER)

    def items(self) -> list[tuple[Role, RoleMemory]]:
        return [(role, self._memories[role]) for role in ROLE_ORDER]

    def has_outputs(self) -> bool:
        return any(memory.outputs for memory in self._memories.values())

    def append_output(self, role: Role, item: OutputItem) -> OutputItem:
        if item.id in self._arena:
            raise ValueError(f"Output id already present: {item.id}")
        self._memories[role].outputs.append(item)
        self._arena[item.id] = item
        return item

    def find_output(self, output_id: str) -> OutputItem | None:
        return self._arena.get(output_id)

    def find_pending_action(self, request_id: str) -> OutputItem | None:
        for item in self._arena.values():
            if item.pending_action and item.pending_action.request_id == request_id:
                return item
        return None

    def set_tasks(self, role: Role, tasks: list[TaskItem]) -> None:
        self._memories[role].tasks = list(tasks)

    def latest_agent_output(self, role: Role) -> OutputItem | None:
        for output in reversed(self._memories[role].outputs):
            if output.kind == "agent" and output.content and output.status == "success":
                return output
        return None

    def recent_errors(self, max_items: int) -> list[tuple[Role, OutputItem]]:
        errors: list[tuple[Role, OutputItem]] = []
        for role in ROLE_ORDER:
            for output in reversed(self._memories[role].outputs):
                if output.status == "error" and output.content:
                    errors.append((role, output))
                    if len(errors) >= max_items:
                        return errors
        return errors
