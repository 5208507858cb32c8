"""Versioned snapshot of phase, role memory and per-role model selection.

``decode_snapshot`` validates every field and returns ``None`` on the first
mismatch; callers start from fresh state in that case and never try to
recover part of a document.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from conductor.memory import (
    OUTPUT_KINDS,
    OUTPUT_STATUSES,
    ROLE_ORDER,
    TASK_STATUSES,
    OutputItem,
    PendingAction,
    Role,
    RoleMemory,
    RoleMemoryStore,
    TaskItem,
    TokenCounters,
)
from conductor.phases import PhaseMachine, PhaseState

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


class _Invalid(ValueError):
    pass


@dataclass(slots=True)
class DecodedSnapshot:
    run_id: str
    phase: PhaseState
    memory: RoleMemoryStore
    selected_models: dict[Role, str] = field(default_factory=dict)
    current_role: Role | None = None
    violation_policy: str | None = None
    error: str | None = None

    def phase_machine(self) -> PhaseMachine:
        return PhaseMachine(
            state=self.phase, violation_policy=self.violation_policy, error=self.error
        )


def _encode_output(item: OutputItem) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": item.id,
        "kind": item.kind,
        "command": item.command,
        "content": item.content,
        "status": item.status,
        "timestamp": item.timestamp,
        "role": item.role,
    }
    if item.pending_action is not None:
        payload["pendingAction"] = {
            "kind": item.pending_action.kind,
            "requestId": item.pending_action.request_id,
            "command": item.pending_action.command,
            "riskLevel": item.pending_action.risk_level,
        }
    return payload


def _encode_task(task: TaskItem) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": task.id,
        "text": task.text,
        "status": task.status,
        "phase": task.phase,
    }
    if task.parent_id is not None:
        payload["parentId"] = task.parent_id
    return payload


def _encode_memory(memory: RoleMemory) -> dict[str, Any]:
    return {
        "outputs": [_encode_output(item) for item in memory.outputs],
        "tasks": [_encode_task(task) for task in memory.tasks],
        "tokenCounters": {
            "input": memory.token_counters.input,
            "output": memory.token_counters.output,
            "total": memory.token_counters.total,
        },
    }


def encode_snapshot(
    run_id: str,
    machine: PhaseMachine,
    store: RoleMemoryStore,
    selected_models: dict[Role, str],
    current_role: Role | None = None,
) -> dict[str, Any]:
    document: dict[str, Any] = {
        "version": SNAPSHOT_VERSION,
        "runId": run_id,
        "currentPhase": machine.state.path,
        "roleMemory": {role: _encode_memory(memory) for role, memory in store.items()},
        "selectedModels": {
            role: selected_models[role] for role in ROLE_ORDER if role in selected_models
        },
    }
    if machine.violation_policy is not None or machine.error is not None:
        document["phaseContext"] = {"policy": machine.violation_policy, "error": machine.error}
    if current_role is not None:
        document["currentRole"] = current_role
    return document


def _expect_dict(value: Any, where: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise _Invalid(f"{where}: expected object")
    return value


def _expect_list(value: Any, where: str) -> list[Any]:
    if not isinstance(value, list):
        raise _Invalid(f"{where}: expected array")
    return value


def _expect_str(value: Any, where: str) -> str:
    if not isinstance(value, str):
        raise _Invalid(f"{where}: expected string")
    return value


def _optional_str(value: Any, where: str) -> str | None:
    if value is None:
        return None
    return _expect_str(value, where)


def _expect_count(value: Any, where: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise _Invalid(f"{where}: expected non-negative integer")
    return value


def _expect_choice(value: Any, choices: set[str] | tuple[str, ...], where: str) -> str:
    if value not in choices:
        raise _Invalid(f"{where}: unexpected value {value!r}")
    return value


def _decode_action(raw: Any, where: str) -> PendingAction | None:
    if raw is None:
        return None
    data = _expect_dict(raw, where)
    return PendingAction(
        request_id=_expect_str(data.get("requestId"), f"{where}.requestId"),
        command=_expect_str(data.get("command"), f"{where}.command"),
        risk_level=_expect_str(data.get("riskLevel", "high"), f"{where}.riskLevel"),
        kind=_expect_choice(data.get("kind"), ("permission",), f"{where}.kind"),
    )


def _decode_output(raw: Any, where: str) -> OutputItem:
    data = _expect_dict(raw, where)
    return OutputItem(
        id=_expect_str(data.get("id"), f"{where}.id"),
        kind=_expect_choice(data.get("kind"), OUTPUT_KINDS, f"{where}.kind"),  # type: ignore[arg-type]
        command=_expect_str(data.get("command"), f"{where}.command"),
        content=_expect_str(data.get("content"), f"{where}.content"),
        status=_expect_choice(data.get("status"), OUTPUT_STATUSES, f"{where}.status"),  # type: ignore[arg-type]
        timestamp=_expect_str(data.get("timestamp"), f"{where}.timestamp"),
        role=_expect_choice(data.get("role"), ROLE_ORDER, f"{where}.role"),  # type: ignore[arg-type]
        pending_action=_decode_action(data.get("pendingAction"), f"{where}.pendingAction"),
    )


def _decode_task(raw: Any, where: str) -> TaskItem:
    data = _expect_dict(raw, where)
    return TaskItem(
        id=_expect_str(data.get("id"), f"{where}.id"),
        text=_expect_str(data.get("text"), f"{where}.text"),
        status=_expect_choice(data.get("status"), TASK_STATUSES, f"{where}.status"),  # type: ignore[arg-type]
        phase=_expect_choice(data.get("phase"), ROLE_ORDER, f"{where}.phase"),  # type: ignore[arg-type]
        parent_id=_optional_str(data.get("parentId"), f"{where}.parentId"),
    )


def _decode_memory(raw: Any, where: str) -> RoleMemory:
    data = _expect_dict(raw, where)
    outputs = [
        _decode_output(item, f"{where}.outputs[{i}]")
        for i, item in enumerate(_expect_list(data.get("outputs"), f"{where}.outputs"))
    ]
    tasks = [
        _decode_task(item, f"{where}.tasks[{i}]")
        for i, item in enumerate(_expect_list(data.get("tasks"), f"{where}.tasks"))
    ]
    counters = TokenCounters()
    raw_counters = data.get("tokenCounters")
    if raw_counters is not None:
        counter_data = _expect_dict(raw_counters, f"{where}.tokenCounters")
        counters = TokenCounters(
            input=_expect_count(counter_data.get("input"), f"{where}.tokenCounters.input"),
            output=_expect_count(counter_data.get("output"), f"{where}.tokenCounters.output"),
            total=_expect_count(counter_data.get("total"), f"{where}.tokenCounters.total"),
        )
    return RoleMemory(outputs=outputs, tasks=tasks, token_counters=counters)


def _decode(document: Any) -> DecodedSnapshot:
    data = _expect_dict(document, "snapshot")
    version = data.get("version")
    if isinstance(version, bool) or version != SNAPSHOT_VERSION:
        raise _Invalid(f"snapshot.version: unsupported {version!r}")
    run_id = _expect_str(data.get("runId"), "snapshot.runId")
    try:
        phase = PhaseState.from_path(_expect_str(data.get("currentPhase"), "snapshot.currentPhase"))
    except ValueError as exc:
        raise _Invalid(f"snapshot.currentPhase: {exc}") from exc

    raw_memory = _expect_dict(data.get("roleMemory"), "snapshot.roleMemory")
    memories: dict[Role, RoleMemory] = {}
    for role in ROLE_ORDER:
        if role not in raw_memory:
            raise _Invalid(f"snapshot.roleMemory: missing role {role}")
        memories[role] = _decode_memory(raw_memory[role], f"snapshot.roleMemory.{role}")

    output_ids: set[str] = set()
    for memory in memories.values():
        for output in memory.outputs:
            if output.id in output_ids:
                raise _Invalid(f"snapshot.roleMemory: duplicate output id {output.id}")
            output_ids.add(output.id)

    selected_models: dict[Role, str] = {}
    raw_models = data.get("selectedModels")
    if raw_models is not None:
        for role, model in _expect_dict(raw_models, "snapshot.selectedModels").items():
            _expect_choice(role, ROLE_ORDER, "snapshot.selectedModels")
            selected_models[role] = _expect_str(model, f"snapshot.selectedModels.{role}")

    current_role = data.get("currentRole")
    if current_role is not None:
        _expect_choice(current_role, ROLE_ORDER, "snapshot.currentRole")

    policy = error = None
    raw_context = data.get("phaseContext")
    if raw_context is not None:
        context = _expect_dict(raw_context, "snapshot.phaseContext")
        policy = _optional_str(context.get("policy"), "snapshot.phaseContext.policy")
        error = _optional_str(context.get("error"), "snapshot.phaseContext.error")

    return DecodedSnapshot(
        run_id=run_id,
        phase=phase,
        memory=RoleMemoryStore(memories),
        selected_models=selected_models,
        current_role=current_role,
        violation_policy=policy,
        error=error,
    )


def decode_snapshot(raw: Any) -> DecodedSnapshot | None:
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.debug("Snapshot is not valid JSON: %s", exc)
            return None
    try:
        return _decode(raw)
    except _Invalid as exc:
        logger.debug("Snapshot rejected: %s", exc)
        return None
