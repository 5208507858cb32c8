from __future__ import annotations

from conductor.memory import Role, RoleMemoryStore
from conductor.roles import RoleSpec

DEFAULT_CONTEXT_CHARS = 4000
DEFAULT_HISTORY = 4


def truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}\n... (truncated)"


def _latest(store: RoleMemoryStore, role: Role, max_chars: int) -> str:
    output = store.latest_agent_output(role)
    return truncate(output.content, max_chars) if output else ""


def build_system_prompt(
    spec: RoleSpec,
    store: RoleMemoryStore,
    *,
    project_info: str = "",
    max_chars: int = DEFAULT_CONTEXT_CHARS,
) -> str:
    errors = [
        f"[{role}] {truncate(output.content, 400)}" for role, output in store.recent_errors(3)
    ]
    return spec.render_prompt(
        {
            "projectInfo": project_info,
            "planContext": _latest(store, "PLAN", max_chars),
            "buildContext": _latest(store, "BUILD", max_chars),
            "reviewContext": _latest(store, "REVIEW", max_chars),
            "errorContext": "\n".join(errors),
        }
    )


def build_chat_messages(
    spec: RoleSpec,
    store: RoleMemoryStore,
    prompt: str,
    *,
    max_history: int = DEFAULT_HISTORY,
    project_info: str = "",
    max_chars: int = DEFAULT_CONTEXT_CHARS,
) -> list[dict[str, str]]:
    """System prompt, the role's last successful exchanges, then ``prompt``."""
    messages = [
        {
            "role": "system",
            "content": build_system_prompt(
                spec, store, project_info=project_info, max_chars=max_chars
            ),
        }
    ]
    history = [
        output
        for output in store[spec.role].outputs
        if output.kind == "agent" and output.content and output.status == "success"
    ]
    if max_history > 0:
        for output in history[-max_history:]:
            messages.append({"role": "user", "content": output.command})
            messages.append({"role": "assistant", "content": output.content})
    messages.append({"role": "user", "content": prompt})
    return messages
