from __future__ import annotations

from dataclasses import dataclass

from conductor.memory import Role


@dataclass(frozen=True, slots=True)
class Binding:
    role: Role
    output_id: str


class CorrelationIndex:
    """Maps a correlation id to the role and output record it belongs to.

    A correlation id is bound at most once; later binds are ignored.
    """

    def __init__(self) -> None:
        self._bindings: dict[str, Binding] = {}
        self._by_output: dict[str, str] = {}

    def bind(self, correlation_id: str, role: Role, output_id: str) -> bool:
        if correlation_id in self._bindings:
            return False
        self._bindings[correlation_id] = Binding(role=role, output_id=output_id)
        self._by_output.setdefault(output_id, correlation_id)
        return True

    def resolve(self, correlation_id: str) -> Binding | None:
        return self._bindings.get(correlation_id)

    def correlation_for(self, output_id: str) -> str | None:
        return self._by_output.get(output_id)

    def clear(self) -> None:
        self._bindings.clear()
        self._by_output.clear()

    def __contains__(self, correlation_id: object) -> bool:
        return correlation_id in self._bindings

    def __len__(self) -> int:
        return len(self._bindings)
