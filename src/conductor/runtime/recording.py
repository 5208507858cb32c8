from __future__ import annotations

from typing import Any

from conductor.events import Intent
from conductor.runtime.base import RuntimeClient, RuntimeSendError


class RecordingClient(RuntimeClient):
    """Keeps sent intents in memory; used offline and in tests."""

    def __init__(self, *, fail_with: str | None = None) -> None:
        self.sent: list[Intent] = []
        self.fail_with = fail_with

    async def send(self, intent: Intent) -> None:
        if self.fail_with is not None:
            raise RuntimeSendError(
                self.fail_with,
                intent_type=intent.type,
                correlation_id=intent.header.correlation_id,
            )
        self.sent.append(intent)

    def wire_payloads(self) -> list[dict[str, Any]]:
        return [intent.to_dict() for intent in self.sent]
