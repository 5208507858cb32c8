from __future__ import annotations

from abc import ABC, abstractmethod

from conductor.events import Intent


class RuntimeSendError(RuntimeError):
    """Raised when an intent cannot be delivered to the runtime."""

    def __init__(
        self,
        message: str,
        *,
        intent_type: str | None = None,
        correlation_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.intent_type = intent_type
        self.correlation_id = correlation_id


class RuntimeClient(ABC):
    @abstractmethod
    async def send(self, intent: Intent) -> None:
        """Deliver one intent to the execution runtime."""
