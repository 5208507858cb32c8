from conductor.runtime.base import RuntimeClient, RuntimeSendError
from conductor.runtime.recording import RecordingClient

__all__ = ["RecordingClient", "RuntimeClient", "RuntimeSendError"]
