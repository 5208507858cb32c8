from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from conductor.state.ledger import ConductorStateError, RunLedger

logger = logging.getLogger(__name__)


class SnapshotAutosaver:
    """Coalesces snapshot writes behind a debounce window.

    The payload is built when the write happens, so the last change before
    the window closes wins. Failed writes are logged and dropped.
    """

    def __init__(
        self,
        ledger: RunLedger,
        *,
        debounce_seconds: float = 0.8,
        status: str = "active",
    ) -> None:
        self.ledger = ledger
        self.debounce_seconds = max(0.0, float(debounce_seconds))
        self.status = status
        self._handle: asyncio.TimerHandle | None = None
        self._pending: tuple[str, Callable[[], Any]] | None = None
        self.writes = 0

    @property
    def pending(self) -> bool:
        return self._pending is not None

    def schedule(self, run_id: str, payload_provider: Callable[[], Any]) -> None:
        if self._pending is not None and self._pending[0] != run_id:
            self.flush()
        self._cancel_handle()
        self._pending = (run_id, payload_provider)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._handle = loop.call_later(self.debounce_seconds, self.flush)

    def flush(self) -> bool:
        """Write the pending snapshot now. Returns ``True`` if one was written."""
        self._cancel_handle()
        if self._pending is None:
            return False
        run_id, payload_provider = self._pending
        self._pending = None
        return self._write(run_id, payload_provider)

    def cancel(self) -> None:
        self._cancel_handle()
        self._pending = None

    def _cancel_handle(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _write(self, run_id: str, payload_provider: Callable[[], Any]) -> bool:
        try:
            self.ledger.save_snapshot(run_id, self.status, payload_provider())
        except (ConductorStateError, OSError) as exc:
            logger.warning("Snapshot autosave for %s failed: %s", run_id, exc)
            return False
        self.writes += 1
        logger.debug("Saved snapshot for %s", run_id)
        return True
