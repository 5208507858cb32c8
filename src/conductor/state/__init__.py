from conductor.state.autosave import SnapshotAutosaver
from conductor.state.ledger import ConductorStateError, RunLedger, RunSummary, SnapshotRecord

__all__ = [
    "ConductorStateError",
    "RunLedger",
    "RunSummary",
    "SnapshotAutosaver",
    "SnapshotRecord",
]
