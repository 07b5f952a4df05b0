"""
Refresh scheduling and lifecycle.
"""

from songbook_sync.sync.orchestrator import (
    RefreshOutcome,
    RefreshStatus,
    SyncOrchestrator,
    SyncState,
)

__all__ = [
    "RefreshOutcome",
    "RefreshStatus",
    "SyncOrchestrator",
    "SyncState",
]
