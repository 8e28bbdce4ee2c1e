"""
Sync package: three-way diff, conflict resolution and the cycle driver.
"""

from family_ledger.sync.differ import SnapshotDiffer, classify, month_groups
from family_ledger.sync.resolver import ConflictResolver, collision_id
from family_ledger.sync.orchestrator import SyncOrchestrator

__all__ = [
    "ConflictResolver",
    "SnapshotDiffer",
    "SyncOrchestrator",
    "classify",
    "collision_id",
    "month_groups",
]
