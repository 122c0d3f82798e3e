"""Change log storage and reclamation for the sync layer.

Provides the SQLite-backed change and sync-node tables, and the background
reclaimer that trims changes every sync node has already consumed.
"""

from .change_store import (
    Change,
    ChangeStore,
    ChangeType,
    StoreClosedError,
    StoreScope,
    SyncNode,
)
from .reclaimer import ChangeReclaimer, ReclaimResult, compute_watermark, reclaim_old_changes

__all__ = [
    "Change",
    "ChangeStore",
    "ChangeType",
    "StoreClosedError",
    "StoreScope",
    "SyncNode",
    "ChangeReclaimer",
    "ReclaimResult",
    "compute_watermark",
    "reclaim_old_changes",
]
