"""
Synchronization core models: identity registry, delta state and change tracker.
"""

from .schema import ChangeAction, ChangeRecord, DeltaState, RegistryMapping, SyncStatus

__all__ = [
    "ChangeAction",
    "ChangeRecord",
    "DeltaState",
    "RegistryMapping",
    "SyncStatus",
]
