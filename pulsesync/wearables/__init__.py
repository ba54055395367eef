"""Wearable data ingestion.

Subpackages:
    adapters/ — Provider API adapters (Garmin, Fitbit)
    sync/     — Job handlers, daily fan-out, storage and upsert helpers

Core modules:
    base — WearableAdapter ABC and canonical data models
"""

from pulsesync.wearables.base import (
    SUPPORTED_PROVIDERS,
    NormalizedActivity,
    NormalizedDaily,
    NormalizedSleep,
    SyncSnapshot,
    WearableAdapter,
)

__all__ = [
    "SUPPORTED_PROVIDERS",
    "NormalizedActivity",
    "NormalizedDaily",
    "NormalizedSleep",
    "SyncSnapshot",
    "WearableAdapter",
]
