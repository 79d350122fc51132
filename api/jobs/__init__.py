"""
Jobs package for audio feature regeneration.

Provides the scheduler that deduplicates regeneration requests, tracks
pending descriptors and keeps the regeneration history.
"""

from .manager import (
    HistoryAction,
    HistoryEntry,
    HistoryOutcome,
    RegenerationJob,
    RegenerationScheduler,
    RegenerationStatus,
    RegenerationTrigger,
)

__all__ = [
    "RegenerationScheduler",
    "RegenerationJob",
    "RegenerationStatus",
    "RegenerationTrigger",
    "HistoryEntry",
    "HistoryAction",
    "HistoryOutcome",
]
