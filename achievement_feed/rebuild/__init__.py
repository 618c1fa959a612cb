"""Cache rebuild engine (planning, scanning, self refresh, progress)."""

from __future__ import annotations

from .engine import CacheRebuildEngine, quick_scan_options
from .options import (
    RebuildCancelled,
    RebuildPayload,
    RebuildStage,
    RebuildSummary,
    RebuildUpdate,
    RebuildUpdateKind,
    ScanOptions,
)
from .provider import AchievementDataProvider, LibraryIndex, StaticLibraryIndex
from .self_cache import SelfAchievementCacheManager, SelfFetchOutcome

__all__ = [
    "AchievementDataProvider",
    "CacheRebuildEngine",
    "LibraryIndex",
    "RebuildCancelled",
    "RebuildPayload",
    "RebuildStage",
    "RebuildSummary",
    "RebuildUpdate",
    "RebuildUpdateKind",
    "ScanOptions",
    "SelfAchievementCacheManager",
    "SelfFetchOutcome",
    "StaticLibraryIndex",
    "quick_scan_options",
]
