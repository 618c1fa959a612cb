"""Scan options, progress updates and result types for cache rebuilds."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, FrozenSet, Iterable, List, Optional, Protocol

from ..data.models import FeedEntry


class RebuildCancelled(asyncio.CancelledError):
    """Raised when the caller's cancel token fires mid-rebuild."""


class CancelToken(Protocol):
    def is_set(self) -> bool: ...


def check_cancelled(cancel: Optional[CancelToken]) -> None:
    if cancel is not None and cancel.is_set():
        raise RebuildCancelled()


def _frozen_ids(values: Optional[Iterable]) -> FrozenSet:
    if not values:
        return frozenset()
    return frozenset(values)


@dataclass
class ScanOptions:
    """What a single rebuild should cover.

    Explicit app/game ids take precedence over quick scan, which takes
    precedence over the default shared-library scan. Quick scan never expands
    via ``include_unowned_friend_ids`` or forced family-sharing apps; it is a
    bounded scan of at most ``quick_scan_recent_friends_count *
    quick_scan_recent_games_per_friend`` pairs.
    """

    include_self: bool = True
    include_friends: bool = True
    app_ids: Optional[Iterable[int]] = None
    game_ids: Optional[Iterable[str]] = None
    friend_ids: Optional[Iterable[str]] = None
    include_unowned_friend_ids: Optional[Iterable[str]] = None
    friends_all_library_apps: bool = False
    self_all_library_apps: bool = False
    explicit_apps_allow_unowned_discovery: bool = True
    quick_scan_recent_pairs: bool = False
    quick_scan_recent_friends_count: int = 5
    quick_scan_recent_games_per_friend: int = 5
    playtime_delta_only: bool = False

    def __post_init__(self) -> None:
        self.app_ids = [int(a) for a in self.app_ids or []]
        self.game_ids = [str(g).strip() for g in self.game_ids or [] if str(g or "").strip()]
        self.friend_ids = _frozen_ids(str(f).strip() for f in self.friend_ids or [] if str(f or "").strip())
        self.include_unowned_friend_ids = _frozen_ids(
            str(f).strip() for f in self.include_unowned_friend_ids or [] if str(f or "").strip()
        )
        self.quick_scan_recent_friends_count = max(0, int(self.quick_scan_recent_friends_count))
        self.quick_scan_recent_games_per_friend = max(0, int(self.quick_scan_recent_games_per_friend))


class RebuildUpdateKind(Enum):
    STAGE = "stage"
    SELF_STARTED = "self_started"
    SELF_PROGRESS = "self_progress"
    SELF_COMPLETED = "self_completed"
    FRIEND_STARTED = "friend_started"
    FRIEND_PROGRESS = "friend_progress"
    FRIEND_COMPLETED = "friend_completed"
    COMPLETED = "completed"


class RebuildStage(Enum):
    NOT_CONFIGURED = "not_configured"
    LOADING_OWNED_GAMES = "loading_owned_games"
    LOADING_FRIENDS = "loading_friends"
    LOADING_EXISTING_CACHE = "loading_existing_cache"
    LOADING_SELF_OWNED_APPS = "loading_self_owned_apps"
    REFRESHING_SELF_ACHIEVEMENTS = "refreshing_self_achievements"
    PROCESSING_FRIENDS = "processing_friends"
    COMPLETED = "completed"


@dataclass
class RebuildUpdate:
    kind: RebuildUpdateKind
    stage: RebuildStage

    friend_id: Optional[str] = None
    friend_display_name: Optional[str] = None
    friend_index: int = 0
    friend_count: int = 0

    candidate_games: int = 0
    friend_new_entries: int = 0
    friend_app_index: int = 0
    friend_app_count: int = 0
    friend_ownership_unavailable: bool = False

    self_app_index: int = 0
    self_app_count: int = 0

    current_app_id: int = 0
    current_game_name: Optional[str] = None

    total_new_entries_so_far: int = 0
    total_candidate_games_so_far: int = 0
    total_include_unowned_candidates_so_far: int = 0

    overall_index: int = 0
    overall_count: int = 0


UpdateCallback = Callable[[RebuildUpdate], None]


@dataclass
class RebuildSummary:
    new_entries_count: int = 0
    candidate_games_total: int = 0
    include_unowned_candidates_total: int = 0
    no_candidates_detected: bool = False
    friends_ownership_unavailable: int = 0
    pairs_scanned: int = 0
    provider_failures: int = 0
    discoveries_recorded: int = 0
    persistence_errors: int = 0


@dataclass
class RebuildPayload:
    summary: RebuildSummary = field(default_factory=RebuildSummary)
    new_entries: List[FeedEntry] = field(default_factory=list)
