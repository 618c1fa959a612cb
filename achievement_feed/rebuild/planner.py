"""Per-friend scan planning.

Three modes, checked in order:

1. Explicit apps: the same app subset for every selected friend.
2. Quick scan: the K most recently active friends and, for each, their N most
   recently active games, taken from the cached feed.
3. Default: games both libraries share with non-zero friend playtime, widened
   by allow-unowned friends and by forced (family-sharing) apps.

Ownership lookups that fail never drop a friend; the plan is marked
``ownership_unavailable`` and scanning proceeds without the minutes filter.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Set

from ..data.models import FeedEntry, Friend, FriendPlaytimeSnapshot, LibraryGame
from .options import CancelToken, ScanOptions, check_cancelled
from .provider import AchievementDataProvider, filter_minutes_to_library, filter_to_nonzero_minutes

LOGGER = logging.getLogger(__name__)


@dataclass
class FriendPlan:
    friend: Friend
    apps: List[int] = field(default_factory=list)
    owned: Set[int] = field(default_factory=set)
    forced: Set[int] = field(default_factory=set)
    allow_unowned: bool = False
    explicit_apps: bool = False
    candidate_games: int = 0
    ownership_unavailable: bool = False

    @property
    def has_ownership_signal(self) -> bool:
        return bool(self.owned)

    def unowned_scan_allowed(self, app_id: int) -> bool:
        return self.explicit_apps or self.allow_unowned or app_id in self.forced


@dataclass
class ScanPlan:
    friend_plans: List[FriendPlan] = field(default_factory=list)
    explicit_app_ids: List[int] = field(default_factory=list)
    quick_scan: bool = False
    candidate_games_total: int = 0
    include_unowned_candidates_total: int = 0
    friends_ownership_unavailable: int = 0
    # Union of apps scheduled for friends; bounds the self scan in quick mode.
    affected_app_ids: Set[int] = field(default_factory=set)
    # Minutes maps successfully retrieved per friend (for the playtime baseline).
    observed_minutes: FriendPlaytimeSnapshot = field(default_factory=dict)

    @property
    def friend_app_count(self) -> int:
        return sum(len(p.apps) for p in self.friend_plans)


def build_forced_apps_by_friend(
    family_results: Mapping[str, Iterable[str]], library: Mapping[int, LibraryGame]
) -> Dict[str, Set[int]]:
    """Invert ``{local game id: [friend ids]}`` into ``{friend id: {app ids}}``."""

    app_by_game_id = {game.game_id: app_id for app_id, game in library.items()}
    result: Dict[str, Set[int]] = {}
    for game_id, friend_ids in (family_results or {}).items():
        app_id = app_by_game_id.get(game_id)
        if not app_id:
            continue
        for friend_id in friend_ids or []:
            if (friend_id or "").strip():
                result.setdefault(friend_id, set()).add(app_id)
    return result


def select_recent_pairs(
    entries: Iterable[FeedEntry],
    friend_ids: Set[str],
    library: Mapping[int, LibraryGame],
    friends_count: int,
    games_per_friend: int,
) -> Dict[str, List[int]]:
    """Pick up to ``friends_count`` friends and ``games_per_friend`` apps each, newest first.

    The returned dict preserves recency order of friends.
    """

    selected: Dict[str, List[int]] = {}
    if friends_count <= 0 or games_per_friend <= 0 or not friend_ids:
        return selected

    ordered = sorted(
        (e for e in entries if e is not None and e.friend_id and e.app_id > 0),
        key=lambda e: e.friend_unlock_time_utc,
        reverse=True,
    )
    for entry in ordered:
        if entry.friend_id not in friend_ids or entry.app_id not in library:
            continue
        apps = selected.get(entry.friend_id)
        if apps is None:
            if len(selected) >= friends_count:
                continue
            apps = selected[entry.friend_id] = []
        if len(apps) < games_per_friend and entry.app_id not in apps:
            apps.append(entry.app_id)
    return selected


def playtime_delta_apps(
    current: Mapping[int, int], previous: Optional[Mapping[int, int]]
) -> Set[int]:
    """Apps whose minutes grew since the previous snapshot (any minutes if none)."""

    if not previous:
        return {app_id for app_id, mins in current.items() if mins > 0}
    return {app_id for app_id, mins in current.items() if mins > previous.get(app_id, 0)}


class ScanPlanner:
    """Builds one :class:`FriendPlan` per included friend."""

    def __init__(self, provider: AchievementDataProvider, library: Mapping[int, LibraryGame]) -> None:
        self._provider = provider
        self._library = library

    async def _friend_minutes(
        self, friend: Friend, app_filter: Set[int], cancel: Optional[CancelToken]
    ) -> Optional[Dict[int, int]]:
        try:
            minutes = await self._provider.get_owned_app_playtimes(friend.friend_id, set(app_filter), cancel=cancel)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.debug("Friend owned apps lookup failed friend=%s: %s", friend.friend_id, exc, exc_info=True)
            return None
        LOGGER.debug("Friend owned apps friend=%s count=%d", friend.friend_id, len(minutes or {}))
        return minutes

    async def build_plans(
        self,
        options: ScanOptions,
        friends: List[Friend],
        existing_entries: List[FeedEntry],
        explicit_app_ids: List[int],
        forced_apps_by_friend: Optional[Mapping[str, Set[int]]] = None,
        previous_playtime: Optional[FriendPlaytimeSnapshot] = None,
        cancel: Optional[CancelToken] = None,
    ) -> ScanPlan:
        plan = ScanPlan(
            explicit_app_ids=list(explicit_app_ids),
            quick_scan=bool(options.quick_scan_recent_pairs and not explicit_app_ids),
        )
        if not options.include_friends:
            return plan

        if explicit_app_ids:
            await self._plan_explicit(plan, friends, cancel)
        elif plan.quick_scan:
            await self._plan_quick(plan, options, friends, existing_entries, cancel)
        else:
            await self._plan_default(
                plan, options, friends, forced_apps_by_friend or {}, previous_playtime or {}, cancel
            )

        for friend_plan in plan.friend_plans:
            plan.affected_app_ids.update(friend_plan.apps)

        LOGGER.info(
            "Scan plan: friends=%d pairs=%d candidates=%d ownershipUnavailable=%d quick=%s explicit=%d",
            len(plan.friend_plans),
            plan.friend_app_count,
            plan.candidate_games_total,
            plan.friends_ownership_unavailable,
            plan.quick_scan,
            len(plan.explicit_app_ids),
        )
        return plan

    async def _apply_subset_minutes(
        self, plan: ScanPlan, friend_plan: FriendPlan, cancel: Optional[CancelToken]
    ) -> None:
        minutes = await self._friend_minutes(friend_plan.friend, set(friend_plan.apps), cancel)
        friend_plan.owned = set(minutes.keys()) if minutes is not None else set()
        if minutes:
            friend_plan.apps = filter_to_nonzero_minutes(friend_plan.apps, minutes)
            plan.observed_minutes[friend_plan.friend.friend_id] = dict(minutes)
        else:
            friend_plan.ownership_unavailable = True
            plan.friends_ownership_unavailable += 1
        friend_plan.candidate_games = len(friend_plan.apps)
        plan.candidate_games_total += friend_plan.candidate_games

    async def _plan_explicit(
        self, plan: ScanPlan, friends: List[Friend], cancel: Optional[CancelToken]
    ) -> None:
        for friend in friends:
            check_cancelled(cancel)
            friend_plan = FriendPlan(
                friend=friend,
                apps=[a for a in plan.explicit_app_ids if a in self._library],
                explicit_apps=True,
            )
            await self._apply_subset_minutes(plan, friend_plan, cancel)
            plan.friend_plans.append(friend_plan)

    async def _plan_quick(
        self,
        plan: ScanPlan,
        options: ScanOptions,
        friends: List[Friend],
        existing_entries: List[FeedEntry],
        cancel: Optional[CancelToken],
    ) -> None:
        friend_by_id = {f.friend_id: f for f in friends}
        recent = select_recent_pairs(
            existing_entries,
            set(friend_by_id),
            self._library,
            options.quick_scan_recent_friends_count,
            options.quick_scan_recent_games_per_friend,
        )
        for friend_id, apps in recent.items():
            check_cancelled(cancel)
            if not apps:
                continue
            # Bounded subset: no forced or unowned expansion.
            friend_plan = FriendPlan(friend=friend_by_id[friend_id], apps=list(apps), explicit_apps=True)
            await self._apply_subset_minutes(plan, friend_plan, cancel)
            plan.friend_plans.append(friend_plan)

    async def _plan_default(
        self,
        plan: ScanPlan,
        options: ScanOptions,
        friends: List[Friend],
        forced_apps_by_friend: Mapping[str, Set[int]],
        previous_playtime: FriendPlaytimeSnapshot,
        cancel: Optional[CancelToken],
    ) -> None:
        library_ids = set(self._library)
        for friend in friends:
            check_cancelled(cancel)
            friend_plan = FriendPlan(
                friend=friend,
                forced=set(forced_apps_by_friend.get(friend.friend_id, set())),
                allow_unowned=friend.friend_id in options.include_unowned_friend_ids,
            )
            apps: Set[int] = set()

            if options.friends_all_library_apps:
                apps.update(a for a in library_ids if a > 0)
            else:
                minutes = await self._friend_minutes(friend, library_ids, cancel)
                if not minutes:
                    friend_plan.ownership_unavailable = True
                    plan.friends_ownership_unavailable += 1
                else:
                    friend_plan.owned = set(minutes.keys())
                    plan.observed_minutes[friend.friend_id] = dict(minutes)
                    in_library = filter_minutes_to_library(minutes, library_ids)
                    if options.playtime_delta_only:
                        eligible = playtime_delta_apps(in_library, previous_playtime.get(friend.friend_id))
                    else:
                        eligible = {a for a, mins in in_library.items() if mins > 0}
                    apps.update(a for a in eligible if a > 0)

            friend_plan.candidate_games = len(apps)

            if friend_plan.allow_unowned:
                apps.update(a for a in library_ids if a not in friend_plan.owned)
                plan.include_unowned_candidates_total += len(library_ids)

            apps.update(a for a in friend_plan.forced if a in library_ids)

            friend_plan.apps = sorted(a for a in apps if a > 0 and a in library_ids)
            plan.candidate_games_total += friend_plan.candidate_games
            plan.friend_plans.append(friend_plan)


def plan_self_apps(
    options: ScanOptions,
    scan_plan: ScanPlan,
    library: Mapping[int, LibraryGame],
    self_minutes: Optional[Mapping[int, int]],
) -> List[int]:
    """Apps to refresh for the local user, in scan order.

    ``self_minutes`` should already be restricted to the library. Zero-minute
    apps are dropped whenever minutes are available, except in
    ``self_all_library_apps`` mode.
    """

    if not options.include_self:
        return []

    if scan_plan.quick_scan:
        base = sorted(a for a in scan_plan.affected_app_ids if a > 0 and a in library)
    elif scan_plan.explicit_app_ids:
        base = [a for a in scan_plan.explicit_app_ids if a > 0 and a in library]
    elif options.self_all_library_apps:
        return sorted(a for a in library if a > 0)
    else:
        base = sorted(a for a in library if a > 0)

    if not base:
        return []
    return filter_to_nonzero_minutes(base, self_minutes)
