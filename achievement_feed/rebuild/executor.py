"""Sequential friend scan: fetch rows per (friend, app) and keep only what is new."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from ..data.cache_store import sort_feed_entries
from ..data.models import AchievementRow, FeedEntry, Friend, LibraryGame, as_utc, build_entry_id
from .options import CancelToken, RebuildStage, RebuildUpdate, RebuildUpdateKind, ScanOptions, check_cancelled
from .planner import FriendPlan, ScanPlan
from .progress import ProgressReporter
from .provider import AchievementDataProvider

LOGGER = logging.getLogger(__name__)


@dataclass
class RowAnalysis:
    saw_any_unlocked: bool = False
    new_candidates: List[Tuple[AchievementRow, datetime]] = field(default_factory=list)


@dataclass
class FriendScanResult:
    new_entries: List[FeedEntry] = field(default_factory=list)
    # local game id -> friends that unlocked achievements without owning the game
    discoveries: Dict[str, Set[str]] = field(default_factory=dict)
    apps_with_friend_unlock: Set[int] = field(default_factory=set)
    any_rows_fetched: bool = False
    pairs_scanned: int = 0
    provider_failures: int = 0
    rows_seen: int = 0


def analyze_rows(
    friend_id: str,
    app_id: int,
    rows: Optional[Iterable[AchievementRow]],
    baseline: Optional[datetime],
    existing_ids: Set[str],
) -> RowAnalysis:
    """Split fetched rows into "unlocked at all" and "new since the baseline".

    Only the last cached unlock for this friend+app gates the rows, never the
    cache write time, so late-arriving unlocks with older timestamps still
    backfill when no baseline exists for the pair.
    """

    analysis = RowAnalysis()
    for row in rows or []:
        if row is None or not (row.key or "").strip():
            continue
        unlock = as_utc(row.unlock_time_utc)
        if unlock is None:
            continue
        analysis.saw_any_unlocked = True
        if baseline is not None and unlock <= baseline:
            continue
        if build_entry_id(friend_id, app_id, row.key, unlock) in existing_ids:
            continue
        analysis.new_candidates.append((row, unlock))
    return analysis


def discovery_allowed(plan: FriendPlan, app_id: int, options: ScanOptions, saw_unlock: bool) -> bool:
    """Whether a friend's unlocks in ``app_id`` imply they play it via sharing."""

    if not plan.has_ownership_signal or not saw_unlock:
        return False
    if app_id in plan.owned:
        return False
    unowned_allowed = plan.unowned_scan_allowed(app_id)
    if plan.explicit_apps and not options.explicit_apps_allow_unowned_discovery:
        return False
    return unowned_allowed


class ScanExecutor:
    """Runs every friend plan in order, emitting progress as it goes."""

    def __init__(self, provider: AchievementDataProvider, library: Mapping[int, LibraryGame]) -> None:
        self._provider = provider
        self._library = library

    async def _fetch_rows(
        self, friend: Friend, app_id: int, result: FriendScanResult, cancel: Optional[CancelToken]
    ) -> Optional[List[AchievementRow]]:
        try:
            rows = await self._provider.get_achievements(friend.friend_id, app_id, cancel=cancel)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            result.provider_failures += 1
            LOGGER.debug("Friend achievement fetch failed friend=%s appId=%s: %s", friend.friend_id, app_id, exc, exc_info=True)
            return None
        LOGGER.debug("Fetched friend rows friend=%s appId=%s rows=%d", friend.friend_id, app_id, len(rows or []))
        return rows

    async def run(
        self,
        scan_plan: ScanPlan,
        options: ScanOptions,
        baseline: Mapping[str, Mapping[int, datetime]],
        existing_ids: Set[str],
        reporter: ProgressReporter,
        cancel: Optional[CancelToken] = None,
    ) -> FriendScanResult:
        result = FriendScanResult()
        collected: Dict[str, FeedEntry] = {}
        plans = scan_plan.friend_plans
        friend_count = len(plans)

        for friend_index, plan in enumerate(plans, start=1):
            check_cancelled(cancel)
            friend = plan.friend
            total_apps = len(plan.apps)
            added = 0
            friend_baseline = baseline.get(friend.friend_id) or {}

            reporter.emit(
                RebuildUpdate(
                    kind=RebuildUpdateKind.FRIEND_STARTED,
                    stage=RebuildStage.PROCESSING_FRIENDS,
                    friend_id=friend.friend_id,
                    friend_display_name=friend.display_name,
                    friend_index=friend_index,
                    friend_count=friend_count,
                    candidate_games=plan.candidate_games,
                    friend_app_count=total_apps,
                    friend_ownership_unavailable=plan.ownership_unavailable,
                ),
                force=True,
            )

            for i, app_id in enumerate(plan.apps):
                check_cancelled(cancel)
                reporter.step()
                game = self._library.get(app_id)
                if game is None:
                    continue

                reporter.emit(
                    RebuildUpdate(
                        kind=RebuildUpdateKind.FRIEND_PROGRESS,
                        stage=RebuildStage.PROCESSING_FRIENDS,
                        friend_id=friend.friend_id,
                        friend_display_name=friend.display_name,
                        friend_index=friend_index,
                        friend_count=friend_count,
                        friend_app_index=i + 1,
                        friend_app_count=total_apps,
                        current_app_id=app_id,
                        current_game_name=game.name,
                    ),
                    index=i,
                    total=total_apps,
                )

                result.pairs_scanned += 1
                rows = await self._fetch_rows(friend, app_id, result, cancel)
                if not rows:
                    continue

                result.any_rows_fetched = True
                result.rows_seen += len(rows)
                analysis = analyze_rows(
                    friend.friend_id, app_id, rows, friend_baseline.get(app_id), existing_ids
                )
                if analysis.saw_any_unlocked:
                    result.apps_with_friend_unlock.add(app_id)

                for row, unlock in analysis.new_candidates:
                    entry = FeedEntry.create(friend, game, row, unlock)
                    if entry.id not in collected:
                        collected[entry.id] = entry
                        added += 1

                if discovery_allowed(plan, app_id, options, analysis.saw_any_unlocked):
                    result.discoveries.setdefault(game.game_id, set()).add(friend.friend_id)
                    LOGGER.debug("Family sharing discovery friend=%s game=%s", friend.friend_id, game.game_id)

            reporter.emit(
                RebuildUpdate(
                    kind=RebuildUpdateKind.FRIEND_COMPLETED,
                    stage=RebuildStage.PROCESSING_FRIENDS,
                    friend_id=friend.friend_id,
                    friend_display_name=friend.display_name,
                    friend_index=friend_index,
                    friend_count=friend_count,
                    candidate_games=plan.candidate_games,
                    friend_new_entries=added,
                    friend_app_count=total_apps,
                    friend_ownership_unavailable=plan.ownership_unavailable,
                    total_new_entries_so_far=len(collected),
                    total_candidate_games_so_far=scan_plan.candidate_games_total,
                    total_include_unowned_candidates_so_far=scan_plan.include_unowned_candidates_total,
                ),
                force=True,
            )
            LOGGER.info("Friend %s scanned: apps=%d new=%d", friend.friend_id, total_apps, added)

        result.new_entries = sort_feed_entries(collected.values())
        return result
