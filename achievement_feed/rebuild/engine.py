"""Cache rebuild orchestration: plan, scan friends, refresh self data, persist."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, List, Optional, Set

from ..config import ScanDefaults
from ..data.cache_store import CacheStore
from ..data.models import (
    Friend,
    FriendPlaytimeSnapshot,
    LibraryGame,
    SelfAchievementGameData,
    SteamIdentity,
    build_friend_app_baseline,
)
from .executor import FriendScanResult, ScanExecutor
from .options import (
    CancelToken,
    RebuildPayload,
    RebuildStage,
    RebuildSummary,
    RebuildUpdate,
    RebuildUpdateKind,
    ScanOptions,
    UpdateCallback,
    check_cancelled,
)
from .planner import ScanPlan, ScanPlanner, build_forced_apps_by_friend, plan_self_apps
from .progress import ProgressReporter, deliver_update
from .provider import (
    AchievementDataProvider,
    LibraryIndex,
    filter_friends,
    filter_minutes_to_library,
    resolve_explicit_app_ids,
)
from .self_cache import SelfAchievementCacheManager, SelfFetchOutcome

LOGGER = logging.getLogger(__name__)


def quick_scan_options(defaults: ScanDefaults, **overrides) -> ScanOptions:
    """Options for a quick incremental scan sized from configuration."""

    params = dict(
        quick_scan_recent_pairs=True,
        quick_scan_recent_friends_count=defaults.quick_scan_recent_friends,
        quick_scan_recent_games_per_friend=defaults.quick_scan_recent_games,
    )
    params.update(overrides)
    return ScanOptions(**params)


def merge_playtime_snapshot(
    previous: FriendPlaytimeSnapshot, observed: FriendPlaytimeSnapshot
) -> FriendPlaytimeSnapshot:
    """Overlay freshly observed minutes on the previous baseline.

    Friends (and apps) that were not observed this round keep their old values.
    """

    merged: FriendPlaytimeSnapshot = {fid: dict(per_app) for fid, per_app in (previous or {}).items()}
    for friend_id, minutes in (observed or {}).items():
        if not minutes:
            continue
        merged.setdefault(friend_id, {}).update({int(a): int(m) for a, m in minutes.items()})
    return merged


class CacheRebuildEngine:
    """Runs incremental rebuilds of the friend achievement feed."""

    def __init__(
        self,
        provider: AchievementDataProvider,
        library: LibraryIndex,
        store: CacheStore,
        identity: SteamIdentity,
        scan_defaults: Optional[ScanDefaults] = None,
        clock=time.monotonic,
    ) -> None:
        self._provider = provider
        self._library = library
        self._store = store
        self._identity = identity
        self._defaults = scan_defaults or ScanDefaults()
        self._clock = clock
        self.self_cache = SelfAchievementCacheManager(provider, store, identity)

    async def ensure_self_achievement_data(
        self,
        game_id: str,
        app_id: int,
        cancel: Optional[CancelToken] = None,
        force_refresh: bool = False,
    ) -> SelfAchievementGameData:
        return await self.self_cache.ensure_self_achievement_data(
            game_id, app_id, cancel=cancel, force_refresh=force_refresh
        )

    # ------------------------------------------------------------------
    # Loading helpers
    # ------------------------------------------------------------------
    async def _load_friends(
        self, options: ScanOptions, summary: RebuildSummary, cancel: Optional[CancelToken]
    ) -> List[Friend]:
        if not options.include_friends:
            return []
        try:
            friends = await self._provider.get_friends(self._identity, cancel=cancel)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            summary.provider_failures += 1
            LOGGER.debug("Friend list fetch failed: %s", exc, exc_info=True)
            friends = None
        return filter_friends(friends, options.friend_ids)

    async def _load_self_minutes(
        self, library: Dict[int, LibraryGame], cancel: Optional[CancelToken]
    ) -> Dict[int, int]:
        try:
            minutes = await self._provider.get_owned_app_playtimes(self._identity.user_id, None, cancel=cancel)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.debug("Self owned apps lookup failed: %s", exc, exc_info=True)
            minutes = None
        LOGGER.debug("Self owned apps count=%d", len(minutes or {}))
        return filter_minutes_to_library(minutes, set(library))

    # ------------------------------------------------------------------
    # Scan
    # ------------------------------------------------------------------
    async def scan(
        self,
        options: Optional[ScanOptions] = None,
        on_update: Optional[UpdateCallback] = None,
        cancel: Optional[CancelToken] = None,
    ) -> RebuildPayload:
        options = options or ScanOptions()
        self._store.ensure_disk_cache_or_clear_memory()
        payload = RebuildPayload()

        def stage(value: RebuildStage) -> None:
            deliver_update(on_update, RebuildUpdate(kind=RebuildUpdateKind.STAGE, stage=value))

        if not self._identity.is_configured:
            LOGGER.warning("Rebuild skipped: account credentials are not configured")
            stage(RebuildStage.NOT_CONFIGURED)
            return payload

        started = time.monotonic()
        summary = payload.summary

        stage(RebuildStage.LOADING_OWNED_GAMES)
        library = self._library.games()

        stage(RebuildStage.LOADING_FRIENDS)
        friends = await self._load_friends(options, summary, cancel)

        stage(RebuildStage.LOADING_EXISTING_CACHE)
        existing = self._store.get_cached_friend_entries()
        existing_ids: Set[str] = {e.id for e in existing if e.id}
        baseline = build_friend_app_baseline(existing)
        previous_playtime = self._store.load_friend_playtime_cache()

        explicit_app_ids = resolve_explicit_app_ids(options.app_ids, options.game_ids, library)
        forced_apps = None
        if options.include_friends and not explicit_app_ids and not options.quick_scan_recent_pairs:
            forced_apps = build_forced_apps_by_friend(self._store.load_all_family_sharing_scan_results(), library)

        check_cancelled(cancel)
        planner = ScanPlanner(self._provider, library)
        scan_plan = await planner.build_plans(
            options,
            friends,
            existing,
            explicit_app_ids,
            forced_apps_by_friend=forced_apps,
            previous_playtime=previous_playtime,
            cancel=cancel,
        )

        self_apps: List[int] = []
        if options.include_self:
            stage(RebuildStage.LOADING_SELF_OWNED_APPS)
            self_minutes = await self._load_self_minutes(library, cancel)
            self_apps = plan_self_apps(options, scan_plan, library, self_minutes)

        overall_count = scan_plan.friend_app_count + len(self_apps)
        reporter = ProgressReporter(
            on_update,
            overall_count,
            emit_every=self._defaults.progress_emit_every,
            min_interval_ms=self._defaults.progress_min_interval_ms,
            clock=self._clock,
        )

        reporter.emit_stage(RebuildStage.PROCESSING_FRIENDS)
        executor = ScanExecutor(self._provider, library)
        friend_result = await executor.run(scan_plan, options, baseline, existing_ids, reporter, cancel=cancel)

        if options.include_self:
            # Without any friend rows there is no evidence to filter on.
            apply_filter = bool(scan_plan.friend_plans) and friend_result.any_rows_fetched
            reporter.emit_stage(RebuildStage.REFRESHING_SELF_ACHIEVEMENTS)
            await self._refresh_self(self_apps, library, friend_result, apply_filter, reporter, cancel)

        check_cancelled(cancel)
        self._persist(scan_plan, friend_result, previous_playtime, summary)

        payload.new_entries = friend_result.new_entries
        summary.new_entries_count = len(friend_result.new_entries)
        summary.candidate_games_total = scan_plan.candidate_games_total
        summary.include_unowned_candidates_total = scan_plan.include_unowned_candidates_total
        summary.no_candidates_detected = overall_count == 0
        summary.friends_ownership_unavailable = scan_plan.friends_ownership_unavailable
        summary.pairs_scanned = friend_result.pairs_scanned
        summary.provider_failures += friend_result.provider_failures

        reporter.emit(
            RebuildUpdate(
                kind=RebuildUpdateKind.COMPLETED,
                stage=RebuildStage.COMPLETED,
                total_new_entries_so_far=summary.new_entries_count,
                total_candidate_games_so_far=summary.candidate_games_total,
                total_include_unowned_candidates_so_far=summary.include_unowned_candidates_total,
            ),
            force=True,
        )

        LOGGER.info(
            "Scan finished. new=%d candidates=%d pairs=%d failures=%d elapsedMs=%d",
            summary.new_entries_count,
            summary.candidate_games_total,
            summary.pairs_scanned,
            summary.provider_failures,
            int((time.monotonic() - started) * 1000),
        )
        return payload

    async def _refresh_self(
        self,
        self_apps: List[int],
        library: Dict[int, LibraryGame],
        friend_result: FriendScanResult,
        apply_filter: bool,
        reporter: ProgressReporter,
        cancel: Optional[CancelToken],
    ) -> None:
        total = len(self_apps)
        counts: Dict[str, int] = {outcome.value: 0 for outcome in SelfFetchOutcome}
        skipped = 0

        reporter.emit(
            RebuildUpdate(
                kind=RebuildUpdateKind.SELF_STARTED,
                stage=RebuildStage.REFRESHING_SELF_ACHIEVEMENTS,
                self_app_count=total,
            ),
            force=True,
        )

        for i, app_id in enumerate(self_apps):
            check_cancelled(cancel)
            game = library.get(app_id)
            reporter.step()
            reporter.emit(
                RebuildUpdate(
                    kind=RebuildUpdateKind.SELF_PROGRESS,
                    stage=RebuildStage.REFRESHING_SELF_ACHIEVEMENTS,
                    self_app_index=i + 1,
                    self_app_count=total,
                    current_app_id=app_id,
                    current_game_name=game.name if game else None,
                ),
                index=i,
                total=total,
            )

            if game is None or not (game.game_id or "").strip():
                continue
            if apply_filter and app_id not in friend_result.apps_with_friend_unlock:
                skipped += 1
                continue

            _, outcome = await self.self_cache.fetch_with_outcome(
                game.game_id, app_id, cancel=cancel, force_refresh=True
            )
            if outcome is not None:
                counts[outcome.value] += 1

        reporter.emit(
            RebuildUpdate(
                kind=RebuildUpdateKind.SELF_COMPLETED,
                stage=RebuildStage.REFRESHING_SELF_ACHIEVEMENTS,
                self_app_index=total,
                self_app_count=total,
            ),
            force=True,
        )
        LOGGER.info(
            "Self scan summary: total=%d skippedNoFriendAchievements=%d %s",
            total,
            skipped,
            " ".join(f"{name}={count}" for name, count in counts.items()),
        )

    def _persist(
        self,
        scan_plan: ScanPlan,
        friend_result: FriendScanResult,
        previous_playtime: FriendPlaytimeSnapshot,
        summary: RebuildSummary,
    ) -> None:
        try:
            self._store.merge_update_friend_feed(friend_result.new_entries)
        except OSError as exc:
            summary.persistence_errors += 1
            LOGGER.error("Failed to persist friend feed: %s", exc)

        if friend_result.discoveries:
            try:
                self._store.merge_and_save_family_sharing_scan_results(friend_result.discoveries)
                summary.discoveries_recorded = sum(len(ids) for ids in friend_result.discoveries.values())
            except OSError as exc:
                summary.persistence_errors += 1
                LOGGER.error("Failed to persist family sharing discoveries: %s", exc)

        if scan_plan.observed_minutes:
            try:
                self._store.update_friend_playtime_cache(
                    merge_playtime_snapshot(previous_playtime, scan_plan.observed_minutes)
                )
            except OSError as exc:
                summary.persistence_errors += 1
                LOGGER.error("Failed to persist friend playtime baseline: %s", exc)
