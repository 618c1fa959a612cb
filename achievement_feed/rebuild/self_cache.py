"""Fetch and cache the local user's own achievement data per game.

The write policy is driven by the fetch outcome so a flaky upstream never
overwrites a good cached record:

==========================  ============================================
Outcome                     Cache action
==========================  ============================================
SAVED                       overwrite (usable rows, or an empty marker
                            for "no achievements" / "all hidden")
USED_EXISTING               keep the existing record
TRANSIENT_FAILURE           keep existing, no write
STATS_UNAVAILABLE           keep existing, no write, retry later
EMPTY_ROWS / EMPTY_DATA     nothing cached, nothing written
NO_STEAM_USER               nothing written
ERROR                       provider raised or the write failed
==========================  ============================================
"""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Dict, Optional, Tuple

from ..data.cache_store import CacheStore
from ..data.models import SelfAchievementGameData, SteamIdentity, as_utc, utc_now
from .options import CancelToken, check_cancelled
from .provider import AchievementDataProvider

LOGGER = logging.getLogger(__name__)

DETAIL_NO_ACHIEVEMENTS = "no_achievements"
DETAIL_ALL_HIDDEN = "all_hidden"


class SelfFetchOutcome(Enum):
    SAVED = "saved"
    USED_EXISTING = "used_existing"
    STATS_UNAVAILABLE = "stats_unavailable"
    TRANSIENT_FAILURE = "transient_failure"
    EMPTY_ROWS = "empty_rows"
    EMPTY_DATA = "empty_data"
    NO_STEAM_USER = "no_steam_user"
    ERROR = "error"


class SelfAchievementCacheManager:
    """Coalesces concurrent fetches per (game, app) and applies the write policy."""

    def __init__(
        self,
        provider: AchievementDataProvider,
        store: CacheStore,
        identity: SteamIdentity,
    ) -> None:
        self._provider = provider
        self._store = store
        self._identity = identity
        self._inflight: Dict[Tuple[str, int], "asyncio.Future[Tuple[SelfAchievementGameData, SelfFetchOutcome]]"] = {}

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    async def ensure_self_achievement_data(
        self,
        game_id: str,
        app_id: int,
        cancel: Optional[CancelToken] = None,
        force_refresh: bool = False,
    ) -> SelfAchievementGameData:
        """Return cached data for the game, fetching it when missing or forced."""

        data, _ = await self.fetch_with_outcome(game_id, app_id, cancel=cancel, force_refresh=force_refresh)
        return data

    async def fetch_with_outcome(
        self,
        game_id: str,
        app_id: int,
        cancel: Optional[CancelToken] = None,
        force_refresh: bool = False,
    ) -> Tuple[SelfAchievementGameData, Optional[SelfFetchOutcome]]:
        """Like :meth:`ensure_self_achievement_data` but also reports the outcome.

        The outcome is ``None`` when the call was answered from cache without
        touching the provider.
        """

        if app_id <= 0 or not (game_id or "").strip():
            return SelfAchievementGameData(), None

        if not force_refresh:
            cached = self._store.load_self_achievement_data(game_id)
            if cached is not None:
                return cached, None

        key = (game_id, app_id)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._fetch_and_store(game_id, app_id, cancel))
            self._inflight[key] = task
        else:
            LOGGER.debug("Joining in-flight self fetch game=%s appId=%s", game_id, app_id)

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.debug("Self achievement fetch failed (appId=%s): %s", app_id, exc, exc_info=True)
            return SelfAchievementGameData(), SelfFetchOutcome.ERROR

    async def _fetch_and_store(
        self, game_id: str, app_id: int, cancel: Optional[CancelToken]
    ) -> Tuple[SelfAchievementGameData, SelfFetchOutcome]:
        try:
            data, outcome = await self._fetch_internal(game_id, app_id, cancel)
            LOGGER.debug("Self fetch game=%s appId=%s outcome=%s", game_id, app_id, outcome.value)
            return data, outcome
        finally:
            self._inflight.pop((game_id, app_id), None)

    def _save(
        self, game_id: str, app_id: int, data: SelfAchievementGameData
    ) -> Tuple[SelfAchievementGameData, SelfFetchOutcome]:
        try:
            self._store.save_self_achievement_data(game_id, data)
        except (OSError, ValueError) as exc:
            LOGGER.error("Failed to save self achievement cache (game=%s, appId=%s): %s", game_id, app_id, exc)
            return data, SelfFetchOutcome.ERROR
        return data, SelfFetchOutcome.SAVED

    async def _fetch_internal(
        self, game_id: str, app_id: int, cancel: Optional[CancelToken]
    ) -> Tuple[SelfAchievementGameData, SelfFetchOutcome]:
        if not self._identity.is_configured:
            return SelfAchievementGameData(), SelfFetchOutcome.NO_STEAM_USER

        existing = self._store.load_self_achievement_data(game_id)
        if existing is not None and existing.no_achievements:
            return existing, SelfFetchOutcome.USED_EXISTING

        check_cancelled(cancel)
        try:
            health = await self._provider.get_achievements_with_health(
                self._identity.user_id, app_id, include_locked=True, cancel=cancel
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.debug("Self achievements fetch raised (appId=%s): %s", app_id, exc, exc_info=True)
            return existing or SelfAchievementGameData(), SelfFetchOutcome.ERROR

        if health is None or health.transient_failure:
            return existing or SelfAchievementGameData(), SelfFetchOutcome.TRANSIENT_FAILURE

        detail = (health.detail or "").strip().lower()

        if health.stats_unavailable:
            if detail == DETAIL_NO_ACHIEVEMENTS:
                marker = SelfAchievementGameData(last_updated_utc=utc_now(), no_achievements=True)
                return self._save(game_id, app_id, marker)
            return existing or SelfAchievementGameData(), SelfFetchOutcome.STATS_UNAVAILABLE

        if detail == DETAIL_ALL_HIDDEN:
            hidden = SelfAchievementGameData(last_updated_utc=utc_now(), no_achievements=False)
            return self._save(game_id, app_id, hidden)

        if not health.rows:
            return existing or SelfAchievementGameData(), SelfFetchOutcome.EMPTY_ROWS

        data = SelfAchievementGameData(last_updated_utc=utc_now())
        for row in health.rows:
            if row is None or not (row.key or "").strip():
                continue
            unlock = as_utc(row.unlock_time_utc)
            if unlock is not None:
                data.unlock_times_utc[row.key] = unlock
            if (row.icon_url or "").strip():
                data.self_icon_urls[row.key] = row.icon_url

        if data.is_empty:
            if existing is not None and existing.last_updated_utc is not None:
                return existing, SelfFetchOutcome.USED_EXISTING
            return SelfAchievementGameData(), SelfFetchOutcome.EMPTY_DATA

        return self._save(game_id, app_id, data)
