"""Collaborator interfaces consumed by the rebuild engine, plus library helpers."""
from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Set

from ..data.models import AchievementRow, AchievementsHealth, Friend, LibraryGame, SteamIdentity
from .options import CancelToken


class AchievementDataProvider(Protocol):
    """Remote achievement source. Retries and backoff are the provider's job."""

    async def get_achievements(
        self, identity_id: str, app_id: int, cancel: Optional[CancelToken] = None
    ) -> Optional[List[AchievementRow]]: ...

    async def get_achievements_with_health(
        self,
        identity_id: str,
        app_id: int,
        include_locked: bool = True,
        cancel: Optional[CancelToken] = None,
    ) -> Optional[AchievementsHealth]: ...

    async def get_owned_app_playtimes(
        self,
        identity_id: str,
        app_filter: Optional[Set[int]] = None,
        cancel: Optional[CancelToken] = None,
    ) -> Optional[Dict[int, int]]: ...

    async def get_friends(
        self, identity: SteamIdentity, cancel: Optional[CancelToken] = None
    ) -> Optional[List[Friend]]: ...


class LibraryIndex(Protocol):
    def games(self) -> Dict[int, LibraryGame]: ...


class StaticLibraryIndex:
    """Read-only app id -> local game map built from a fixed list of games."""

    def __init__(self, games: Iterable[LibraryGame]) -> None:
        self._games: Dict[int, LibraryGame] = {}
        for game in games:
            if game is None or game.app_id <= 0:
                continue
            self._games.setdefault(game.app_id, game)

    def games(self) -> Dict[int, LibraryGame]:
        return dict(self._games)


# ----------------------------------------------------------------------
# Library helpers
# ----------------------------------------------------------------------
def filter_minutes_to_library(
    minutes_by_app: Optional[Mapping[int, int]], library_app_ids: Set[int]
) -> Dict[int, int]:
    if not minutes_by_app:
        return {}
    if not library_app_ids:
        return dict(minutes_by_app)
    return {app_id: mins for app_id, mins in minutes_by_app.items() if app_id in library_app_ids}


def filter_to_nonzero_minutes(app_ids: Iterable[int], minutes_by_app: Optional[Mapping[int, int]]) -> List[int]:
    """Drop zero-minute apps, but only when a minutes map is actually available."""

    has_minutes = bool(minutes_by_app)
    result: List[int] = []
    seen: Set[int] = set()
    for app_id in app_ids:
        if app_id <= 0 or app_id in seen:
            continue
        if has_minutes and minutes_by_app.get(app_id, 0) <= 0:
            continue
        seen.add(app_id)
        result.append(app_id)
    return result


def filter_friends(friends: Optional[Iterable[Friend]], wanted_ids: Iterable[str]) -> List[Friend]:
    """Drop blank/duplicate friends and, if ``wanted_ids`` is non-empty, keep only those."""

    wanted = set(wanted_ids or ())
    result: List[Friend] = []
    seen: Set[str] = set()
    for friend in friends or []:
        if friend is None or not (friend.friend_id or "").strip():
            continue
        if wanted and friend.friend_id not in wanted:
            continue
        if friend.friend_id in seen:
            continue
        seen.add(friend.friend_id)
        result.append(friend)
    return result


def resolve_explicit_app_ids(
    app_ids: Iterable[int], game_ids: Iterable[str], library: Mapping[int, LibraryGame]
) -> List[int]:
    """Explicit app ids plus app ids of the given local games, in order, library-only."""

    if not library:
        return []
    ordered: List[int] = []
    seen: Set[int] = set()
    for app_id in app_ids or []:
        if app_id > 0 and app_id in library and app_id not in seen:
            seen.add(app_id)
            ordered.append(app_id)

    wanted = set(game_ids or [])
    if wanted:
        for app_id, game in library.items():
            if game.game_id in wanted and app_id not in seen:
                seen.add(app_id)
                ordered.append(app_id)
    return ordered
