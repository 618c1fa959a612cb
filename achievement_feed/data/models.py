"""Plain data types shared by the cache store and the rebuild engine."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

# .NET-style ticks (100 ns since 0001-01-01 UTC) keep entry ids stable across
# cache files written by earlier versions of the feed.
_TICKS_EPOCH = datetime(1, 1, 1, tzinfo=timezone.utc)
_TICKS_PER_SECOND = 10_000_000
_TICKS_PER_DAY = 86_400 * _TICKS_PER_SECOND


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return ``value`` as an aware UTC datetime (naive values are taken as UTC)."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def unlock_ticks(value: datetime) -> int:
    delta = as_utc(value) - _TICKS_EPOCH
    return delta.days * _TICKS_PER_DAY + delta.seconds * _TICKS_PER_SECOND + delta.microseconds * 10


def format_utc(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return as_utc(value).isoformat().replace("+00:00", "Z")


def parse_utc(raw: Any) -> Optional[datetime]:
    if raw in (None, ""):
        return None
    try:
        text = str(raw).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return as_utc(datetime.fromisoformat(text))
    except (TypeError, ValueError):
        return None


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def build_entry_id(friend_id: str, app_id: int, achievement_key: str, unlock_time_utc: datetime) -> str:
    return f"{friend_id}:{app_id}:{achievement_key}:{unlock_ticks(unlock_time_utc)}"


# ----------------------------------------------------------------------
# Collaborator records
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class SteamIdentity:
    """Local account credentials used for every provider call."""

    user_id: Optional[str]
    api_key: Optional[str] = None

    @property
    def is_configured(self) -> bool:
        return bool((self.user_id or "").strip()) and bool((self.api_key or "").strip())


@dataclass(frozen=True)
class Friend:
    friend_id: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


@dataclass(frozen=True)
class LibraryGame:
    """A locally installed/registered game that maps to a remote app id."""

    game_id: str
    name: str
    app_id: int


@dataclass(frozen=True)
class AchievementRow:
    key: str
    display_name: Optional[str] = None
    description: Optional[str] = None
    icon_url: Optional[str] = None
    unlock_time_utc: Optional[datetime] = None


@dataclass
class AchievementsHealth:
    """Rows plus the health signals the provider attached to the fetch."""

    rows: List[AchievementRow] = field(default_factory=list)
    transient_failure: bool = False
    stats_unavailable: bool = False
    detail: Optional[str] = None

    @property
    def has_rows(self) -> bool:
        return bool(self.rows)


# ----------------------------------------------------------------------
# Cached records
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class FeedEntry:
    id: str
    friend_id: str
    friend_display_name: Optional[str]
    friend_avatar_url: Optional[str]
    game_name: str
    local_game_id: Optional[str]
    app_id: int
    achievement_key: str
    display_name: str
    description: str
    friend_unlock_time_utc: datetime
    friend_icon_url: Optional[str] = None

    @classmethod
    def create(
        cls,
        friend: Friend,
        game: LibraryGame,
        row: AchievementRow,
        unlock_time_utc: datetime,
    ) -> "FeedEntry":
        unlock = as_utc(unlock_time_utc)
        return cls(
            id=build_entry_id(friend.friend_id, game.app_id, row.key, unlock),
            friend_id=friend.friend_id,
            friend_display_name=friend.display_name,
            friend_avatar_url=friend.avatar_url,
            game_name=game.name,
            local_game_id=game.game_id,
            app_id=game.app_id,
            achievement_key=row.key,
            display_name=row.display_name if (row.display_name or "").strip() else row.key,
            description=row.description or "",
            friend_unlock_time_utc=unlock,
            friend_icon_url=row.icon_url,
        )

    @property
    def shard_key(self) -> str:
        return self.local_game_id or str(self.app_id)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "friend_id": self.friend_id,
            "friend_display_name": self.friend_display_name,
            "friend_avatar_url": self.friend_avatar_url,
            "game_name": self.game_name,
            "local_game_id": self.local_game_id,
            "app_id": self.app_id,
            "achievement_key": self.achievement_key,
            "display_name": self.display_name,
            "description": self.description,
            "friend_unlock_time_utc": format_utc(self.friend_unlock_time_utc),
            "friend_icon_url": self.friend_icon_url,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> Optional["FeedEntry"]:
        """Rebuild an entry from its stored form; ``None`` if required fields are missing."""

        entry_id = _optional_text(payload.get("id"))
        friend_id = _optional_text(payload.get("friend_id"))
        unlock = parse_utc(payload.get("friend_unlock_time_utc"))
        if not entry_id or not friend_id or unlock is None:
            return None
        try:
            app_id = int(payload.get("app_id") or 0)
        except (TypeError, ValueError):
            return None
        key = str(payload.get("achievement_key") or "")
        return cls(
            id=entry_id,
            friend_id=friend_id,
            friend_display_name=_optional_text(payload.get("friend_display_name")),
            friend_avatar_url=_optional_text(payload.get("friend_avatar_url")),
            game_name=str(payload.get("game_name") or ""),
            local_game_id=_optional_text(payload.get("local_game_id")),
            app_id=app_id,
            achievement_key=key,
            display_name=str(payload.get("display_name") or key),
            description=str(payload.get("description") or ""),
            friend_unlock_time_utc=unlock,
            friend_icon_url=_optional_text(payload.get("friend_icon_url")),
        )


@dataclass
class SelfAchievementGameData:
    """The local user's unlock times and icon URLs for one game."""

    last_updated_utc: Optional[datetime] = None
    no_achievements: bool = False
    unlock_times_utc: Dict[str, datetime] = field(default_factory=dict)
    self_icon_urls: Dict[str, str] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.unlock_times_utc and not self.self_icon_urls

    def as_dict(self) -> Dict[str, Any]:
        return {
            "last_updated_utc": format_utc(self.last_updated_utc),
            "no_achievements": self.no_achievements,
            "unlock_times_utc": {k: format_utc(v) for k, v in self.unlock_times_utc.items()},
            "self_icon_urls": dict(self.self_icon_urls),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "SelfAchievementGameData":
        raw_unlocks = payload.get("unlock_times_utc")
        raw_icons = payload.get("self_icon_urls")
        unlocks: Dict[str, datetime] = {}
        for key, raw in (raw_unlocks if isinstance(raw_unlocks, dict) else {}).items():
            parsed = parse_utc(raw)
            if key and parsed is not None:
                unlocks[str(key)] = parsed
        icons = {
            str(key): str(url)
            for key, url in (raw_icons if isinstance(raw_icons, dict) else {}).items()
            if key and url
        }
        return cls(
            last_updated_utc=parse_utc(payload.get("last_updated_utc")),
            no_achievements=payload.get("no_achievements") is True,
            unlock_times_utc=unlocks,
            self_icon_urls=icons,
        )


@dataclass
class FamilySharingScanResult:
    """Friends seen unlocking achievements in a game they do not appear to own."""

    last_updated_utc: Optional[datetime] = None
    friend_ids: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "last_updated_utc": format_utc(self.last_updated_utc),
            "friend_ids": sorted(set(self.friend_ids)),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "FamilySharingScanResult":
        raw_ids = payload.get("friend_ids")
        if not isinstance(raw_ids, list):
            raw_ids = []
        ids = [v.strip() for v in raw_ids if isinstance(v, str) and v.strip()]
        return cls(last_updated_utc=parse_utc(payload.get("last_updated_utc")), friend_ids=ids)


# friend_id -> (app_id -> minutes played)
FriendPlaytimeSnapshot = Dict[str, Dict[int, int]]


def build_friend_app_baseline(entries: Iterable[FeedEntry]) -> Dict[str, Dict[int, datetime]]:
    """Max cached unlock time per (friend, app); the delta watermark for scans."""

    result: Dict[str, Dict[int, datetime]] = {}
    for entry in entries:
        if entry is None or not entry.friend_id:
            continue
        per_app = result.setdefault(entry.friend_id, {})
        unlock = as_utc(entry.friend_unlock_time_utc)
        current = per_app.get(entry.app_id)
        if current is None or unlock > current:
            per_app[entry.app_id] = unlock
    return result
