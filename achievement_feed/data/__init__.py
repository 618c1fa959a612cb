"""Feed records and their file-backed cache."""
from .cache_store import CacheStore
from .models import (
    AchievementRow,
    AchievementsHealth,
    FamilySharingScanResult,
    FeedEntry,
    Friend,
    LibraryGame,
    SelfAchievementGameData,
    SteamIdentity,
)

__all__ = [
    "AchievementRow",
    "AchievementsHealth",
    "CacheStore",
    "FamilySharingScanResult",
    "FeedEntry",
    "Friend",
    "LibraryGame",
    "SelfAchievementGameData",
    "SteamIdentity",
]
