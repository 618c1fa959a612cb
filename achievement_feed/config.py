"""Configuration helpers for the achievement feed cache."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .data.models import SteamIdentity

PROJECT_ROOT = Path(__file__).resolve().parents[1]
ENV_PATH = PROJECT_ROOT / ".env"

# Load environment variables early so downstream modules can rely on them.
load_dotenv(ENV_PATH, override=False)

CACHE_DIR_ENV = "FEED_CACHE_DIR"
STEAM_USER_ID_ENV = "STEAM_USER_ID"
STEAM_API_KEY_ENV = "STEAM_API_KEY"
QUICK_FRIENDS_ENV = "QUICK_SCAN_RECENT_FRIENDS"
QUICK_GAMES_ENV = "QUICK_SCAN_RECENT_GAMES"
EMIT_EVERY_ENV = "PROGRESS_EMIT_EVERY"
MIN_INTERVAL_ENV = "PROGRESS_MIN_INTERVAL_MS"

DEFAULT_CACHE_DIR = PROJECT_ROOT / "data" / "feed_cache"
DEFAULT_QUICK_FRIENDS = 5
DEFAULT_QUICK_GAMES = 5
DEFAULT_EMIT_EVERY = 10
DEFAULT_MIN_INTERVAL_MS = 250


@dataclass(frozen=True)
class CacheSettings:
    """Where the feed cache lives on disk."""

    path: Path


@dataclass(frozen=True)
class ScanDefaults:
    quick_scan_recent_friends: int = DEFAULT_QUICK_FRIENDS
    quick_scan_recent_games: int = DEFAULT_QUICK_GAMES
    progress_emit_every: int = DEFAULT_EMIT_EVERY
    progress_min_interval_ms: int = DEFAULT_MIN_INTERVAL_MS


def _get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value


def _get_int(name: str, default: int) -> int:
    raw = _get_env(name)
    try:
        return int(raw) if raw is not None else default
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer; received '{raw}'.") from exc


def get_cache_settings() -> CacheSettings:
    """Resolve the cache directory from environment with a project-local default."""

    raw_path = _get_env(CACHE_DIR_ENV, str(DEFAULT_CACHE_DIR))
    return CacheSettings(path=Path(raw_path).expanduser().resolve())


def get_steam_identity() -> SteamIdentity:
    """Return the configured account; missing values yield an unconfigured identity."""

    user_id = _get_env(STEAM_USER_ID_ENV)
    api_key = _get_env(STEAM_API_KEY_ENV)
    return SteamIdentity(
        user_id=user_id.strip() if user_id else None,
        api_key=api_key.strip() if api_key else None,
    )


def get_scan_defaults() -> ScanDefaults:
    return ScanDefaults(
        quick_scan_recent_friends=_get_int(QUICK_FRIENDS_ENV, DEFAULT_QUICK_FRIENDS),
        quick_scan_recent_games=_get_int(QUICK_GAMES_ENV, DEFAULT_QUICK_GAMES),
        progress_emit_every=_get_int(EMIT_EVERY_ENV, DEFAULT_EMIT_EVERY),
        progress_min_interval_ms=_get_int(MIN_INTERVAL_ENV, DEFAULT_MIN_INTERVAL_MS),
    )
