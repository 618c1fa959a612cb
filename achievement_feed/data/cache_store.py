"""Crash-safe JSON persistence for the friend feed and its side artifacts.

Four artifacts live under one cache directory:

- ``friend_achievement_cache.json``: the authoritative global friend feed,
  plus per-game shard files under ``friend_achievement_cache/`` that are
  rebuilt from the global feed on every save.
- ``self_achievement_cache/<game_id>.json``: the local user's own unlock data.
- ``family_sharing/<game_id>.json``: friends inferred to play via sharing.
- ``friend_playtime_cache.json``: friend minutes baseline.

Every write goes through a temp sibling file and an atomic replace. Reads never
raise: missing or damaged files come back as ``None`` or empty.
"""
from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from .models import (
    FamilySharingScanResult,
    FeedEntry,
    FriendPlaytimeSnapshot,
    SelfAchievementGameData,
    format_utc,
    parse_utc,
    utc_now,
)

LOGGER = logging.getLogger(__name__)

FRIEND_FEED_FILE = "friend_achievement_cache.json"
FRIEND_SHARD_DIR = "friend_achievement_cache"
SELF_CACHE_DIR = "self_achievement_cache"
FAMILY_SHARING_DIR = "family_sharing"
FRIEND_PLAYTIME_FILE = "friend_playtime_cache.json"


# ----------------------------------------------------------------------
# Atomic JSON helpers
# ----------------------------------------------------------------------
def read_json(path: Path) -> Optional[Any]:
    """Return the decoded JSON document at ``path`` or ``None`` if unusable."""

    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        LOGGER.warning("Ignoring unreadable cache file %s: %s", path, exc)
        return None


def write_json_atomic(path: Path, payload: Any) -> None:
    """Write ``payload`` to ``path`` via a temp sibling and an atomic replace."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.tmp")
    try:
        tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        try:
            os.replace(tmp_path, path)
        except OSError as exc:
            LOGGER.debug("Atomic replace failed for %s (%s); falling back to delete+move", path, exc)
            path.unlink(missing_ok=True)
            tmp_path.rename(path)
    finally:
        try:
            tmp_path.unlink(missing_ok=True)
        except OSError as exc:
            LOGGER.debug("Could not remove temp file %s: %s", tmp_path, exc)


def merge_feed_entries(existing: Iterable[FeedEntry], new_entries: Iterable[FeedEntry]) -> List[FeedEntry]:
    """Union by entry id, sorted newest first.

    Ids embed the unlock ticks, so entries sharing an id describe the same
    unlock; the first occurrence (the cached copy) wins.
    """

    by_id: Dict[str, FeedEntry] = {}
    for entry in list(existing) + list(new_entries):
        if entry is None or not entry.id:
            continue
        by_id.setdefault(entry.id, entry)
    return sort_feed_entries(by_id.values())


def sort_feed_entries(entries: Iterable[FeedEntry]) -> List[FeedEntry]:
    return sorted(entries, key=lambda e: e.friend_unlock_time_utc, reverse=True)


def _entries_from_payload(payload: Any) -> List[FeedEntry]:
    if not isinstance(payload, dict):
        return []
    entries: List[FeedEntry] = []
    raw_entries = payload.get("entries")
    if not isinstance(raw_entries, list):
        return []
    for raw in raw_entries:
        if not isinstance(raw, dict):
            continue
        entry = FeedEntry.from_dict(raw)
        if entry is not None:
            entries.append(entry)
    return entries


class CacheStore:
    """File-backed cache for the achievement feed.

    Each artifact type has its own lock, so a foreground rebuild and a
    background refresher serialize on the same files without blocking each
    other on unrelated artifacts.
    """

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = Path(base_dir)
        self.friend_feed_path = self.base_dir / FRIEND_FEED_FILE
        self.friend_shard_dir = self.base_dir / FRIEND_SHARD_DIR
        self.self_cache_dir = self.base_dir / SELF_CACHE_DIR
        self.family_sharing_dir = self.base_dir / FAMILY_SHARING_DIR
        self.friend_playtime_path = self.base_dir / FRIEND_PLAYTIME_FILE

        self._feed_lock = threading.RLock()
        self._self_lock = threading.RLock()
        self._family_lock = threading.RLock()
        self._playtime_lock = threading.RLock()

        # In-memory copy of the global feed; dropped when the file disappears.
        self._feed_entries: Optional[List[FeedEntry]] = None
        self._feed_last_updated = None
        self._listeners: List[Callable[[], None]] = []

        self.base_dir.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Change notifications
    # ------------------------------------------------------------------
    def subscribe(self, callback: Callable[[], None]) -> None:
        self._listeners.append(callback)

    def _notify_changed(self) -> None:
        for callback in list(self._listeners):
            try:
                callback()
            except Exception as exc:
                LOGGER.error("Cache change subscriber failed: %s", exc, exc_info=True)

    # ------------------------------------------------------------------
    # Friend feed
    # ------------------------------------------------------------------
    def _shard_files(self) -> List[Path]:
        if not self.friend_shard_dir.is_dir():
            return []
        return sorted(self.friend_shard_dir.glob("*.json"))

    def cache_file_exists(self) -> bool:
        """True when the global feed (or, failing that, any shard) is on disk."""

        if self.friend_feed_path.exists():
            return True
        return bool(self._shard_files())

    def ensure_disk_cache_or_clear_memory(self) -> None:
        with self._feed_lock:
            if not self.cache_file_exists():
                self._feed_entries = None
                self._feed_last_updated = None

    def _load_feed_locked(self) -> None:
        payload = read_json(self.friend_feed_path)
        if payload is not None:
            self._feed_entries = sort_feed_entries(_entries_from_payload(payload))
            self._feed_last_updated = parse_utc(payload.get("last_updated_utc")) if isinstance(payload, dict) else None
            return

        shards = self._shard_files()
        if self.friend_feed_path.exists() or not shards:
            # Corrupt global file or nothing cached at all.
            self._feed_entries = []
            self._feed_last_updated = None
            return

        LOGGER.info("Global feed missing; rebuilding from %d shard files", len(shards))
        collected: List[FeedEntry] = []
        latest = None
        for shard in shards:
            shard_payload = read_json(shard)
            collected.extend(_entries_from_payload(shard_payload))
            if isinstance(shard_payload, dict):
                stamp = parse_utc(shard_payload.get("last_updated_utc"))
                if stamp is not None and (latest is None or stamp > latest):
                    latest = stamp
        self._feed_entries = merge_feed_entries([], collected)
        self._feed_last_updated = latest or utc_now()
        try:
            self._save_feed_locked()
        except OSError as exc:
            LOGGER.error("Failed to re-save feed rebuilt from shards: %s", exc)

    def _ensure_feed_loaded(self) -> List[FeedEntry]:
        if self._feed_entries is None or not self.cache_file_exists():
            self._load_feed_locked()
        return self._feed_entries or []

    def _save_feed_locked(self) -> None:
        entries = self._feed_entries or []
        stamp = format_utc(self._feed_last_updated or utc_now())
        write_json_atomic(
            self.friend_feed_path,
            {"last_updated_utc": stamp, "entries": [e.as_dict() for e in entries]},
        )

        shards: Dict[str, List[FeedEntry]] = {}
        for entry in entries:
            shards.setdefault(entry.shard_key, []).append(entry)

        written = set()
        for key, shard_entries in shards.items():
            shard_path = self.friend_shard_dir / f"{key}.json"
            write_json_atomic(
                shard_path,
                {"last_updated_utc": stamp, "entries": [e.as_dict() for e in shard_entries]},
            )
            written.add(shard_path)

        for stale in self._shard_files():
            if stale not in written:
                try:
                    stale.unlink()
                except OSError as exc:
                    LOGGER.debug("Could not remove stale shard %s: %s", stale, exc)

        LOGGER.debug("Saved friend feed: %d entries in %d shards", len(entries), len(shards))

    def get_cached_friend_entries(self) -> List[FeedEntry]:
        with self._feed_lock:
            return list(self._ensure_feed_loaded())

    def get_recent_friend_entries(self, count: int = 50) -> List[FeedEntry]:
        return self.get_cached_friend_entries()[: max(0, count)]

    def get_friend_feed_last_updated_utc(self):
        with self._feed_lock:
            self._ensure_feed_loaded()
            return self._feed_last_updated

    def is_cache_valid(self) -> bool:
        with self._feed_lock:
            if not self.cache_file_exists():
                self._feed_entries = None
                return False
            return bool(self._ensure_feed_loaded())

    def update_friend_feed(self, entries: Iterable[FeedEntry]) -> None:
        """Replace the whole feed with ``entries``."""

        with self._feed_lock:
            self._feed_entries = merge_feed_entries([], entries)
            self._feed_last_updated = utc_now()
            self._save_feed_locked()
        self._notify_changed()

    def merge_update_friend_feed(self, new_entries: Iterable[FeedEntry]) -> int:
        """Merge ``new_entries`` into the feed; returns the resulting entry count."""

        with self._feed_lock:
            existing = self._ensure_feed_loaded()
            self._feed_entries = merge_feed_entries(existing, new_entries)
            self._feed_last_updated = utc_now()
            self._save_feed_locked()
            total = len(self._feed_entries)
        self._notify_changed()
        return total

    # ------------------------------------------------------------------
    # Self achievements
    # ------------------------------------------------------------------
    def self_path(self, game_id: str) -> Path:
        return self.self_cache_dir / f"{game_id}.json"

    def load_self_achievement_data(self, game_id: str) -> Optional[SelfAchievementGameData]:
        if not (game_id or "").strip():
            return None
        with self._self_lock:
            payload = read_json(self.self_path(game_id))
        if not isinstance(payload, dict):
            return None
        return SelfAchievementGameData.from_dict(payload)

    def save_self_achievement_data(self, game_id: str, data: SelfAchievementGameData) -> None:
        if not (game_id or "").strip():
            raise ValueError("game_id is required to save self achievement data")
        with self._self_lock:
            write_json_atomic(self.self_path(game_id), data.as_dict())

    # ------------------------------------------------------------------
    # Family sharing discoveries
    # ------------------------------------------------------------------
    def family_path(self, game_id: str) -> Path:
        return self.family_sharing_dir / f"{game_id}.json"

    def load_all_family_sharing_scan_results(self) -> Dict[str, List[str]]:
        """Return ``{local game id: [friend ids]}`` for every readable file."""

        results: Dict[str, List[str]] = {}
        with self._family_lock:
            if not self.family_sharing_dir.is_dir():
                return results
            for path in sorted(self.family_sharing_dir.glob("*.json")):
                payload = read_json(path)
                if not isinstance(payload, dict):
                    continue
                record = FamilySharingScanResult.from_dict(payload)
                if record.friend_ids:
                    results[path.stem] = list(record.friend_ids)
        return results

    def merge_and_save_family_sharing_scan_results(self, discoveries: Dict[str, Iterable[str]]) -> int:
        """Union new discoveries into the per-game files; returns files written."""

        written = 0
        with self._family_lock:
            for game_id, friend_ids in (discoveries or {}).items():
                if not (game_id or "").strip():
                    continue
                incoming = {str(f).strip() for f in friend_ids or [] if str(f or "").strip()}
                if not incoming:
                    continue
                payload = read_json(self.family_path(game_id))
                existing = FamilySharingScanResult.from_dict(payload) if isinstance(payload, dict) else FamilySharingScanResult()
                merged = set(existing.friend_ids) | incoming
                if merged == set(existing.friend_ids) and existing.last_updated_utc is not None:
                    continue
                record = FamilySharingScanResult(last_updated_utc=utc_now(), friend_ids=sorted(merged))
                write_json_atomic(self.family_path(game_id), record.as_dict())
                written += 1
        if written:
            LOGGER.info("Family sharing discoveries saved for %d games", written)
        return written

    # ------------------------------------------------------------------
    # Friend playtime baseline
    # ------------------------------------------------------------------
    def load_friend_playtime_cache(self) -> FriendPlaytimeSnapshot:
        with self._playtime_lock:
            payload = read_json(self.friend_playtime_path)
        snapshot: FriendPlaytimeSnapshot = {}
        if not isinstance(payload, dict):
            return snapshot
        per_friend = payload.get("friend_app_playtime_minutes")
        if not isinstance(per_friend, dict):
            return snapshot
        for friend_id, per_app in per_friend.items():
            if not (friend_id or "").strip() or not isinstance(per_app, dict):
                continue
            minutes: Dict[int, int] = {}
            for app_id, value in per_app.items():
                try:
                    minutes[int(app_id)] = int(value)
                except (TypeError, ValueError):
                    continue
            snapshot[friend_id] = minutes
        return snapshot

    def update_friend_playtime_cache(self, snapshot: FriendPlaytimeSnapshot) -> None:
        """Overwrite the persisted baseline with ``snapshot``."""

        normalized = {
            friend_id: {str(app_id): int(mins) for app_id, mins in (per_app or {}).items()}
            for friend_id, per_app in (snapshot or {}).items()
            if (friend_id or "").strip()
        }
        with self._playtime_lock:
            write_json_atomic(
                self.friend_playtime_path,
                {"last_updated_utc": format_utc(utc_now()), "friend_app_playtime_minutes": normalized},
            )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    def clear_cache(self) -> None:
        """Delete every cached artifact and drop in-memory state."""

        with self._feed_lock, self._self_lock, self._family_lock, self._playtime_lock:
            self._feed_entries = None
            self._feed_last_updated = None
            for path in [self.friend_feed_path, self.friend_playtime_path]:
                try:
                    path.unlink(missing_ok=True)
                except OSError as exc:
                    LOGGER.error("Failed to delete %s: %s", path, exc)
            for directory in [self.friend_shard_dir, self.self_cache_dir, self.family_sharing_dir]:
                if not directory.is_dir():
                    continue
                for path in directory.glob("*.json"):
                    try:
                        path.unlink()
                    except OSError as exc:
                        LOGGER.error("Failed to delete %s: %s", path, exc)
        LOGGER.info("Cache cleared at %s", self.base_dir)
        self._notify_changed()
