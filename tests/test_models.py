"""Unit tests for feed records and time helpers."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from achievement_feed.data.models import (
    FeedEntry,
    Friend,
    LibraryGame,
    SelfAchievementGameData,
    SteamIdentity,
    as_utc,
    build_entry_id,
    build_friend_app_baseline,
    format_utc,
    parse_utc,
    unlock_ticks,
)
from tests.helpers.fake_provider import row, utc


PORTAL = LibraryGame(game_id="game-portal", name="Portal", app_id=400)
ALICE = Friend(friend_id="alice", display_name="Alice", avatar_url="https://img/alice.png")


# ==============================================================================
# Time helpers
# ==============================================================================

@pytest.mark.unit
def test_unix_epoch_ticks_match_stored_id_format():
    assert unlock_ticks(utc(1970, 1, 1)) == 621355968000000000


@pytest.mark.unit
def test_as_utc_treats_naive_values_as_utc():
    naive = datetime(2024, 5, 1, 12, 0)
    assert as_utc(naive) == utc(2024, 5, 1, 12, 0)
    assert as_utc(naive).tzinfo is not None


@pytest.mark.unit
def test_as_utc_converts_other_offsets():
    plus_two = datetime(2024, 5, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
    assert as_utc(plus_two) == utc(2024, 5, 1, 12, 0)


@pytest.mark.unit
def test_parse_utc_accepts_z_suffix_and_rejects_garbage():
    assert parse_utc(format_utc(utc(2024, 3, 4, 5, 6))) == utc(2024, 3, 4, 5, 6)
    assert parse_utc("2024-03-04T05:06:00Z") == utc(2024, 3, 4, 5, 6)
    assert parse_utc("not a date") is None
    assert parse_utc("") is None


# ==============================================================================
# Identity
# ==============================================================================

@pytest.mark.unit
@pytest.mark.parametrize(
    "user_id, api_key, expected",
    [
        ("123", "key", True),
        ("123", None, False),
        (None, "key", False),
        ("  ", "key", False),
    ],
)
def test_identity_requires_user_and_key(user_id, api_key, expected):
    assert SteamIdentity(user_id=user_id, api_key=api_key).is_configured is expected


# ==============================================================================
# FeedEntry
# ==============================================================================

@pytest.mark.unit
def test_entry_id_is_content_addressed():
    unlock = utc(2024, 1, 2, 3, 4)
    entry = FeedEntry.create(ALICE, PORTAL, row("ACH_WIN", unlock), unlock)

    assert entry.id == f"alice:400:ACH_WIN:{unlock_ticks(unlock)}"
    assert entry.id == build_entry_id("alice", 400, "ACH_WIN", unlock)


@pytest.mark.unit
def test_entry_display_name_falls_back_to_key():
    unlock = utc(2024, 1, 2)
    entry = FeedEntry.create(ALICE, PORTAL, row("ACH_WIN", unlock), unlock)

    assert entry.display_name == "ACH_WIN"
    assert entry.description == ""
    assert entry.friend_display_name == "Alice"
    assert entry.local_game_id == "game-portal"
    assert entry.shard_key == "game-portal"


@pytest.mark.unit
def test_entry_from_dict_restores_stored_form():
    unlock = utc(2024, 1, 2)
    entry = FeedEntry.create(ALICE, PORTAL, row("ACH_WIN", unlock, icon="https://icon", name="Win"), unlock)

    assert FeedEntry.from_dict(entry.as_dict()) == entry


@pytest.mark.unit
@pytest.mark.parametrize("missing", ["id", "friend_id", "friend_unlock_time_utc"])
def test_entry_from_dict_rejects_missing_required_fields(missing):
    unlock = utc(2024, 1, 2)
    payload = FeedEntry.create(ALICE, PORTAL, row("ACH_WIN", unlock), unlock).as_dict()
    payload[missing] = None

    assert FeedEntry.from_dict(payload) is None


@pytest.mark.unit
def test_entry_from_dict_rejects_bad_app_id():
    unlock = utc(2024, 1, 2)
    payload = FeedEntry.create(ALICE, PORTAL, row("ACH_WIN", unlock), unlock).as_dict()
    payload["app_id"] = "four hundred"

    assert FeedEntry.from_dict(payload) is None


# ==============================================================================
# Self data and baseline
# ==============================================================================

@pytest.mark.unit
def test_self_data_emptiness():
    assert SelfAchievementGameData().is_empty
    assert SelfAchievementGameData(no_achievements=True).is_empty
    assert not SelfAchievementGameData(self_icon_urls={"A": "https://icon"}).is_empty


@pytest.mark.unit
def test_self_data_from_dict_skips_unparseable_unlocks():
    data = SelfAchievementGameData.from_dict(
        {
            "last_updated_utc": "2024-01-01T00:00:00Z",
            "unlock_times_utc": {"A": "2024-01-01T00:00:00Z", "B": "garbage"},
            "self_icon_urls": {"A": "https://icon", "B": ""},
        }
    )

    assert data.unlock_times_utc == {"A": utc(2024, 1, 1)}
    assert data.self_icon_urls == {"A": "https://icon"}
    assert data.last_updated_utc == utc(2024, 1, 1)


@pytest.mark.unit
def test_baseline_keeps_latest_unlock_per_friend_and_app():
    early, late = utc(2024, 1, 1), utc(2024, 2, 1)
    hl2 = LibraryGame(game_id="game-hl2", name="Half-Life 2", app_id=220)
    entries = [
        FeedEntry.create(ALICE, PORTAL, row("A", early), early),
        FeedEntry.create(ALICE, PORTAL, row("B", late), late),
        FeedEntry.create(ALICE, hl2, row("C", early), early),
    ]

    baseline = build_friend_app_baseline(entries)

    assert baseline == {"alice": {400: late, 220: early}}
