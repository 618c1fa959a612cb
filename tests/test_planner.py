"""Unit tests for scan planning (explicit, quick and default modes)."""
from __future__ import annotations

import asyncio

import pytest

from achievement_feed.data.models import FeedEntry, Friend
from achievement_feed.rebuild.options import ScanOptions
from achievement_feed.rebuild.planner import (
    ScanPlanner,
    build_forced_apps_by_friend,
    plan_self_apps,
    playtime_delta_apps,
    select_recent_pairs,
)
from tests.helpers.fake_provider import row, utc

FRIENDS = [Friend(friend_id=f"f{i}", display_name=f"Friend {i}") for i in range(5)]


def build(provider, library, options, friends=FRIENDS, existing=(), explicit=(), forced=None, previous=None):
    planner = ScanPlanner(provider, library.games())
    return asyncio.run(
        planner.build_plans(
            options,
            list(friends),
            list(existing),
            list(explicit),
            forced_apps_by_friend=forced,
            previous_playtime=previous,
        )
    )


@pytest.fixture
def recent_activity(library_games):
    """Cached entries for 5 friends x 3 apps; higher index means more recent."""
    entries = []
    for i, friend in enumerate(FRIENDS):
        for j, game in enumerate(library_games):
            unlock = utc(2024, 1, 1 + i, j)
            entries.append(FeedEntry.create(friend, game, row(f"ACH_{j}", unlock), unlock))
    return entries


# ==============================================================================
# Quick scan
# ==============================================================================

@pytest.mark.unit
def test_quick_scan_selects_most_recent_pairs(provider, library, library_games, recent_activity):
    options = ScanOptions(
        quick_scan_recent_pairs=True,
        quick_scan_recent_friends_count=2,
        quick_scan_recent_games_per_friend=1,
    )

    plan = build(provider, library, options, existing=recent_activity)

    newest_app = library_games[2].app_id
    assert [p.friend.friend_id for p in plan.friend_plans] == ["f4", "f3"]
    assert [p.apps for p in plan.friend_plans] == [[newest_app], [newest_app]]
    assert plan.friend_app_count == 2
    assert plan.affected_app_ids == {newest_app}


@pytest.mark.unit
def test_quick_scan_never_expands_with_forced_or_unowned(provider, library, recent_activity):
    options = ScanOptions(
        quick_scan_recent_pairs=True,
        quick_scan_recent_friends_count=1,
        quick_scan_recent_games_per_friend=1,
        include_unowned_friend_ids=["f4"],
    )

    plan = build(provider, library, options, existing=recent_activity, forced={"f4": {400, 220}})

    assert plan.friend_app_count == 1
    assert plan.include_unowned_candidates_total == 0
    assert plan.friend_plans[0].explicit_apps


@pytest.mark.unit
def test_quick_scan_drops_zero_minute_apps(provider, library, recent_activity):
    provider.playtimes["f4"] = {440: 0, 220: 30, 400: 0}
    options = ScanOptions(quick_scan_recent_pairs=True, quick_scan_recent_friends_count=1)

    plan = build(provider, library, options, existing=recent_activity)

    assert plan.friend_plans[0].apps == [220]
    assert plan.friends_ownership_unavailable == 0


@pytest.mark.unit
def test_quick_scan_ignores_friends_without_recent_activity(provider, library):
    options = ScanOptions(quick_scan_recent_pairs=True)

    plan = build(provider, library, options, existing=[])

    assert plan.friend_plans == []
    assert plan.quick_scan


@pytest.mark.unit
@pytest.mark.parametrize("friends_count, games", [(0, 3), (3, 0), (2, 2), (5, 3), (9, 9)])
def test_recent_pair_selection_is_bounded(library, recent_activity, friends_count, games):
    selected = select_recent_pairs(
        recent_activity, {f.friend_id for f in FRIENDS}, library.games(), friends_count, games
    )

    assert len(selected) <= friends_count
    assert sum(len(apps) for apps in selected.values()) <= friends_count * games


# ==============================================================================
# Explicit apps
# ==============================================================================

@pytest.mark.unit
def test_explicit_apps_take_priority_over_quick_scan(provider, library, recent_activity):
    options = ScanOptions(quick_scan_recent_pairs=True, app_ids=[220])

    plan = build(provider, library, options, friends=FRIENDS[:2], existing=recent_activity, explicit=[220])

    assert not plan.quick_scan
    assert [p.apps for p in plan.friend_plans] == [[220], [220]]
    assert all(p.explicit_apps for p in plan.friend_plans)


@pytest.mark.unit
def test_explicit_apps_with_unknown_ownership_are_still_scanned(provider, library):
    options = ScanOptions(app_ids=[220, 400])

    plan = build(provider, library, options, friends=FRIENDS[:1], explicit=[220, 400])

    friend_plan = plan.friend_plans[0]
    assert friend_plan.apps == [220, 400]
    assert friend_plan.ownership_unavailable
    assert plan.friends_ownership_unavailable == 1


# ==============================================================================
# Default mode
# ==============================================================================

@pytest.mark.unit
def test_failed_ownership_lookup_keeps_friend_with_empty_plan(provider, library):
    provider.playtimes["f0"] = None

    plan = build(provider, library, ScanOptions(), friends=FRIENDS[:1])

    friend_plan = plan.friend_plans[0]
    assert friend_plan.ownership_unavailable
    assert friend_plan.apps == []
    assert plan.friends_ownership_unavailable == 1


@pytest.mark.unit
def test_ownership_lookup_exception_is_not_fatal(provider, library):
    provider.playtimes["f0"] = RuntimeError("profile private")

    plan = build(provider, library, ScanOptions(), friends=FRIENDS[:1])

    assert plan.friend_plans[0].ownership_unavailable


@pytest.mark.unit
def test_default_mode_uses_played_shared_games(provider, library):
    provider.playtimes["f0"] = {400: 15, 220: 0, 999: 60}

    plan = build(provider, library, ScanOptions(), friends=FRIENDS[:1])

    friend_plan = plan.friend_plans[0]
    assert friend_plan.apps == [400]
    assert friend_plan.owned == {400, 220}
    assert friend_plan.candidate_games == 1
    assert plan.observed_minutes == {"f0": {400: 15, 220: 0}}


@pytest.mark.unit
def test_allow_unowned_friend_gets_unowned_library_apps(provider, library):
    provider.playtimes["f0"] = {400: 15}
    options = ScanOptions(include_unowned_friend_ids=["f0"])

    plan = build(provider, library, options, friends=FRIENDS[:1])

    friend_plan = plan.friend_plans[0]
    assert friend_plan.apps == [220, 400, 440]
    assert friend_plan.candidate_games == 1
    assert plan.include_unowned_candidates_total == 3
    assert friend_plan.unowned_scan_allowed(440)


@pytest.mark.unit
def test_forced_apps_are_always_added(provider, library):
    provider.playtimes["f0"] = {400: 15}

    plan = build(provider, library, ScanOptions(), friends=FRIENDS[:1], forced={"f0": {440, 12345}})

    friend_plan = plan.friend_plans[0]
    assert friend_plan.apps == [400, 440]
    assert friend_plan.unowned_scan_allowed(440)
    assert not friend_plan.unowned_scan_allowed(220)


@pytest.mark.unit
def test_all_library_apps_skips_ownership_lookup(provider, library):
    plan = build(provider, library, ScanOptions(friends_all_library_apps=True), friends=FRIENDS[:1])

    assert plan.friend_plans[0].apps == [220, 400, 440]
    assert provider.calls_of("get_owned_app_playtimes") == []


@pytest.mark.unit
def test_playtime_delta_only_limits_to_grown_minutes(provider, library):
    provider.playtimes["f0"] = {400: 100, 220: 50, 440: 10}
    options = ScanOptions(playtime_delta_only=True)

    plan = build(provider, library, options, friends=FRIENDS[:1], previous={"f0": {400: 100, 220: 20}})

    assert plan.friend_plans[0].apps == [220, 440]


@pytest.mark.unit
def test_playtime_delta_without_baseline_takes_any_played_app():
    assert playtime_delta_apps({400: 5, 220: 0}, None) == {400}


@pytest.mark.unit
def test_friends_excluded_means_no_plans(provider, library):
    plan = build(provider, library, ScanOptions(include_friends=False))

    assert plan.friend_plans == []
    assert provider.calls == []


# ==============================================================================
# Forced apps and self apps
# ==============================================================================

@pytest.mark.unit
def test_forced_apps_are_inverted_through_the_library(library):
    forced = build_forced_apps_by_friend(
        {"game-portal": ["f0", "f1"], "game-tf2": ["f1"], "game-unknown": ["f2"]},
        library.games(),
    )

    assert forced == {"f0": {400}, "f1": {400, 440}}


@pytest.mark.unit
def test_self_apps_default_drops_unplayed_games(provider, library):
    plan = build(provider, library, ScanOptions(include_friends=False))

    apps = plan_self_apps(ScanOptions(), plan, library.games(), {400: 10, 220: 0})

    assert apps == [400]


@pytest.mark.unit
def test_self_apps_without_minutes_keeps_whole_library(provider, library):
    plan = build(provider, library, ScanOptions(include_friends=False))

    assert plan_self_apps(ScanOptions(), plan, library.games(), {}) == [220, 400, 440]


@pytest.mark.unit
def test_self_all_library_apps_ignores_minutes(provider, library):
    options = ScanOptions(self_all_library_apps=True)
    plan = build(provider, library, options)

    assert plan_self_apps(options, plan, library.games(), {400: 10}) == [220, 400, 440]


@pytest.mark.unit
def test_quick_scan_self_apps_are_the_affected_apps(provider, library, recent_activity):
    options = ScanOptions(quick_scan_recent_pairs=True, quick_scan_recent_friends_count=1, quick_scan_recent_games_per_friend=1)
    plan = build(provider, library, options, existing=recent_activity)

    assert plan_self_apps(options, plan, library.games(), None) == [440]
