"""Shared pytest configuration and fixtures for the test suite.

This module centralizes:
- Path setup (the package is importable without installation)
- Pytest markers for test categorization (unit, integration, property)
- Common fixtures: library, identity, cache store and a scripted provider
"""
from __future__ import annotations

import sys
from pathlib import Path

import pytest


# ==============================================================================
# Path Setup
# ==============================================================================

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from achievement_feed.data.cache_store import CacheStore  # noqa: E402
from achievement_feed.data.models import LibraryGame, SteamIdentity  # noqa: E402
from achievement_feed.rebuild.provider import StaticLibraryIndex  # noqa: E402
from tests.helpers.fake_provider import ScriptedProvider  # noqa: E402


# ==============================================================================
# Pytest Configuration
# ==============================================================================

def pytest_configure(config):
    """Register custom markers for test categorization."""
    config.addinivalue_line(
        "markers",
        "unit: Fast tests with no I/O (fakes only)",
    )
    config.addinivalue_line(
        "markers",
        "integration: Tests touching the file system through the cache store",
    )
    config.addinivalue_line(
        "markers",
        "property: Hypothesis property-based tests",
    )


# ==============================================================================
# Fixtures
# ==============================================================================

@pytest.fixture
def library_games():
    return [
        LibraryGame(game_id="game-portal", name="Portal", app_id=400),
        LibraryGame(game_id="game-hl2", name="Half-Life 2", app_id=220),
        LibraryGame(game_id="game-tf2", name="Team Fortress 2", app_id=440),
    ]


@pytest.fixture
def library(library_games):
    return StaticLibraryIndex(library_games)


@pytest.fixture
def identity():
    return SteamIdentity(user_id="76561190000000001", api_key="key-abc")


@pytest.fixture
def store(tmp_path):
    return CacheStore(tmp_path / "feed_cache")


@pytest.fixture
def provider():
    return ScriptedProvider()
