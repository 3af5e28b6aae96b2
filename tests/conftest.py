"""Shared pytest fixtures for the arena bridge test suite.

Non-fixture helpers (fake pages, clocks, probe builders) are in helpers.py.
"""

import json
import logging
import sys
from pathlib import Path

import pytest

# Add the tests directory to sys.path so test files can import helpers.py
sys.path.insert(0, str(Path(__file__).parent))

from arena_config import ArtifactsConfig, BridgeConfig, SessionConfig  # noqa: E402


@pytest.fixture
def config(tmp_path: Path) -> BridgeConfig:
    """Default config with every file location inside tmp_path."""
    return BridgeConfig(
        session=SessionConfig(session_path=tmp_path / "cookies.json"),
        artifacts=ArtifactsConfig(directory=tmp_path / "runs"),
        selectors_path=tmp_path / "arena-selectors.json",
    )


@pytest.fixture
def session_file(config: BridgeConfig) -> Path:
    """Write a snapshot-shaped session file with one valid and one expired cookie."""
    data = {
        "cookies": [
            {"name": "arena-auth-token", "value": "tok", "domain": "lmarena.ai", "path": "/",
             "expires": 4102444800, "httpOnly": True, "secure": True, "sameSite": "lax"},
            {"name": "old", "value": "x", "domain": ".lmarena.ai", "expires": 1000},
        ],
        "localStorage": {"theme": "dark"},
        "savedAt": "2026-01-01T00:00:00+00:00",
        "url": "https://lmarena.ai/?mode=direct",
    }
    path = config.session.session_path
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


@pytest.fixture
def restore_logging():
    """Undo setup_logging()'s changes to the root logger after the test."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
