"""
Pytest fixtures for the PrefWatch tests.

No macOS tooling is needed: plists are written with plistlib into tmp_path,
the live type query is replaced by a dict lookup and sleeps are recorded
instead of slept.
"""
import plistlib
from pathlib import Path

import pytest

from core.commands import CommandSynthesizer
from core.noise import NoiseClassifier, load_rules
from services.coordinator import DiffCoordinator
from services.snapshot_store import SnapshotStore, Target


# =============================================================================
# Helpers
# =============================================================================

class FixedTypes:
    """Type query answering from a fixed {key: ValueKind} map."""

    def __init__(self, kinds=None):
        self.kinds = dict(kinds or {})
        self.calls = []

    def read_type(self, target, key):
        self.calls.append((target.identity, key))
        return self.kinds.get(key)


class RecordingSleep:
    """Stand-in for time.sleep that records the requested delays."""

    def __init__(self):
        self.delays = []

    def __call__(self, seconds):
        self.delays.append(seconds)


def write_plist(path: Path, tree: dict, fmt=plistlib.FMT_XML) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(plistlib.dumps(tree, fmt=fmt))
    return path


# =============================================================================
# Path Fixtures
# =============================================================================

@pytest.fixture
def prefs_dir(tmp_path: Path) -> Path:
    """Stand-in for ~/Library/Preferences."""
    path = tmp_path / "home" / "Library" / "Preferences"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def cache_dir(tmp_path: Path) -> Path:
    return tmp_path / "cache"


# =============================================================================
# Engine Fixtures
# =============================================================================

@pytest.fixture
def target(prefs_dir: Path) -> Target:
    """A user-scope target for com.example.app."""
    return Target(
        identity="com.example.app",
        path=prefs_dir / "com.example.app.plist",
        key="k-example",
    )


@pytest.fixture
def rules():
    """The bundled noise rule catalog."""
    return load_rules()


@pytest.fixture
def classifier(rules) -> NoiseClassifier:
    return NoiseClassifier(rules)


@pytest.fixture
def synthesizer() -> CommandSynthesizer:
    """Synthesizer relying on value heuristics only."""
    return CommandSynthesizer(type_query=None)


@pytest.fixture
def store(cache_dir: Path) -> SnapshotStore:
    return SnapshotStore(cache_dir)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def coordinator(store, synthesizer, recording_sleep) -> DiffCoordinator:
    """
    Coordinator without noise filtering, wired to a recording sleep.

    Emitted commands and commits are collected on the .emitted and
    .committed attributes.
    """
    coord = DiffCoordinator(store, synthesizer, sleep=recording_sleep)
    coord.emitted = []
    coord.committed = []
    coord.add_command_listener(coord.emitted.append)
    coord.add_commit_listener(coord.committed.append)
    return coord
