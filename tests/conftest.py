"""Shared test fixtures for envkit."""

from __future__ import annotations

from pathlib import Path

import pytest

from envkit.sync.engine import SyncEngine
from envkit.sync.envelope import EnvelopeCipher
from envkit.sync.remote import SqliteRemoteStore

PEPPER = "test-pepper-not-for-production"
TEAM = "team-acme"


@pytest.fixture
def home(tmp_path: Path) -> Path:
    """Provide a temporary envkit home directory."""
    envkit_home = tmp_path / "alice" / ".envkit"
    envkit_home.mkdir(parents=True)
    return envkit_home


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    """Provide a project working directory named my-app."""
    project = tmp_path / "alice" / "my-app"
    project.mkdir(parents=True)
    return project


@pytest.fixture
def remote(tmp_path: Path) -> SqliteRemoteStore:
    """Provide a fresh SQLite remote store shared by everyone in a test."""
    return SqliteRemoteStore(tmp_path / "shared" / "remote.db")


@pytest.fixture
def cipher() -> EnvelopeCipher:
    return EnvelopeCipher(PEPPER)


@pytest.fixture
def engine(remote, cipher, home: Path, workdir: Path) -> SyncEngine:
    """An engine for a working directory that is not linked yet."""
    return SyncEngine(remote=remote, cipher=cipher, home=home, working_dir=workdir)


@pytest.fixture
def linked_engine(engine: SyncEngine) -> SyncEngine:
    """An engine whose working directory was just initialized and pushed."""
    engine.init(TEAM)
    engine.push()
    return engine


def make_teammate(tmp_path: Path, remote, name: str = "bob", pepper: str = PEPPER) -> SyncEngine:
    """Build a second user's engine against the same remote store."""
    teammate_home = tmp_path / name / ".envkit"
    teammate_dir = tmp_path / name / "my-app"
    teammate_dir.mkdir(parents=True)
    return SyncEngine(
        remote=remote,
        cipher=EnvelopeCipher(pepper),
        home=teammate_home,
        working_dir=teammate_dir,
    )
