"""Tests for scope salt creation -- read, insert, or re-read the winner."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Optional

import pytest

from envkit.errors import RemoteError, SaltExistsError
from envkit.sync.keys import SALT_BYTES, ScopeKeyService, converge_salt, generate_salt
from envkit.sync.remote import SqliteRemoteStore


class RacingSaltStore:
    """In-memory salt table where every reader sees a miss before anyone inserts."""

    def __init__(self, parties: int) -> None:
        self._salts: dict[str, str] = {}
        self._lock = threading.Lock()
        self._barrier = threading.Barrier(parties)
        self.inserts = 0

    def get_salt(self, scope_id: str) -> Optional[str]:
        with self._lock:
            return self._salts.get(scope_id)

    def insert_salt(self, scope_id: str, salt: str) -> None:
        self._barrier.wait(timeout=5)
        with self._lock:
            self.inserts += 1
            if scope_id in self._salts:
                raise SaltExistsError("Salt already exists", scope=scope_id)
            self._salts[scope_id] = salt


class VanishingSaltStore:
    """Reports the salt as taken but never returns it."""

    def get_salt(self, scope_id: str) -> Optional[str]:
        return None

    def insert_salt(self, scope_id: str, salt: str) -> None:
        raise SaltExistsError("Salt already exists", scope=scope_id)


class CountingStore:
    def __init__(self) -> None:
        self.reads = 0
        self.salt = generate_salt()

    def get_salt(self, scope_id: str) -> Optional[str]:
        self.reads += 1
        return self.salt

    def insert_salt(self, scope_id: str, salt: str) -> None:
        raise AssertionError("should not insert")


class TestGenerateSalt:
    def test_hex_of_32_bytes(self):
        salt = generate_salt()
        assert len(bytes.fromhex(salt)) == SALT_BYTES

    def test_unique(self):
        assert generate_salt() != generate_salt()


class TestConvergeSalt:
    def test_creates_on_first_use(self, remote):
        salt = converge_salt(remote, "team-1")
        assert remote.get_salt("team-1") == salt

    def test_existing_salt_returned(self, remote):
        remote.insert_salt("team-1", "abc123")
        assert converge_salt(remote, "team-1") == "abc123"

    def test_scopes_are_independent(self, remote):
        assert converge_salt(remote, "team-1") != converge_salt(remote, "team-2")

    def test_concurrent_callers_converge(self):
        parties = 6
        store = RacingSaltStore(parties)
        with ThreadPoolExecutor(max_workers=parties) as pool:
            results = list(pool.map(lambda _: converge_salt(store, "team-1"), range(parties)))

        assert store.inserts == parties
        assert len(set(results)) == 1
        assert results[0] == store.get_salt("team-1")

    def test_concurrent_sqlite_connections_converge(self, tmp_path: Path):
        db = tmp_path / "remote.db"
        stores = [SqliteRemoteStore(db) for _ in range(8)]
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda s: s.get_or_create_salt("team-1"), stores))

        assert len(set(results)) == 1
        assert results[0] == stores[0].get_salt("team-1")

    def test_vanished_winner_is_remote_error(self):
        with pytest.raises(RemoteError, match="could not be read"):
            converge_salt(VanishingSaltStore(), "team-1")


class TestScopeKeyService:
    def test_caches_in_process(self):
        store = CountingStore()
        service = ScopeKeyService(store)
        assert service.get_or_create_salt("t") == store.salt
        assert service.get_or_create_salt("t") == store.salt
        assert store.reads == 1

    def test_new_instance_rereads(self):
        store = CountingStore()
        ScopeKeyService(store).get_or_create_salt("t")
        ScopeKeyService(store).get_or_create_salt("t")
        assert store.reads == 2
