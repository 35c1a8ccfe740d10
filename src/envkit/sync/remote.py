"""
Remote stores -- the authoritative side of a sync.

The engine only ever talks to a RemoteStore. Every operation takes and
returns one of the explicit models in ``sync.models``, so the engine and
test doubles share one contract.

SQLite: a single database file holding salts, projects, encrypted
variables and per-stage snapshot hashes. Put it on a shared drive or NAS
and every teammate's envkit treats it as the source of truth. Uniqueness
constraints in the schema are what make salt creation race-safe across
processes.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from ..errors import RemoteError, SaltExistsError
from .models import (
    AddVariablesRequest,
    CreateProjectRequest,
    EncryptedVariable,
    GetVariablesRequest,
    GetVariablesResponse,
    MutationResult,
    RemoteProject,
    RemoveVariablesRequest,
    UpdateVariablesRequest,
)

logger = logging.getLogger("envkit.sync.remote")

PENDING_PREFIX = "pending:"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS salts (
    scope_id   TEXT PRIMARY KEY,
    salt       TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS projects (
    project_id TEXT PRIMARY KEY,
    team_id    TEXT NOT NULL,
    name       TEXT NOT NULL,
    stage      TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (team_id, name, stage)
);
CREATE TABLE IF NOT EXISTS variables (
    project_id     TEXT NOT NULL,
    stage          TEXT NOT NULL,
    name           TEXT NOT NULL,
    value          TEXT NOT NULL,
    previous_value TEXT,
    updated_at     TEXT NOT NULL,
    PRIMARY KEY (project_id, stage, name)
);
CREATE TABLE IF NOT EXISTS snapshots (
    project_id TEXT NOT NULL,
    stage      TEXT NOT NULL,
    hash       TEXT,
    revision   INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (project_id, stage)
);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RemoteStore(ABC):
    """Abstract authoritative store for encrypted variables."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable store name."""

    @abstractmethod
    def get_variables(self, request: GetVariablesRequest) -> GetVariablesResponse:
        """Return a stage's variables unless its hash equals ``local_hash``."""

    @abstractmethod
    def add_variables(self, request: AddVariablesRequest) -> MutationResult:
        """Insert variables that do not exist yet."""

    @abstractmethod
    def update_variables(self, request: UpdateVariablesRequest) -> MutationResult:
        """Replace values of existing variables."""

    @abstractmethod
    def remove_variables(self, request: RemoveVariablesRequest) -> MutationResult:
        """Delete variables by name."""

    @abstractmethod
    def previous_value(self, project_id: str, stage: str, name: str) -> Optional[str]:
        """Return the envelope a variable held before its last update, if any."""

    @abstractmethod
    def get_salt(self, scope_id: str) -> Optional[str]:
        """Read the scope salt, or None if none exists yet."""

    @abstractmethod
    def insert_salt(self, scope_id: str, salt: str) -> None:
        """Insert a salt. Raises SaltExistsError if the scope already has one."""

    @abstractmethod
    def get_project(self, project_id: str) -> RemoteProject:
        """Fetch a project or raise RemoteError."""

    @abstractmethod
    def create_project(self, request: CreateProjectRequest) -> RemoteProject:
        """Register a new project/stage pair."""

    def get_or_create_salt(self, scope_id: str) -> str:
        """Read the scope salt, creating it race-safely on first use."""
        from .keys import converge_salt

        return converge_salt(self, scope_id)


class SqliteRemoteStore(RemoteStore):
    """Remote store backed by one SQLite database file.

    Args:
        path: Database file. Parent directories are created.
        timeout: Seconds to wait on a locked database.
    """

    def __init__(self, path: Path, timeout: float = 30.0) -> None:
        self.path = Path(path).expanduser()
        self.timeout = timeout
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    @property
    def name(self) -> str:
        return f"sqlite:{self.path}"

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.path), timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        try:
            conn = self._connect()
            try:
                conn.executescript(_SCHEMA)
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise RemoteError(f"Cannot open remote store {self.path}: {exc}") from exc

    @contextmanager
    def _transaction(self, write: bool = False) -> Iterator[sqlite3.Connection]:
        """Run a block in one transaction; any SQLite failure is a RemoteError."""
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise RemoteError(f"Cannot open remote store {self.path}: {exc}") from exc
        try:
            conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            raise RemoteError(f"Remote store failure: {exc}") from exc
        finally:
            conn.close()

    # -------------------------------------------------------------------
    # Projects
    # -------------------------------------------------------------------

    def get_project(self, project_id: str) -> RemoteProject:
        with self._transaction() as conn:
            row = self._project_row(conn, project_id)
        return RemoteProject(
            project_id=row["project_id"],
            team_id=row["team_id"],
            name=row["name"],
            stage=row["stage"],
        )

    def create_project(self, request: CreateProjectRequest) -> RemoteProject:
        name = request.name.strip()
        stage = request.stage.strip()
        project = RemoteProject(
            project_id=uuid.uuid4().hex,
            team_id=request.team_id,
            name=name,
            stage=stage,
        )
        with self._transaction(write=True) as conn:
            try:
                conn.execute(
                    "INSERT INTO projects (project_id, team_id, name, stage, created_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (project.project_id, project.team_id, name, stage, _now()),
                )
            except sqlite3.IntegrityError:
                raise RemoteError(
                    f"Project '{name}' already exists", stage=stage, scope=request.team_id
                )
        logger.info("Created project %s (%s) in team %s", name, stage, request.team_id)
        return project

    @staticmethod
    def _project_row(conn: sqlite3.Connection, project_id: str) -> sqlite3.Row:
        row = conn.execute(
            "SELECT * FROM projects WHERE project_id = ?", (project_id,)
        ).fetchone()
        if row is None:
            raise RemoteError(f"Project '{project_id}' not found")
        return row

    # -------------------------------------------------------------------
    # Variables
    # -------------------------------------------------------------------

    @staticmethod
    def _snapshot_hash(conn: sqlite3.Connection, project_id: str, stage: str) -> str:
        row = conn.execute(
            "SELECT hash, revision FROM snapshots WHERE project_id = ? AND stage = ?",
            (project_id, stage),
        ).fetchone()
        if row is None:
            return ""
        if row["hash"] is None:
            return f"{PENDING_PREFIX}{row['revision']}"
        return row["hash"]

    @staticmethod
    def _touch_snapshot(
        conn: sqlite3.Connection,
        project_id: str,
        stage: str,
        content_hash: Optional[str],
    ) -> None:
        """Record a mutation. Without a content hash the snapshot goes pending."""
        conn.execute(
            "INSERT INTO snapshots (project_id, stage, hash, revision, updated_at) "
            "VALUES (?, ?, ?, 1, ?) "
            "ON CONFLICT (project_id, stage) DO UPDATE SET "
            "hash = excluded.hash, revision = snapshots.revision + 1, "
            "updated_at = excluded.updated_at",
            (project_id, stage, content_hash, _now()),
        )

    def get_variables(self, request: GetVariablesRequest) -> GetVariablesResponse:
        with self._transaction() as conn:
            self._project_row(conn, request.project_id)
            current = self._snapshot_hash(conn, request.project_id, request.stage)
            if request.local_hash is not None and request.local_hash == current:
                return GetVariablesResponse(changed=False, hash=current)
            rows = conn.execute(
                "SELECT name, value FROM variables WHERE project_id = ? AND stage = ? "
                "ORDER BY name",
                (request.project_id, request.stage),
            ).fetchall()
        return GetVariablesResponse(
            changed=True,
            hash=current,
            variables=[EncryptedVariable(name=r["name"], value=r["value"]) for r in rows],
        )

    def add_variables(self, request: AddVariablesRequest) -> MutationResult:
        with self._transaction(write=True) as conn:
            self._project_row(conn, request.project_id)
            for var in request.variables:
                try:
                    conn.execute(
                        "INSERT INTO variables (project_id, stage, name, value, updated_at) "
                        "VALUES (?, ?, ?, ?, ?)",
                        (request.project_id, request.stage, var.name, var.value, _now()),
                    )
                except sqlite3.IntegrityError:
                    raise RemoteError(
                        "Variable already exists", key=var.name, stage=request.stage
                    )
            self._touch_snapshot(conn, request.project_id, request.stage, request.content_hash)
            updated = self._snapshot_hash(conn, request.project_id, request.stage)
        return MutationResult(
            updated_hash=updated,
            additions=[v.name for v in request.variables],
        )

    def update_variables(self, request: UpdateVariablesRequest) -> MutationResult:
        with self._transaction(write=True) as conn:
            self._project_row(conn, request.project_id)
            for var in request.variables:
                cursor = conn.execute(
                    "UPDATE variables SET previous_value = value, value = ?, updated_at = ? "
                    "WHERE project_id = ? AND stage = ? AND name = ?",
                    (var.value, _now(), request.project_id, request.stage, var.name),
                )
                if cursor.rowcount == 0:
                    raise RemoteError(
                        "Variable does not exist", key=var.name, stage=request.stage
                    )
            self._touch_snapshot(conn, request.project_id, request.stage, request.content_hash)
            updated = self._snapshot_hash(conn, request.project_id, request.stage)
        return MutationResult(
            updated_hash=updated,
            modifications=[v.name for v in request.variables],
        )

    def remove_variables(self, request: RemoveVariablesRequest) -> MutationResult:
        with self._transaction(write=True) as conn:
            self._project_row(conn, request.project_id)
            for name in request.names:
                cursor = conn.execute(
                    "DELETE FROM variables WHERE project_id = ? AND stage = ? AND name = ?",
                    (request.project_id, request.stage, name),
                )
                if cursor.rowcount == 0:
                    raise RemoteError(
                        "Variable not found or already deleted", key=name, stage=request.stage
                    )
            self._touch_snapshot(conn, request.project_id, request.stage, request.content_hash)
            updated = self._snapshot_hash(conn, request.project_id, request.stage)
        return MutationResult(updated_hash=updated, removals=list(request.names))

    def previous_value(self, project_id: str, stage: str, name: str) -> Optional[str]:
        """Return the one retained prior envelope for a variable."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT previous_value FROM variables "
                "WHERE project_id = ? AND stage = ? AND name = ?",
                (project_id, stage, name),
            ).fetchone()
        return row["previous_value"] if row else None

    # -------------------------------------------------------------------
    # Salts
    # -------------------------------------------------------------------

    def get_salt(self, scope_id: str) -> Optional[str]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT salt FROM salts WHERE scope_id = ?", (scope_id,)
            ).fetchone()
        return row["salt"] if row else None

    def insert_salt(self, scope_id: str, salt: str) -> None:
        with self._transaction(write=True) as conn:
            try:
                conn.execute(
                    "INSERT INTO salts (scope_id, salt, created_at) VALUES (?, ?, ?)",
                    (scope_id, salt, _now()),
                )
            except sqlite3.IntegrityError:
                raise SaltExistsError("Salt already exists", scope=scope_id)


def create_remote(config) -> RemoteStore:
    """Build the remote store described by a config.

    Args:
        config: An EnvkitConfig.

    Returns:
        A ready RemoteStore.
    """
    backend = config.remote.backend
    if backend == "sqlite":
        return SqliteRemoteStore(config.remote_path())
    raise RemoteError(f"Unknown remote backend: {backend}")
