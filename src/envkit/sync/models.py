"""
Sync data models -- local bindings, decisions, and the remote contract.

The request/response shapes for every remote-store operation live here,
once, so the engine and any test double speak exactly the same language.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class SyncAction(str, Enum):
    """What a reconcile pass decided to do."""

    PUSH = "push"
    PULL = "pull"
    CONFLICT = "conflict"
    NONE = "none"


class ConflictChoice(str, Enum):
    """How the caller resolves a conflict."""

    PUSH = "push"
    PULL = "pull"
    ABORT = "abort"


class MergePolicy(str, Enum):
    """Conflict policy applied when incoming values meet local ones."""

    OVERRIDE_ALL = "override-all"
    KEEP_ALL = "keep-all"
    PER_KEY_CONFIRM = "per-key-confirm"


class KeyChange(str, Enum):
    """Per-key outcome of a merge."""

    ADDED = "added"
    REMOVED = "removed"
    CHANGED = "changed"
    KEPT = "kept"


# ---------------------------------------------------------------------------
# Stored shapes
# ---------------------------------------------------------------------------


class EncryptedVariable(BaseModel):
    """A variable as it travels: name plus envelope, never plaintext."""

    name: str
    value: str


class RemoteProject(BaseModel):
    """A project registered in the remote store."""

    project_id: str
    team_id: str
    name: str
    stage: str


class LinkedProject(BaseModel):
    """Local binding of a working directory to a remote project and stage.

    ``last_synced_hash`` is the fingerprint both sides agreed on at the
    last confirmed round trip. The empty string means "never synced"
    (equivalently, synced while empty).
    """

    remote_project_id: str
    team_id: str
    name: str
    stage: str
    last_synced_hash: str = ""
    linked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Decisions and results
# ---------------------------------------------------------------------------


class SyncDecision(BaseModel):
    """Three-way comparison of local, remote, and last-synced hashes."""

    local_hash: str
    remote_hash: str
    synced_hash: str
    action: SyncAction

    @property
    def local_changed(self) -> bool:
        return self.local_hash != self.synced_hash

    @property
    def remote_changed(self) -> bool:
        return self.remote_hash != self.synced_hash


class MergeResult(BaseModel):
    """Merged mapping plus the classification of every key touched."""

    merged: dict[str, str] = Field(default_factory=dict)
    changes: dict[str, KeyChange] = Field(default_factory=dict)

    def names(self, change: KeyChange) -> list[str]:
        """Sorted names that ended up with the given classification."""
        return sorted(k for k, v in self.changes.items() if v == change)

    @property
    def added(self) -> list[str]:
        return self.names(KeyChange.ADDED)

    @property
    def removed(self) -> list[str]:
        return self.names(KeyChange.REMOVED)

    @property
    def changed(self) -> list[str]:
        return self.names(KeyChange.CHANGED)

    @property
    def kept(self) -> list[str]:
        return self.names(KeyChange.KEPT)


class SyncResult(BaseModel):
    """Outcome of a push, pull, or sync call."""

    action: SyncAction
    project: str
    stage: str
    hash: str = ""
    additions: list[str] = Field(default_factory=list)
    removals: list[str] = Field(default_factory=list)
    modifications: list[str] = Field(default_factory=list)
    merge: Optional[MergeResult] = None
    aborted: bool = False


class DiffReport(BaseModel):
    """Names that differ between the local file and the remote set."""

    added: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    changed: list[str] = Field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not (self.added or self.removed or self.changed)


# ---------------------------------------------------------------------------
# Remote contract: one request/response per operation
# ---------------------------------------------------------------------------


class GetVariablesRequest(BaseModel):
    """Ask for a stage's variables relative to a known hash.

    ``local_hash=None`` means no comparison is performed and the full set
    is always returned. ``""`` is a real hash (the empty set).
    """

    project_id: str
    stage: str
    local_hash: Optional[str] = None


class GetVariablesResponse(BaseModel):
    """``changed=False`` is a hash-equality short-circuit, not a diff."""

    changed: bool
    hash: str
    variables: list[EncryptedVariable] = Field(default_factory=list)


class AddVariablesRequest(BaseModel):
    """Insert new variables. ``content_hash`` commits the snapshot hash."""

    project_id: str
    stage: str
    variables: list[EncryptedVariable]
    content_hash: Optional[str] = None


class UpdateVariablesRequest(AddVariablesRequest):
    """Replace the value of existing variables, keeping one prior value."""


class RemoveVariablesRequest(BaseModel):
    """Delete variables by name."""

    project_id: str
    stage: str
    names: list[str]
    content_hash: Optional[str] = None


class MutationResult(BaseModel):
    """What a mutation changed and the snapshot hash afterwards."""

    updated_hash: str
    additions: list[str] = Field(default_factory=list)
    removals: list[str] = Field(default_factory=list)
    modifications: list[str] = Field(default_factory=list)


class CreateProjectRequest(BaseModel):
    """Register a new project/stage pair under a team."""

    team_id: str
    name: str
    stage: str
