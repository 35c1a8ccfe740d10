"""
Sync Engine -- reconciles the local env file with the remote store.

Three hashes drive every decision:

    L  fingerprint of the local file right now
    S  last hash both sides confirmed (from the linked project record)
    R  the remote store's current hash

    L == S, R == S  ->  none
    L != S, R == S  ->  push
    L == S, R != S  ->  pull
    L != S, R != S  ->  conflict (caller decides push / pull / abort)

No decision is cached between calls; every operation recomputes from
fresh hashes, so any failed call can simply be run again. S only moves after
the remote has confirmed the write, and the local file is only replaced
once every remote call and every decryption for the operation succeeded.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence, TypeVar, Union

from ..audit import record_audit
from ..envfile import (
    ensure_env_file,
    load_env_file,
    protect_gitignore,
    validate_name,
    write_env_file,
)
from ..errors import (
    ConflictError,
    EnvkitError,
    NotLinkedError,
    RemoteError,
    ValidationError,
)
from .envelope import EnvelopeCipher
from .hasher import fingerprint
from .keys import ScopeKeyService
from .linked import LinkedProjectStore, project_name_for
from .merge import ConfirmFn, diff_names, resolve
from .models import (
    AddVariablesRequest,
    ConflictChoice,
    CreateProjectRequest,
    DiffReport,
    EncryptedVariable,
    GetVariablesRequest,
    GetVariablesResponse,
    KeyChange,
    LinkedProject,
    MergePolicy,
    MutationResult,
    RemoveVariablesRequest,
    SyncAction,
    SyncDecision,
    SyncResult,
    UpdateVariablesRequest,
)
from .remote import RemoteStore, create_remote

logger = logging.getLogger("envkit.sync.engine")

T = TypeVar("T")

ConflictCallback = Callable[[SyncDecision], Union[ConflictChoice, str]]


def decide(local_hash: str, remote_hash: str, synced_hash: str) -> SyncDecision:
    """Pick the sync action from the three hashes.

    Args:
        local_hash: Fingerprint of the local file (L).
        remote_hash: The remote store's hash (R).
        synced_hash: Last confirmed hash (S).

    Returns:
        SyncDecision carrying the hashes and the action.
    """
    local_changed = local_hash != synced_hash
    remote_changed = remote_hash != synced_hash
    if local_changed and remote_changed:
        action = SyncAction.CONFLICT
    elif local_changed:
        action = SyncAction.PUSH
    elif remote_changed:
        action = SyncAction.PULL
    else:
        action = SyncAction.NONE
    return SyncDecision(
        local_hash=local_hash,
        remote_hash=remote_hash,
        synced_hash=synced_hash,
        action=action,
    )


def _chunks(items: Sequence[T], size: int) -> Iterator[list[T]]:
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


class SyncEngine:
    """Push, pull, and sync one working directory against a remote store.

    Args:
        remote: The authoritative store.
        cipher: Envelope cipher holding the pepper.
        home: envkit home directory (linked records, history).
        working_dir: Directory holding the env file.
        env_file: Env file name inside working_dir.
        project_name: Override for the project name (defaults to the
            working directory's base name).
        batch_size: Variables per remote mutation call.
        pull_policy: Default merge policy for pull and link.
        confirm: Callback for the per-key-confirm policy.
        default_stage: Stage used by init when none is given.
    """

    def __init__(
        self,
        remote: RemoteStore,
        cipher: EnvelopeCipher,
        home: Path,
        working_dir: Optional[Path] = None,
        env_file: str = ".env.local",
        project_name: Optional[str] = None,
        batch_size: int = 50,
        pull_policy: MergePolicy = MergePolicy.OVERRIDE_ALL,
        confirm: Optional[ConfirmFn] = None,
        default_stage: str = "development",
    ) -> None:
        self.remote = remote
        self.cipher = cipher
        self.home = Path(home).expanduser()
        self.working_dir = Path(working_dir or Path.cwd())
        self.env_file = env_file
        self.project_name = project_name or project_name_for(self.working_dir)
        self.batch_size = max(1, batch_size)
        self.pull_policy = MergePolicy(pull_policy)
        self.confirm = confirm
        self.default_stage = default_stage
        self.keys = ScopeKeyService(remote)
        self.links = LinkedProjectStore(self.home)

    @classmethod
    def from_config(
        cls,
        config,
        working_dir: Optional[Path] = None,
        confirm: Optional[ConfirmFn] = None,
        remote: Optional[RemoteStore] = None,
    ) -> "SyncEngine":
        """Build an engine from an EnvkitConfig.

        Raises:
            ConfigError: If no pepper is configured.
        """
        cipher = EnvelopeCipher(config.require_pepper(), max_workers=config.max_workers)
        return cls(
            remote=remote or create_remote(config),
            cipher=cipher,
            home=config.home,
            working_dir=working_dir,
            env_file=config.env_file,
            project_name=config.project_name,
            batch_size=config.batch_size,
            pull_policy=config.pull_policy,
            confirm=confirm,
            default_stage=config.default_stage,
        )

    @property
    def env_path(self) -> Path:
        return self.working_dir / self.env_file

    # -------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------

    def binding(self, stage: Optional[str] = None) -> LinkedProject:
        """Resolve the linked project for a stage.

        With no stage, the single linked stage is used.

        Raises:
            NotLinkedError: If nothing is linked.
            ValidationError: If several stages are linked and none was given.
        """
        if stage:
            return self.links.require(self.project_name, stage)
        stages = self.links.stages(self.project_name)
        if not stages:
            raise NotLinkedError(f"Project '{self.project_name}' is not linked")
        if len(stages) > 1:
            raise ValidationError(
                f"Project '{self.project_name}' is linked to several stages "
                f"({', '.join(stages)}); pick one"
            )
        return self.links.require(self.project_name, stages[0])

    def _local(self) -> dict[str, str]:
        return load_env_file(self.env_path)

    def _call(self, what: str, fn: Callable[..., T], request, linked: LinkedProject) -> T:
        """Invoke a remote operation; any non-envkit failure is a RemoteError."""
        try:
            return fn(request)
        except EnvkitError:
            raise
        except Exception as exc:
            raise RemoteError(
                f"{what} failed: {exc}", stage=linked.stage, scope=linked.team_id
            ) from exc

    def _fetch(self, linked: LinkedProject, local_hash: Optional[str]) -> GetVariablesResponse:
        request = GetVariablesRequest(
            project_id=linked.remote_project_id,
            stage=linked.stage,
            local_hash=local_hash,
        )
        return self._call("get_variables", self.remote.get_variables, request, linked)

    def _salt(self, linked: LinkedProject) -> str:
        try:
            return self.keys.get_or_create_salt(linked.team_id)
        except EnvkitError:
            raise
        except Exception as exc:
            raise RemoteError(
                f"get_or_create_salt failed: {exc}", stage=linked.stage, scope=linked.team_id
            ) from exc

    def _decrypt_remote(self, linked: LinkedProject, response: GetVariablesResponse) -> dict[str, str]:
        if not response.variables:
            return {}
        salt = self._salt(linked)
        pairs = [(v.name, v.value) for v in response.variables]
        return self.cipher.decrypt_many(pairs, salt, stage=linked.stage)

    def _encrypt(self, linked: LinkedProject, values: dict[str, str], names: Sequence[str]) -> dict[str, str]:
        if not names:
            return {}
        salt = self._salt(linked)
        envelopes = self.cipher.encrypt_many([values[n] for n in names], salt)
        return dict(zip(names, envelopes))

    def _audit(self, event: str, linked: LinkedProject, changes: dict[str, str]) -> None:
        record_audit(
            self.home,
            event,
            project=linked.name,
            stage=linked.stage,
            file=self.env_path,
            vars=changes,
        )

    def _confirm_hash(self, linked: LinkedProject, result: MutationResult, expected: str) -> None:
        if result.updated_hash != expected:
            raise RemoteError(
                "Remote did not confirm the pushed content hash",
                stage=linked.stage,
                scope=linked.team_id,
            )

    # -------------------------------------------------------------------
    # Status / diff
    # -------------------------------------------------------------------

    def status(self, stage: Optional[str] = None) -> SyncDecision:
        """Compute the current decision without changing anything."""
        linked = self.binding(stage)
        local_hash = fingerprint(self._local())
        response = self._fetch(linked, linked.last_synced_hash)
        return decide(local_hash, response.hash, linked.last_synced_hash)

    def diff(self, stage: Optional[str] = None) -> DiffReport:
        """Names that differ between the local file and the remote set.

        ``added`` exists only locally, ``removed`` only remotely.
        """
        linked = self.binding(stage)
        local = self._local()
        remote_plain = self._decrypt_remote(linked, self._fetch(linked, None))
        added, removed, changed, _ = diff_names(remote_plain, local)
        return DiffReport(added=added, removed=removed, changed=changed)

    # -------------------------------------------------------------------
    # Push / pull / sync
    # -------------------------------------------------------------------

    def push(self, stage: Optional[str] = None) -> SyncResult:
        """Send the local variable set to the remote store.

        Raises:
            NotLinkedError, ValidationError, RemoteError, DecryptionError.
        """
        linked = self.binding(stage)
        return self._push(linked, self._local())

    def _push(self, linked: LinkedProject, local: dict[str, str]) -> SyncResult:
        target_hash = fingerprint(local)
        response = self._fetch(linked, target_hash)

        result = SyncResult(
            action=SyncAction.PUSH,
            project=linked.name,
            stage=linked.stage,
            hash=target_hash,
        )

        if response.changed:
            remote_names = {v.name for v in response.variables}
            to_remove = sorted(remote_names - local.keys())
            to_update = sorted(local.keys() & remote_names)
            to_add = sorted(local.keys() - remote_names)

            # Every envelope is sealed before the first remote call goes out.
            envelopes = self._encrypt(linked, local, to_update + to_add)

            calls: list[tuple[str, list[str]]] = []
            calls += [("remove", batch) for batch in _chunks(to_remove, self.batch_size)]
            calls += [("update", batch) for batch in _chunks(to_update, self.batch_size)]
            calls += [("add", batch) for batch in _chunks(to_add, self.batch_size)]
            if not calls:
                # Same names, stale hash: commit the hash with an empty mutation.
                calls.append(("remove", []))

            last: Optional[MutationResult] = None
            for index, (kind, names) in enumerate(calls):
                content_hash = target_hash if index == len(calls) - 1 else None
                last = self._send(linked, kind, names, envelopes, content_hash)
                result.additions += last.additions
                result.removals += last.removals
                result.modifications += last.modifications

            self._confirm_hash(linked, last, target_hash)
        else:
            logger.info("Remote already at %s, recording sync point only", target_hash or "<empty>")

        new_hash = fingerprint(self._local())
        self.links.write(linked, new_hash)
        result.hash = new_hash

        changes = {n: KeyChange.ADDED.value for n in result.additions}
        changes.update({n: KeyChange.REMOVED.value for n in result.removals})
        changes.update({n: KeyChange.CHANGED.value for n in result.modifications})
        self._audit("PUSH", linked, changes)
        logger.info(
            "Pushed %s (%s): %d new, %d removed, %d modified",
            linked.name,
            linked.stage,
            len(result.additions),
            len(result.removals),
            len(result.modifications),
        )
        return result

    def _send(
        self,
        linked: LinkedProject,
        kind: str,
        names: list[str],
        envelopes: dict[str, str],
        content_hash: Optional[str],
    ) -> MutationResult:
        if kind == "remove":
            request = RemoveVariablesRequest(
                project_id=linked.remote_project_id,
                stage=linked.stage,
                names=names,
                content_hash=content_hash,
            )
            return self._call("remove_variables", self.remote.remove_variables, request, linked)

        variables = [EncryptedVariable(name=n, value=envelopes[n]) for n in names]
        if kind == "update":
            request = UpdateVariablesRequest(
                project_id=linked.remote_project_id,
                stage=linked.stage,
                variables=variables,
                content_hash=content_hash,
            )
            return self._call("update_variables", self.remote.update_variables, request, linked)

        request = AddVariablesRequest(
            project_id=linked.remote_project_id,
            stage=linked.stage,
            variables=variables,
            content_hash=content_hash,
        )
        return self._call("add_variables", self.remote.add_variables, request, linked)

    def pull(
        self,
        stage: Optional[str] = None,
        policy: Optional[MergePolicy] = None,
        confirm: Optional[ConfirmFn] = None,
    ) -> SyncResult:
        """Bring remote changes into the local file.

        Args:
            stage: Stage to pull.
            policy: Merge policy; defaults to the engine's pull policy.
            confirm: Per-key callback; defaults to the engine's.

        Returns:
            SyncResult; action ``none`` if the remote has not moved.
        """
        linked = self.binding(stage)
        return self._pull(linked, policy, confirm)

    def _pull(
        self,
        linked: LinkedProject,
        policy: Optional[MergePolicy],
        confirm: Optional[ConfirmFn],
        response: Optional[GetVariablesResponse] = None,
    ) -> SyncResult:
        if response is None:
            response = self._fetch(linked, linked.last_synced_hash)
        if not response.changed:
            logger.info("No changes on the remote for %s (%s)", linked.name, linked.stage)
            return SyncResult(
                action=SyncAction.NONE,
                project=linked.name,
                stage=linked.stage,
                hash=linked.last_synced_hash,
            )

        incoming = self._decrypt_remote(linked, response)
        local = self._local()
        merge = resolve(local, incoming, policy or self.pull_policy, confirm or self.confirm)

        write_env_file(self.env_path, merge.merged)
        new_hash = fingerprint(self._local())
        self.links.write(linked, new_hash)

        self._audit(
            "PULL",
            linked,
            {k: v.value for k, v in merge.changes.items() if v != KeyChange.KEPT},
        )
        logger.info(
            "Pulled %s (%s): %d added, %d removed, %d changed, %d kept",
            linked.name,
            linked.stage,
            len(merge.added),
            len(merge.removed),
            len(merge.changed),
            len(merge.kept),
        )
        return SyncResult(
            action=SyncAction.PULL,
            project=linked.name,
            stage=linked.stage,
            hash=new_hash,
            additions=merge.added,
            removals=merge.removed,
            modifications=merge.changed,
            merge=merge,
        )

    def sync(
        self,
        stage: Optional[str] = None,
        conflict_callback: Optional[ConflictCallback] = None,
        policy: Optional[MergePolicy] = None,
        confirm: Optional[ConfirmFn] = None,
    ) -> SyncResult:
        """Decide between push, pull, and conflict, then act.

        Args:
            stage: Stage to sync.
            conflict_callback: Called with the decision when both sides
                diverged; returns push, pull, or abort.
            policy: Merge policy if the outcome is a pull.
            confirm: Per-key callback if the outcome is a pull.

        Returns:
            SyncResult. An abort returns action ``conflict`` with
            ``aborted=True`` and nothing changed.

        Raises:
            ConflictError: On divergence when no callback is given.
        """
        linked = self.binding(stage)
        local = self._local()
        response = self._fetch(linked, linked.last_synced_hash)
        decision = decide(fingerprint(local), response.hash, linked.last_synced_hash)
        logger.info(
            "Sync %s (%s): L=%s R=%s S=%s -> %s",
            linked.name,
            linked.stage,
            decision.local_hash[:12] or "<empty>",
            decision.remote_hash[:12] or "<empty>",
            decision.synced_hash[:12] or "<empty>",
            decision.action.value,
        )

        action = decision.action
        if action == SyncAction.CONFLICT:
            if conflict_callback is None:
                raise ConflictError(
                    "Local and remote have both changed since the last sync",
                    stage=linked.stage,
                    scope=linked.team_id,
                )
            try:
                choice = ConflictChoice(conflict_callback(decision))
            except ValueError as exc:
                raise ValidationError(f"Unknown conflict resolution: {exc}") from exc
            if choice == ConflictChoice.ABORT:
                logger.info("Sync aborted by caller")
                return SyncResult(
                    action=SyncAction.CONFLICT,
                    project=linked.name,
                    stage=linked.stage,
                    hash=linked.last_synced_hash,
                    aborted=True,
                )
            action = SyncAction(choice.value)

        if action == SyncAction.PUSH:
            return self._push(linked, local)
        if action == SyncAction.PULL:
            return self._pull(linked, policy, confirm, response=response)
        return SyncResult(
            action=SyncAction.NONE,
            project=linked.name,
            stage=linked.stage,
            hash=linked.last_synced_hash,
        )

    # -------------------------------------------------------------------
    # Binding lifecycle
    # -------------------------------------------------------------------

    def link(
        self,
        remote_project_id: str,
        policy: Optional[MergePolicy] = None,
        confirm: Optional[ConfirmFn] = None,
    ) -> SyncResult:
        """Bind this working directory to an existing remote project.

        Remote variables are merged into the local file; local-only keys are
        kept. The sync point is the remote hash just observed, so those
        local-only keys show up as pending local changes.

        Raises:
            ValidationError: If this project/stage is already linked.
        """
        try:
            project = self.remote.get_project(remote_project_id)
        except EnvkitError:
            raise
        except Exception as exc:
            raise RemoteError(f"get_project failed: {exc}") from exc

        if self.links.read(self.project_name, project.stage) is not None:
            raise ValidationError(
                f"Project '{self.project_name}' is already linked; unlink first",
                stage=project.stage,
            )

        linked = LinkedProject(
            remote_project_id=project.project_id,
            team_id=project.team_id,
            name=self.project_name,
            stage=project.stage,
        )
        response = self._fetch(linked, None)
        incoming = self._decrypt_remote(linked, response)

        ensure_env_file(self.working_dir, self.env_file)
        local = self._local()
        # Linking never deletes: local-only keys count as present on both sides.
        candidate = {**local, **incoming}
        merge = resolve(local, candidate, policy or self.pull_policy, confirm or self.confirm)
        write_env_file(self.env_path, merge.merged)
        self.links.write(linked, response.hash)

        self._audit("LINK", linked, {k: v.value for k, v in merge.changes.items()})
        logger.info("Linked %s to remote project %s (%s)", self.project_name, project.project_id, project.stage)
        return SyncResult(
            action=SyncAction.PULL,
            project=linked.name,
            stage=linked.stage,
            hash=response.hash,
            additions=merge.added,
            removals=merge.removed,
            modifications=merge.changed,
            merge=merge,
        )

    def init(self, team_id: str, stage: Optional[str] = None) -> LinkedProject:
        """Create a remote project for this directory and link it.

        The env file is added to .gitignore and seeded with PROJECT_NAME
        and PROJECT_STAGE (existing values win).
        """
        stage = (stage or self.default_stage).strip()
        if self.links.read(self.project_name, stage) is not None:
            raise ValidationError(
                f"Project '{self.project_name}' is already linked; unlink first", stage=stage
            )

        request = CreateProjectRequest(team_id=team_id, name=self.project_name, stage=stage)
        try:
            project = self.remote.create_project(request)
        except EnvkitError:
            raise
        except Exception as exc:
            raise RemoteError(f"create_project failed: {exc}", stage=stage, scope=team_id) from exc

        linked = LinkedProject(
            remote_project_id=project.project_id,
            team_id=project.team_id,
            name=self.project_name,
            stage=project.stage,
        )
        self._salt(linked)

        protect_gitignore(self.working_dir, self.env_file)
        ensure_env_file(self.working_dir, self.env_file)
        seeds = {"PROJECT_NAME": project.name, "PROJECT_STAGE": project.stage}
        merge = resolve(self._local(), seeds, MergePolicy.KEEP_ALL)
        write_env_file(self.env_path, merge.merged)

        record = self.links.write(linked, "")
        self._audit("INIT", linked, {k: v.value for k, v in merge.changes.items()})
        logger.info("Initialized %s (%s) in team %s", project.name, project.stage, team_id)
        return record

    def unlink(self, stage: Optional[str] = None) -> LinkedProject:
        """Remove the binding for a stage. Local and remote data stay."""
        linked = self.binding(stage)
        self.links.remove(linked.name, linked.stage)
        self._audit("UNLINK", linked, {})
        return linked

    # -------------------------------------------------------------------
    # Single variables
    # -------------------------------------------------------------------

    def get(self, key: str, stage: Optional[str] = None) -> Optional[str]:
        """Read one variable: local first, then the remote store.

        Returns:
            The plaintext, or None if neither side has it.
        """
        validate_name(key)
        local = self._local()
        if key in local:
            return local[key]
        linked = self.binding(stage)
        response = self._fetch(linked, None)
        for var in response.variables:
            if var.name == key:
                return self.cipher.decrypt_many([(var.name, var.value)], self._salt(linked), linked.stage)[key]
        return None

    def previous(self, key: str, stage: Optional[str] = None) -> Optional[str]:
        """Read the value a variable held on the remote before its last update.

        Returns:
            The prior plaintext, or None if the variable was never updated.
        """
        validate_name(key)
        linked = self.binding(stage)
        envelope = self._call(
            "previous_value",
            lambda name: self.remote.previous_value(linked.remote_project_id, linked.stage, name),
            key,
            linked,
        )
        if envelope is None:
            return None
        return self.cipher.decrypt_many([(key, envelope)], self._salt(linked), linked.stage)[key]

    def set(self, key: str, value: str, stage: Optional[str] = None) -> SyncResult:
        """Create or update one variable on both sides, remote first."""
        validate_name(key)
        linked = self.binding(stage)
        local = self._local()

        response = self._fetch(linked, None)
        remote_plain = self._decrypt_remote(linked, response)
        if local.get(key) == value and remote_plain.get(key) == value:
            logger.info("%s already set; nothing to do", key)
            return SyncResult(action=SyncAction.NONE, project=linked.name, stage=linked.stage,
                              hash=linked.last_synced_hash)

        remote_after = dict(remote_plain)
        remote_after[key] = value
        envelope = self._encrypt(linked, {key: value}, [key])
        kind = "update" if key in remote_plain else "add"
        mutation = self._send(linked, kind, [key], envelope, fingerprint(remote_after))
        self._confirm_hash(linked, mutation, fingerprint(remote_after))

        local_after = dict(local)
        local_after[key] = value
        write_env_file(self.env_path, local_after)
        new_hash = self._settle(linked, fingerprint(remote_after))

        change = KeyChange.CHANGED if kind == "update" else KeyChange.ADDED
        self._audit("SET", linked, {key: change.value})
        return SyncResult(
            action=SyncAction.PUSH,
            project=linked.name,
            stage=linked.stage,
            hash=new_hash,
            additions=mutation.additions,
            modifications=mutation.modifications,
        )

    def delete(self, key: str, stage: Optional[str] = None) -> SyncResult:
        """Delete one variable on both sides, remote first.

        Raises:
            ValidationError: If neither side has the variable.
        """
        validate_name(key)
        linked = self.binding(stage)
        local = self._local()

        response = self._fetch(linked, None)
        remote_names = {v.name for v in response.variables}
        if key not in remote_names and key not in local:
            raise ValidationError(f"No variable named {key}", key=key, stage=linked.stage)

        removals: list[str] = []
        if key in remote_names:
            remote_plain = self._decrypt_remote(linked, response)
            remote_plain.pop(key)
            expected = fingerprint(remote_plain)
            mutation = self._send(linked, "remove", [key], {}, expected)
            self._confirm_hash(linked, mutation, expected)
            removals = mutation.removals
            remote_hash = expected
        else:
            remote_hash = response.hash

        if key in local:
            local_after = dict(local)
            local_after.pop(key)
            write_env_file(self.env_path, local_after)
        new_hash = self._settle(linked, remote_hash)

        self._audit("DELETE", linked, {key: KeyChange.REMOVED.value})
        return SyncResult(
            action=SyncAction.PUSH,
            project=linked.name,
            stage=linked.stage,
            hash=new_hash,
            removals=removals,
        )

    def _settle(self, linked: LinkedProject, remote_hash: str) -> str:
        """Advance S only when the rewritten local file matches the remote.

        Otherwise S stays put and the drift on each side remains visible.
        """
        local_hash = fingerprint(self._local())
        if local_hash == remote_hash:
            self.links.write(linked, local_hash)
            return local_hash
        logger.warning(
            "Local and remote still differ for %s (%s); run sync to reconcile",
            linked.name,
            linked.stage,
        )
        return linked.last_synced_hash
