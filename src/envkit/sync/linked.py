"""
Linked-Project Store -- which remote project and stage a working
directory is bound to, and the last hash both sides agreed on.

Storage layout:
    ~/.envkit/projects/
    └── my-app/
        ├── development.json
        └── production.json

Name and stage are each encoded on their own, so no two (name, stage)
pairs share a file. Characters outside ``[A-Za-z0-9_-]`` become ``~``
plus the hex of their UTF-8 bytes.

Each record is written owner-only (0600) to a temp file in the same
directory and published with an atomic rename, so a concurrent reader
sees the old document or the new one, never half of one.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from pydantic import ValidationError as PydanticValidationError

from ..errors import NotLinkedError, ValidationError
from .models import LinkedProject, RemoteProject

logger = logging.getLogger("envkit.sync.linked")

_SAFE = re.compile(r"[A-Za-z0-9_-]")
_ESCAPE = "~"
_RECORD_SUFFIX = ".json"


def encode_part(part: str) -> str:
    """Encode a name or stage as a single path component.

    The mapping is one-to-one: safe characters pass through and every
    other character becomes ``~`` followed by its UTF-8 bytes in hex.

    Raises:
        ValidationError: If the part is empty.
    """
    if not part:
        raise ValidationError("Project name and stage must not be empty")
    out = []
    for char in part:
        if _SAFE.fullmatch(char):
            out.append(char)
        else:
            out.append("".join(f"{_ESCAPE}{b:02x}" for b in char.encode("utf-8")))
    return "".join(out)


def project_name_for(working_dir: Path) -> str:
    """Default project name for a working directory: its base name."""
    return Path(working_dir).resolve().name


class LinkedProjectStore:
    """Reads and writes LinkedProject records.

    Args:
        home: envkit home directory (~/.envkit).
    """

    def __init__(self, home: Path) -> None:
        self.projects_dir = Path(home) / "projects"

    def path_for(self, name: str, stage: str) -> Path:
        """Record path for a (name, stage) pair, always inside projects_dir."""
        return self.projects_dir / encode_part(name) / f"{encode_part(stage)}{_RECORD_SUFFIX}"

    def write(
        self,
        project: Union[RemoteProject, LinkedProject],
        synced_hash: str,
    ) -> LinkedProject:
        """Persist a binding with a new last-synced hash.

        Args:
            project: The remote project, or an existing binding to update.
            synced_hash: The hash both sides agreed on.

        Returns:
            The record as written.
        """
        if isinstance(project, LinkedProject):
            record = project.model_copy(update={"last_synced_hash": synced_hash})
        else:
            record = LinkedProject(
                remote_project_id=project.project_id,
                team_id=project.team_id,
                name=project.name,
                stage=project.stage,
                last_synced_hash=synced_hash,
                linked_at=datetime.now(timezone.utc),
            )

        target = self.path_for(record.name, record.stage)
        for directory in (self.projects_dir, target.parent):
            directory.mkdir(parents=True, exist_ok=True)
            os.chmod(directory, 0o700)

        fd, tmp = tempfile.mkstemp(
            dir=target.parent, prefix=f".{target.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(record.model_dump_json(indent=2))
                fh.flush()
                os.fsync(fh.fileno())
            os.chmod(tmp, 0o600)
            os.replace(tmp, target)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

        logger.debug(
            "Recorded %s (%s) synced hash %s",
            record.name,
            record.stage,
            synced_hash or "<empty>",
        )
        return record

    def read(self, name: str, stage: str) -> Optional[LinkedProject]:
        """Load a binding, or None if this (name, stage) is not linked.

        Raises:
            ValidationError: If the record exists but cannot be parsed, or
                belongs to a different (name, stage) than the one asked for.
        """
        path = self.path_for(name, stage)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            record = LinkedProject.model_validate(data)
        except (json.JSONDecodeError, PydanticValidationError, OSError) as exc:
            logger.warning("Corrupt linked project record %s: %s", path, exc)
            raise ValidationError(
                f"Linked project record is unreadable: {path}", stage=stage
            ) from exc
        if record.name != name or record.stage != stage:
            logger.warning(
                "Record %s is for %s (%s), expected %s (%s)",
                path, record.name, record.stage, name, stage,
            )
            raise ValidationError(
                f"Linked project record {path} belongs to "
                f"'{record.name}' ({record.stage})",
                stage=stage,
            )
        return record

    def require(self, name: str, stage: str) -> LinkedProject:
        """Like :meth:`read` but raise NotLinkedError when missing."""
        record = self.read(name, stage)
        if record is None:
            raise NotLinkedError(f"Project '{name}' is not linked", stage=stage)
        return record

    def remove(self, name: str, stage: str) -> bool:
        """Delete a binding. Returns True if one existed."""
        path = self.path_for(name, stage)
        if not path.exists():
            return False
        path.unlink()
        logger.info("Unlinked %s (%s)", name, stage)
        return True

    def stages(self, name: str) -> list[str]:
        """Stages linked for a project name, sorted."""
        project_dir = self.projects_dir / encode_part(name)
        if not project_dir.is_dir():
            return []
        found = []
        for path in sorted(project_dir.glob(f"*{_RECORD_SUFFIX}")):
            try:
                record = LinkedProject.model_validate_json(path.read_text(encoding="utf-8"))
            except (PydanticValidationError, OSError) as exc:
                logger.warning("Skipping %s: %s", path, exc)
                continue
            if record.name == name:
                found.append(record.stage)
        return sorted(found)
