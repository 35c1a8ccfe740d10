"""
Local change history -- what envkit did to which variables, and when.

The log is JSONL (one JSON object per line) at ~/.envkit/history.jsonl,
append-only. Only variable names and actions are recorded, never values.
"""

from __future__ import annotations

import json
import logging
import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError

logger = logging.getLogger("envkit.audit")

HISTORY_FILE = "history.jsonl"


class AuditEntry(BaseModel):
    """A single history entry."""

    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    event_type: str
    project: Optional[str] = None
    stage: Optional[str] = None
    file: Optional[str] = None
    vars: dict[str, str] = Field(default_factory=dict)
    host: str = Field(default_factory=socket.gethostname)


def record_audit(
    home: Path,
    event_type: str,
    project: Optional[str] = None,
    stage: Optional[str] = None,
    file: Optional[Path] = None,
    vars: Optional[dict[str, str]] = None,
) -> Optional[AuditEntry]:
    """Append an entry to the history log.

    A failure to write history never blocks the operation that caused it.

    Args:
        home: envkit home directory.
        event_type: PUSH, PULL, LINK, UNLINK, INIT, SET, DELETE.
        project: Project name.
        stage: Stage name.
        file: Env file touched.
        vars: Variable name to action (added, removed, changed, kept).

    Returns:
        The entry written, or None if writing failed.
    """
    entry = AuditEntry(
        event_type=event_type,
        project=project,
        stage=stage,
        file=str(file) if file else None,
        vars=vars or {},
    )
    try:
        home.mkdir(parents=True, exist_ok=True)
        with (home / HISTORY_FILE).open("a", encoding="utf-8") as fh:
            fh.write(entry.model_dump_json() + "\n")
    except OSError as exc:
        logger.warning("Could not write history entry %s: %s", event_type, exc)
        return None
    return entry


def read_audit(home: Path, limit: int = 0) -> list[AuditEntry]:
    """Read history entries, oldest first.

    Args:
        home: envkit home directory.
        limit: If > 0, only the last ``limit`` entries.

    Returns:
        Parsed entries; unparseable lines are skipped.
    """
    path = home / HISTORY_FILE
    if not path.exists():
        return []

    entries: list[AuditEntry] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        try:
            entries.append(AuditEntry.model_validate(json.loads(line)))
        except (json.JSONDecodeError, PydanticValidationError) as exc:
            logger.debug("Skipping bad history line: %s", exc)
    if limit > 0:
        entries = entries[-limit:]
    return entries
