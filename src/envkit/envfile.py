"""
The local secret file -- reading, atomic rewriting, and git hygiene.

Values are written double-quoted with backslash, quote and newline
escaped, which python-dotenv reads back verbatim.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Mapping

from dotenv import dotenv_values

from .errors import ValidationError

logger = logging.getLogger("envkit.envfile")

_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.\-]*$")


def validate_name(name: str) -> str:
    """Check a variable name, returning it unchanged.

    Raises:
        ValidationError: If the name is not a usable env variable name.
    """
    if not _NAME_RE.match(name or ""):
        raise ValidationError(f"Invalid variable name: {name!r}", key=name)
    return name


def load_env_file(path: Path) -> dict[str, str]:
    """Parse an env file into name -> value.

    A missing file is an empty set. Bare ``NAME`` lines read as ``""``.
    No ``${VAR}`` interpolation is performed.

    Raises:
        ValidationError: If the file is unreadable or holds a bad name.
    """
    path = Path(path)
    if not path.exists():
        return {}
    try:
        raw = dotenv_values(path, interpolate=False, encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ValidationError(f"Cannot read {path}: {exc}") from exc

    variables: dict[str, str] = {}
    for name, value in raw.items():
        validate_name(name)
        variables[name] = "" if value is None else value
    return variables


def _quote(value: str) -> str:
    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
    )
    return f'"{escaped}"'


def render_env(variables: Mapping[str, str]) -> str:
    """Render variables as env-file text, one ``NAME="value"`` per line."""
    lines = [f"{validate_name(name)}={_quote(value)}" for name, value in variables.items()]
    return "\n".join(lines) + "\n"


def write_env_file(path: Path, variables: Mapping[str, str]) -> None:
    """Atomically replace an env file with the given variables (mode 0600).

    The content is rendered and validated before anything touches disk.
    """
    path = Path(path)
    content = render_env(variables)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)
            fh.flush()
            os.fsync(fh.fileno())
        os.chmod(tmp, 0o600)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
    logger.debug("Wrote %d variable(s) to %s", len(variables), path)


def ensure_env_file(working_dir: Path, env_file: str = ".env.local") -> Path:
    """Make sure the env file exists in a working directory.

    Other ``.env*`` files are left alone; we only warn about them.

    Returns:
        Path to the env file.
    """
    path = Path(working_dir) / env_file
    if path.exists():
        return path

    others = sorted(
        p.name for p in Path(working_dir).glob(".env*")
        if p.name != env_file and p.is_file()
    )
    if others:
        logger.warning(
            "Other environment files found (%s); envkit only syncs %s",
            ", ".join(others),
            env_file,
        )
    write_env_file(path, {})
    logger.info("Created empty %s", path)
    return path


def protect_gitignore(working_dir: Path, env_file: str = ".env.local") -> bool:
    """Ensure the env file is listed in .gitignore.

    Returns:
        True if .gitignore was changed.
    """
    gitignore = Path(working_dir) / ".gitignore"
    if gitignore.exists():
        lines = gitignore.read_text(encoding="utf-8").splitlines()
        if env_file in (line.strip() for line in lines):
            return False
        prefix = "" if not lines or gitignore.read_text(encoding="utf-8").endswith("\n") else "\n"
        with gitignore.open("a", encoding="utf-8") as fh:
            fh.write(f"{prefix}{env_file}\n")
    else:
        gitignore.write_text(f"{env_file}\n", encoding="utf-8")
    logger.info("Added %s to %s", env_file, gitignore)
    return True
