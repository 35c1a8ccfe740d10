"""
Error taxonomy for envkit.

Every public operation either fully succeeds or raises one of these
with zero observable state change. Context (key, stage, scope) rides
along so the CLI can say something useful.
"""

from __future__ import annotations

from typing import Optional


class EnvkitError(Exception):
    """Base class for all envkit errors.

    Args:
        message: Human-readable description.
        key: Variable name involved, if any.
        stage: Stage (e.g. development) involved, if any.
        scope: Team scope id involved, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        key: Optional[str] = None,
        stage: Optional[str] = None,
        scope: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.key = key
        self.stage = stage
        self.scope = scope

    def context(self) -> dict[str, str]:
        """Return the non-empty context fields."""
        ctx = {"key": self.key, "stage": self.stage, "scope": self.scope}
        return {k: v for k, v in ctx.items() if v}

    def __str__(self) -> str:
        ctx = self.context()
        if not ctx:
            return self.message
        detail = ", ".join(f"{k}={v}" for k, v in ctx.items())
        return f"{self.message} ({detail})"


class ValidationError(EnvkitError):
    """Local content is malformed (bad variable name, unreadable file)."""


class NotLinkedError(EnvkitError):
    """No linked project exists for this working directory and stage."""


class RemoteError(EnvkitError):
    """The remote store failed. Safe to retry by re-invoking."""


class DecryptionError(EnvkitError):
    """An envelope failed to decrypt: tampered, wrong key, or malformed."""


class ConflictError(EnvkitError):
    """Local and remote both diverged from the last synchronized state."""


class SaltExistsError(EnvkitError):
    """A salt already exists for the scope (lost the creation race)."""


class ConfigError(EnvkitError):
    """Configuration is missing or invalid."""
