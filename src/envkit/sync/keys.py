"""
Scope Key Service -- one salt per team scope, created exactly once.

Salt creation is a compare-and-swap against the store's uniqueness
constraint on scope id:

    read  -> hit? done
    miss  -> generate 32 random bytes, try to insert
    taken -> throw ours away, read the winner's

No in-process lock is involved; two processes racing on a fresh scope
converge on whichever insert landed first.
"""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING, Optional

from ..errors import RemoteError, SaltExistsError

if TYPE_CHECKING:
    from .remote import RemoteStore

logger = logging.getLogger("envkit.sync.keys")

SALT_BYTES = 32


def generate_salt() -> str:
    """Return a fresh hex-encoded 32-byte salt."""
    return secrets.token_bytes(SALT_BYTES).hex()


def converge_salt(store: "RemoteStore", scope_id: str) -> str:
    """Read or create the scope salt with insert-or-reread semantics.

    Args:
        store: Store exposing ``get_salt`` and ``insert_salt``.
        scope_id: Team scope id.

    Returns:
        The one persisted salt for the scope.

    Raises:
        RemoteError: If the store fails, or the winning salt vanished.
    """
    existing = store.get_salt(scope_id)
    if existing:
        return existing

    candidate = generate_salt()
    try:
        store.insert_salt(scope_id, candidate)
    except SaltExistsError:
        logger.debug("Lost salt creation race for scope %s, re-reading", scope_id)
        winner: Optional[str] = store.get_salt(scope_id)
        if not winner:
            raise RemoteError("Salt reported as existing but could not be read", scope=scope_id)
        return winner

    logger.info("Created salt for scope %s", scope_id)
    return candidate


class ScopeKeyService:
    """Resolves scope salts, caching them for this process only.

    The cache lives on the instance, so a restart always goes back to
    the store.

    Args:
        store: The authoritative remote store.
    """

    def __init__(self, store: "RemoteStore") -> None:
        self._store = store
        self._cache: dict[str, str] = {}

    def get_or_create_salt(self, scope_id: str) -> str:
        """Return the scope salt, creating it on first use.

        Args:
            scope_id: Team scope id.

        Returns:
            Hex-encoded salt.
        """
        cached = self._cache.get(scope_id)
        if cached:
            return cached
        salt = converge_salt(self._store, scope_id)
        self._cache[scope_id] = salt
        return salt
