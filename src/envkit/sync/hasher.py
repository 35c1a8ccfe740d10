"""
Canonical fingerprint of a variable set.

Both sides of a sync compute this over plaintext, so it is the one
thing that lets us notice drift without shipping values around.
"""

from __future__ import annotations

import hashlib
from typing import Mapping

EMPTY_FINGERPRINT = ""


def canonicalize(variables: Mapping[str, str]) -> str:
    """Render a mapping as sorted ``name=value`` lines.

    Names are ordered by their UTF-8 bytes so the result does not depend
    on locale. Values are not escaped: a value containing ``=`` or a
    newline can collide with a different set.

    Args:
        variables: Name to plaintext value.

    Returns:
        The canonical text.
    """
    entries = sorted(variables.items(), key=lambda kv: kv[0].encode("utf-8"))
    return "\n".join(f"{name}={value}" for name, value in entries)


def fingerprint(variables: Mapping[str, str]) -> str:
    """Compute the SHA-256 fingerprint of a variable set.

    Args:
        variables: Name to plaintext value.

    Returns:
        Lowercase hex digest, or ``""`` for an empty mapping.
    """
    if not variables:
        return EMPTY_FINGERPRINT
    return hashlib.sha256(canonicalize(variables).encode("utf-8")).hexdigest()
