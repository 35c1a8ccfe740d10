"""
Variable Merge Resolver -- folds incoming values into local ones.

Policies:
    override-all     incoming wins; keys the incoming side dropped go too
    keep-all         local wins; only brand-new keys come in
    per-key-confirm  new keys come in; every changed or dropped key asks
"""

from __future__ import annotations

import logging
from typing import Callable, Mapping, Optional

from ..errors import ValidationError
from .models import KeyChange, MergePolicy, MergeResult

logger = logging.getLogger("envkit.sync.merge")

ConfirmFn = Callable[[str, Optional[str], Optional[str]], bool]
"""confirm(name, existing_value, incoming_value) -> take incoming?

``incoming_value`` is None when the incoming side removed the key.
"""


def diff_names(
    existing: Mapping[str, str],
    incoming: Mapping[str, str],
) -> tuple[list[str], list[str], list[str], list[str]]:
    """Split names into (added, removed, changed, unchanged), each sorted.

    ``added`` is present only in incoming, ``removed`` only in existing.
    """
    added = sorted(k for k in incoming if k not in existing)
    removed = sorted(k for k in existing if k not in incoming)
    changed = sorted(k for k in incoming if k in existing and existing[k] != incoming[k])
    unchanged = sorted(k for k in incoming if k in existing and existing[k] == incoming[k])
    return added, removed, changed, unchanged


def resolve(
    existing: Mapping[str, str],
    incoming: Mapping[str, str],
    policy: MergePolicy,
    confirm: Optional[ConfirmFn] = None,
) -> MergeResult:
    """Merge incoming variables into existing ones under a policy.

    Args:
        existing: Current local values.
        incoming: Values arriving from the remote side.
        policy: How to treat keys present on both sides or dropped remotely.
        confirm: Required for ``per-key-confirm``. Called once per changed
            or removed key, in sorted name order.

    Returns:
        MergeResult with the merged mapping and per-key classification.

    Raises:
        ValidationError: If ``per-key-confirm`` is requested without a
            confirm callback.
    """
    policy = MergePolicy(policy)
    if policy == MergePolicy.PER_KEY_CONFIRM and confirm is None:
        raise ValidationError("per-key-confirm merge needs a confirm callback")

    added, removed, changed, unchanged = diff_names(existing, incoming)
    merged = dict(existing)
    changes: dict[str, KeyChange] = {}

    for name in added:
        merged[name] = incoming[name]
        changes[name] = KeyChange.ADDED

    for name in unchanged:
        changes[name] = KeyChange.KEPT

    # One sorted pass so per-key prompts come in the same order every run.
    for name in sorted(changed + removed):
        new_value = incoming.get(name)
        if policy == MergePolicy.OVERRIDE_ALL:
            take = True
        elif policy == MergePolicy.KEEP_ALL:
            take = False
        else:
            take = bool(confirm(name, existing[name], new_value))

        if not take:
            changes[name] = KeyChange.KEPT
        elif new_value is None:
            del merged[name]
            changes[name] = KeyChange.REMOVED
        else:
            merged[name] = new_value
            changes[name] = KeyChange.CHANGED

    result = MergeResult(merged=merged, changes=changes)
    logger.debug(
        "Merged with %s: %d added, %d removed, %d changed, %d kept",
        policy.value,
        len(result.added),
        len(result.removed),
        len(result.changed),
        len(result.kept),
    )
    return result
