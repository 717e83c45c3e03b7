"""
authsync.delta
~~~~~~~~~~~~~~
Pure diff of two snapshots.  No I/O, inputs are never modified.
"""

from __future__ import annotations

from typing import Optional

from .models import Delta, Snapshot


def compute_delta(previous: Optional[Snapshot], current: Snapshot) -> Delta:
    """added / modified / deleted between *previous* and *current*.

    A missing *previous* (first run) counts as empty, so every principal in
    *current* is added.  Modified means hash, can_login or valid_until
    changed; last_observed is ignored.
    """
    old = previous.as_map() if previous is not None else {}
    new = current.as_map()

    added = tuple(p for name, p in sorted(new.items()) if name not in old)
    modified = tuple(
        p
        for name, p in sorted(new.items())
        if name in old and not old[name].same_credentials(p)
    )
    deleted = tuple(p for name, p in sorted(old.items()) if name not in new)
    return Delta(added=added, modified=modified, deleted=deleted)
