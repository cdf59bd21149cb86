"""
Retention decisions. Pure: no filesystem access.
"""
from datetime import datetime
from typing import List, Sequence

from .models import RetentionPolicy, Snapshot


def order_newest_first(snapshots: Sequence[Snapshot]) -> List[Snapshot]:
    return sorted(snapshots, key=lambda s: (s.created_at, s.id), reverse=True)

def select_expired(snapshots: Sequence[Snapshot], policy: RetentionPolicy, now: datetime) -> List[Snapshot]:
    """
    Return the snapshots the policy expires, newest first.

    A snapshot expires when it is older than max_age or falls beyond the
    max_count most recent. The most recent snapshot is always kept.
    """
    ordered = order_newest_first(snapshots)
    expired: List[Snapshot] = []
    for index, snap in enumerate(ordered):
        if index == 0:
            continue
        too_old = now - snap.created_at > policy.max_age
        too_many = index >= policy.max_count
        if too_old or too_many:
            expired.append(snap)
    return expired
