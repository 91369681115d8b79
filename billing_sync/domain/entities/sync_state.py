from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from billing_sync.domain.entities.mirror import MirrorPlan
from billing_sync.domain.entities.plan import Plan


@dataclass(frozen=True)
class Absent:
    tag = "absent"


@dataclass(frozen=True)
class Pending:
    tag = "pending"


@dataclass(frozen=True)
class Synced:
    mirror: MirrorPlan
    tag = "synced"


@dataclass(frozen=True)
class Stale:
    error: str | None
    attempts: int
    tag = "stale"


MirrorState = Union[Absent, Pending, Synced, Stale]


def mirror_state_of(plan: Plan, mirror: MirrorPlan | None) -> MirrorState:
    """Resolve the plan's mirror state from the persisted status column.

    A `synced` status without a mirror row cannot be trusted and is reported
    as stale so the operator resync path picks it up.
    """
    if plan.mirror_status == "stale":
        return Stale(error=plan.mirror_error, attempts=plan.mirror_sync_attempts)
    if plan.mirror_status == "pending":
        return Pending()
    if plan.mirror_status == "synced":
        if mirror is None:
            return Stale(error="mirror row missing", attempts=plan.mirror_sync_attempts)
        return Synced(mirror=mirror)
    return Absent()
