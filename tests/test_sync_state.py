from __future__ import annotations

from billing_sync.domain.entities.sync_state import Absent, Pending, Stale, Synced, mirror_state_of

from conftest import make_mirror_plan, make_plan


def test_synced_status_with_mirror_row_is_synced():
    plan = make_plan(remote_enabled=True, mirror_status="synced")
    mirror = make_mirror_plan(plan)

    state = mirror_state_of(plan, mirror)

    assert state == Synced(mirror=mirror)
    assert state.tag == "synced"


def test_synced_status_without_mirror_row_is_stale():
    plan = make_plan(remote_enabled=True, mirror_status="synced", mirror_sync_attempts=0)

    state = mirror_state_of(plan, None)

    assert isinstance(state, Stale)
    assert state.error == "mirror row missing"


def test_absent_and_pending_states():
    assert mirror_state_of(make_plan(), None) == Absent()
    assert mirror_state_of(make_plan(remote_enabled=True, mirror_status="pending"), None) == Pending()
