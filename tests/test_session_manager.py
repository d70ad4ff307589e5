from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from checkin.backend.http_client import CheckInStatus
from checkin.multi_step import Navigation
from checkin.session_manager import CheckInSessionManager
from checkin.state import DirectiveKind, EntryDirective, PortalPhase
from checkin.storage import FileVisitorIdStore, MemoryVisitorIdStore

from .conftest import drain, make_settings


async def build_manager(tmp_path, api, store, **timers) -> CheckInSessionManager:
    mgr = CheckInSessionManager(settings=make_settings(tmp_path, **timers), api_client=api, store=store)
    await mgr.start()
    return mgr


async def fill_and_submit(manager: CheckInSessionManager, **values) -> Navigation:
    fields = {"firstName": "Jean", "lastName": "Mukendi", "sex": "Masculin", "purpose": "meeting"}
    fields.update(values)
    await manager.update_form(fields)
    outcome = Navigation.IGNORED
    for _ in range(3):
        outcome = await manager.form_next()
        if manager.phase is not PortalPhase.NEW_VISITOR_FORM:
            break
    return outcome


def phases(events) -> list[PortalPhase]:
    return [event.phase for event in events if event.type == "state"]


async def test_no_directive_shows_type_selection(manager):
    assert await manager.mount() is PortalPhase.SELECTING_TYPE
    assert manager.idle_timer.enabled


async def test_new_directive_opens_empty_form(manager):
    await manager.mount(EntryDirective(kind=DirectiveKind.NEW))

    assert manager.phase is PortalPhase.NEW_VISITOR_FORM
    assert manager.context.form is not None
    assert manager.context.form.prefilled == {}


async def test_prefill_directive_without_phone_falls_back_to_selection(manager):
    await manager.mount(EntryDirective(kind=DirectiveKind.PREFILL, year_of_birth=1990))
    assert manager.phase is PortalPhase.SELECTING_TYPE


async def test_select_new_visitor_only_from_type_selection(manager):
    assert await manager.select_new_visitor() is False
    await manager.mount()
    assert await manager.select_new_visitor() is True
    assert manager.phase is PortalPhase.NEW_VISITOR_FORM


async def test_lookup_miss_prefills_form_and_new_check_in_succeeds(manager, api, store):
    await manager.mount()
    await manager.lookup_returning("0812345678", 1990)

    assert manager.phase is PortalPhase.NEW_VISITOR_FORM
    form = manager.context.form
    assert form.values["phone_number"] == "0812345678"
    assert form.values["year_of_birth"] == 1990

    await fill_and_submit(manager)

    assert manager.phase is PortalPhase.CHECKED_IN
    result = manager.context.result
    assert result.visitor.phone_number == "0812345678"
    assert result.visitor.year_of_birth == 1990
    assert abs(datetime.now(timezone.utc) - result.visit.check_in_time) < timedelta(seconds=5)
    assert store.get() == result.visitor.id


async def test_returning_directive_with_active_visit_shows_existing_visit(manager, api, store):
    api.add_visitor(42)
    api.add_active_visit(42, check_in="2026-10-17T09:00:00+01:00")

    await manager.mount(EntryDirective.from_query({"type": "returning", "visitorId": "42"}))

    assert manager.phase is PortalPhase.DUPLICATE_CONFLICT
    assert ("check_in_returning", 42) in api.calls
    assert not any(name == "check_in_new" for name, _ in api.calls)
    assert manager.context.form is None
    assert manager.context.result.visit.check_in_time == datetime(
        2026, 10, 17, 9, 0, tzinfo=timezone(timedelta(hours=1))
    )
    view = manager.snapshot()["data"]
    assert view["banner"] == "already_checked_in"
    assert view["checkInTime"] == "09:00"
    assert view["countdown"] == 7
    assert store.get() == 42


async def test_returning_lookup_hit_checks_in_without_form(manager, api, store):
    api.add_visitor(42, phoneNumber="0991234567")
    await manager.mount()

    await manager.lookup_returning("099 123 4567", 1985)

    assert manager.phase is PortalPhase.CHECKED_IN
    assert ("lookup_visitor", ("0991234567", 1985)) in api.calls
    assert ("check_in_returning", 42) in api.calls
    assert manager.context.form is None
    assert store.get() == 42


async def test_lookup_network_failure_opens_prefilled_form(manager, api):
    api.network_down = True
    await manager.mount()

    await manager.lookup_returning("0812345678", 1990)

    assert manager.phase is PortalPhase.NEW_VISITOR_FORM
    assert manager.context.form.values["phone_number"] == "0812345678"


async def test_returning_check_in_failure_falls_back_to_prefilled_form(manager, api):
    api.add_visitor(42)
    api.returning_status = CheckInStatus.ERROR
    queue = manager.register_ui()

    await manager.mount(EntryDirective(kind=DirectiveKind.RETURNING, visitor_id=42))

    assert manager.phase is PortalPhase.NEW_VISITOR_FORM
    assert PortalPhase.LOOKUP_FAILED in phases(drain(queue))
    values = manager.context.form.values
    assert values["first_name"] == "Marie"
    assert values["last_name"] == "Kabila"
    assert values["phone_number"] == "0991234567"
    assert values["year_of_birth"] == 1985
    assert manager.snapshot()["error"]


async def test_unknown_returning_visitor_opens_form(manager, api):
    await manager.mount(EntryDirective(kind=DirectiveKind.RETURNING, visitor_id=999))
    assert manager.phase is PortalPhase.NEW_VISITOR_FORM
    assert not any(name == "check_in_returning" for name, _ in api.calls)


async def test_conflict_without_payload_exits_home(manager, api, store):
    api.add_visitor(42)
    api.returning_status = CheckInStatus.MALFORMED
    store.set(1)
    queue = manager.register_ui()

    await manager.mount(EntryDirective(kind=DirectiveKind.RETURNING, visitor_id=42))

    events = drain(queue)
    exit_events = [e for e in events if e.phase is PortalPhase.EXIT]
    assert exit_events and exit_events[0].data["reason"] == "error"
    assert manager.phase is PortalPhase.WELCOME
    assert store.get() is None


async def test_failed_new_submission_offers_retry(manager, api):
    api.new_status = CheckInStatus.ERROR
    await manager.mount(EntryDirective(kind=DirectiveKind.NEW))

    await fill_and_submit(manager, yearOfBirth=1990, phoneNumber="0812345678")

    assert manager.phase is PortalPhase.NEW_VISITOR_FORM
    assert manager.snapshot()["error"]
    assert manager.context.form.values["first_name"] == "Jean"

    api.new_status = None
    assert await manager.form_next() is Navigation.COMPLETED
    assert manager.phase is PortalPhase.CHECKED_IN


async def test_invalid_step_does_not_advance(manager):
    await manager.mount(EntryDirective(kind=DirectiveKind.NEW))
    await manager.update_form({"firstName": "J"})

    assert await manager.form_next() is Navigation.BLOCKED
    form = manager.context.form
    assert form.engine.current_index == 0
    assert "first_name" in form.errors


async def test_mount_without_directive_keeps_flow_in_progress(manager):
    await manager.mount(EntryDirective(kind=DirectiveKind.NEW))
    form = manager.context.form

    assert await manager.mount() is PortalPhase.NEW_VISITOR_FORM
    assert manager.context.form is form


async def test_resume_restores_active_visit(tmp_path, api):
    api.add_visitor(42)
    api.add_active_visit(42)
    store = MemoryVisitorIdStore(42)
    manager = await build_manager(tmp_path, api, store)
    try:
        assert await manager.mount() is PortalPhase.CHECKED_IN
        assert manager.context.result.visitor.id == 42
    finally:
        await manager.stop()


async def test_resume_clears_id_without_active_visit(tmp_path, api):
    api.add_visitor(42)
    store = MemoryVisitorIdStore(42)
    manager = await build_manager(tmp_path, api, store)
    try:
        assert await manager.mount() is PortalPhase.SELECTING_TYPE
        assert store.get() is None
    finally:
        await manager.stop()


async def test_check_out_clears_storage_and_exits(manager, api, store):
    api.add_visitor(42)
    await manager.mount(EntryDirective(kind=DirectiveKind.RETURNING, visitor_id=42))
    queue = manager.register_ui()

    assert await manager.check_out() is True

    assert store.get() is None
    assert 42 not in api.active
    exit_event = next(e for e in drain(queue) if e.phase is PortalPhase.EXIT)
    assert exit_event.data["reason"] == "checked_out"
    assert manager.phase is PortalPhase.WELCOME


async def test_cancel_countdown_is_idempotent_and_keeps_idle_timer(tmp_path, api, store):
    api.add_visitor(42)
    manager = await build_manager(tmp_path, api, store, countdown_tick=0.01, checked_in_countdown=3)
    try:
        await manager.mount(EntryDirective(kind=DirectiveKind.RETURNING, visitor_id=42))
        assert manager.phase is PortalPhase.CHECKED_IN

        assert await manager.cancel_auto_redirect() is True
        snapshot_after_first = manager.snapshot()["data"]
        assert await manager.cancel_auto_redirect() is False
        assert manager.snapshot()["data"] == snapshot_after_first
        assert snapshot_after_first["autoRedirect"] is False
        assert snapshot_after_first["actions"]["returnHome"] is True

        await asyncio.sleep(0.1)
        assert manager.phase is PortalPhase.CHECKED_IN
        assert manager.idle_timer.enabled and manager.idle_timer.armed

        await manager.return_home()
        assert manager.phase is PortalPhase.WELCOME
    finally:
        await manager.stop()


async def test_countdown_redirects_home(tmp_path, api, store):
    api.add_visitor(42)
    manager = await build_manager(tmp_path, api, store, countdown_tick=0.01, checked_in_countdown=2)
    try:
        await manager.mount(EntryDirective(kind=DirectiveKind.RETURNING, visitor_id=42))
        queue = manager.register_ui()
        await asyncio.sleep(0.2)

        events = drain(queue)
        assert [e.data["countdown"] for e in events if e.type == "view"] == [1, 0]
        exit_event = next(e for e in events if e.phase is PortalPhase.EXIT)
        assert exit_event.data["reason"] == "auto_redirect"
        assert manager.phase is PortalPhase.WELCOME
        assert store.get() is None
    finally:
        await manager.stop()


async def test_idle_timeout_discards_form(tmp_path, api, store):
    manager = await build_manager(tmp_path, api, store, idle_timeout=0.05)
    try:
        await manager.mount(EntryDirective(kind=DirectiveKind.NEW))
        await manager.update_form({"firstName": "Jean"})
        queue = manager.register_ui()

        await asyncio.sleep(0.15)

        exit_event = next(e for e in drain(queue) if e.phase is PortalPhase.EXIT)
        assert exit_event.data == {"reason": "idle", "navigate": "/"}
        assert manager.phase is PortalPhase.WELCOME
        assert manager.context.form is None
    finally:
        await manager.stop()


async def test_stale_check_in_result_is_ignored_after_exit(manager, api, store):
    api.add_visitor(42)
    api.gate = asyncio.Event()

    task = asyncio.create_task(manager.mount(EntryDirective(kind=DirectiveKind.RETURNING, visitor_id=42)))
    while not api.calls:
        await asyncio.sleep(0)
    await manager.return_home()
    api.gate.set()
    await task

    assert manager.phase is PortalPhase.WELCOME
    assert not any(name == "check_in_returning" for name, _ in api.calls)
    assert store.get() is None


async def test_concurrent_lookup_is_single_flight(manager, api):
    api.gate = asyncio.Event()
    await manager.mount()

    first = asyncio.create_task(manager.lookup_returning("0812345678", 1990))
    second = asyncio.create_task(manager.lookup_returning("0812345678", 1990))
    while not api.calls:
        await asyncio.sleep(0)
    api.gate.set()
    await asyncio.gather(first, second)

    assert [name for name, _ in api.calls].count("lookup_visitor") == 1
    assert manager.phase is PortalPhase.NEW_VISITOR_FORM


async def test_register_ui_receives_current_state(manager):
    await manager.mount()
    queue = manager.register_ui()
    event = queue.get_nowait()
    assert event.phase is PortalPhase.SELECTING_TYPE
    manager.unregister_ui(queue)


@pytest.mark.parametrize("phase_action", ["home", "idle"])
async def test_exit_from_selection_returns_welcome(tmp_path, api, store, phase_action):
    manager = await build_manager(tmp_path, api, store, idle_timeout=0.05)
    try:
        await manager.mount()
        if phase_action == "home":
            await manager.return_home()
        else:
            await asyncio.sleep(0.15)
        assert manager.phase is PortalPhase.WELCOME
        assert not manager.idle_timer.enabled
    finally:
        await manager.stop()


async def test_unwritable_state_directory_keeps_check_in(tmp_path, api):
    api.add_visitor(42)
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("")
    manager = await build_manager(tmp_path, api, FileVisitorIdStore(blocker / "state"))
    try:
        await manager.mount(EntryDirective(kind=DirectiveKind.RETURNING, visitor_id=42))

        assert manager.phase is PortalPhase.CHECKED_IN
        assert manager.snapshot()["data"]["visitorId"] == 42
        assert manager.countdown is not None and manager.countdown.active
    finally:
        await manager.stop()


async def test_outstanding_check_in_result_is_ignored_after_exit(manager, api, store):
    api.add_visitor(42)
    api.gate = asyncio.Event()
    api.gated_calls = {"check_in_returning"}

    task = asyncio.create_task(manager.mount(EntryDirective(kind=DirectiveKind.RETURNING, visitor_id=42)))
    while ("check_in_returning", 42) not in api.calls:
        await asyncio.sleep(0)
    assert manager.phase is PortalPhase.SUBMITTING

    await manager.return_home()
    api.gate.set()
    await task

    assert 42 in api.active
    assert manager.phase is PortalPhase.WELCOME
    assert manager.context.result is None
    assert manager.countdown is None
    assert store.get() is None


async def test_stale_lookup_keeps_newer_session_claim(manager, api):
    stale_gate = asyncio.Event()
    api.gate = stale_gate
    await manager.mount()
    stale = asyncio.create_task(manager.lookup_returning("0812345678", 1990))
    while not api.calls:
        await asyncio.sleep(0)

    await manager.return_home()
    await manager.mount()
    api.gate = asyncio.Event()
    current = asyncio.create_task(manager.lookup_returning("0991234567", 1985))
    while [name for name, _ in api.calls].count("lookup_visitor") < 2:
        await asyncio.sleep(0)
    assert manager.snapshot()["busy"] == ["lookup"]

    stale_gate.set()
    await stale
    assert manager.snapshot()["busy"] == ["lookup"]
    assert manager.phase is PortalPhase.RETURNING_LOOKUP

    api.gate.set()
    await current
    assert manager.snapshot()["busy"] == []
    assert manager.phase is PortalPhase.NEW_VISITOR_FORM


async def test_invalidated_earlier_step_blocks_submission(manager, api):
    await manager.mount(EntryDirective(kind=DirectiveKind.NEW))
    await manager.update_form(
        {"firstName": "Jean", "lastName": "Mukendi", "yearOfBirth": 1990, "phoneNumber": "0812345678", "purpose": "meeting"}
    )
    assert await manager.form_next() is Navigation.ADVANCED
    assert await manager.form_next() is Navigation.ADVANCED
    await manager.update_form({"firstName": "J"})

    assert await manager.form_next() is Navigation.BLOCKED
    assert manager.phase is PortalPhase.NEW_VISITOR_FORM
    assert manager.snapshot()["busy"] == []
    assert not any(name == "check_in_new" for name, _ in api.calls)
