from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import pytest

from checkin.backend.http_client import CheckInOutcome, CheckInStatus
from checkin.config import DisplaySettings, Settings, TimerSettings
from checkin.models import AppSettings, CheckInResult, Visit, Visitor, VisitorFormValues, normalize_phone
from checkin.session_manager import CheckInSessionManager
from checkin.storage import MemoryVisitorIdStore


def visitor_payload(visitor_id: int = 42, **overrides: Any) -> Dict[str, Any]:
    payload = {
        "id": visitor_id,
        "fullName": "Marie Kabila",
        "yearOfBirth": 1985,
        "sex": "Feminin",
        "phoneNumber": "0991234567",
        "email": "marie@example.com",
        "verified": False,
    }
    payload.update(overrides)
    return payload


def visit_payload(visit_id: int = 7, visitor_id: int = 42, check_in: str = "2026-10-17T09:00:00+01:00", **overrides: Any) -> Dict[str, Any]:
    payload = {"id": visit_id, "visitorId": visitor_id, "checkInTime": check_in, "purpose": "meeting"}
    payload.update(overrides)
    return payload


class FakeVisitorApi:
    """In-memory backend honouring the one-active-visit-per-visitor rule."""

    def __init__(self) -> None:
        self.visitors: Dict[int, Visitor] = {}
        self.active: Dict[int, Visit] = {}
        self.calls: list[tuple[str, Any]] = []
        self.returning_status: Optional[CheckInStatus] = None
        self.new_status: Optional[CheckInStatus] = None
        self.network_down = False
        self.gate: Optional[asyncio.Event] = None
        # When set, only these calls wait on the gate
        self.gated_calls: Optional[set[str]] = None
        self.settings: Optional[AppSettings] = AppSettings(app_name="Front Desk")
        self.closed = False
        self._next_visitor_id = 100
        self._next_visit_id = 500

    def add_visitor(self, visitor_id: int = 42, **overrides: Any) -> Visitor:
        visitor = Visitor.model_validate(visitor_payload(visitor_id, **overrides))
        self.visitors[visitor.id] = visitor
        return visitor

    def add_active_visit(self, visitor_id: int, check_in: str = "2026-10-17T09:00:00+01:00", visit_id: int = 7) -> Visit:
        visit = Visit.model_validate(visit_payload(visit_id, visitor_id, check_in))
        self.active[visitor_id] = visit
        return visit

    async def _wait(self, name: str) -> None:
        if self.gate is None:
            return
        if self.gated_calls is None or name in self.gated_calls:
            await self.gate.wait()

    def _open_visit(self, visitor: Visitor, purpose: Optional[str]) -> CheckInOutcome:
        existing = self.active.get(visitor.id)
        if existing is not None:
            return CheckInOutcome(
                CheckInStatus.CONFLICT, result=CheckInResult(visitor=visitor, visit=existing), status_code=409
            )
        self._next_visit_id += 1
        visit = Visit(
            id=self._next_visit_id,
            visitor_id=visitor.id,
            check_in_time=datetime.now(timezone.utc),
            purpose=purpose,
        )
        self.active[visitor.id] = visit
        return CheckInOutcome(CheckInStatus.SUCCESS, result=CheckInResult(visitor=visitor, visit=visit), status_code=201)

    async def get_visitor(self, visitor_id: int) -> Optional[Visitor]:
        self.calls.append(("get_visitor", visitor_id))
        await self._wait("get_visitor")
        if self.network_down:
            return None
        return self.visitors.get(visitor_id)

    async def lookup_visitor(self, phone_number: str, year_of_birth: Optional[int] = None) -> Optional[Visitor]:
        self.calls.append(("lookup_visitor", (phone_number, year_of_birth)))
        await self._wait("lookup_visitor")
        if self.network_down:
            return None
        for visitor in self.visitors.values():
            if normalize_phone(visitor.phone_number) == phone_number:
                if year_of_birth is None or visitor.year_of_birth == year_of_birth:
                    return visitor
        return None

    async def check_in_new(self, form: VisitorFormValues) -> CheckInOutcome:
        self.calls.append(("check_in_new", form))
        await self._wait("check_in_new")
        if self.network_down:
            return CheckInOutcome(CheckInStatus.ERROR, message="Backend unreachable")
        if self.new_status is not None:
            return CheckInOutcome(self.new_status, status_code=500)
        self._next_visitor_id += 1
        visitor = Visitor(
            id=self._next_visitor_id,
            full_name=form.full_name,
            year_of_birth=form.year_of_birth,
            sex=form.sex,
            phone_number=form.phone_number,
            email=form.email,
        )
        self.visitors[visitor.id] = visitor
        return self._open_visit(visitor, form.purpose)

    async def check_in_returning(self, visitor_id: int) -> CheckInOutcome:
        self.calls.append(("check_in_returning", visitor_id))
        await self._wait("check_in_returning")
        if self.network_down:
            return CheckInOutcome(CheckInStatus.ERROR, message="Backend unreachable")
        if self.returning_status is not None:
            return CheckInOutcome(self.returning_status, status_code=409 if self.returning_status is CheckInStatus.MALFORMED else 500)
        visitor = self.visitors.get(visitor_id)
        if visitor is None:
            return CheckInOutcome(CheckInStatus.NOT_FOUND, status_code=404)
        return self._open_visit(visitor, None)

    async def get_active_visit(self, visitor_id: int) -> CheckInOutcome:
        self.calls.append(("get_active_visit", visitor_id))
        visit = self.active.get(visitor_id)
        visitor = self.visitors.get(visitor_id)
        if visit is None or visitor is None:
            return CheckInOutcome(CheckInStatus.NOT_FOUND, status_code=404)
        return CheckInOutcome(CheckInStatus.SUCCESS, result=CheckInResult(visitor=visitor, visit=visit), status_code=200)

    async def check_out(self, visit_id: int) -> Optional[Visit]:
        self.calls.append(("check_out", visit_id))
        for visitor_id, visit in list(self.active.items()):
            if visit.id == visit_id:
                del self.active[visitor_id]
                return visit.model_copy(update={"check_out_time": datetime.now(timezone.utc), "active": False})
        return None

    async def get_settings(self) -> Optional[AppSettings]:
        return self.settings

    async def aclose(self) -> None:
        self.closed = True


def make_settings(tmp_path, **timer_overrides: Any) -> Settings:
    timers = {"idle_timeout": 60.0, "idle_debounce": 0.3, "checked_in_countdown": 6,
              "already_checked_in_countdown": 7, "countdown_tick": 5.0}
    timers.update(timer_overrides)
    return Settings(
        backend_api_url="http://backend.test",
        state_directory=tmp_path,
        log_directory=tmp_path / "logs",
        timers=TimerSettings(**timers),
        display=DisplaySettings(timezone="Africa/Kinshasa"),
    )


@pytest.fixture
def api() -> FakeVisitorApi:
    return FakeVisitorApi()


@pytest.fixture
def store() -> MemoryVisitorIdStore:
    return MemoryVisitorIdStore()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
async def manager(settings, api, store):
    mgr = CheckInSessionManager(settings=settings, api_client=api, store=store)
    await mgr.start()
    yield mgr
    await mgr.stop()


def drain(queue: asyncio.Queue) -> list:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events
