"""Check-in session orchestration for the visitor kiosk."""
from __future__ import annotations

import asyncio
from asyncio import QueueEmpty
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .backend.http_client import CheckInOutcome, CheckInStatus, VisitorApi, VisitorApiClient
from .backend.settings_provider import SettingsProvider
from .check_in_form import CheckInForm, defaults_from_visitor
from .config import Settings, get_settings
from .logging_config import VISITS_LOGGER
from .models import AppSettings, CheckInResult, Visitor, VisitorFormValues, normalize_phone
from .multi_step import Navigation
from .state import (
    TERMINAL_VIEW_PHASES,
    DirectiveKind,
    EntryDirective,
    PortalEvent,
    PortalPhase,
    VisitorType,
)
from .storage import FileVisitorIdStore, VisitorIdStore
from .timers import Countdown, IdleTimer
from .views import ViewBanner, VisitView

logger = logging.getLogger(__name__)
visits_logger = logging.getLogger(VISITS_LOGGER)


@dataclass
class SessionContext:
    """Working memory of one kiosk session; replaced wholesale on mount and exit."""

    generation: int = 0
    visitor_type: Optional[VisitorType] = None
    prefill: Dict[str, Any] = field(default_factory=dict)
    visitor: Optional[Visitor] = None
    form: Optional[CheckInForm] = None
    view: Optional[VisitView] = None
    result: Optional[CheckInResult] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class SessionFlowError(RuntimeError):
    """Raised when a check-in attempt cannot continue and the kiosk must return home."""

    def __init__(self, user_message: str, *, log_message: Optional[str] = None) -> None:
        super().__init__(log_message or user_message)
        self.user_message = user_message


class CheckInSessionManager:
    """Coordinates the check-in flow, its two timers, backend calls and UI state updates."""

    _RETRY_MESSAGE = "We could not complete your check-in. Please try again."
    _FALLBACK_MESSAGE = "We could not check you in automatically. Please confirm your details."

    def __init__(
        self,
        *,
        settings: Optional[Settings] = None,
        api_client: Optional[VisitorApi] = None,
        store: Optional[VisitorIdStore] = None,
        settings_provider: Optional[SettingsProvider] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._api: VisitorApi = api_client or VisitorApiClient(self.settings)
        self._store: VisitorIdStore = store or FileVisitorIdStore(self.settings.state_directory)
        self._settings_provider = settings_provider or SettingsProvider(
            self._api, default_app_name=self.settings.display.default_app_name
        )

        self._phase: PortalPhase = PortalPhase.WELCOME
        self._phase_started_at: float = time.time()
        self._ui_subscribers: List[asyncio.Queue[PortalEvent]] = []
        self._context = SessionContext()
        self._generation = 0
        self._in_flight: Dict[str, int] = {}
        self._last_phase_payload: Dict[str, Any] = {}
        self._last_phase_error: Optional[str] = None

        timers = self.settings.timers
        self._idle_timer = IdleTimer(
            timeout=timers.idle_timeout,
            debounce=timers.idle_debounce,
            on_idle=self._handle_idle,
        )
        self._countdown: Optional[Countdown] = None

    # ============================================================
    # LIFECYCLE
    # ============================================================

    @property
    def phase(self) -> PortalPhase:
        return self._phase

    @property
    def context(self) -> SessionContext:
        return self._context

    @property
    def idle_timer(self) -> IdleTimer:
        return self._idle_timer

    @property
    def countdown(self) -> Optional[Countdown]:
        return self._countdown

    async def start(self) -> None:
        logger.info("Starting check-in session manager")
        try:
            app_settings = await self._settings_provider.get()
            logger.info("Portal branding loaded: %s", app_settings.app_name)
        except Exception as e:
            logger.exception("Failed to prefetch application settings: %s", e)
        logger.info("Session manager started in WELCOME state")

    async def stop(self) -> None:
        logger.info("Stopping check-in session manager")
        self._idle_timer.stop()
        self._cancel_countdown()
        try:
            await self._api.aclose()
        except Exception as e:
            logger.warning("Error closing API client: %s", e)
        logger.info("Session manager stopped")

    def register_ui(self) -> asyncio.Queue[PortalEvent]:
        queue: asyncio.Queue[PortalEvent] = asyncio.Queue(maxsize=self.settings.display.ui_event_queue_size)
        self._ui_subscribers.append(queue)
        # New screens render the current phase immediately
        queue.put_nowait(
            PortalEvent(type="state", phase=self._phase, data=self._last_phase_payload, error=self._last_phase_error)
        )
        return queue

    def unregister_ui(self, queue: asyncio.Queue[PortalEvent]) -> None:
        if queue in self._ui_subscribers:
            self._ui_subscribers.remove(queue)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "phase": self._phase.value,
            "data": self._last_phase_payload,
            "error": self._last_phase_error,
            "phaseAge": round(time.time() - self._phase_started_at, 1),
            "busy": sorted(op for op in self._in_flight if self._is_claimed(op)),
            "idle": {"enabled": self._idle_timer.enabled, "timeout": self._idle_timer.timeout},
            "countdown": {
                "remaining": self._countdown.remaining if self._countdown else None,
                "cancelled": self._countdown.cancelled if self._countdown else False,
            },
        }

    async def app_settings(self) -> AppSettings:
        return await self._settings_provider.get()

    # ============================================================
    # ENTRY
    # ============================================================

    async def mount(self, directive: Optional[EntryDirective] = None) -> PortalPhase:
        """Portal page load: consume the entry directive once and pick the entry phase."""
        if directive is None and self._is_mid_flow():
            logger.info("Mount without directive while in %s - keeping current flow", self._phase.value)
            return self._phase

        generation = self._begin_session()
        logger.info(
            "🎬 [SESSION_START] generation=%d directive=%s",
            generation,
            directive.kind.value if directive else "none",
        )
        try:
            if directive is None:
                await self._resume_or_select(generation)
            elif directive.kind is DirectiveKind.NEW:
                await self._show_form(generation, {}, visitor_type=VisitorType.NEW)
            elif directive.kind is DirectiveKind.RETURNING:
                if directive.visitor_id is None:
                    logger.info("Returning directive without visitor id - showing type selection")
                    await self._advance_phase(PortalPhase.SELECTING_TYPE)
                else:
                    await self._check_in_by_id(generation, directive.visitor_id)
            elif directive.kind is DirectiveKind.PREFILL:
                if not directive.phone_number:
                    await self._advance_phase(PortalPhase.SELECTING_TYPE)
                else:
                    await self._show_form(
                        generation,
                        _prefill_values(directive.phone_number, directive.year_of_birth),
                        visitor_type=VisitorType.NEW,
                    )
        except Exception as exc:
            await self._recover(generation, exc)
        return self._phase

    async def select_new_visitor(self) -> bool:
        if self._phase is not PortalPhase.SELECTING_TYPE:
            logger.info("select_new_visitor ignored in %s", self._phase.value)
            return False
        await self._show_form(self._generation, {}, visitor_type=VisitorType.NEW)
        return True

    async def lookup_returning(self, phone_number: str, year_of_birth: Optional[int] = None) -> PortalPhase:
        """Resolve a returning visitor; a hit checks in directly, a miss opens the prefilled form."""
        if self._phase is not PortalPhase.SELECTING_TYPE or not self._claim("lookup"):
            logger.info("lookup_returning ignored in %s", self._phase.value)
            return self._phase

        generation = self._generation
        self._context.visitor_type = VisitorType.RETURNING
        try:
            await self._advance_phase(PortalPhase.RETURNING_LOOKUP, data={"phoneNumber": phone_number})
            visitor = await self._api.lookup_visitor(normalize_phone(phone_number), year_of_birth)
            if not self._is_current(generation):
                logger.info("Discarding stale lookup result (generation %d)", generation)
                return self._phase

            if visitor is None:
                logger.info("👤 Returning visitor not found - opening prefilled form")
                await self._show_form(generation, _prefill_values(phone_number, year_of_birth))
                return self._phase

            logger.info("👤 Returning visitor resolved: id=%s", visitor.id)
            await self._submit_returning(generation, visitor)
        except Exception as exc:
            await self._recover(generation, exc)
        finally:
            self._release("lookup", generation)
        return self._phase

    # ============================================================
    # NEW-VISITOR FORM
    # ============================================================

    async def update_form(self, values: Mapping[str, Any]) -> bool:
        form = self._context.form
        if self._phase is not PortalPhase.NEW_VISITOR_FORM or form is None:
            return False
        form.update(values)
        await self._broadcast(PortalEvent(type="form", phase=self._phase, data=form.snapshot()))
        return True

    async def form_next(self) -> Navigation:
        form = self._context.form
        if self._phase is not PortalPhase.NEW_VISITOR_FORM or form is None:
            return Navigation.IGNORED
        generation = self._generation
        try:
            outcome = await form.next()
        except Exception as exc:
            await self._recover(generation, exc)
            return Navigation.IGNORED
        if self._is_current(generation) and self._phase is PortalPhase.NEW_VISITOR_FORM:
            await self._broadcast(PortalEvent(type="form", phase=self._phase, data=form.snapshot()))
        return outcome

    async def form_back(self) -> Navigation:
        form = self._context.form
        if self._phase is not PortalPhase.NEW_VISITOR_FORM or form is None:
            return Navigation.IGNORED
        outcome = form.back()
        if outcome is Navigation.RETREATED:
            await self._broadcast(PortalEvent(type="form", phase=self._phase, data=form.snapshot()))
        return outcome

    # ============================================================
    # TERMINAL VIEWS
    # ============================================================

    async def cancel_auto_redirect(self) -> bool:
        """Stop the post-check-in countdown; the idle timer keeps running."""
        countdown = self._countdown
        if self._phase not in TERMINAL_VIEW_PHASES or countdown is None:
            return False
        changed = countdown.cancel()
        if changed and self._context.view is not None:
            self._context.view.auto_redirect = False
            await self._publish_view()
        return changed

    async def return_home(self) -> None:
        await self._exit("home")

    async def check_out(self) -> bool:
        result = self._context.result
        if self._phase is not PortalPhase.CHECKED_IN or result is None or not self._claim("checkout"):
            return False
        generation = self._generation
        try:
            visit = await self._api.check_out(result.visit.id)
            if not self._is_current(generation):
                return False
            if visit is None:
                self._last_phase_error = "Check-out failed. Please try again."
                await self._broadcast(
                    PortalEvent(type="state", phase=self._phase, data=self._last_phase_payload, error=self._last_phase_error)
                )
                return False
            logger.info("👋 Visitor %s checked out (visit %s)", result.visitor.id, visit.id)
            visits_logger.info("checked_out visitor=%s visit=%s check_out=%s", result.visitor.id, visit.id, _iso(visit.check_out_time))
            await self._exit(
                "checked_out",
                data={"fullName": result.visitor.full_name, "checkOutTime": _iso(visit.check_out_time)},
            )
            return True
        finally:
            self._release("checkout", generation)

    # ============================================================
    # IDLE
    # ============================================================

    def record_activity(self) -> bool:
        return self._idle_timer.record_activity()

    def set_idle_enabled(self, enabled: bool) -> None:
        if enabled and self._phase in {PortalPhase.WELCOME, PortalPhase.EXIT}:
            return
        self._idle_timer.set_enabled(enabled)

    async def _handle_idle(self) -> None:
        if self._phase in {PortalPhase.WELCOME, PortalPhase.EXIT}:
            return
        logger.info("⏰ Idle timeout in %s - returning home", self._phase.value)
        await self._exit("idle")

    # ============================================================
    # FLOW STEPS
    # ============================================================

    async def _resume_or_select(self, generation: int) -> None:
        visitor_id = self._store.get()
        if visitor_id is None:
            await self._advance_phase(PortalPhase.SELECTING_TYPE)
            return

        logger.info("🔁 Resuming session for stored visitor %s", visitor_id)
        outcome = await self._api.get_active_visit(visitor_id)
        if not self._is_current(generation):
            return
        if outcome.status is CheckInStatus.SUCCESS and outcome.result is not None:
            await self._enter_terminal(generation, PortalPhase.CHECKED_IN, outcome.result, resumed=True)
            return
        if outcome.status is CheckInStatus.NOT_FOUND:
            logger.info("No active visit for stored visitor %s - clearing", visitor_id)
            self._store.clear()
        await self._advance_phase(PortalPhase.SELECTING_TYPE)

    async def _check_in_by_id(self, generation: int, visitor_id: int) -> None:
        self._context.visitor_type = VisitorType.RETURNING
        if not self._claim("returning"):
            return
        try:
            await self._advance_phase(PortalPhase.RETURNING_LOOKUP, data={"visitorId": visitor_id})
            visitor = await self._api.get_visitor(visitor_id)
            if not self._is_current(generation):
                return
            if visitor is None:
                logger.info("Visitor %s not found - opening registration form", visitor_id)
                await self._show_form(generation, {}, visitor_type=VisitorType.NEW)
                return
            await self._submit_returning(generation, visitor)
        finally:
            self._release("returning", generation)

    async def _submit_returning(self, generation: int, visitor: Visitor) -> None:
        self._context.visitor = visitor
        await self._advance_phase(PortalPhase.SUBMITTING, data={"visitorId": visitor.id})
        outcome = await self._api.check_in_returning(visitor.id)
        if not self._is_current(generation):
            logger.info("Discarding stale returning check-in for visitor %s", visitor.id)
            return

        if outcome.status in (CheckInStatus.SUCCESS, CheckInStatus.CONFLICT, CheckInStatus.MALFORMED):
            await self._apply_outcome(generation, outcome)
            return

        logger.warning(
            "Returning check-in failed for visitor %s (%s) - falling back to form",
            visitor.id,
            outcome.status.value,
        )
        await self._advance_phase(
            PortalPhase.LOOKUP_FAILED,
            data={"visitorId": visitor.id, "reason": outcome.status.value},
            error=self._FALLBACK_MESSAGE,
        )
        await self._show_form(generation, defaults_from_visitor(visitor), error=self._FALLBACK_MESSAGE)

    async def _submit_new(self, values: VisitorFormValues) -> None:
        generation = self._generation
        if not self._claim("submit"):
            return
        try:
            await self._advance_phase(PortalPhase.SUBMITTING, data={"fullName": values.full_name})
            outcome = await self._api.check_in_new(values)
            if not self._is_current(generation):
                logger.info("Discarding stale check-in result (generation %d)", generation)
                return
            if outcome.status in (CheckInStatus.SUCCESS, CheckInStatus.CONFLICT, CheckInStatus.MALFORMED):
                await self._apply_outcome(generation, outcome)
                return
            logger.error("New visitor check-in failed (%s) - offering retry", outcome.status.value)
            await self._return_to_form(error=self._RETRY_MESSAGE)
        finally:
            self._release("submit", generation)

    async def _apply_outcome(self, generation: int, outcome: CheckInOutcome) -> None:
        if outcome.status is CheckInStatus.MALFORMED or outcome.result is None:
            raise SessionFlowError(
                "We could not confirm your check-in",
                log_message=f"check-in returned {outcome.status.value} without visitor/visit payload",
            )
        phase = PortalPhase.CHECKED_IN if outcome.status is CheckInStatus.SUCCESS else PortalPhase.DUPLICATE_CONFLICT
        await self._enter_terminal(generation, phase, outcome.result)

    async def _show_form(
        self,
        generation: int,
        defaults: Mapping[str, Any],
        *,
        visitor_type: Optional[VisitorType] = None,
        error: Optional[str] = None,
    ) -> None:
        if not self._is_current(generation):
            return
        if visitor_type is not None:
            self._context.visitor_type = visitor_type
        self._context.prefill = dict(defaults)
        self._context.form = CheckInForm(
            on_submit=self._submit_new,
            defaults=defaults,
            is_busy=lambda: self._is_claimed("submit"),
        )
        await self._advance_phase(PortalPhase.NEW_VISITOR_FORM, data=self._context.form.snapshot(), error=error)

    async def _return_to_form(self, *, error: str) -> None:
        form = self._context.form
        if form is None:
            await self._exit("error")
            return
        await self._advance_phase(PortalPhase.NEW_VISITOR_FORM, data=form.snapshot(), error=error)

    async def _enter_terminal(
        self, generation: int, phase: PortalPhase, result: CheckInResult, *, resumed: bool = False
    ) -> None:
        if not self._is_current(generation):
            return
        self._cancel_countdown()
        self._context.result = result
        self._context.visitor = result.visitor
        self._context.form = None
        self._store.set(result.visitor.id)

        timers = self.settings.timers
        if phase is PortalPhase.CHECKED_IN:
            banner, seconds = ViewBanner.CHECKED_IN, timers.checked_in_countdown
        else:
            banner, seconds = ViewBanner.ALREADY_CHECKED_IN, timers.already_checked_in_countdown

        cached = self._settings_provider.cached
        self._context.view = VisitView(
            banner=banner,
            visitor=result.visitor,
            visit=result.visit,
            countdown=seconds,
            timezone=self.settings.display.timezone,
            app_name=cached.app_name if cached else self.settings.display.default_app_name,
        )
        logger.info(
            "✅ %s: visitor=%s visit=%s checked in at %s",
            phase.value,
            result.visitor.id,
            result.visit.id,
            result.visit.check_in_time.isoformat(),
        )
        visits_logger.info(
            "%s visitor=%s name=%s visit=%s check_in=%s",
            "resumed" if resumed else phase.value,
            result.visitor.id,
            result.visitor.full_name,
            result.visit.id,
            result.visit.check_in_time.isoformat(),
        )
        await self._advance_phase(phase, data=self._context.view.render())

        self._countdown = Countdown(
            seconds,
            tick=timers.countdown_tick,
            on_tick=self._on_countdown_tick,
            on_finished=lambda: self._on_countdown_finished(generation),
            name=f"{banner.value}-redirect",
        )
        self._countdown.start()

    async def _on_countdown_tick(self, remaining: int) -> None:
        if self._context.view is None:
            return
        self._context.view.countdown = remaining
        await self._publish_view()

    async def _on_countdown_finished(self, generation: int) -> None:
        if self._generation != generation or self._phase not in TERMINAL_VIEW_PHASES:
            return
        await self._exit("auto_redirect")

    async def _exit(self, reason: str, *, data: Optional[Dict[str, Any]] = None) -> None:
        """Leave the flow: discard session state, clear durable storage, navigate home."""
        self._generation += 1
        self._cancel_countdown()
        self._idle_timer.stop()
        self._store.clear()
        self._context = SessionContext(generation=self._generation)
        logger.info("🏁 [SESSION_END] reason=%s", reason)
        await self._advance_phase(PortalPhase.EXIT, data={"reason": reason, "navigate": "/", **(data or {})})
        await self._advance_phase(PortalPhase.WELCOME)

    async def _recover(self, generation: int, exc: Exception) -> None:
        """Turn an unexpected failure into a transition so the kiosk never dead-ends."""
        if isinstance(exc, SessionFlowError):
            logger.error("❌ Check-in attempt failed: %s", exc)
        else:
            logger.exception("❌ Unexpected check-in error: %s", exc)
        if not self._is_current(generation):
            return
        if self._context.form is not None and not isinstance(exc, SessionFlowError):
            await self._return_to_form(error=self._RETRY_MESSAGE)
            return
        await self._exit("error", data={"message": getattr(exc, "user_message", "Please try again")})

    # ============================================================
    # HELPERS
    # ============================================================

    def _begin_session(self) -> int:
        self._generation += 1
        self._cancel_countdown()
        self._context = SessionContext(generation=self._generation)
        self._idle_timer.start()
        return self._generation

    def _is_mid_flow(self) -> bool:
        return self._phase not in {PortalPhase.WELCOME, PortalPhase.EXIT}

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and self._phase is not PortalPhase.EXIT

    def _is_claimed(self, operation: str) -> bool:
        return self._in_flight.get(operation) == self._generation

    def _claim(self, operation: str) -> bool:
        """Single-flight guard; claims from an earlier session generation no longer count."""
        if self._is_claimed(operation):
            logger.info("%s already in flight; ignoring re-entrant call", operation)
            return False
        self._in_flight[operation] = self._generation
        return True

    def _release(self, operation: str, generation: int) -> None:
        # A stale task must not free the claim a newer session holds
        if self._in_flight.get(operation) == generation:
            del self._in_flight[operation]

    def _cancel_countdown(self) -> None:
        if self._countdown is not None:
            self._countdown.cancel()
            self._countdown = None

    async def _publish_view(self) -> None:
        if self._context.view is None:
            return
        self._last_phase_payload = self._context.view.render()
        await self._broadcast(PortalEvent(type="view", phase=self._phase, data=self._last_phase_payload))

    async def _advance_phase(
        self,
        phase: PortalPhase,
        *,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        if phase is not self._phase:
            logger.info("Phase %s → %s", self._phase.value, phase.value)
        self._phase = phase
        self._phase_started_at = time.time()
        self._last_phase_payload = data or {}
        self._last_phase_error = error
        await self._broadcast(PortalEvent(type="state", data=data or {}, phase=phase, error=error))

    async def _broadcast(self, event: PortalEvent) -> None:
        """Broadcast event to all UI subscribers, dropping the oldest event when a queue is full."""
        for queue in list(self._ui_subscribers):
            try:
                if queue.full():
                    try:
                        queue.get_nowait()
                    except QueueEmpty:
                        pass
                queue.put_nowait(event)
            except Exception as e:
                logger.warning("Failed to broadcast event to subscriber: %s", e)


def _prefill_values(phone_number: str, year_of_birth: Optional[int]) -> Dict[str, Any]:
    values: Dict[str, Any] = {"phone_number": phone_number}
    if year_of_birth is not None:
        values["year_of_birth"] = year_of_birth
    return values


def _iso(value: Any) -> Optional[str]:
    return value.isoformat() if value is not None else None


__all__ = ["SessionContext", "SessionFlowError", "CheckInSessionManager"]
