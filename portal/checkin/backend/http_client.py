"""HTTP client for the visitor-management REST endpoints."""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx
from pydantic import ValidationError

from ..config import Settings
from ..models import AppSettings, CheckInResult, Visit, Visitor, VisitorFormValues

logger = logging.getLogger(__name__)


class CheckInStatus(str, enum.Enum):
    SUCCESS = "success"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    MALFORMED = "malformed"
    ERROR = "error"


@dataclass
class CheckInOutcome:
    """Result of a check-in style call; expected failures are values, not exceptions."""

    status: CheckInStatus
    result: Optional[CheckInResult] = None
    status_code: Optional[int] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is CheckInStatus.SUCCESS


class VisitorApi(Protocol):
    """What the session manager needs from the backend; tests supply in-memory stubs."""

    async def get_visitor(self, visitor_id: int) -> Optional[Visitor]: ...

    async def lookup_visitor(self, phone_number: str, year_of_birth: Optional[int] = None) -> Optional[Visitor]: ...

    async def check_in_new(self, form: VisitorFormValues) -> CheckInOutcome: ...

    async def check_in_returning(self, visitor_id: int) -> CheckInOutcome: ...

    async def get_active_visit(self, visitor_id: int) -> CheckInOutcome: ...

    async def check_out(self, visit_id: int) -> Optional[Visit]: ...

    async def get_settings(self) -> Optional[AppSettings]: ...

    async def aclose(self) -> None: ...


class VisitorApiClient:
    """Thin wrapper around the visitor REST API."""

    def __init__(self, settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.settings = settings
        self._client = httpx.AsyncClient(
            base_url=self.settings.backend_api_url,
            timeout=self.settings.backend_timeout,
            transport=transport,
        )

    async def get_visitor(self, visitor_id: int) -> Optional[Visitor]:
        """Resolve a visitor by id; None on 404 or any failure."""
        response = await self._send("get_visitor", "GET", f"/api/visitors/{visitor_id}")
        if response is None:
            return None
        if response.status_code == 404:
            logger.info("api.get_visitor: visitor %s not found", visitor_id)
            return None
        if not response.is_success:
            logger.error("api.get_visitor: HTTP %d - %s", response.status_code, response.text)
            return None
        try:
            return Visitor.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error("api.get_visitor: malformed visitor payload - %s", e)
            return None

    async def lookup_visitor(self, phone_number: str, year_of_birth: Optional[int] = None) -> Optional[Visitor]:
        """Resolve a returning visitor by phone (and year of birth when given)."""
        payload: Dict[str, Any] = {"phoneNumber": phone_number}
        if year_of_birth is not None:
            payload["yearOfBirth"] = year_of_birth
        response = await self._send("lookup_visitor", "POST", "/api/visitors/lookup", json=payload)
        if response is None:
            return None
        data = _json_or_none(response)
        if not response.is_success or not isinstance(data, dict) or not data.get("found"):
            logger.info(
                "api.lookup_visitor: no match (HTTP %d) - %s",
                response.status_code,
                (data or {}).get("message") if isinstance(data, dict) else response.text,
            )
            return None
        try:
            return Visitor.model_validate(data.get("visitor"))
        except ValidationError as e:
            logger.error("api.lookup_visitor: malformed visitor payload - %s", e)
            return None

    async def check_in_new(self, form: VisitorFormValues) -> CheckInOutcome:
        return await self._check_in("check_in_new", "/api/visitors/check-in", form.to_payload())

    async def check_in_returning(self, visitor_id: int) -> CheckInOutcome:
        return await self._check_in(
            "check_in_returning", "/api/visitors/check-in/returning", {"visitorId": int(visitor_id)}
        )

    async def get_active_visit(self, visitor_id: int) -> CheckInOutcome:
        """Fetch `{visitor, visit}` for a visitor's active visit, used to resume after a restart."""
        response = await self._send("get_active_visit", "GET", f"/api/visitors/{visitor_id}/active-visit")
        if response is None:
            return CheckInOutcome(CheckInStatus.ERROR, message="Backend unreachable")
        if response.status_code == 404:
            return CheckInOutcome(CheckInStatus.NOT_FOUND, status_code=404)
        return _outcome_from_response("get_active_visit", response)

    async def check_out(self, visit_id: int) -> Optional[Visit]:
        response = await self._send("check_out", "POST", "/api/visitors/check-out", json={"visitId": int(visit_id)})
        if response is None:
            return None
        if not response.is_success:
            logger.error("api.check_out: HTTP %d - %s", response.status_code, response.text)
            return None
        try:
            return Visit.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error("api.check_out: malformed visit payload - %s", e)
            return None

    async def get_settings(self) -> Optional[AppSettings]:
        response = await self._send("get_settings", "GET", "/api/settings")
        if response is None:
            return None
        if not response.is_success:
            logger.error("api.get_settings: HTTP %d - %s", response.status_code, response.text)
            return None
        try:
            return AppSettings.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error("api.get_settings: malformed settings payload - %s", e)
            return None

    async def aclose(self) -> None:
        try:
            await self._client.aclose()
        except Exception as e:
            logger.warning("Error closing HTTP client: %s", e)

    async def _check_in(self, label: str, path: str, payload: Dict[str, Any]) -> CheckInOutcome:
        logger.info("api.%s: submitting check-in", label)
        response = await self._send(label, "POST", path, json=payload)
        if response is None:
            return CheckInOutcome(CheckInStatus.ERROR, message="Backend unreachable")
        return _outcome_from_response(label, response)

    async def _send(self, label: str, method: str, path: str, **kwargs: Any) -> Optional[httpx.Response]:
        """Issue a request; transport failures are logged and reported as None."""
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException:
            logger.error("api.%s: request timeout", label)
            return None
        except httpx.NetworkError as e:
            logger.error("api.%s: network error - %s", label, e)
            return None
        except httpx.HTTPError as e:
            logger.error("api.%s: transport error - %s", label, e)
            return None
        except Exception as e:
            logger.exception("api.%s: unexpected error - %s", label, e)
            return None


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _parse_result(data: Any) -> Optional[CheckInResult]:
    if not isinstance(data, dict) or not data.get("visitor") or not data.get("visit"):
        return None
    try:
        return CheckInResult.model_validate(data)
    except ValidationError as e:
        logger.warning("check-in payload failed validation - %s", e)
        return None


def _outcome_from_response(label: str, response: httpx.Response) -> CheckInOutcome:
    data = _json_or_none(response)
    message = data.get("message") if isinstance(data, dict) else None
    code = response.status_code

    if code == 409:
        result = _parse_result(data)
        if result is None:
            logger.error("api.%s: conflict without visitor/visit payload", label)
            return CheckInOutcome(CheckInStatus.MALFORMED, status_code=code, message=message)
        logger.info("api.%s: visitor %s already has active visit %s", label, result.visitor.id, result.visit.id)
        return CheckInOutcome(CheckInStatus.CONFLICT, result=result, status_code=code, message=message)

    if code == 404:
        return CheckInOutcome(CheckInStatus.NOT_FOUND, status_code=code, message=message)

    if not response.is_success:
        logger.error("api.%s: HTTP %d - %s", label, code, response.text)
        return CheckInOutcome(CheckInStatus.ERROR, status_code=code, message=message)

    result = _parse_result(data)
    if result is None:
        logger.error("api.%s: success without visitor/visit payload", label)
        return CheckInOutcome(CheckInStatus.MALFORMED, status_code=code, message=message)
    return CheckInOutcome(CheckInStatus.SUCCESS, result=result, status_code=code)


__all__ = ["CheckInStatus", "CheckInOutcome", "VisitorApi", "VisitorApiClient"]
