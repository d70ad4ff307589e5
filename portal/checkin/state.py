"""Shared portal state definitions for the check-in kiosk."""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional


class PortalPhase(str, enum.Enum):
    """
    Check-in phases:

    WELCOME             - Home screen, no session mounted
    SELECTING_TYPE      - New vs. returning visitor choice
    NEW_VISITOR_FORM    - Multi-step registration form (optionally prefilled)
    RETURNING_LOOKUP    - Resolving a returning visitor by phone/year or id
    SUBMITTING          - Check-in call outstanding
    CHECKED_IN          - Success view with auto-redirect countdown
    DUPLICATE_CONFLICT  - Already-checked-in view with the existing visit
    LOOKUP_FAILED       - Returning check-in failed, falling back to the form
    EXIT                - Navigating home; session state discarded
    """
    WELCOME = "welcome"
    SELECTING_TYPE = "selecting_type"
    NEW_VISITOR_FORM = "new_visitor_form"
    RETURNING_LOOKUP = "returning_lookup"
    SUBMITTING = "submitting"
    CHECKED_IN = "checked_in"
    DUPLICATE_CONFLICT = "duplicate_conflict"
    LOOKUP_FAILED = "lookup_failed"
    EXIT = "exit"


TERMINAL_VIEW_PHASES = frozenset({PortalPhase.CHECKED_IN, PortalPhase.DUPLICATE_CONFLICT})


class VisitorType(str, enum.Enum):
    NEW = "new"
    RETURNING = "returning"


class DirectiveKind(str, enum.Enum):
    NEW = "new"
    RETURNING = "returning"
    PREFILL = "prefill"


@dataclass(frozen=True)
class EntryDirective:
    """One-shot instruction read from the portal URL on mount."""

    kind: DirectiveKind
    visitor_id: Optional[int] = None
    phone_number: Optional[str] = None
    year_of_birth: Optional[int] = None

    @classmethod
    def from_query(cls, params: Mapping[str, Any]) -> Optional["EntryDirective"]:
        """Parse `type=new|returning|prefill` query parameters; unknown types yield None."""
        raw_type = params.get("type")
        if not raw_type:
            return None
        try:
            kind = DirectiveKind(str(raw_type).strip().lower())
        except ValueError:
            return None

        if kind is DirectiveKind.RETURNING:
            return cls(kind=kind, visitor_id=_parse_int(params.get("visitorId")))
        if kind is DirectiveKind.PREFILL:
            phone = params.get("phoneNumber")
            return cls(
                kind=kind,
                phone_number=str(phone).strip() if phone else None,
                year_of_birth=_parse_int(params.get("yearOfBirth")),
            )
        return cls(kind=kind)


def _parse_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


@dataclass
class PortalEvent:
    """Event payload distributed to kiosk UI clients over the local WebSocket."""

    type: str
    data: Dict[str, Any]
    phase: PortalPhase
    error: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type, "phase": self.phase.value, "data": self.data}
        if self.error:
            payload["error"] = self.error
        return payload


__all__ = [
    "PortalPhase",
    "TERMINAL_VIEW_PHASES",
    "VisitorType",
    "DirectiveKind",
    "EntryDirective",
    "PortalEvent",
]
