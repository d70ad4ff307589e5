"""View models for the checked-in and already-checked-in screens."""
from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import Visit, Visitor, normalize_phone


class ViewBanner(str, enum.Enum):
    CHECKED_IN = "checked_in"
    ALREADY_CHECKED_IN = "already_checked_in"


_BANNER_TEXT = {
    ViewBanner.CHECKED_IN: ("Check-in Successful", "You have been checked in successfully."),
    ViewBanner.ALREADY_CHECKED_IN: ("Already Checked In", "You already have an active visit in our system."),
}


def format_badge_id(visitor_id: int) -> str:
    return f"VIS-{visitor_id:05d}"


def format_phone(phone: str) -> str:
    """Group a local number as `081 234 5678`; international numbers are left alone."""
    if phone.startswith("+"):
        return phone
    digits = normalize_phone(phone)
    if len(digits) != 10:
        return phone
    return f"{digits[:3]} {digits[3:6]} {digits[6:]}"


def format_check_in(moment: datetime, tz_name: str) -> Tuple[str, str]:
    """Return (`17 October 2026`, `09:00`) in the display timezone; naive values are UTC."""
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        tz = timezone.utc
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    local = moment.astimezone(tz)
    return f"{local.day} {local.strftime('%B %Y')}", local.strftime("%H:%M")


@dataclass
class VisitView:
    """Everything the kiosk needs to draw a terminal check-in screen."""

    banner: ViewBanner
    visitor: Visitor
    visit: Visit
    countdown: int
    auto_redirect: bool = True
    timezone: str = "Africa/Kinshasa"
    app_name: Optional[str] = None

    def render(self) -> Dict[str, Any]:
        title, message = _BANNER_TEXT[self.banner]
        check_in_date, check_in_time = format_check_in(self.visit.check_in_time, self.timezone)
        return {
            "banner": self.banner.value,
            "title": title,
            "message": message,
            "appName": self.app_name,
            "visitorId": self.visitor.id,
            "visitId": self.visit.id,
            "fullName": self.visitor.full_name,
            "badgeId": format_badge_id(self.visitor.id),
            "phone": format_phone(self.visitor.phone_number),
            "checkInDate": check_in_date,
            "checkInTime": check_in_time,
            "checkInAt": self.visit.check_in_time.isoformat(),
            "purpose": self.visit.purpose,
            "countdown": self.countdown,
            "autoRedirect": self.auto_redirect,
            "actions": {
                "cancelAutoRedirect": self.auto_redirect,
                "returnHome": True,
                "checkOut": self.banner is ViewBanner.CHECKED_IN,
            },
        }


__all__ = ["ViewBanner", "VisitView", "format_badge_id", "format_phone", "format_check_in"]
