"""Visitor, visit and form models exchanged with the visitor-management backend."""
from __future__ import annotations

import enum
import re
from datetime import date, datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

_NAME_PATTERN = re.compile(r"^[A-Za-zÀ-ÖØ-öø-ÿ.\-' ]+$")
_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_COUNTRY_CODE = "243"


def normalize_phone(raw: str) -> str:
    """Reduce a phone number to the 10-digit local format with a leading zero.

    "+243 812 345 678", "812345678" and "081-234-5678" all become "0812345678".
    Inputs that cannot be normalized are returned as bare digits.
    """
    digits = re.sub(r"\D", "", raw or "")
    if len(digits) == 12 and digits.startswith(_COUNTRY_CODE):
        return "0" + digits[len(_COUNTRY_CODE):]
    if len(digits) == 9 and not digits.startswith("0"):
        return "0" + digits
    return digits


def is_valid_phone(raw: str) -> bool:
    phone = normalize_phone(raw)
    return len(phone) == 10 and phone.startswith("0")


class ApiModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Sex(str, enum.Enum):
    MASCULINE = "Masculin"
    FEMININE = "Feminin"


class Visitor(ApiModel):
    id: int
    full_name: str
    year_of_birth: int
    sex: Optional[Sex] = None
    phone_number: str
    email: Optional[str] = None
    verified: bool = False
    created_at: Optional[datetime] = None

    @property
    def first_name(self) -> str:
        parts = self.full_name.split()
        return parts[0] if parts else ""

    @property
    def last_name(self) -> str:
        parts = self.full_name.split()
        return parts[-1] if len(parts) > 1 else ""


class Visit(ApiModel):
    id: int
    visitor_id: int
    check_in_time: datetime
    check_out_time: Optional[datetime] = None
    purpose: Optional[str] = None
    active: bool = True

    @model_validator(mode="before")
    @classmethod
    def _derive_active(cls, data: Any) -> Any:
        # An explicit flag from the backend wins; otherwise a visit is active until checked out
        if isinstance(data, dict) and "active" not in data:
            checked_out = data.get("checkOutTime", data.get("check_out_time"))
            data = {**data, "active": checked_out is None}
        return data


class CheckInResult(ApiModel):
    visitor: Visitor
    visit: Visit
    is_returning_visitor: bool = False


class AppSettings(ApiModel):
    """Branding and locale defaults served by `GET /api/settings`."""

    app_name: Optional[str] = None
    header_app_name: Optional[str] = None
    footer_app_name: Optional[str] = None
    logo_url: Optional[str] = None
    theme: Optional[str] = None
    default_language: str = "fr"


class VisitorFormValues(ApiModel):
    """Validated new-visitor form; the transform step derives full name and phone."""

    first_name: str = Field(min_length=2)
    middle_name: Optional[str] = None
    last_name: str = Field(min_length=2)
    year_of_birth: int = Field(ge=1900)
    sex: Optional[Sex] = None
    email: Optional[str] = None
    phone_number: str = Field(min_length=1)
    purpose: str = Field(min_length=1)

    @field_validator("first_name", "last_name", mode="after")
    @classmethod
    def _check_name(cls, value: str) -> str:
        value = value.strip()
        if len(value) < 2:
            raise ValueError("Name is required")
        if not _NAME_PATTERN.match(value):
            raise ValueError("Name should contain only letters and basic characters")
        return value

    @field_validator("middle_name", "email", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("year_of_birth", mode="after")
    @classmethod
    def _check_year(cls, value: int) -> int:
        if value > date.today().year:
            raise ValueError("Year cannot be in the future")
        return value

    @field_validator("email", mode="after")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not _EMAIL_PATTERN.match(value.strip()):
            raise ValueError("Please enter a valid email")
        return value.strip() if value else value

    @field_validator("phone_number", mode="after")
    @classmethod
    def _check_phone(cls, value: str) -> str:
        if not is_valid_phone(value):
            raise ValueError("Phone number must be exactly 10 digits")
        return normalize_phone(value)

    @property
    def full_name(self) -> str:
        middle = f" {self.middle_name.strip()} " if self.middle_name else " "
        return f"{self.first_name}{middle}{self.last_name}".strip()

    def to_payload(self) -> Dict[str, Any]:
        payload = self.to_wire()
        payload["fullName"] = self.full_name
        return payload


__all__ = [
    "normalize_phone",
    "is_valid_phone",
    "Sex",
    "Visitor",
    "Visit",
    "CheckInResult",
    "AppSettings",
    "VisitorFormValues",
]
