"""New-visitor check-in form: three steps over a mutable draft."""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from datetime import date
from typing import Any, Dict, Optional

from pydantic import ValidationError
from pydantic.alias_generators import to_camel

from .models import Visitor, VisitorFormValues
from .multi_step import FormStep, MultiStepForm, Navigation

logger = logging.getLogger(__name__)

SubmitCallback = Callable[[VisitorFormValues], Awaitable[None]]

PERSONAL_FIELDS = ("first_name", "middle_name", "last_name", "year_of_birth", "sex")
CONTACT_FIELDS = ("phone_number", "email")
PURPOSE_FIELDS = ("purpose",)
FORM_FIELDS = PERSONAL_FIELDS + CONTACT_FIELDS + PURPOSE_FIELDS

_FIELD_KEYS = {**{name: name for name in FORM_FIELDS}, **{to_camel(name): name for name in FORM_FIELDS}}


def defaults_from_visitor(visitor: Visitor) -> Dict[str, Any]:
    """Identity fields of a known visitor, used when a returning check-in falls back to the form."""
    defaults: Dict[str, Any] = {
        "first_name": visitor.first_name,
        "last_name": visitor.last_name,
        "year_of_birth": visitor.year_of_birth,
        "phone_number": visitor.phone_number,
        "email": visitor.email or "",
    }
    if visitor.sex is not None:
        defaults["sex"] = visitor.sex.value
    return defaults


class CheckInForm:
    """Draft values, field errors and the step engine for one new-visitor registration."""

    def __init__(
        self,
        *,
        on_submit: SubmitCallback,
        defaults: Optional[Mapping[str, Any]] = None,
        is_busy: Callable[[], bool] = lambda: False,
    ) -> None:
        self._on_submit = on_submit
        self.values: Dict[str, Any] = {name: None for name in FORM_FIELDS}
        self.errors: Dict[str, str] = {}
        self.prefilled: Dict[str, Any] = {}
        if defaults:
            self.update(defaults)
            self.prefilled = {k: v for k, v in self.values.items() if v not in (None, "")}

        self.engine = MultiStepForm(
            [
                FormStep("personal-info", "Personal Info", PERSONAL_FIELDS, lambda: self.validate_fields(PERSONAL_FIELDS)),
                FormStep("contact-details", "Contact Details", CONTACT_FIELDS, lambda: self.validate_fields(CONTACT_FIELDS)),
                FormStep("visit-purpose", "Visit Purpose", PURPOSE_FIELDS, lambda: self.validate_fields(PURPOSE_FIELDS)),
            ],
            on_complete=self._complete,
            is_busy=is_busy,
            submit_label="Check In",
        )

    def update(self, values: Mapping[str, Any]) -> None:
        """Merge field edits; accepts snake_case or camelCase keys, ignores unknown ones."""
        for key, value in values.items():
            name = _FIELD_KEYS.get(key)
            if name is None:
                logger.debug("form.update: ignoring unknown field %s", key)
                continue
            self.values[name] = value.strip() if isinstance(value, str) else value
            self.errors.pop(name, None)

    def validate_fields(self, fields: tuple[str, ...]) -> bool:
        """Validate only `fields`; messages for them land in `errors`."""
        field_errors = self._collect_errors()
        for name in fields:
            self.errors.pop(name, None)
            if name in field_errors:
                self.errors[name] = field_errors[name]
        return not any(name in field_errors for name in fields)

    async def next(self) -> Navigation:
        return await self.engine.next()

    def back(self) -> Navigation:
        return self.engine.back()

    def to_form_values(self) -> VisitorFormValues:
        return VisitorFormValues.model_validate(self._present_values())

    def snapshot(self) -> Dict[str, Any]:
        return {
            "values": {to_camel(k): v for k, v in self.values.items()},
            "errors": {to_camel(k): v for k, v in self.errors.items()},
            "prefilled": sorted(to_camel(k) for k in self.prefilled),
            "age": self._age(),
            **self.engine.snapshot(),
        }

    async def _complete(self) -> bool:
        if not self.validate_fields(FORM_FIELDS):
            logger.info("form: submission blocked by invalid fields %s", sorted(self.errors))
            return False
        await self._on_submit(self.to_form_values())
        return True

    def _present_values(self) -> Dict[str, Any]:
        return {k: v for k, v in self.values.items() if v is not None}

    def _collect_errors(self) -> Dict[str, str]:
        try:
            VisitorFormValues.model_validate(self._present_values())
        except ValidationError as exc:
            errors: Dict[str, str] = {}
            for error in exc.errors():
                if not error.get("loc"):
                    continue
                name = _FIELD_KEYS.get(str(error["loc"][0]))
                if name and name not in errors:
                    errors[name] = _friendly_message(error)
            return errors
        return {}

    def _age(self) -> Optional[int]:
        try:
            year = int(self.values.get("year_of_birth") or 0)
        except (TypeError, ValueError):
            return None
        current = date.today().year
        if 1900 < year <= current:
            return current - year
        return None


def _friendly_message(error: Dict[str, Any]) -> str:
    if error.get("type") == "missing":
        return "This field is required"
    message = str(error.get("msg", "Invalid value"))
    return message.removeprefix("Value error, ")


__all__ = ["FORM_FIELDS", "CheckInForm", "defaults_from_visitor"]
