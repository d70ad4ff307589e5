"""Generic multi-step form sequencer."""
from __future__ import annotations

import enum
import inspect
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

Validator = Callable[[], Union[bool, Awaitable[bool]]]
CompletionCallback = Callable[[], Awaitable[Optional[bool]]]


@dataclass(frozen=True)
class FormStep:
    id: str
    title: str
    fields: tuple[str, ...] = ()
    validate: Optional[Validator] = None


class StepStatus(str, enum.Enum):
    COMPLETE = "complete"
    ACTIVE = "active"
    PENDING = "pending"


class Navigation(str, enum.Enum):
    ADVANCED = "advanced"
    COMPLETED = "completed"
    RETREATED = "retreated"
    BLOCKED = "blocked"
    IGNORED = "ignored"


class MultiStepForm:
    """Steps forward through `steps`, gating each advance on the step's validator.

    Backward navigation never validates. While `is_busy()` reports an external
    submission in flight, both directions are disabled.
    """

    def __init__(
        self,
        steps: Sequence[FormStep],
        *,
        on_complete: CompletionCallback,
        is_busy: Callable[[], bool] = lambda: False,
        submit_label: str = "Submit",
    ) -> None:
        if not steps:
            raise ValueError("MultiStepForm requires at least one step")
        self.steps: List[FormStep] = list(steps)
        self.submit_label = submit_label
        self._on_complete = on_complete
        self._is_busy = is_busy
        self._index = 0
        self._navigating = False

    @property
    def current_index(self) -> int:
        return self._index

    @property
    def current_step(self) -> FormStep:
        return self.steps[self._index]

    @property
    def is_first_step(self) -> bool:
        return self._index == 0

    @property
    def is_last_step(self) -> bool:
        return self._index == len(self.steps) - 1

    @property
    def busy(self) -> bool:
        return self._navigating or bool(self._is_busy())

    async def next(self) -> Navigation:
        if self.busy:
            logger.debug("form.next ignored: navigation or submission in progress")
            return Navigation.IGNORED

        self._navigating = True
        try:
            step = self.current_step
            if not await self._run_validator(step):
                logger.info("form.next blocked on step %s", step.id)
                return Navigation.BLOCKED

            if self.is_last_step:
                # A completion callback returning False refused to submit
                if await self._on_complete() is False:
                    logger.info("form.next blocked: completion refused on step %s", step.id)
                    return Navigation.BLOCKED
                return Navigation.COMPLETED

            self._index += 1
            return Navigation.ADVANCED
        finally:
            self._navigating = False

    def back(self) -> Navigation:
        if self.busy or self.is_first_step:
            return Navigation.IGNORED
        self._index -= 1
        return Navigation.RETREATED

    def reset(self) -> None:
        self._index = 0

    def progress(self) -> List[Dict[str, Any]]:
        """Per-step status derived purely from the current index."""
        items = []
        for index, step in enumerate(self.steps):
            if index < self._index:
                status = StepStatus.COMPLETE
            elif index == self._index:
                status = StepStatus.ACTIVE
            else:
                status = StepStatus.PENDING
            items.append({"id": step.id, "title": step.title, "number": index + 1, "status": status.value})
        return items

    def controls(self) -> Dict[str, Any]:
        busy = self.busy
        return {
            "back_visible": not self.is_first_step,
            "back_enabled": not self.is_first_step and not busy,
            "next_enabled": not busy,
            "next_label": self.submit_label if self.is_last_step else "Next",
        }

    def snapshot(self) -> Dict[str, Any]:
        step = self.current_step
        return {
            "step": {"id": step.id, "title": step.title, "number": self._index + 1, "fields": list(step.fields)},
            "progress": self.progress(),
            "controls": self.controls(),
        }

    async def _run_validator(self, step: FormStep) -> bool:
        if step.validate is None:
            return True
        try:
            outcome = step.validate()
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as exc:
            logger.warning("Validator for step %s raised: %s", step.id, exc)
            return False
        return bool(outcome)


__all__ = ["FormStep", "StepStatus", "Navigation", "MultiStepForm"]
