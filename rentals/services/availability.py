# rentals/services/availability.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Dict, Optional, Tuple

from django.conf import settings
from pydantic import ValidationError

from integrations.errors import RECOVERABLE_ERRORS, AbortError
from integrations.schemas import AvailabilityResult

logger = logging.getLogger(__name__)

IDLE = "idle"
CHECKING = "checking"
AVAILABLE = "available"
UNAVAILABLE = "unavailable"

CheckKey = Tuple[str, date, date]


@dataclass(frozen=True)
class AvailabilityState:
    status: str = IDLE
    conflict_dates: Tuple[date, ...] = ()

    @classmethod
    def idle(cls) -> "AvailabilityState":
        return cls(IDLE)

    @classmethod
    def checking(cls) -> "AvailabilityState":
        return cls(CHECKING)

    @classmethod
    def from_result(cls, result: AvailabilityResult) -> "AvailabilityState":
        if result.available:
            return cls(AVAILABLE)
        return cls(UNAVAILABLE, tuple(result.conflict_dates))

    @property
    def is_available(self) -> bool:
        return self.status == AVAILABLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "conflict_dates": [d.isoformat() for d in self.conflict_dates],
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AvailabilityState":
        if not data:
            return cls.idle()
        return cls(
            data.get("status") or IDLE,
            tuple(date.fromisoformat(d) for d in data.get("conflict_dates") or ()),
        )


class AvailabilityChecker:
    """
    Debounced availability checks, cancel-and-restart on (car_id, start, end).

    ``schedule`` drops any pending check, waits ``delay`` seconds and only
    then calls the backend. Only the result of the most recent check may
    update ``state`` (and reach ``on_change``).
    """

    def __init__(self, api, delay: Optional[float] = None,
                 on_change: Optional[Callable[[CheckKey, AvailabilityState], Any]] = None):
        self.api = api
        if delay is None:
            delay = float(getattr(settings, "AVAILABILITY_DEBOUNCE_SECONDS", 0.4))
        self.delay = delay
        self.on_change = on_change
        self.state = AvailabilityState.idle()
        self.error: Optional[str] = None
        self._current: Optional[CheckKey] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def current(self) -> Optional[CheckKey]:
        return self._current

    def schedule(self, car_id: str, start: date, end: date) -> asyncio.Task:
        key = (car_id, start, end)
        self._drop_pending()
        self._current = key
        self.error = None
        self._set(key, AvailabilityState.checking())
        self._task = asyncio.ensure_future(self._run(key))
        self._task.add_done_callback(self._log_failure)
        return self._task

    async def check(self, car_id: str, start: date, end: date) -> AvailabilityState:
        task = self.schedule(car_id, start, end)
        # a newer schedule() may cancel this one, the state is what counts
        await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            raise task.exception()
        return self.state

    @staticmethod
    def _log_failure(task: asyncio.Task):
        if task.cancelled() or task.exception() is None:
            return
        logger.error("Availability check crashed: %r", task.exception())

    def cancel(self):
        """Forget the pending check (e.g. the page is being torn down)."""
        self._drop_pending()
        if self._current is not None and self.state.status == CHECKING:
            self._set(self._current, AvailabilityState.idle())
        self._current = None

    def _drop_pending(self):
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def _set(self, key: CheckKey, state: AvailabilityState):
        self.state = state
        if self.on_change is not None:
            self.on_change(key, state)

    async def _run(self, key: CheckKey):
        if self.delay > 0:
            await asyncio.sleep(self.delay)
        car_id, start, end = key
        try:
            result = await self.api.check_car_availability(car_id, start, end)
        except AbortError:
            # someone else took the request over; nothing is checking any more
            if key == self._current:
                self._set(key, AvailabilityState.idle())
            return
        except RECOVERABLE_ERRORS as exc:
            if key == self._current:
                self.error = str(exc)
                self._set(key, AvailabilityState.idle())
            return
        except ValidationError as exc:
            logger.error("Unreadable availability response for %s: %s", key, exc)
            if key == self._current:
                self.error = "Invalid availability response from backend"
                self._set(key, AvailabilityState.idle())
            return
        except Exception:
            if key == self._current:
                self._set(key, AvailabilityState.idle())
            raise

        if key != self._current:
            logger.debug("Dropping stale availability result for %s", key)
            return
        self._set(key, AvailabilityState.from_result(result))
