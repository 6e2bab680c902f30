"""Usage ledger tracking how much watch time has been consumed today."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime

from .api import QuotaEventDispatcher
from .clock import Clock, has_crossed_midnight
from .minutes import to_millis
from .models import QuotaPolicy, QuotaState
from .ops import StructuredLogger
from .repository import QuotaRepository


def cleared_for_new_period(state: QuotaState, now: datetime) -> QuotaState:
    """Return ``state`` with usage and applied time zeroed and the reset instant moved to ``now``."""

    return replace(state, used_today_ms=0, applied_earned_minutes=0, last_reset_at=now)


class UsageLedger:
    """Milliseconds watched since the last reset, rolled over at local midnight."""

    def __init__(
        self,
        repository: QuotaRepository,
        clock: Clock,
        *,
        policy: QuotaPolicy,
        lock: threading.RLock,
        logger: StructuredLogger,
        events: QuotaEventDispatcher,
    ) -> None:
        self._repository = repository
        self._clock = clock
        self._policy = policy
        self._lock = lock
        self._logger = logger
        self._events = events

    def roll_over_if_needed(self) -> bool:
        """Start a new day when midnight has passed since the last reset.

        Usage and applied time go back to zero and the whole wallet is wiped.
        The write is best-effort. If it is lost, the reset instant and the cleared
        fields go out again with the next durable write.
        """

        with self._lock:
            state = self._repository.current()
            now = self._clock.now()
            if not has_crossed_midnight(state.last_reset_at, now, self._clock.tz):
                return False
            updated = replace(cleared_for_new_period(state, now), wallet=())
            self._repository.commit(updated, durable=False, reason="midnight_rollover")
            self._logger.log(
                "midnight_rollover",
                previous_reset=state.last_reset_at.isoformat() if state.last_reset_at else None,
                used_ms=state.used_today_ms,
                applied=state.applied_earned_minutes,
                wallet_wiped=state.wallet_minutes,
            )
            self._events.dispatch({"event": "midnight_rollover", "at": now.isoformat()})
            return True

    def used_today_ms(self) -> int:
        with self._lock:
            self.roll_over_if_needed()
            return self._repository.current().used_today_ms

    def applied_earned_today(self) -> int:
        with self._lock:
            self.roll_over_if_needed()
            return self._repository.current().applied_earned_minutes

    def add_used(self, millis: int) -> int:
        """Add ``millis`` of playback to today's usage and return the new total."""

        with self._lock:
            self.roll_over_if_needed()
            state = self._repository.current()
            if millis <= 0:
                self._logger.warning("usage_ignored", millis=millis)
                return state.used_today_ms
            updated = replace(state, used_today_ms=state.used_today_ms + int(millis))
            self._repository.commit(updated, durable=False, reason="add_used")
            return updated.used_today_ms

    def reset_used_today(self) -> QuotaState:
        """Zero usage and applied time, stamping the reset with the current time."""

        with self._lock:
            state = self._repository.current()
            updated = cleared_for_new_period(state, self._clock.now())
            self._repository.commit(updated, durable=True, reason="reset_used_today")
            self._logger.log("usage_reset", used_ms=state.used_today_ms, applied=state.applied_earned_minutes)
            return updated

    def effective_limit_minutes(self) -> int:
        with self._lock:
            self.roll_over_if_needed()
            state = self._repository.current()
            return self._policy.effective_limit(state.base_limit_minutes, state.applied_earned_minutes)

    def is_limit_exceeded(self) -> bool:
        with self._lock:
            if not self._repository.current().limit_enabled:
                return False
            return self.used_today_ms() >= to_millis(self.effective_limit_minutes())


__all__ = ["UsageLedger", "cleared_for_new_period"]
