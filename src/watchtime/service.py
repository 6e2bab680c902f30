"""High level service coordinating the daily quota, usage ledger and earned-time wallet."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, Optional, Tuple

from .admin import AuditLog
from .api import Listener, QuotaEventDispatcher, SnapshotExporter
from .clock import Clock, SystemClock, as_utc, has_crossed_midnight
from .exceptions import ConsistencyError, PersistenceError
from .ledger import UsageLedger, cleared_for_new_period
from .minutes import clamp, format_clock, to_millis, to_minutes
from .models import QuotaPolicy, QuotaSnapshot, ResetOutcome, ResetResult, WalletEntry
from .ops import StructuredLogger
from .repository import QuotaRepository
from .storage import KeyValueStore
from .wallet import EarnedTimeWallet, debit_entries


class QuotaAccountant:
    """Own one child's daily watch-time quota and the wallet of earned minutes.

    Every mutating call runs under a single re-entrant lock shared with the ledger
    and the wallet, because timers, reward callbacks and lifecycle events may call
    in from different threads. :meth:`snapshot` is the only lock-free read.
    """

    __slots__ = (
        "_store",
        "_policy",
        "_clock",
        "_logger",
        "_audit_log",
        "_events",
        "_lock",
        "_repository",
        "_ledger",
        "_wallet",
        "_exporter",
    )

    def __init__(
        self,
        store: KeyValueStore,
        *,
        clock: Clock | None = None,
        policy: QuotaPolicy | None = None,
        logger: StructuredLogger | None = None,
        audit_log: AuditLog | None = None,
    ) -> None:
        self._store = store
        self._policy = policy or QuotaPolicy()
        self._clock = clock or SystemClock()
        self._logger = logger or StructuredLogger()
        self._audit_log = audit_log or AuditLog()
        self._events = QuotaEventDispatcher(self._logger)
        self._lock = threading.RLock()
        self._repository = QuotaRepository(store, policy=self._policy, logger=self._logger)
        self._ledger = UsageLedger(
            self._repository,
            self._clock,
            policy=self._policy,
            lock=self._lock,
            logger=self._logger,
            events=self._events,
        )
        self._wallet = EarnedTimeWallet(
            self._repository,
            self._clock,
            self._ledger,
            policy=self._policy,
            lock=self._lock,
            logger=self._logger,
            events=self._events,
        )
        self._exporter = SnapshotExporter()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def effective_limit_minutes(self) -> int:
        return self._ledger.effective_limit_minutes()

    def base_limit_minutes(self) -> int:
        return self._repository.current().base_limit_minutes

    def applied_earned_minutes(self) -> int:
        return self._ledger.applied_earned_today()

    def used_today_ms(self) -> int:
        return self._ledger.used_today_ms()

    def used_today_minutes(self) -> int:
        return to_minutes(self.used_today_ms())

    def remaining_minutes(self) -> int:
        with self._lock:
            return max(0, self.effective_limit_minutes() - self.used_today_minutes())

    def is_limit_exceeded(self) -> bool:
        return self._ledger.is_limit_exceeded()

    def wallet_minutes(self) -> int:
        return self._wallet.total_valid()

    def wallet_entries(self) -> Tuple[WalletEntry, ...]:
        return self._wallet.entries()

    def limit_enabled(self) -> bool:
        return self._repository.current().limit_enabled

    def snapshot(self) -> QuotaSnapshot:
        """Best-effort view for countdown displays.

        It never writes and does not take the quota lock. The very first call may
        still wait on the store while the aggregate is loaded.
        """

        state = self._repository.current()
        now = self._clock.now()
        used, applied, wallet = state.used_today_ms, state.applied_earned_minutes, state.wallet
        if has_crossed_midnight(state.last_reset_at, now, self._clock.tz):
            used, applied, wallet = 0, 0, ()
        wallet_minutes = sum(entry.minutes for entry in wallet if not self._policy.is_expired(entry, now))
        effective = self._policy.effective_limit(state.base_limit_minutes, applied)
        return QuotaSnapshot(
            taken_at=now,
            limit_enabled=state.limit_enabled,
            base_limit_minutes=state.base_limit_minutes,
            applied_earned_minutes=applied,
            effective_limit_minutes=effective,
            used_today_ms=used,
            remaining_minutes=max(0, effective - to_minutes(used)),
            wallet_minutes=wallet_minutes,
            limit_exceeded=state.limit_enabled and used >= to_millis(effective),
        )

    def snapshot_dict(self) -> Dict[str, object]:
        with self._lock:
            entries = self._wallet.entries()
            return self._exporter.snapshot(self.snapshot(), entries)

    def display_string(self) -> str:
        """Return ``Used today: HH:MM / HH:MM`` for the current day."""

        with self._lock:
            used = self.used_today_minutes()
            effective = self.effective_limit_minutes()
        return f"Used today: {format_clock(used)} / {format_clock(effective)}"

    def describe(self) -> str:
        with self._lock:
            lines = [
                "Watch time state:",
                f"  Limit enabled: {'yes' if self.limit_enabled() else 'no'}",
                f"  Base limit: {self.base_limit_minutes()} minutes",
                f"  Applied earned time: {self.applied_earned_minutes()} minutes",
                f"  Wallet: {self.wallet_minutes()} minutes",
                f"  Effective limit: {self.effective_limit_minutes()} minutes",
                f"  Used: {self.used_today_minutes()} minutes",
                f"  Remaining: {self.remaining_minutes()} minutes",
                f"  {self.display_string()}",
            ]
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Passive bookkeeping
    # ------------------------------------------------------------------
    def add_used(self, millis: int) -> int:
        return self._ledger.add_used(millis)

    def start_timer(self) -> datetime:
        """Mark the start of playback; pass the result to :meth:`stop_timer`."""

        with self._lock:
            self._ledger.roll_over_if_needed()
            return self._clock.now()

    def stop_timer(self, started_at: datetime) -> int:
        """Add the playback time since ``started_at`` to today's usage."""

        elapsed = self._clock.now() - as_utc(started_at)
        millis = int(elapsed.total_seconds() * 1000)
        if millis <= 0:
            return 0
        self._ledger.add_used(millis)
        return millis

    def grant_reward(self, minutes: Optional[int] = None) -> Optional[WalletEntry]:
        """Credit the wallet after the reward collaborator reports a completed reward."""

        return self._wallet.grant(minutes)

    # ------------------------------------------------------------------
    # Parent operations
    # ------------------------------------------------------------------
    def set_limit_enabled(self, enabled: bool, *, actor: str = "parent") -> bool:
        with self._lock:
            state = self._repository.current()
            if state.limit_enabled == enabled:
                return enabled
            self._repository.commit(replace(state, limit_enabled=enabled), durable=True, reason="limit_enabled")
        self._audit(actor, "set_limit_enabled", details={"enabled": enabled})
        self._logger.log("limit_enabled_changed", enabled=enabled)
        return enabled

    def set_base_limit_minutes(self, minutes: int, *, actor: str = "parent") -> int:
        """Store a new base allowance, clamped to ``[1, max_daily_minutes]``.

        Today's usage and applied time are reset only when the value actually
        changes, so repeating the same value is a no-op.
        """

        value = clamp(minutes, 1, self._policy.max_daily_minutes)
        with self._lock:
            self._ledger.roll_over_if_needed()
            state = self._repository.current()
            previous = state.base_limit_minutes
            if value == previous:
                self._logger.log("base_limit_unchanged", minutes=value)
                return value
            updated = replace(cleared_for_new_period(state, self._clock.now()), base_limit_minutes=value)
            self._repository.commit(updated, durable=True, reason="set_base_limit")
        self._audit(actor, "set_base_limit", details={"from": previous, "to": value})
        self._logger.log("base_limit_changed", previous=previous, minutes=value, usage_reset=True)
        self._events.dispatch({"event": "base_limit_changed", "previous": previous, "minutes": value})
        return value

    def apply_earned_time(self, minutes: int, *, actor: str = "parent") -> bool:
        """Move ``minutes`` from the wallet into today's effective limit.

        The applied amount is the smallest of the request, the wallet and the
        headroom under the daily maximum. Usage is rolled back by the same amount,
        so remaining time grows by exactly the minutes applied.
        """

        if minutes <= 0:
            self._logger.warning("apply_rejected", requested=minutes, reason="non_positive")
            return False
        with self._lock:
            wallet = self._wallet.total_valid()
            applied = self._ledger.applied_earned_today()
            base = self._repository.current().base_limit_minutes
            if minutes > wallet:
                self._logger.warning("apply_rejected", requested=minutes, wallet=wallet, reason="insufficient_wallet")
                return False
            headroom = self._policy.max_daily_minutes - base - applied
            if headroom <= 0:
                self._logger.warning("apply_rejected", requested=minutes, base=base, applied=applied, reason="at_maximum")
                return False
            actual = min(minutes, wallet, headroom)
            if actual <= 0:
                self._logger.warning("apply_rejected", requested=minutes, reason="nothing_applicable")
                return False
            state = self._wallet.purged()
            if state.wallet_minutes < actual:
                self._logger.warning("apply_rejected", requested=actual, wallet=state.wallet_minutes, reason="wallet_changed")
                return False
            try:
                updated = replace(
                    state,
                    wallet=debit_entries(state.wallet, actual),
                    applied_earned_minutes=state.applied_earned_minutes + actual,
                    used_today_ms=max(0, state.used_today_ms - to_millis(actual)),
                )
                self._repository.commit(updated, durable=True, reason="apply_earned_time")
            except ConsistencyError as exc:
                self._logger.error("apply_failed", requested=actual, error=str(exc))
                return False
            except PersistenceError as exc:
                self._logger.error("wallet_write_failed", operation="apply_earned_time", minutes=actual, error=str(exc))
                return False
        self._audit(actor, "apply_earned_time", details={"requested": minutes, "applied": actual})
        self._logger.log(
            "earned_time_applied",
            requested=minutes,
            applied=actual,
            total_applied=updated.applied_earned_minutes,
            wallet=updated.wallet_minutes,
            used_ms=updated.used_today_ms,
        )
        self._events.dispatch({"event": "earned_time_applied", "minutes": actual})
        return True

    def reset_daily_limit(self, *, actor: str = "parent") -> ResetResult:
        """Spend the reset cost from wallet then applied time and zero today's usage.

        The base limit is untouched: usage restarts under the current effective
        limit, it is not forced up to the daily maximum.
        """

        cost = self._policy.reset_cost_minutes
        with self._lock:
            wallet = self._wallet.total_valid()
            applied = self._ledger.applied_earned_today()
            total = wallet + applied
            if total < cost:
                self._logger.warning("reset_rejected", wallet=wallet, applied=applied, required=cost)
                return ResetResult(
                    success=False,
                    outcome=ResetOutcome.INSUFFICIENT_FUNDS,
                    shortfall_minutes=cost - total,
                    message=(
                        f"Insufficient earned time. Need {cost} minutes, have {total} minutes "
                        f"(Wallet: {wallet}, Applied: {applied})."
                    ),
                )

            wallet_spent = min(wallet, cost)
            applied_spent = max(0, min(applied, cost - wallet_spent))
            if wallet_spent + applied_spent != cost:
                self._logger.error("reset_calculation_error", wallet_spent=wallet_spent, applied_spent=applied_spent)
                return ResetResult(
                    success=False,
                    outcome=ResetOutcome.CALCULATION_ERROR,
                    wallet_deducted=wallet_spent,
                    applied_deducted=applied_spent,
                    message="Reset failed due to calculation error.",
                )

            state = self._repository.current()
            try:
                updated = replace(
                    state,
                    wallet=debit_entries(state.wallet, wallet_spent),
                    applied_earned_minutes=applied - applied_spent,
                    used_today_ms=0,
                    last_reset_at=self._clock.now(),
                )
                self._repository.commit(updated, durable=True, reason="reset_daily_limit")
            except ConsistencyError as exc:
                self._logger.error("reset_calculation_error", error=str(exc))
                return ResetResult(
                    success=False,
                    outcome=ResetOutcome.CALCULATION_ERROR,
                    message="Reset failed due to calculation error.",
                )
            except PersistenceError as exc:
                self._logger.error("wallet_write_failed", operation="reset_daily_limit", error=str(exc))
                return ResetResult(
                    success=False,
                    outcome=ResetOutcome.PERSISTENCE_ERROR,
                    message="Reset failed because the quota could not be saved.",
                )

        effective = self._policy.effective_limit(updated.base_limit_minutes, updated.applied_earned_minutes)
        parts = [
            f"Daily limit reset. Effective limit: {effective} minutes "
            f"(Base: {updated.base_limit_minutes} + Applied: {updated.applied_earned_minutes})."
        ]
        if wallet_spent and applied_spent:
            parts.append(f"Deducted {wallet_spent} min from wallet and {applied_spent} min from applied time.")
        elif wallet_spent:
            parts.append(f"Deducted {wallet_spent} min from wallet.")
        elif applied_spent:
            parts.append(f"Deducted {applied_spent} min from applied time.")
        details = {"wallet": wallet_spent, "applied": applied_spent}
        self._audit(actor, "reset_daily_limit", details=details)
        self._logger.log("daily_limit_reset", wallet_deducted=wallet_spent, applied_deducted=applied_spent)
        self._events.dispatch({"event": "daily_limit_reset", **details})
        return ResetResult(
            success=True,
            outcome=ResetOutcome.SUCCESS,
            wallet_deducted=wallet_spent,
            applied_deducted=applied_spent,
            message=" ".join(parts),
        )

    def return_applied_time(self, effective_minutes: int, *, actor: str = "parent") -> bool:
        """Lower today's effective limit and put the released minutes back in the wallet.

        ``effective_minutes`` must lie in ``[base, current effective)``. The applied
        debit and the wallet credit are written together and the stored wallet is
        read back to confirm the credit landed.
        """

        with self._lock:
            state = self._wallet.purged()
            base = state.base_limit_minutes
            current = self._policy.effective_limit(base, state.applied_earned_minutes)
            if not base <= effective_minutes < current:
                self._logger.warning(
                    "return_rejected", requested=effective_minutes, base=base, effective=current, reason="out_of_range"
                )
                return False
            new_applied = effective_minutes - base
            released = state.applied_earned_minutes - new_applied
            if released <= 0:
                self._logger.warning("return_rejected", requested=effective_minutes, reason="nothing_to_return")
                return False
            entry = WalletEntry(granted_at=self._clock.now(), minutes=released)
            updated = replace(state, applied_earned_minutes=new_applied, wallet=state.wallet + (entry,))
            try:
                self._repository.commit(updated, durable=True, reason="return_applied_time")
                self._wallet.verify_stored(updated.wallet)
            except PersistenceError as exc:
                self._logger.error("wallet_write_failed", operation="return_applied_time", error=str(exc))
                return False
            except ConsistencyError as exc:
                self._logger.error("wallet_verification_failed", operation="return_applied_time", error=str(exc))
                return False
        self._audit(
            actor, "return_applied_time", details={"from": current, "to": effective_minutes, "returned": released}
        )
        self._logger.log("applied_time_returned", minutes=released, applied=new_applied, wallet=updated.wallet_minutes)
        self._events.dispatch({"event": "applied_time_returned", "minutes": released})
        return True

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------
    def _audit(self, actor: str, action: str, *, details: Dict[str, object]) -> None:
        self._audit_log.record(actor, action, "quota", details=details, timestamp=self._clock.now())

    def register_listener(self, listener: Listener) -> None:
        self._events.register(listener)

    def unregister_listener(self, listener: Listener) -> None:
        self._events.unregister(listener)

    def flush(self) -> None:
        """Wait until queued best-effort writes have reached the store."""

        self._store.flush()

    def close(self) -> None:
        """Flush queued writes and release the store's resources."""

        self._store.flush()
        self._store.close()
        self._logger.log("store_closed")

    @property
    def policy(self) -> QuotaPolicy:
        return self._policy

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def audit_log(self) -> AuditLog:
        return self._audit_log

    @property
    def logger(self) -> StructuredLogger:
        return self._logger

    @property
    def ledger(self) -> UsageLedger:
        return self._ledger

    @property
    def wallet(self) -> EarnedTimeWallet:
        return self._wallet


__all__ = ["QuotaAccountant"]
