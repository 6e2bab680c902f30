"""Earned-time wallet: time-stamped minute chunks granted by reward actions."""

from __future__ import annotations

import threading
from dataclasses import replace
from typing import Iterable, Optional, Tuple

from .api import QuotaEventDispatcher
from .clock import Clock
from .exceptions import ConsistencyError, PersistenceError
from .ledger import UsageLedger
from .models import QuotaPolicy, QuotaState, WalletEntry
from .ops import StructuredLogger
from .repository import QuotaRepository


def debit_entries(entries: Iterable[WalletEntry], minutes: int) -> Tuple[WalletEntry, ...]:
    """Remove ``minutes`` from ``entries``, oldest chunks first.

    A partially spent chunk keeps its grant time with the residual amount. Raises
    :class:`ConsistencyError` when the chunks hold fewer than ``minutes``.
    """

    ordered = sorted(entries, key=lambda entry: entry.granted_at)
    remaining = minutes
    kept: list[WalletEntry] = []
    for entry in ordered:
        if remaining <= 0:
            kept.append(entry)
        elif entry.minutes <= remaining:
            remaining -= entry.minutes
        else:
            kept.append(entry.shrunk(entry.minutes - remaining))
            remaining = 0
    if remaining > 0:
        raise ConsistencyError(f"Wallet is short by {remaining} minutes.")
    return tuple(kept)


class EarnedTimeWallet:
    """Earned-but-unapplied minutes, each chunk expiring independently."""

    def __init__(
        self,
        repository: QuotaRepository,
        clock: Clock,
        ledger: UsageLedger,
        *,
        policy: QuotaPolicy,
        lock: threading.RLock,
        logger: StructuredLogger,
        events: QuotaEventDispatcher,
    ) -> None:
        self._repository = repository
        self._clock = clock
        self._ledger = ledger
        self._policy = policy
        self._lock = lock
        self._logger = logger
        self._events = events

    def purged(self) -> QuotaState:
        """Return the aggregate after the midnight check and expiry purge."""

        with self._lock:
            self._ledger.roll_over_if_needed()
            state = self._repository.current()
            now = self._clock.now()
            valid = tuple(entry for entry in state.wallet if not self._policy.is_expired(entry, now))
            if len(valid) == len(state.wallet):
                return state
            updated = replace(state, wallet=valid)
            self._repository.commit(updated, durable=False, reason="wallet_purge")
            self._logger.log(
                "earned_time_expired",
                chunks=len(state.wallet) - len(valid),
                minutes=state.wallet_minutes - updated.wallet_minutes,
            )
            return updated

    def total_valid(self) -> int:
        return self.purged().wallet_minutes

    def entries(self) -> Tuple[WalletEntry, ...]:
        return self.purged().wallet

    def grant(self, minutes: Optional[int] = None) -> Optional[WalletEntry]:
        """Append a freshly earned chunk; the reward collaborator decides when."""

        amount = self._policy.reward_minutes if minutes is None else minutes
        if amount <= 0:
            self._logger.warning("grant_rejected", minutes=amount)
            return None
        with self._lock:
            state = self.purged()
            entry = WalletEntry(granted_at=self._clock.now(), minutes=amount)
            updated = replace(state, wallet=state.wallet + (entry,))
            self._repository.commit(updated, durable=False, reason="grant")
        self._logger.log("earned_time_granted", minutes=amount, wallet=updated.wallet_minutes)
        self._events.dispatch({"event": "earned_time_granted", "minutes": amount, "wallet": updated.wallet_minutes})
        return entry

    def consume(self, minutes: int) -> bool:
        """Debit ``minutes`` oldest-first with a durable write.

        Callers are expected to check availability first; an oversized request is
        logged and leaves the wallet untouched.
        """

        if minutes <= 0:
            self._logger.warning("consume_rejected", minutes=minutes, reason="non_positive")
            return False
        with self._lock:
            state = self.purged()
            if minutes > state.wallet_minutes:
                self._logger.warning("consume_rejected", minutes=minutes, wallet=state.wallet_minutes)
                return False
            updated = replace(state, wallet=debit_entries(state.wallet, minutes))
            try:
                self._repository.commit(updated, durable=True, reason="consume")
            except PersistenceError as exc:
                self._logger.error("wallet_write_failed", operation="consume", minutes=minutes, error=str(exc))
                return False
        self._logger.log("earned_time_consumed", minutes=minutes, wallet=updated.wallet_minutes)
        return True

    def add_explicit(self, minutes: int) -> bool:
        """Append a chunk of any size, persist it durably and verify the stored wallet."""

        if minutes <= 0:
            self._logger.warning("add_explicit_rejected", minutes=minutes)
            return False
        with self._lock:
            state = self.purged()
            entry = WalletEntry(granted_at=self._clock.now(), minutes=minutes)
            updated = replace(state, wallet=state.wallet + (entry,))
            try:
                self._repository.commit(updated, durable=True, reason="add_explicit")
                self.verify_stored(updated.wallet)
            except PersistenceError as exc:
                self._logger.error("wallet_write_failed", operation="add_explicit", minutes=minutes, error=str(exc))
                return False
            except ConsistencyError as exc:
                self._logger.error("wallet_verification_failed", operation="add_explicit", error=str(exc))
                return False
        self._logger.log("earned_time_returned", minutes=minutes, wallet=updated.wallet_minutes)
        return True

    def verify_stored(self, expected: Tuple[WalletEntry, ...]) -> None:
        """Read the wallet back from the store and compare it with ``expected``.

        On mismatch the cached aggregate is dropped so the next read reloads from
        the store, and :class:`ConsistencyError` is raised.
        """

        stored = self._repository.stored_wallet()
        if stored != expected:
            self._repository.invalidate()
            raise ConsistencyError(
                f"Stored wallet holds {sum(entry.minutes for entry in stored)} minutes, "
                f"expected {sum(entry.minutes for entry in expected)}."
            )


__all__ = ["EarnedTimeWallet", "debit_entries"]
