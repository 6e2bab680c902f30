"""Serialisation and caching of the :class:`~watchtime.models.QuotaState` aggregate."""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Set, Tuple

from .exceptions import PersistenceError
from .minutes import clamp
from .models import QuotaPolicy, QuotaState, WalletEntry
from .ops import StructuredLogger
from .storage import KeyValueStore

BASE_LIMIT_KEY = "watchtime.base_limit_minutes"
APPLIED_KEY = "watchtime.applied_earned_minutes"
USED_KEY = "watchtime.used_today_ms"
LAST_RESET_KEY = "watchtime.last_reset_at"
WALLET_KEY = "watchtime.wallet"
ENABLED_KEY = "watchtime.limit_enabled"


def encode_wallet(entries: Iterable[WalletEntry]) -> list[Dict[str, Any]]:
    return [{"granted_at": entry.granted_at.isoformat(), "minutes": entry.minutes} for entry in entries]


def decode_wallet(payload: Any) -> Tuple[WalletEntry, ...]:
    if not payload:
        return ()
    entries = [
        WalletEntry(granted_at=datetime.fromisoformat(item["granted_at"]), minutes=int(item["minutes"]))
        for item in payload
    ]
    return tuple(sorted(entries, key=lambda entry: entry.granted_at))


class QuotaRepository:
    """Load the aggregate lazily, keep it cached and persist field-level diffs."""

    def __init__(self, store: KeyValueStore, *, policy: QuotaPolicy, logger: StructuredLogger) -> None:
        self._store = store
        self._policy = policy
        self._logger = logger
        self._state: Optional[QuotaState] = None
        self._load_lock = threading.Lock()
        self._unconfirmed: Set[str] = set()

    def current(self) -> QuotaState:
        state = self._state
        if state is None:
            with self._load_lock:
                if self._state is None:
                    self._state = self.load()
                state = self._state
        return state

    def load(self) -> QuotaState:
        """Build the aggregate from the store, filling in defaults for missing keys."""

        store = self._store
        base = store.get(BASE_LIMIT_KEY, self._policy.default_base_minutes)
        raw_reset = store.get(LAST_RESET_KEY)
        return QuotaState(
            base_limit_minutes=clamp(int(base), 1, self._policy.max_daily_minutes),
            applied_earned_minutes=max(0, int(store.get(APPLIED_KEY, 0))),
            used_today_ms=max(0, int(store.get(USED_KEY, 0))),
            last_reset_at=datetime.fromisoformat(raw_reset) if raw_reset else None,
            wallet=self.stored_wallet(),
            limit_enabled=bool(store.get(ENABLED_KEY, False)),
        )

    def stored_wallet(self) -> Tuple[WalletEntry, ...]:
        """Read the wallet straight from the store, bypassing the cache."""

        try:
            return decode_wallet(self._store.get(WALLET_KEY))
        except (KeyError, TypeError, ValueError) as exc:
            self._logger.error("wallet_decode_failed", error=str(exc))
            return ()

    def commit(self, updated: QuotaState, *, durable: bool, reason: str) -> None:
        """Persist the fields that differ from the cached state, then cache ``updated``.

        Durable failures raise :class:`PersistenceError` and leave the cache untouched.
        Best-effort failures are logged and the cache still moves forward. Keys written
        best-effort are re-sent with the next durable batch, since a queued write may
        be lost without this repository hearing about it.
        """

        fields = self.fields(updated)
        before = self.fields(self.current())
        changed = {key for key, value in fields.items() if before[key] != value}
        if durable:
            changed |= self._unconfirmed
        if not changed:
            self._state = updated
            return
        changes = {key: fields[key] for key in sorted(changed)}
        if durable:
            self._store.write(changes, durable=True)
            self._unconfirmed.clear()
        else:
            self._unconfirmed |= changed
            try:
                self._store.write(changes, durable=False)
            except PersistenceError as exc:
                self._logger.error("best_effort_write_failed", reason=reason, keys=sorted(changes), error=str(exc))
        self._state = updated

    def invalidate(self) -> None:
        """Drop the cached aggregate so the next access reloads it."""

        self._state = None
        self._unconfirmed.clear()

    @staticmethod
    def fields(state: QuotaState) -> Dict[str, Any]:
        """Return the stored representation of every persisted key."""

        return {
            BASE_LIMIT_KEY: state.base_limit_minutes,
            APPLIED_KEY: state.applied_earned_minutes,
            USED_KEY: state.used_today_ms,
            LAST_RESET_KEY: state.last_reset_at.isoformat() if state.last_reset_at else None,
            WALLET_KEY: encode_wallet(state.wallet),
            ENABLED_KEY: state.limit_enabled,
        }


__all__ = [
    "APPLIED_KEY",
    "BASE_LIMIT_KEY",
    "ENABLED_KEY",
    "LAST_RESET_KEY",
    "QuotaRepository",
    "USED_KEY",
    "WALLET_KEY",
    "decode_wallet",
    "encode_wallet",
]
