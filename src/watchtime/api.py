"""API helpers and event listeners for watchtime."""

from __future__ import annotations

from typing import Callable, Dict

from .models import QuotaSnapshot, WalletEntry
from .ops import StructuredLogger

Listener = Callable[[Dict[str, object]], None]


class SnapshotExporter:
    """Convert quota data structures to JSON friendly dictionaries."""

    def snapshot(self, snapshot: QuotaSnapshot, entries: tuple[WalletEntry, ...] = ()) -> Dict[str, object]:
        return {
            "taken_at": snapshot.taken_at.isoformat(),
            "limit_enabled": snapshot.limit_enabled,
            "base_limit_minutes": snapshot.base_limit_minutes,
            "applied_earned_minutes": snapshot.applied_earned_minutes,
            "effective_limit_minutes": snapshot.effective_limit_minutes,
            "used_today_ms": snapshot.used_today_ms,
            "remaining_minutes": snapshot.remaining_minutes,
            "wallet_minutes": snapshot.wallet_minutes,
            "limit_exceeded": snapshot.limit_exceeded,
            "wallet": [self._serialise_entry(entry) for entry in entries],
        }

    def _serialise_entry(self, entry: WalletEntry) -> Dict[str, object]:
        return {"granted_at": entry.granted_at.isoformat(), "minutes": entry.minutes}


class QuotaEventDispatcher:
    """Synchronous broadcaster for quota events.

    A listener that raises is logged and skipped; it never undoes a committed change.
    """

    def __init__(self, logger: StructuredLogger) -> None:
        self._listeners: list[Listener] = []
        self._logger = logger

    def register(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def unregister(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def dispatch(self, event: Dict[str, object]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:
                self._logger.error("listener_failed", event_name=event.get("event"), error=repr(exc))


__all__ = ["Listener", "QuotaEventDispatcher", "SnapshotExporter"]
