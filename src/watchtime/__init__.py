"""Daily watch-time quota and earned-time wallet engine for kids' video apps."""

from .admin import AuditLog
from .api import QuotaEventDispatcher, SnapshotExporter
from .clock import Clock, ManualClock, SystemClock, as_utc, has_crossed_midnight, start_of_day
from .exceptions import ConsistencyError, PersistenceError, WatchTimeError
from .ledger import UsageLedger
from .models import (
    AuditEvent,
    QuotaPolicy,
    QuotaSnapshot,
    QuotaState,
    ResetOutcome,
    ResetResult,
    WalletEntry,
)
from .ops import StructuredLogger
from .repository import QuotaRepository
from .service import QuotaAccountant
from .storage import KeyValueStore, MemoryStore
from .wallet import EarnedTimeWallet, debit_entries

__all__ = [
    "AuditEvent",
    "AuditLog",
    "Clock",
    "ConsistencyError",
    "EarnedTimeWallet",
    "KeyValueStore",
    "ManualClock",
    "MemoryStore",
    "PersistenceError",
    "QuotaAccountant",
    "QuotaEventDispatcher",
    "QuotaPolicy",
    "QuotaRepository",
    "QuotaSnapshot",
    "QuotaState",
    "ResetOutcome",
    "ResetResult",
    "SnapshotExporter",
    "StructuredLogger",
    "SystemClock",
    "UsageLedger",
    "WalletEntry",
    "WatchTimeError",
    "as_utc",
    "debit_entries",
    "has_crossed_midnight",
    "start_of_day",
]
