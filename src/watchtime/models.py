"""Domain models used by the watchtime package."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .clock import as_utc
from .minutes import require_positive


@dataclass(frozen=True, slots=True)
class QuotaPolicy:
    """Fixed rules of the daily allowance and the earned-time wallet."""

    default_base_minutes: int = 60
    max_daily_minutes: int = 180
    reward_minutes: int = 15
    earned_time_ttl: timedelta = timedelta(hours=8)
    reset_cost_minutes: int = 60

    def __post_init__(self) -> None:
        require_positive(self.max_daily_minutes)
        require_positive(self.reward_minutes)
        require_positive(self.reset_cost_minutes)
        if not 1 <= self.default_base_minutes <= self.max_daily_minutes:
            raise ValueError("default_base_minutes must lie within [1, max_daily_minutes].")
        if self.earned_time_ttl <= timedelta(0):
            raise ValueError("earned_time_ttl must be a positive duration.")

    def effective_limit(self, base_minutes: int, applied_minutes: int) -> int:
        """Return ``base + applied`` capped at the daily maximum."""

        return min(base_minutes + applied_minutes, self.max_daily_minutes)

    def is_expired(self, entry: "WalletEntry", now: datetime) -> bool:
        """True once ``entry`` is at least ``earned_time_ttl`` old in real elapsed time."""

        return as_utc(now) - entry.granted_at >= self.earned_time_ttl


@dataclass(frozen=True, slots=True)
class WalletEntry:
    """A chunk of earned minutes granted at ``granted_at``."""

    granted_at: datetime
    minutes: int

    def __post_init__(self) -> None:
        require_positive(self.minutes)
        object.__setattr__(self, "granted_at", as_utc(self.granted_at))

    def shrunk(self, minutes: int) -> "WalletEntry":
        """Return the same chunk holding only ``minutes``."""

        return WalletEntry(granted_at=self.granted_at, minutes=minutes)


@dataclass(frozen=True, slots=True)
class QuotaState:
    """The single persisted aggregate behind the daily quota."""

    base_limit_minutes: int = 60
    applied_earned_minutes: int = 0
    used_today_ms: int = 0
    last_reset_at: Optional[datetime] = None
    wallet: Tuple[WalletEntry, ...] = ()
    limit_enabled: bool = False

    def __post_init__(self) -> None:
        if self.applied_earned_minutes < 0:
            raise ValueError("applied_earned_minutes cannot be negative.")
        if self.used_today_ms < 0:
            raise ValueError("used_today_ms cannot be negative.")
        if self.last_reset_at is not None:
            object.__setattr__(self, "last_reset_at", as_utc(self.last_reset_at))
        ordered = tuple(sorted(self.wallet, key=lambda entry: entry.granted_at))
        object.__setattr__(self, "wallet", ordered)

    @property
    def wallet_minutes(self) -> int:
        return sum(entry.minutes for entry in self.wallet)


class ResetOutcome(str, Enum):
    """Distinguishes the ways a daily-limit reset can end."""

    SUCCESS = "success"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    CALCULATION_ERROR = "calculation_error"
    PERSISTENCE_ERROR = "persistence_error"


@dataclass(slots=True)
class ResetResult:
    """Outcome of :meth:`~watchtime.service.QuotaAccountant.reset_daily_limit`."""

    success: bool
    outcome: ResetOutcome
    wallet_deducted: int = 0
    applied_deducted: int = 0
    shortfall_minutes: int = 0
    message: str = ""

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "outcome": self.outcome.value,
            "wallet_deducted": self.wallet_deducted,
            "applied_deducted": self.applied_deducted,
            "shortfall_minutes": self.shortfall_minutes,
            "message": self.message,
        }


@dataclass(slots=True)
class QuotaSnapshot:
    """Read-only view of the quota used by countdown displays."""

    taken_at: datetime
    limit_enabled: bool
    base_limit_minutes: int
    applied_earned_minutes: int
    effective_limit_minutes: int
    used_today_ms: int
    remaining_minutes: int
    wallet_minutes: int
    limit_exceeded: bool


@dataclass(slots=True)
class AuditEvent:
    """Represents an auditable parent action."""

    actor: str
    action: str
    target: str
    timestamp: datetime = field(default_factory=datetime.now)
    details: Dict[str, Any] = field(default_factory=dict)
