import threading
from datetime import datetime, timedelta

import pytest

from watchtime.clock import ManualClock, as_utc
from watchtime.exceptions import PersistenceError
from watchtime.models import QuotaPolicy, ResetOutcome, WalletEntry
from watchtime.repository import (
    APPLIED_KEY,
    BASE_LIMIT_KEY,
    ENABLED_KEY,
    LAST_RESET_KEY,
    USED_KEY,
    WALLET_KEY,
    encode_wallet,
)
from watchtime.service import QuotaAccountant
from watchtime.storage import MemoryStore

NOW = datetime(2024, 5, 10, 9, 0)
MINUTE = 60_000


class FlakyStore(MemoryStore):
    """Store whose durable writes can be switched to fail."""

    fail_durable = False

    def write(self, values, *, durable=False):
        if durable and self.fail_durable:
            raise PersistenceError("disk full")
        super().write(values, durable=durable)


def seed(*, base=60, applied=0, used_ms=0, wallet=(), enabled=True, store_cls=MemoryStore):
    entries = [WalletEntry(NOW - timedelta(minutes=10 * (len(wallet) - index)), minutes) for index, minutes in enumerate(wallet)]
    return store_cls(
        {
            BASE_LIMIT_KEY: base,
            APPLIED_KEY: applied,
            USED_KEY: used_ms,
            LAST_RESET_KEY: NOW.isoformat(),
            WALLET_KEY: encode_wallet(entries),
            ENABLED_KEY: enabled,
        }
    )


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock(NOW)


@pytest.mark.parametrize(
    ("base", "applied", "expected"),
    [(60, 0, 60), (60, 50, 110), (120, 60, 180), (1, 0, 1), (150, 60, 180), (180, 30, 180)],
)
def test_effective_limit_is_capped(clock: ManualClock, base: int, applied: int, expected: int) -> None:
    accountant = QuotaAccountant(seed(base=base, applied=applied), clock=clock)

    assert accountant.effective_limit_minutes() == expected


def test_fresh_install_uses_defaults(clock: ManualClock) -> None:
    accountant = QuotaAccountant(MemoryStore(), clock=clock)

    assert accountant.base_limit_minutes() == 60
    assert accountant.effective_limit_minutes() == 60
    assert accountant.used_today_ms() == 0
    assert accountant.wallet_minutes() == 0
    assert not accountant.limit_enabled()


def test_apply_moves_wallet_into_limit_and_rolls_back_usage(clock: ManualClock) -> None:
    store = seed(used_ms=70 * MINUTE, wallet=(15, 15, 15, 5))
    accountant = QuotaAccountant(store, clock=clock)

    assert accountant.apply_earned_time(50)

    assert accountant.wallet_minutes() == 0
    assert accountant.applied_earned_minutes() == 50
    assert accountant.effective_limit_minutes() == 110
    assert accountant.used_today_ms() == 20 * MINUTE
    values, durable = store.writes[-1]
    assert durable is True
    assert set(values) == {WALLET_KEY, APPLIED_KEY, USED_KEY}


def test_apply_floors_usage_at_zero(clock: ManualClock) -> None:
    accountant = QuotaAccountant(seed(used_ms=30 * MINUTE, wallet=(15, 15, 15, 5)), clock=clock)

    assert accountant.apply_earned_time(50)

    assert accountant.used_today_ms() == 0
    assert accountant.remaining_minutes() == 110


def test_apply_more_than_wallet_is_rejected(clock: ManualClock) -> None:
    store = seed(wallet=(15, 15, 15, 5))
    accountant = QuotaAccountant(store, clock=clock)
    writes_before = len(store.writes)

    assert not accountant.apply_earned_time(60)

    assert accountant.wallet_minutes() == 50
    assert accountant.applied_earned_minutes() == 0
    assert len(store.writes) == writes_before


def test_apply_is_limited_by_headroom(clock: ManualClock) -> None:
    accountant = QuotaAccountant(seed(base=170, wallet=(15, 15)), clock=clock)

    assert accountant.apply_earned_time(30)

    assert accountant.applied_earned_minutes() == 10
    assert accountant.wallet_minutes() == 20
    assert accountant.effective_limit_minutes() == 180


def test_apply_at_ceiling_is_rejected(clock: ManualClock) -> None:
    accountant = QuotaAccountant(seed(base=150, applied=30, wallet=(15,)), clock=clock)

    assert not accountant.apply_earned_time(15)
    assert accountant.wallet_minutes() == 15


@pytest.mark.parametrize("minutes", [0, -15])
def test_apply_rejects_non_positive(clock: ManualClock, minutes: int) -> None:
    accountant = QuotaAccountant(seed(wallet=(15,)), clock=clock)

    assert not accountant.apply_earned_time(minutes)
    assert accountant.wallet_minutes() == 15


def test_apply_ignores_expired_chunks(clock: ManualClock) -> None:
    accountant = QuotaAccountant(seed(wallet=(15, 15)), clock=clock)
    clock.advance(hours=7, minutes=45)

    assert not accountant.apply_earned_time(30)
    assert accountant.apply_earned_time(15)


def test_apply_reports_failure_when_write_fails(clock: ManualClock) -> None:
    store = seed(used_ms=10 * MINUTE, wallet=(15, 15), store_cls=FlakyStore)
    accountant = QuotaAccountant(store, clock=clock)
    accountant.wallet_minutes()
    store.fail_durable = True

    assert not accountant.apply_earned_time(15)

    assert accountant.wallet_minutes() == 30
    assert accountant.applied_earned_minutes() == 0
    assert accountant.used_today_ms() == 10 * MINUTE
    assert "wallet_write_failed" in accountant.logger.events()


def test_reset_spends_wallet_then_applied(clock: ManualClock) -> None:
    accountant = QuotaAccountant(seed(applied=50, used_ms=100 * MINUTE, wallet=(15, 5)), clock=clock)
    clock.advance(minutes=3)

    result = accountant.reset_daily_limit()

    assert result.success
    assert result.outcome is ResetOutcome.SUCCESS
    assert (result.wallet_deducted, result.applied_deducted) == (20, 40)
    assert "Deducted 20 min from wallet and 40 min from applied time." in result.message
    assert accountant.applied_earned_minutes() == 10
    assert accountant.wallet_minutes() == 0
    assert accountant.used_today_ms() == 0
    assert accountant.base_limit_minutes() == 60
    assert accountant.effective_limit_minutes() == 70


def test_reset_uses_wallet_only_when_it_covers_the_cost(clock: ManualClock) -> None:
    accountant = QuotaAccountant(seed(applied=20, used_ms=90 * MINUTE, wallet=(15, 15, 15, 15, 10)), clock=clock)

    result = accountant.reset_daily_limit()

    assert (result.wallet_deducted, result.applied_deducted) == (60, 0)
    assert accountant.wallet_minutes() == 10
    assert accountant.applied_earned_minutes() == 20
    assert result.message.endswith("Deducted 60 min from wallet.")


def test_reset_with_insufficient_time_mutates_nothing(clock: ManualClock) -> None:
    store = seed(applied=10, used_ms=55 * MINUTE, wallet=(10,))
    accountant = QuotaAccountant(store, clock=clock)
    writes_before = len(store.writes)

    result = accountant.reset_daily_limit()

    assert not result.success
    assert result.outcome is ResetOutcome.INSUFFICIENT_FUNDS
    assert result.shortfall_minutes == 40
    assert "Need 60 minutes, have 20 minutes" in result.message
    assert len(store.writes) == writes_before
    assert accountant.used_today_ms() == 55 * MINUTE
    assert accountant.wallet_minutes() == 10
    assert accountant.applied_earned_minutes() == 10


def test_reset_reports_persistence_failure(clock: ManualClock) -> None:
    store = seed(applied=60, used_ms=30 * MINUTE, store_cls=FlakyStore)
    accountant = QuotaAccountant(store, clock=clock)
    accountant.used_today_ms()
    store.fail_durable = True

    result = accountant.reset_daily_limit()

    assert not result.success
    assert result.outcome is ResetOutcome.PERSISTENCE_ERROR
    assert accountant.applied_earned_minutes() == 60
    assert accountant.used_today_ms() == 30 * MINUTE


def test_reset_cost_follows_policy(clock: ManualClock) -> None:
    policy = QuotaPolicy(reset_cost_minutes=30)
    accountant = QuotaAccountant(seed(wallet=(15, 15)), clock=clock, policy=policy)

    result = accountant.reset_daily_limit()

    assert result.success
    assert result.wallet_deducted == 30


def test_setting_same_base_twice_keeps_usage(clock: ManualClock) -> None:
    accountant = QuotaAccountant(seed(base=45, used_ms=20 * MINUTE), clock=clock)

    accountant.set_base_limit_minutes(60)
    accountant.add_used(5 * MINUTE)
    accountant.set_base_limit_minutes(60)

    assert accountant.used_today_ms() == 5 * MINUTE
    assert "base_limit_unchanged" in accountant.logger.events()


def test_changing_base_resets_usage_and_applied(clock: ManualClock) -> None:
    accountant = QuotaAccountant(seed(applied=20, used_ms=40 * MINUTE, wallet=(15,)), clock=clock)

    stored = accountant.set_base_limit_minutes(90)

    assert stored == 90
    assert accountant.used_today_ms() == 0
    assert accountant.applied_earned_minutes() == 0
    assert accountant.wallet_minutes() == 15
    assert accountant.audit_log.latest().action == "set_base_limit"


@pytest.mark.parametrize(("requested", "stored"), [(0, 1), (-30, 1), (500, 180), (180, 180)])
def test_base_limit_is_clamped(clock: ManualClock, requested: int, stored: int) -> None:
    accountant = QuotaAccountant(MemoryStore(), clock=clock)

    assert accountant.set_base_limit_minutes(requested) == stored
    assert accountant.base_limit_minutes() == stored


def test_base_change_failure_propagates(clock: ManualClock) -> None:
    store = seed(store_cls=FlakyStore)
    accountant = QuotaAccountant(store, clock=clock)
    accountant.base_limit_minutes()
    store.fail_durable = True

    with pytest.raises(PersistenceError):
        accountant.set_base_limit_minutes(90)
    assert accountant.base_limit_minutes() == 60


def test_return_applied_time_credits_wallet(clock: ManualClock) -> None:
    store = seed(applied=40)
    accountant = QuotaAccountant(store, clock=clock)

    assert accountant.return_applied_time(80)

    assert accountant.applied_earned_minutes() == 20
    assert accountant.wallet_minutes() == 20
    assert [item["minutes"] for item in store.get(WALLET_KEY)] == [20]
    assert accountant.audit_log.latest().details["returned"] == 20


@pytest.mark.parametrize("effective", [59, 100, 120])
def test_return_applied_time_rejects_out_of_range(clock: ManualClock, effective: int) -> None:
    accountant = QuotaAccountant(seed(applied=40), clock=clock)

    assert not accountant.return_applied_time(effective)
    assert accountant.applied_earned_minutes() == 40


def test_snapshot_after_midnight_shows_fresh_day_without_writing(clock: ManualClock) -> None:
    store = seed(applied=30, used_ms=40 * MINUTE, wallet=(15,))
    accountant = QuotaAccountant(store, clock=clock)
    accountant.used_today_ms()
    writes_before = len(store.writes)
    clock.set(datetime(2024, 5, 11, 0, 5))

    snapshot = accountant.snapshot()

    assert snapshot.used_today_ms == 0
    assert snapshot.applied_earned_minutes == 0
    assert snapshot.wallet_minutes == 0
    assert snapshot.remaining_minutes == 60
    assert len(store.writes) == writes_before


def test_snapshot_reports_exceeded_limit(clock: ManualClock) -> None:
    accountant = QuotaAccountant(seed(used_ms=60 * MINUTE), clock=clock)

    snapshot = accountant.snapshot()

    assert snapshot.limit_exceeded
    assert snapshot.remaining_minutes == 0


def test_timer_adds_elapsed_playback(clock: ManualClock) -> None:
    accountant = QuotaAccountant(seed(), clock=clock)

    started = accountant.start_timer()
    clock.advance(minutes=5)

    assert accountant.stop_timer(started) == 5 * MINUTE
    assert accountant.used_today_ms() == 5 * MINUTE


def test_display_string_and_describe(clock: ManualClock) -> None:
    accountant = QuotaAccountant(seed(base=90, applied=15, used_ms=75 * MINUTE + 30_000), clock=clock)

    assert accountant.display_string() == "Used today: 01:15 / 01:45"
    description = accountant.describe()
    assert "Effective limit: 105 minutes" in description
    assert "Remaining: 30 minutes" in description


def test_listeners_receive_events(clock: ManualClock) -> None:
    accountant = QuotaAccountant(seed(), clock=clock)
    received: list[dict] = []
    accountant.register_listener(received.append)

    accountant.grant_reward()
    accountant.apply_earned_time(15)

    assert [event["event"] for event in received] == ["earned_time_granted", "earned_time_applied"]


def test_failing_listener_does_not_undo_operation(clock: ManualClock) -> None:
    accountant = QuotaAccountant(seed(), clock=clock)

    def broken(_event: dict) -> None:
        raise RuntimeError("boom")

    accountant.register_listener(broken)
    accountant.grant_reward()

    assert accountant.wallet_minutes() == 15
    assert "listener_failed" in accountant.logger.events()


def test_privileged_operations_are_audited(clock: ManualClock) -> None:
    accountant = QuotaAccountant(seed(wallet=(15, 15, 15, 15)), clock=clock)

    accountant.set_limit_enabled(False, actor="mom")
    accountant.apply_earned_time(15, actor="dad")
    accountant.reset_daily_limit(actor="mom")

    actions = [event.action for event in accountant.audit_log.entries()]
    assert actions == ["set_limit_enabled", "apply_earned_time", "reset_daily_limit"]
    assert len(accountant.audit_log.entries(actor="mom")) == 2
    assert accountant.audit_log.latest().timestamp == as_utc(NOW)


def test_unregistered_listener_is_not_called(clock: ManualClock) -> None:
    accountant = QuotaAccountant(seed(), clock=clock)
    received: list[dict] = []
    accountant.register_listener(received.append)
    accountant.unregister_listener(received.append)

    accountant.grant_reward()

    assert received == []


def test_concurrent_rewards_usage_and_apply_keep_totals(clock: ManualClock) -> None:
    threads_count, rounds = 8, 25
    start_used = 180 * MINUTE
    accountant = QuotaAccountant(seed(used_ms=start_used), clock=clock)
    applied_ok: list[int] = []
    barrier = threading.Barrier(threads_count)

    def worker() -> None:
        barrier.wait()
        for _ in range(rounds):
            accountant.grant_reward(2)
            accountant.add_used(1_000)
            if accountant.apply_earned_time(1):
                applied_ok.append(1)

    threads = [threading.Thread(target=worker) for _ in range(threads_count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    granted = threads_count * rounds * 2
    applied = accountant.applied_earned_minutes()
    assert applied == len(applied_ok) == 120
    assert accountant.wallet_minutes() + applied == granted
    assert accountant.used_today_ms() == start_used + threads_count * rounds * 1_000 - applied * MINUTE
    assert accountant.effective_limit_minutes() == 180


def test_memory_store_keeps_bounded_write_history() -> None:
    store = MemoryStore(history=3)

    for value in range(10):
        store.write({USED_KEY: value})

    assert [values[USED_KEY] for values, _ in store.writes] == [7, 8, 9]
    assert store.get(USED_KEY) == 9


def test_snapshot_touches_the_store_only_on_first_load(clock: ManualClock) -> None:
    class CountingStore(MemoryStore):
        reads = 0

        def get(self, key, default=None):
            self.reads += 1
            return super().get(key, default)

    store = CountingStore()
    accountant = QuotaAccountant(store, clock=clock)

    accountant.snapshot()
    reads_after_load = store.reads
    clock.set(datetime(2024, 5, 11, 0, 5))
    accountant.snapshot()

    assert reads_after_load > 0
    assert store.reads == reads_after_load
    assert len(store.writes) == 0
