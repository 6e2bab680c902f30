from datetime import datetime, timedelta

import pytest

pytest.importorskip("sqlmodel")
from sqlmodel import Session, SQLModel, select

from watchtime.clock import ManualClock
from watchtime.exceptions import PersistenceError
from watchtime.ops import StructuredLogger
from watchtime.repository import USED_KEY, WALLET_KEY
from watchtime.service import QuotaAccountant
from watchtime.webapp.config import load_policy
from watchtime.webapp.persistence import MetaKV, MetaKVStore, build_engine, create_db_and_tables

NOW = datetime(2024, 5, 10, 9, 0)


@pytest.fixture()
def engine(tmp_path):
    engine = build_engine(str(tmp_path / "quota.db"))
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def store(engine):
    store = MetaKVStore(engine, logger=StructuredLogger())
    yield store
    store.close()


def test_values_round_trip_through_meta_table(engine, store) -> None:
    store.write({"watchtime.base_limit_minutes": 90, "watchtime.wallet": [{"minutes": 15}]}, durable=True)

    assert store.get("watchtime.base_limit_minutes") == 90
    assert store.get("watchtime.wallet") == [{"minutes": 15}]
    assert store.get("watchtime.missing", 7) == 7
    with Session(engine) as session:
        keys = sorted(row.k for row in session.exec(select(MetaKV)).all())
    assert keys == ["watchtime.base_limit_minutes", "watchtime.wallet"]


def test_best_effort_writes_land_before_reads(store) -> None:
    for value in range(1, 6):
        store.write({USED_KEY: value * 1_000})

    assert store.get(USED_KEY) == 5_000


def test_upsert_overwrites_existing_rows(engine, store) -> None:
    store.write({USED_KEY: 1}, durable=True)
    store.write({USED_KEY: 2}, durable=True)

    with Session(engine) as session:
        rows = session.exec(select(MetaKV).where(MetaKV.k == USED_KEY)).all()
    assert [row.v for row in rows] == ["2"]


def test_state_survives_a_new_accountant(engine, store) -> None:
    clock = ManualClock(NOW)
    first = QuotaAccountant(store, clock=clock)
    first.set_limit_enabled(True)
    first.set_base_limit_minutes(90)
    first.add_used(120_000)
    first.grant_reward()
    first.grant_reward(5)
    first.flush()

    reopened = MetaKVStore(engine)
    try:
        second = QuotaAccountant(reopened, clock=clock)
        assert second.base_limit_minutes() == 90
        assert second.used_today_ms() == 120_000
        assert second.wallet_minutes() == 20
        assert [entry.minutes for entry in second.wallet_entries()] == [15, 5]
        assert second.limit_enabled()
    finally:
        reopened.close()


def test_wallet_expiry_is_based_on_stored_timestamps(engine, store) -> None:
    clock = ManualClock(NOW)
    QuotaAccountant(store, clock=clock).grant_reward()
    store.flush()

    clock.advance(hours=8)
    reopened = MetaKVStore(engine)
    try:
        assert QuotaAccountant(reopened, clock=clock).wallet_minutes() == 0
        assert reopened.get(WALLET_KEY) == []
    finally:
        reopened.close()


def test_durable_write_failure_raises(engine, store) -> None:
    SQLModel.metadata.drop_all(engine)

    with pytest.raises(PersistenceError):
        store.write({USED_KEY: 1}, durable=True)


def test_best_effort_write_failure_is_logged(engine) -> None:
    logger = StructuredLogger()
    store = MetaKVStore(engine, logger=logger)
    SQLModel.metadata.drop_all(engine)
    try:
        store.write({USED_KEY: 1})
        store.flush()
    finally:
        store.close()

    assert "best_effort_write_failed" in logger.events()
    assert logger.tail(1, level="error")[0]["event"] == "best_effort_write_failed"


def test_load_policy_reads_environment_mapping() -> None:
    policy = load_policy(
        {
            "WATCHTIME_DEFAULT_BASE_MINUTES": "45",
            "WATCHTIME_REWARD_MINUTES": "10",
            "WATCHTIME_EARNED_TTL_HOURS": "4",
            "WATCHTIME_RESET_COST_MINUTES": " ",
        }
    )

    assert policy.default_base_minutes == 45
    assert policy.max_daily_minutes == 180
    assert policy.reward_minutes == 10
    assert policy.earned_time_ttl == timedelta(hours=4)
    assert policy.reset_cost_minutes == 60


def test_load_policy_rejects_garbage() -> None:
    with pytest.raises(ValueError):
        load_policy({"WATCHTIME_MAX_DAILY_MINUTES": "lots"})
