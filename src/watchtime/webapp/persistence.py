"""Persistence and SQLModel definitions for the watchtime web service."""
from __future__ import annotations

import sqlite3
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Field, Session, SQLModel, create_engine

from ..exceptions import PersistenceError
from ..ops import StructuredLogger
from ..storage import decode, encode
from .config import SQLITE_FILE_NAME


# ---------------------------------------------------------------------------
# Database models
# ---------------------------------------------------------------------------
class MetaKV(SQLModel, table=True):
    k: str = Field(primary_key=True)
    v: str


def build_engine(path: Optional[str] = None) -> Engine:
    return create_engine(
        f"sqlite:///{path or SQLITE_FILE_NAME}",
        echo=False,
        connect_args={"check_same_thread": False},
    )


def create_db_and_tables(engine: Engine) -> None:
    SQLModel.metadata.create_all(engine)


# ---------------------------------------------------------------------------
# Key-value store
# ---------------------------------------------------------------------------
class MetaKVStore:
    """:class:`~watchtime.storage.KeyValueStore` backed by the ``MetaKV`` table.

    All batches go through one worker thread, so a durable write always lands
    after every best-effort write queued before it.
    """

    def __init__(self, engine: Engine, *, logger: StructuredLogger | None = None) -> None:
        self._engine = engine
        self._logger = logger or StructuredLogger()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="watchtime-store")

    def get(self, key: str, default: Any = None) -> Any:
        self.flush()
        try:
            with Session(self._engine) as session:
                row = session.get(MetaKV, key)
                raw = row.v if row else None
        except (sqlite3.Error, SQLAlchemyError) as exc:
            raise PersistenceError(f"Could not read {key!r}: {exc}") from exc
        return decode(raw, default)

    def write(self, values: Mapping[str, Any], *, durable: bool = False) -> None:
        encoded = {key: encode(value) for key, value in values.items()}
        future = self._executor.submit(self._apply, encoded)
        if not durable:
            future.add_done_callback(self._report_failure)
            return
        try:
            future.result()
        except (sqlite3.Error, SQLAlchemyError) as exc:
            raise PersistenceError(f"Durable write of {sorted(encoded)} failed: {exc}") from exc

    def flush(self) -> None:
        self._executor.submit(lambda: None).result()

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def _apply(self, encoded: Dict[str, str]) -> None:
        with Session(self._engine) as session:
            for key, value in encoded.items():
                row = session.get(MetaKV, key)
                if row:
                    row.v = value
                    session.add(row)
                else:
                    session.add(MetaKV(k=key, v=value))
            session.commit()

    def _report_failure(self, future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            self._logger.error("best_effort_write_failed", error=str(exc))


__all__ = [
    "MetaKV",
    "MetaKVStore",
    "build_engine",
    "create_db_and_tables",
]
