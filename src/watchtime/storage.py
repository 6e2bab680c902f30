"""Key-value persistence contract used by the quota engine."""

from __future__ import annotations

import json
import threading
from collections import deque
from typing import Any, Deque, Dict, Mapping, Optional, Protocol, Tuple

from .exceptions import PersistenceError


class KeyValueStore(Protocol):
    """Durable scalars plus JSON lists, written in atomic batches.

    ``write`` with ``durable=True`` must have persisted the whole batch (or raised
    :class:`~watchtime.exceptions.PersistenceError`) before returning. With
    ``durable=False`` the batch may be queued. Batches are applied in submission order.
    """

    def get(self, key: str, default: Any = None) -> Any: ...

    def write(self, values: Mapping[str, Any], *, durable: bool = False) -> None: ...

    def flush(self) -> None: ...

    def close(self) -> None: ...


def encode(value: Any) -> str:
    try:
        return json.dumps(value, sort_keys=True)
    except (TypeError, ValueError) as exc:
        raise PersistenceError(f"Value is not JSON serialisable: {value!r}") from exc


def decode(raw: Optional[str], default: Any = None) -> Any:
    if raw is None:
        return default
    return json.loads(raw)


class MemoryStore:
    """In-process store holding JSON-encoded values, used by tests and previews.

    ``writes`` keeps the most recent ``history`` batches as ``(values, durable)`` pairs.
    """

    def __init__(self, initial: Optional[Mapping[str, Any]] = None, *, history: int = 100) -> None:
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()
        self.writes: Deque[Tuple[Dict[str, Any], bool]] = deque(maxlen=history)
        if initial:
            self.write(initial, durable=True)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            raw = self._data.get(key)
        return decode(raw, default)

    def write(self, values: Mapping[str, Any], *, durable: bool = False) -> None:
        encoded = {key: encode(value) for key, value in values.items()}
        with self._lock:
            self._data.update(encoded)
            self.writes.append((dict(values), durable))

    def flush(self) -> None:
        return None

    def close(self) -> None:
        return None


__all__ = ["KeyValueStore", "MemoryStore", "decode", "encode"]
