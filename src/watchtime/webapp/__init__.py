"""watchtime web service package: SQLModel store plus a FastAPI surface."""
from __future__ import annotations

from .application import build_accountant, create_app, router
from .config import load_policy
from .persistence import MetaKV, MetaKVStore, build_engine, create_db_and_tables

__all__ = [
    "MetaKV",
    "MetaKVStore",
    "build_accountant",
    "build_engine",
    "create_app",
    "create_db_and_tables",
    "load_policy",
    "router",
]
