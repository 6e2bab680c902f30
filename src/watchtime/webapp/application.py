"""FastAPI surface the session layer uses to drive the quota engine."""
from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from fastapi import APIRouter, FastAPI, Form, Request
from fastapi.responses import JSONResponse
from starlette.status import HTTP_200_OK, HTTP_409_CONFLICT, HTTP_503_SERVICE_UNAVAILABLE

from ..exceptions import WatchTimeError
from ..models import ResetOutcome
from ..ops import StructuredLogger
from ..service import QuotaAccountant
from .config import APP_TITLE, LOG_PATH, load_policy
from .persistence import MetaKVStore, build_engine, create_db_and_tables

router = APIRouter(prefix="/quota")


def _accountant(request: Request) -> QuotaAccountant:
    return request.app.state.accountant


@router.get("")
def quota_snapshot(request: Request) -> JSONResponse:
    return JSONResponse(_accountant(request).snapshot_dict())


@router.post("/usage")
def quota_add_usage(request: Request, millis: int = Form(...)) -> JSONResponse:
    used = _accountant(request).add_used(millis)
    return JSONResponse({"ok": millis > 0, "used_today_ms": used})


@router.post("/rewards")
def quota_grant_reward(request: Request, minutes: Optional[int] = Form(None)) -> JSONResponse:
    accountant = _accountant(request)
    entry = accountant.grant_reward(minutes)
    if entry is None:
        return JSONResponse({"ok": False, "wallet_minutes": accountant.wallet_minutes()})
    return JSONResponse(
        {
            "ok": True,
            "granted_minutes": entry.minutes,
            "granted_at": entry.granted_at.isoformat(),
            "wallet_minutes": accountant.wallet_minutes(),
        }
    )


@router.post("/apply")
def quota_apply(request: Request, minutes: int = Form(...)) -> JSONResponse:
    accountant = _accountant(request)
    ok = accountant.apply_earned_time(minutes)
    return JSONResponse(
        {
            "ok": ok,
            "effective_limit_minutes": accountant.effective_limit_minutes(),
            "wallet_minutes": accountant.wallet_minutes(),
        }
    )


@router.post("/reset")
def quota_reset(request: Request) -> JSONResponse:
    result = _accountant(request).reset_daily_limit()
    failed = result.outcome in {ResetOutcome.CALCULATION_ERROR, ResetOutcome.PERSISTENCE_ERROR}
    status = HTTP_409_CONFLICT if failed else HTTP_200_OK
    return JSONResponse(result.as_dict(), status_code=status)


@router.post("/return")
def quota_return(request: Request, effective_minutes: int = Form(...)) -> JSONResponse:
    accountant = _accountant(request)
    ok = accountant.return_applied_time(effective_minutes)
    return JSONResponse(
        {
            "ok": ok,
            "effective_limit_minutes": accountant.effective_limit_minutes(),
            "wallet_minutes": accountant.wallet_minutes(),
        }
    )


@router.post("/base-limit")
def quota_set_base_limit(request: Request, minutes: int = Form(...)) -> JSONResponse:
    accountant = _accountant(request)
    stored = accountant.set_base_limit_minutes(minutes)
    return JSONResponse({"ok": True, "base_limit_minutes": stored, "used_today_ms": accountant.used_today_ms()})


@router.post("/enabled")
def quota_set_enabled(request: Request, enabled: bool = Form(...)) -> JSONResponse:
    return JSONResponse({"ok": True, "limit_enabled": _accountant(request).set_limit_enabled(enabled)})


def build_accountant(sqlite_path: Optional[str] = None) -> QuotaAccountant:
    """Wire a SQLite-backed accountant from the environment configuration."""

    engine = build_engine(sqlite_path)
    create_db_and_tables(engine)
    logger = StructuredLogger(path=Path(LOG_PATH) if LOG_PATH else None)
    return QuotaAccountant(MetaKVStore(engine, logger=logger), policy=load_policy(), logger=logger)


def create_app(accountant: QuotaAccountant | None = None, *, sqlite_path: Optional[str] = None) -> FastAPI:
    """Application factory; run with ``uvicorn watchtime.webapp:create_app --factory``.

    Queued writes are flushed on shutdown. A store the factory built itself is also
    closed; a caller-supplied accountant stays open for its owner.
    """

    owned = accountant is None
    quota = accountant or build_accountant(sqlite_path)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        if owned:
            quota.close()
        else:
            quota.flush()

    app = FastAPI(title=APP_TITLE, lifespan=lifespan)
    app.state.accountant = quota
    app.include_router(router)

    @app.get("/healthz", include_in_schema=False)
    def healthz() -> JSONResponse:
        return JSONResponse({"status": "ok"})

    @app.exception_handler(WatchTimeError)
    async def watchtime_error(request: Request, exc: WatchTimeError) -> JSONResponse:
        _accountant(request).logger.error("request_failed", path=request.url.path, error=str(exc))
        return JSONResponse({"ok": False, "error": str(exc)}, status_code=HTTP_503_SERVICE_UNAVAILABLE)

    return app


__all__ = ["build_accountant", "create_app", "router"]
