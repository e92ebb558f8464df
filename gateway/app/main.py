from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from gateway.app.audit import AuditLogger
from gateway.app.models import (
    FormSubmission,
    RateLimitOptions,
    RateLimitSettings,
    SubmissionAccepted,
    SubmissionRejected,
)
from gateway.app.security import (
    ADMIN_HEADER,
    FORWARDED_HEADER,
    is_privileged,
    resolve_identity,
)

from engine.config import OptionsStore
from engine.errors import StoreUnavailable
from engine.limiter import RateLimiter
from engine.persistence.sqlite_store import SQLiteCounterStore
from engine.store import CounterStore, InMemoryCounterStore


logger = logging.getLogger("form_rate_limiter")


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


# ---- configurable guards ----
STORE_TIMEOUT_SECONDS = float(os.getenv("RL_STORE_TIMEOUT_SECONDS", "2.0"))
SWEEP_SECONDS = float(os.getenv("RL_SWEEP_SECONDS", "300"))
TRUST_FORWARDED = _env_flag("RL_TRUST_FORWARDED", "0")


def build_store() -> CounterStore:
    if _env_flag("RL_USE_SQLITE", "1"):
        db_path = os.getenv("RL_SQLITE_PATH", "engine/out/rate_limit.db")
        try:
            return SQLiteCounterStore(db_path=db_path, timeout_seconds=STORE_TIMEOUT_SECONDS)
        except StoreUnavailable as e:
            # counters stay per-process until the database is reachable at next start
            logger.error("store_fallback backend=sqlite path=%s error=%s", db_path, e)
    return InMemoryCounterStore(lock_timeout_seconds=STORE_TIMEOUT_SECONDS)


# ---- singletons ----
options = OptionsStore()
options.initialize()
env_options = {
    option: value
    for option, value in (
        ("max_submissions", os.getenv("RL_MAX_SUBMISSIONS")),
        ("time_limit", os.getenv("RL_TIME_LIMIT")),
    )
    if value is not None
}
if env_options:
    options.update(env_options)

audit = AuditLogger(file_path=os.getenv("RL_AUDIT_PATH", "gateway/audit/audit.jsonl"))
limiter = RateLimiter(store=build_store(), config=options.get())


async def _sweep_loop(store: CounterStore, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await asyncio.to_thread(store.purge_expired)
        except StoreUnavailable as e:
            logger.warning("sweep_failed error=%s", e)
            continue
        if removed:
            logger.info("sweep_removed count=%d", removed)


@asynccontextmanager
async def lifespan(app: FastAPI):
    task = None
    if SWEEP_SECONDS > 0:
        task = asyncio.create_task(_sweep_loop(limiter.store, SWEEP_SECONDS))
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


app = FastAPI(title="form-rate-limiter", version="1.0.0", lifespan=lifespan)

metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)


def get_limiter() -> RateLimiter:
    return limiter


def get_options() -> OptionsStore:
    return options


def get_audit() -> AuditLogger:
    return audit


def require_admin(x_admin_token: Optional[str] = Header(default=None, alias=ADMIN_HEADER)) -> None:
    if not is_privileged(x_admin_token):
        raise HTTPException(status_code=403, detail="admin_token_required")


@app.get("/health")
def health(rl: RateLimiter = Depends(get_limiter)):
    return {"status": "ok", "service": "form-rate-limiter", "store": type(rl.store).__name__}


@app.post("/forms/{form_id}/submissions")
def submit_form(
    form_id: str,
    submission: FormSubmission,
    request: Request,
    x_admin_token: Optional[str] = Header(default=None, alias=ADMIN_HEADER),
    rl: RateLimiter = Depends(get_limiter),
    opts: OptionsStore = Depends(get_options),
    audit_log: AuditLogger = Depends(get_audit),
):
    identity = resolve_identity(
        request.client.host if request.client else None,
        request.headers.get(FORWARDED_HEADER),
        TRUST_FORWARDED,
    )
    privileged = is_privileged(x_admin_token)

    # settings may have changed since the last submission
    rl.configure(opts.get())
    verdict = rl.check(form_id, identity, bypass=privileged)

    if not verdict.allowed:
        audit_log.write({
            "type": "submission_reject",
            "form_id": form_id,
            "client_ip": identity,
            "reason": verdict.reason,
            "code": verdict.code,
        })
        body = SubmissionRejected(code=verdict.code, message=verdict.reason, form_id=form_id)
        return JSONResponse(status_code=429, content=body.model_dump())

    audit_log.write({
        "type": "submission_accept",
        "form_id": form_id,
        "client_ip": identity,
        "privileged": privileged,
        "degraded": verdict.degraded,
        "field_count": len(submission.fields),
    })
    return SubmissionAccepted(form_id=form_id).model_dump()


@app.get("/settings/rate-limit", dependencies=[Depends(require_admin)])
def read_settings(opts: OptionsStore = Depends(get_options)) -> RateLimitOptions:
    return RateLimitOptions(**opts.options())


@app.put("/settings/rate-limit", dependencies=[Depends(require_admin)])
def update_settings(
    settings: RateLimitSettings,
    opts: OptionsStore = Depends(get_options),
    rl: RateLimiter = Depends(get_limiter),
    audit_log: AuditLogger = Depends(get_audit),
) -> RateLimitOptions:
    raw = settings.raw_options()
    sanitized = opts.update(raw)
    rl.configure(opts.get())
    audit_log.write({
        "type": "settings_update",
        "requested": {k: repr(v) for k, v in raw.items()},
        "applied": sanitized,
    })
    return RateLimitOptions(**sanitized)


@app.delete("/settings/rate-limit", dependencies=[Depends(require_admin)])
def reset_settings(
    opts: OptionsStore = Depends(get_options),
    rl: RateLimiter = Depends(get_limiter),
    audit_log: AuditLogger = Depends(get_audit),
) -> RateLimitOptions:
    opts.clear()
    config = opts.initialize()
    rl.configure(config)
    applied = opts.options()
    audit_log.write({"type": "settings_reset", "applied": applied})
    return RateLimitOptions(**applied)


@app.get("/audit/recent", dependencies=[Depends(require_admin)])
def audit_recent(limit: int = 50, audit_log: AuditLogger = Depends(get_audit)):
    limit = max(1, min(limit, 200))
    return {"records": audit_log.tail(limit)}
