"""
AMG insurance payment portal: FastAPI server

Handles:
  - Insurance verification (coverage status, amount due) against AMG/openIMIS
  - Policy status and payment history lookups
  - HOLO mobile-money payment initialisation and notifications
  - Contract cache sync (APScheduler) and ops endpoints
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from amg_portal import payments, verification
from amg_portal.amg_client import AmgClient
from amg_portal.config import settings
from amg_portal.contract_store import ContractStore, contract_store
from amg_portal.env_guard import GuardConfig
from amg_portal.errors import PortalError
from amg_portal.scheduler import get_scheduler

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# App lifespan: start/stop APScheduler
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler = get_scheduler()
    scheduler.start()
    logger.info("Scheduler started with %d jobs", len(scheduler.get_jobs()))
    yield
    scheduler.shutdown(wait=False)


app = FastAPI(
    title="AMG Insurance Payment Portal",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

async def get_amg_client() -> AsyncIterator[AmgClient]:
    async with AmgClient.from_settings(settings) as client:
        yield client


def get_guard_config() -> GuardConfig:
    return GuardConfig.from_csv(settings.amg_test_policy_match)


def get_contract_store() -> ContractStore:
    return contract_store


# ---------------------------------------------------------------------------
# Utilities
# ---------------------------------------------------------------------------

async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


@app.exception_handler(PortalError)
async def portal_error_handler(request: Request, exc: PortalError):
    logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.status_code, exc)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


def _payment_error(exc: PortalError) -> JSONResponse:
    return JSONResponse({"success": False, "error": exc.error}, status_code=exc.status_code)


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@app.get("/health")
async def health(guard: GuardConfig = Depends(get_guard_config)):
    return {
        "status": "ok",
        "holo_mode": settings.holo_mode,
        "policy_match": list(guard.match_tokens),
        "cached_contracts": len(contract_store),
        "contract_sync": contract_store.sync_status,
    }


# ---------------------------------------------------------------------------
# Insurance verification
# ---------------------------------------------------------------------------

@app.post("/api/auth/verify-insurance")
async def verify_insurance(
    request: Request,
    client: AmgClient = Depends(get_amg_client),
    guard: GuardConfig = Depends(get_guard_config),
    store: ContractStore = Depends(get_contract_store),
):
    insurance_number = verification.require_insurance_number(await _json_body(request))
    try:
        result = await verification.verify_insurance(insurance_number, client, guard, store)
    except PortalError:
        raise
    except Exception as exc:
        logger.exception("[verify-insurance] Unexpected failure")
        return JSONResponse(
            {"error": "Internal server error", "details": str(exc)}, status_code=500
        )
    return JSONResponse(result)


@app.post("/api/amg/policy-status")
async def policy_status(
    request: Request,
    client: AmgClient = Depends(get_amg_client),
    store: ContractStore = Depends(get_contract_store),
):
    insurance_number = verification.require_insurance_number(await _json_body(request))
    result = await verification.get_policy_status(insurance_number, client, store)
    return JSONResponse(result)


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

@app.post("/api/amg/payments")
async def payment_history(request: Request, client: AmgClient = Depends(get_amg_client)):
    insurance_number = verification.require_insurance_number(await _json_body(request))
    return JSONResponse(await payments.get_payment_history(insurance_number, client))


@app.post("/api/holo/init-payment")
async def holo_init_payment(request: Request):
    try:
        result = payments.init_payment(await _json_body(request), settings)
    except PortalError as exc:
        return _payment_error(exc)
    return JSONResponse(result)


@app.get("/api/holo/notification")
async def holo_notification(request: Request):
    payments.handle_notification(dict(request.query_params))
    return PlainTextResponse("OK")


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

@app.get("/admin/scheduler/jobs")
async def admin_scheduler_jobs():
    """List scheduled background jobs and their next run times."""
    scheduler = get_scheduler()
    jobs = []
    for job in scheduler.get_jobs():
        # Jobs only get a next_run_time once the scheduler is running.
        next_run = getattr(job, "next_run_time", None)
        jobs.append({"id": job.id, "next_run": next_run.isoformat() if next_run else None})
    return JSONResponse(jobs)
