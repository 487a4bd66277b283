import logging
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from agents.subscription_agent.locales import supported_locales
from agents.subscription_agent.service import SubscriptionAgentService
from routers.auth import ensure_request_authorized

logger = logging.getLogger("subscription_runner.router")


class RunRequest(BaseModel):
    """Run one account through a pause or resume."""

    account_id: str
    run_id: Optional[str] = None
    debug_mode: bool = False
    workflow_timeout_ms: Optional[int] = Field(default=None, ge=10_000, le=3_600_000)
    payload: Optional[Dict[str, Any]] = None


class BatchRequest(BaseModel):
    account_ids: List[str] = Field(default_factory=list)
    run_id: Optional[str] = None
    max_workers: Optional[int] = Field(default=None, ge=1, le=16)
    debug_mode: bool = False
    payload: Optional[Dict[str, Any]] = None


def _body_secret(payload: Optional[Dict[str, Any]]) -> Optional[str]:
    value = (payload or {}).get("secret")
    return str(value) if value else None


def create_subscription_router(
    service: SubscriptionAgentService,
    job_secret: str,
    missing_config_fn: Callable[[], List[str]],
) -> APIRouter:
    router = APIRouter(prefix="/subscription-agent", tags=["subscription-agent"])
    jobs = service.list_jobs()

    def ensure_auth(request: Request, body_secret: Optional[str] = None) -> None:
        ensure_request_authorized(request, job_secret, logger, body_secret=body_secret)

    def ensure_config() -> None:
        missing = missing_config_fn()
        if missing:
            logger.error("Invalid subscription-agent config. Missing: %s", ",".join(sorted(missing)))
            raise HTTPException(
                status_code=400,
                detail=f"Invalid subscription-agent config. Missing: {', '.join(sorted(missing))}",
            )

    def ensure_job(action: str) -> str:
        if action not in jobs:
            raise HTTPException(status_code=404, detail=f"Unknown job: {action}")
        return action

    @router.post("/run/{action}")
    def run_account(action: str, req: RunRequest, request: Request):
        ensure_auth(request, _body_secret(req.payload))
        ensure_config()
        ensure_job(action)
        run_id = req.run_id or service.now_id()
        logger.info("Run requested action=%s account=%s run_id=%s", action, req.account_id, run_id)
        return service.run_account(
            action,
            req.account_id,
            run_id,
            debug_mode=req.debug_mode,
            workflow_timeout_ms=req.workflow_timeout_ms,
        )

    @router.post("/batch/{action}")
    def run_batch(action: str, req: BatchRequest, request: Request):
        ensure_auth(request, _body_secret(req.payload))
        ensure_config()
        ensure_job(action)
        run_id = req.run_id or service.now_id()
        logger.info("Batch requested action=%s accounts=%s run_id=%s", action, len(req.account_ids) or "all", run_id)
        return service.run_batch(
            action,
            req.account_ids or None,
            run_id,
            max_workers=req.max_workers,
            debug_mode=req.debug_mode,
        )

    @router.get("/jobs")
    def list_jobs(request: Request):
        ensure_auth(request)
        return {"jobs": sorted(jobs.keys())}

    @router.get("/locales")
    def locales(request: Request):
        ensure_auth(request)
        return {"locales": supported_locales()}

    @router.get("/status")
    def status(request: Request):
        ensure_auth(request)
        return service.get_status()

    @router.get("/events")
    def events(request: Request, limit: int = 200, day: str = "", account_id: str = ""):
        ensure_auth(request)
        return service.get_runtime_events(limit=limit, day=day, account_id=account_id)

    @router.get("/results")
    def results(request: Request, limit: int = 200, account_id: str = ""):
        ensure_auth(request)
        return service.get_results(limit=limit, account_id=account_id)

    return router
