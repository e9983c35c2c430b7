#!/usr/bin/env python3
"""
clarr web service

Endpoints:
- POST /webhook/jellyfin   Jellyfin deletion events (HMAC signed)
- POST /api/cleanup        start an orphan cleanup in the background
- POST /api/rescan         rescan Radarr + Sonarr in the background
- GET  /api/stats          orphan count/size without deleting anything
- GET  /api/jobs[/{id}]    cleanup job history
- GET  /health             liveness
"""

import logging
import os
import secrets
import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import BaseModel

from .. import __version__
from ..cleaner import Cleaner, ScanError, format_size
from ..jobs import CleanupConflict, JobManager
from ..qbittorrent_client import QBittorrentClient
from ..reconciler import ReconcileDispatcher, Reconciler
from ..scheduler import CleanupScheduler
from ..servarr_client import ServarrType, create_client
from ..settings_manager import ConfigurationError, SettingsManager, get_settings_manager
from ..webhook import SIGNATURE_HEADER, IngestStatus, WebhookAuthError, WebhookPayloadError, ingest

LOG = logging.getLogger("clarr.webapp")

CONFIG_DIR = os.environ.get("CONFIG_DIR", "/config")


@dataclass
class Services:
    job_manager: JobManager
    dispatcher: ReconcileDispatcher
    download_dir: str
    dry_run: bool
    webhook_secret: Optional[str] = None
    signature_header: str = SIGNATURE_HEADER
    scheduler: Optional[CleanupScheduler] = None
    web_auth: Dict[str, Any] = field(default_factory=dict)

    def shutdown(self):
        self.job_manager.shutdown()
        if self.scheduler is not None:
            self.scheduler.shutdown()
        self.dispatcher.shutdown()


def build_services(settings: SettingsManager) -> Services:
    """Wire clients, cleaner, job manager and scheduler from settings.

    Raises ConfigurationError on invalid settings or cron expression.
    """
    settings.require_valid()
    cfg = settings.get_all_raw()

    radarr = create_client({"name": "radarr", **cfg["radarr"]}, ServarrType.RADARR)
    sonarr = create_client({"name": "sonarr", **cfg["sonarr"]}, ServarrType.SONARR)

    qbit = None
    if cfg["qbittorrent"].get("enabled"):
        qbit = QBittorrentClient.from_settings(cfg["qbittorrent"])
        LOG.info(f"qBittorrent integration enabled: {qbit.base_url}")

    cl = cfg["cleaner"]
    cleaner = Cleaner(cl["download_dir"], dry_run=bool(cl.get("dry_run", True)), qbit=qbit)
    job_manager = JobManager(cleaner)

    def scheduled_cleanup():
        try:
            job_manager.start_cleanup(trigger="schedule")
        except CleanupConflict:
            LOG.info("Scheduled cleanup skipped: a cleanup is already running")

    scheduler = CleanupScheduler(cl["schedule"], scheduled_cleanup)

    wh = cfg["webhook"]
    secret = wh.get("secret") or None
    if secret is None:
        LOG.warning("Webhook signature verification disabled (webhook.allow_unsigned)")

    dispatcher = ReconcileDispatcher(Reconciler(radarr, sonarr), max_workers=int(wh.get("workers", 4)))

    return Services(
        job_manager=job_manager,
        dispatcher=dispatcher,
        download_dir=cl["download_dir"],
        dry_run=cleaner.dry_run,
        webhook_secret=secret,
        signature_header=wh.get("signature_header") or SIGNATURE_HEADER,
        scheduler=scheduler,
        web_auth=cfg["web"],
    )


# =============================================================================
# DEPENDENCIES
# =============================================================================

security = HTTPBasic(auto_error=False)


def get_services(request: Request) -> Services:
    return request.app.state.services


def require_auth(credentials: Optional[HTTPBasicCredentials] = Depends(security),
                 services: Services = Depends(get_services)):
    web_cfg = services.web_auth
    if not web_cfg.get("auth_enabled"):
        return True
    if credentials is not None and (
            secrets.compare_digest(credentials.username, web_cfg.get("username", "")) and
            secrets.compare_digest(credentials.password, web_cfg.get("password", ""))):
        return True
    raise HTTPException(status_code=401, detail="Unauthorized", headers={"WWW-Authenticate": "Basic"})


class StartedResponse(BaseModel):
    status: str
    job_id: Optional[str] = None


class StatsResponse(BaseModel):
    orphan_count: int
    orphan_size: str
    orphan_size_raw: int
    scanned_files: int
    dry_run: bool
    download_dir: str
    supported: bool


# =============================================================================
# ROUTES
# =============================================================================

router = APIRouter()


@router.get("/health")
@router.get("/api/health")
async def health():
    return {"status": "ok", "service": "clarr", "version": __version__}


@router.post("/webhook/jellyfin")
async def jellyfin_webhook(request: Request, services: Services = Depends(get_services)):
    raw = await request.body()
    signature = request.headers.get(services.signature_header)
    try:
        outcome = ingest(raw, signature, services.webhook_secret)
    except WebhookAuthError as e:
        LOG.warning(f"Webhook signature invalid: {e}")
        return JSONResponse(status_code=401, content={"error": "invalid signature"})
    except WebhookPayloadError as e:
        LOG.error(f"Failed to decode Jellyfin event: {e}")
        return JSONResponse(status_code=400, content={"error": "invalid payload"})

    if outcome.status == IngestStatus.IGNORED:
        LOG.debug(f"Ignoring Jellyfin event {outcome.event_name!r}")
        return JSONResponse(status_code=200, content={"status": "ignored"})

    services.dispatcher.submit_event(outcome.event)
    return JSONResponse(status_code=202, content={"status": "processing"})


@router.post("/api/cleanup", status_code=202, response_model=StartedResponse)
async def start_cleanup(authenticated: bool = Depends(require_auth),
                        services: Services = Depends(get_services)):
    try:
        job = services.job_manager.start_cleanup(trigger="manual")
    except CleanupConflict:
        raise HTTPException(status_code=409, detail="A cleanup is already running")
    return StartedResponse(status="cleanup started", job_id=job.id)


@router.post("/api/rescan", status_code=202, response_model=StartedResponse)
async def start_rescan(authenticated: bool = Depends(require_auth),
                       services: Services = Depends(get_services)):
    services.dispatcher.submit_rescan()
    return StartedResponse(status="rescan started")


@router.get("/api/stats", response_model=StatsResponse)
def stats(authenticated: bool = Depends(require_auth),
          services: Services = Depends(get_services)):
    try:
        scan = services.job_manager.scan_status()
    except CleanupConflict:
        raise HTTPException(status_code=409, detail="A cleanup is running, try again later")
    except ScanError as e:
        LOG.error(f"Stats scan failed: {e}")
        raise HTTPException(status_code=500, detail=f"scan failed at {e.path}")

    total = scan.orphan_bytes
    return StatsResponse(
        orphan_count=len(scan.orphans),
        orphan_size=format_size(total),
        orphan_size_raw=total,
        scanned_files=scan.scanned_files,
        dry_run=services.dry_run,
        download_dir=services.download_dir,
        supported=scan.supported,
    )


@router.get("/api/jobs")
async def list_jobs(authenticated: bool = Depends(require_auth),
                    services: Services = Depends(get_services)):
    return {"jobs": [j.to_dict() for j in services.job_manager.list_jobs()]}


@router.get("/api/jobs/{job_id}")
async def get_job(job_id: str, authenticated: bool = Depends(require_auth),
                  services: Services = Depends(get_services)):
    job = services.job_manager.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job.to_dict()


# =============================================================================
# FASTAPI APPLICATION
# =============================================================================

def create_app(services: Services) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services.scheduler is not None:
            services.scheduler.start()
        yield
        LOG.info("Shutting down clarr...")
        services.shutdown()
        LOG.info("clarr stopped cleanly")

    app = FastAPI(title="clarr", version=__version__, lifespan=lifespan)
    app.state.services = services

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        latency_ms = (time.perf_counter() - start) * 1000
        client = request.client.host if request.client else "-"
        LOG.info(f"{request.method} {request.url.path} {response.status_code} {latency_ms:.1f}ms {client}")
        return response

    app.include_router(router)
    return app


# =============================================================================
# MAIN
# =============================================================================

def main() -> int:
    LOG.info(f"Starting clarr v{__version__}")
    LOG.info(f"Config directory: {CONFIG_DIR}")
    try:
        settings = get_settings_manager(CONFIG_DIR)
        services = build_services(settings)
    except ConfigurationError as e:
        LOG.error(f"Invalid configuration: {e}")
        return 2

    server = settings.get("server")
    if services.web_auth.get("auth_enabled"):
        LOG.info("Authentication enabled")
    else:
        LOG.warning("No authentication configured for /api endpoints")
    LOG.info(f"Cleaner: dir={services.download_dir} dry_run={services.dry_run}")

    uvicorn.run(create_app(services), host=server.get("host", "0.0.0.0"),
                port=int(server.get("port", 8090)), log_level="info")
    return 0


if __name__ == "__main__":
    sys.exit(main())
