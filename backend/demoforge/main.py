"""
Demoforge - Main Application Entry Point

Admin-portal backend that turns a lead into a live demo website: scan the
business, generate content with AI, provision hosting, and route the
result through human audit.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog

from demoforge.config import Settings, get_settings
from demoforge.errors import DemoforgeError, ErrorKind
from demoforge.models import (
    AssignmentReport,
    AssignRequest,
    Auditor,
    AuditorCreateRequest,
    ErrorResponse,
    HealthResponse,
    Job,
    JobCreateRequest,
    JobListResponse,
    JobResponse,
    JobStatus,
    ProvisioningRequest,
    ProvisioningResult,
    ReviewRequest,
)
from demoforge.services.audit import AuditCoordinator
from demoforge.services.deployer import DeploymentPlanner
from demoforge.services.job_store import AuditorStore, JobStore
from demoforge.services.notifications import JOB_UPDATED, JobEventBus, JobNotification
from demoforge.services.orchestrator import Orchestrator
from demoforge.services.state_machine import JobStateMachine


def configure_logging(settings: Settings) -> None:
    """Configure structured logging."""
    logging.basicConfig(format="%(message)s", level=settings.log_level.upper())
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


logger = structlog.get_logger()

STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.PAYLOAD_TOO_LARGE: 413,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_TRANSITION: 409,
}


@dataclass
class Services:
    """Collaborators shared by the routes and the orchestrator."""
    settings: Settings
    store: JobStore
    auditors: AuditorStore
    bus: JobEventBus
    state_machine: JobStateMachine
    audit: AuditCoordinator
    planner: DeploymentPlanner
    orchestrator: Orchestrator
    # WebSocket connections for real-time updates, keyed by job id
    ws_connections: dict[str, list[WebSocket]] = field(default_factory=dict)


def build_services(settings: Optional[Settings] = None) -> Services:
    """Wire the default in-memory store and real remote clients."""
    settings = settings or get_settings()
    store = JobStore()
    auditors = AuditorStore()
    bus = JobEventBus()
    state_machine = JobStateMachine(store, bus, settings)
    planner = DeploymentPlanner(settings=settings)
    return Services(
        settings=settings,
        store=store,
        auditors=auditors,
        bus=bus,
        state_machine=state_machine,
        audit=AuditCoordinator(state_machine, auditors, bus, settings),
        planner=planner,
        orchestrator=Orchestrator(state_machine, planner=planner, settings=settings),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


router = APIRouter()


# ============================================================================
# Helper Functions
# ============================================================================

async def notify_job_update(services: Services, notification: JobNotification):
    """Send job update to connected WebSocket clients."""
    if notification.topic != JOB_UPDATED or notification.job is None:
        return
    payload = notification.job.model_dump(mode="json")
    for ws in list(services.ws_connections.get(notification.job_id, [])):
        try:
            await ws.send_json(payload)
        except (WebSocketDisconnect, RuntimeError):
            logger.debug("Dropping closed WebSocket", job_id=notification.job_id)


# ============================================================================
# API Routes
# ============================================================================

@router.get("/api/health", response_model=HealthResponse, tags=["Health"])
async def health_check(services: Services = Depends(get_services)):
    """Check application health and service configuration."""
    settings = services.settings
    return HealthResponse(
        status="healthy",
        version=settings.app_version,
        environment=settings.environment,
        services={
            "anthropic": bool(settings.anthropic_api_key),
            "firecrawl": bool(settings.firecrawl_api_key),
            "hosting": bool(settings.hosting_api_key),
            "orchestrator": settings.run_orchestrator,
        }
    )


@router.post("/api/jobs", response_model=JobResponse, tags=["Jobs"])
async def create_job(request: JobCreateRequest, services: Services = Depends(get_services)):
    """
    Create a new demo-site job.

    The orchestrator picks it up on its next poll. Use the returned job ID
    to track progress via the GET endpoint or WebSocket.
    """
    job = await services.state_machine.create_job(request)
    return JobResponse(job=job, message="Job created successfully")


@router.get("/api/jobs", response_model=JobListResponse, tags=["Jobs"])
async def list_jobs(
    page: int = 1,
    page_size: int = 20,
    status: Optional[JobStatus] = None,
    services: Services = Depends(get_services),
):
    """List all jobs with optional filtering."""
    jobs = await services.store.list(page=page, page_size=page_size, status=status)
    total = await services.store.count(status=status)

    return JobListResponse(jobs=jobs, total=total, page=page, page_size=page_size)


@router.get("/api/jobs/recent", response_model=list[Job], tags=["Jobs"])
async def recent_jobs(limit: int = 10, services: Services = Depends(get_services)):
    """Most recently updated jobs."""
    return await services.store.list_recent(limit=limit, order_by="updated_at")


@router.get("/api/jobs/{job_id}", response_model=JobResponse, tags=["Jobs"])
async def get_job(job_id: str, services: Services = Depends(get_services)):
    """Get job status and results."""
    job = await services.state_machine.get_job(job_id)
    return JobResponse(job=job)


@router.post("/api/jobs/{job_id}/resubmit", response_model=JobResponse, tags=["Jobs"])
async def resubmit_job(job_id: str, services: Services = Depends(get_services)):
    """Send a rejected job back to provisioning."""
    job = await services.state_machine.resubmit(job_id)
    if job.status == JobStatus.FAILED:
        return JobResponse(job=job, message="Resubmit limit reached; job failed")
    return JobResponse(job=job, message="Job resubmitted")


@router.post("/api/jobs/{job_id}/review", response_model=JobResponse, tags=["Audit"])
async def review_job(
    job_id: str,
    review: ReviewRequest,
    services: Services = Depends(get_services),
):
    """Record an auditor's decision."""
    job = await services.audit.review(job_id, review.decision, review.issues)
    return JobResponse(job=job, message=f"Job {job.status.value}")


@router.post("/api/deploy/provision", response_model=ProvisioningResult, tags=["Deploy"])
async def provision_site(request: ProvisioningRequest, services: Services = Depends(get_services)):
    """Provision a site directly from a request, outside the job lifecycle."""
    try:
        plan = services.planner.plan_request(request)
        return await services.planner.execute(plan)
    except DemoforgeError as e:
        logger.warning("Provisioning failed", domain=request.domain, kind=e.kind.value, error=e.message)
        result = ProvisioningResult(success=False, error=e.message, error_kind=e.kind)
        return JSONResponse(
            status_code=STATUS_BY_KIND.get(e.kind, 502),
            content=result.model_dump(mode="json", by_alias=True),
        )


# ============================================================================
# Audit Routes
# ============================================================================

@router.post("/api/auditors", response_model=Auditor, status_code=201, tags=["Audit"])
async def create_auditor(request: AuditorCreateRequest, services: Services = Depends(get_services)):
    return await services.audit.create_auditor(request.name, request.email)


@router.get("/api/auditors", response_model=list[Auditor], tags=["Audit"])
async def list_auditors(active_only: bool = True, services: Services = Depends(get_services)):
    return await services.audit.list_auditors(active_only=active_only)


@router.get("/api/auditors/{auditor_id}/jobs", response_model=list[Job], tags=["Audit"])
async def auditor_jobs(auditor_id: str, services: Services = Depends(get_services)):
    return await services.audit.jobs_for_auditor(auditor_id)


@router.get("/api/audit/pending", response_model=list[Job], tags=["Audit"])
async def pending_audit(limit: int = 50, services: Services = Depends(get_services)):
    """Jobs awaiting audit that nobody has been assigned."""
    return await services.audit.jobs_pending_assignment(limit=limit)


@router.post("/api/audit/assign", response_model=AssignmentReport, tags=["Audit"])
async def assign_jobs(request: AssignRequest, services: Services = Depends(get_services)):
    """Assign a batch of jobs to an auditor; ineligible jobs are skipped."""
    return await services.audit.assign(request.job_ids, request.auditor_id)


# ============================================================================
# WebSocket for Real-time Updates
# ============================================================================

@router.websocket("/ws/jobs/{job_id}")
async def websocket_job_updates(websocket: WebSocket, job_id: str):
    """WebSocket endpoint for real-time job updates."""
    services: Services = websocket.app.state.services
    await websocket.accept()

    # Register connection
    services.ws_connections.setdefault(job_id, []).append(websocket)

    try:
        # Send current job state immediately
        job = await services.store.get(job_id)
        if job:
            await websocket.send_json(job.model_dump(mode="json"))

        # Keep connection alive and listen for client messages
        while True:
            try:
                await asyncio.wait_for(websocket.receive_text(), timeout=30.0)
            except asyncio.TimeoutError:
                # Send ping to keep connection alive
                await websocket.send_json({"type": "ping"})

    except WebSocketDisconnect:
        logger.debug("WebSocket disconnected", job_id=job_id)
    finally:
        # Cleanup connection
        connections = services.ws_connections.get(job_id, [])
        if websocket in connections:
            connections.remove(websocket)
        if not connections:
            services.ws_connections.pop(job_id, None)


# ============================================================================
# Error Handlers
# ============================================================================

async def demoforge_error_handler(request: Request, exc: DemoforgeError):
    status_code = STATUS_BY_KIND.get(exc.kind, 502)
    if status_code >= 500:
        logger.warning("Request failed", path=request.url.path, kind=exc.kind.value, error=exc.message)
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=exc.message, detail=exc.detail, code=exc.kind.value).model_dump(),
    )


async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=str(exc.detail), code=str(exc.status_code)).model_dump(),
    )


# ============================================================================
# Application
# ============================================================================

def create_app(services: Optional[Services] = None) -> FastAPI:
    services = services or build_services()
    settings = services.settings
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        logger.info("Starting Demoforge", version=settings.app_version)
        if settings.run_orchestrator:
            await services.orchestrator.start()
        yield
        await services.orchestrator.stop()
        logger.info("Shutting down Demoforge")

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Scan, generate, provision and audit demo websites for leads",
        lifespan=lifespan,
    )
    app.state.services = services

    async def forward_to_websockets(notification: JobNotification) -> None:
        await notify_job_update(services, notification)

    services.bus.subscribe(forward_to_websockets)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(DemoforgeError, demoforge_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.include_router(router)
    return app


app = create_app()


# ============================================================================
# Run with Uvicorn
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "demoforge.main:app",
        host="0.0.0.0",
        port=8000,
        reload=get_settings().debug,
    )
