"""
Phase Progression Station - FastAPI Web Backend
"""

import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Literal, Optional, Union

import httpx
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from phaseflow import __version__
from phaseflow.builder import MultiJobBuilder
from phaseflow.client import HttpProductionApi, ProductionApi
from phaseflow.constants import StationSettings, load_station_settings
from phaseflow.dead_time import DeadTimeRunner
from phaseflow.errors import (
    BackendError,
    DuplicateJobError,
    ExclusivityConflictError,
    InsufficientJobsError,
    InvalidQuantityError,
    InvalidTransitionError,
    MissingLinkageError,
    NothingRemainingError,
    PayloadError,
    SessionError,
    SessionUnrecoverableError,
    TransientNetworkError,
)
from phaseflow.models import JobItem, ProductionSheet
from phaseflow.prompts import OrphanAction, PresetPrompt
from phaseflow.summary import SessionReport, generate_session_summary

logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Phase Progression Station",
    description="Operator station for phase progression and exclusive work sessions",
    version=__version__
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Global data holders
settings: StationSettings = None
http_client: httpx.AsyncClient | None = None
stations: dict[str, MultiJobBuilder] = {}  # {username: builder}

# Error class -> HTTP status (first match wins)
ERROR_STATUS = [
    (ExclusivityConflictError, 409),
    (DuplicateJobError, 409),
    (InvalidTransitionError, 409),
    (SessionUnrecoverableError, 409),
    (InvalidQuantityError, 422),
    (NothingRemainingError, 422),
    (InsufficientJobsError, 422),
    (MissingLinkageError, 422),
    (TransientNetworkError, 503),
    (BackendError, 502),
    (PayloadError, 502),
]


def get_base_path():
    return Path(__file__).parent.parent


def get_config_path():
    return get_base_path() / "config" / "settings.yaml"


def get_settings() -> StationSettings:
    global settings
    if settings is None:
        settings = load_station_settings(get_config_path())
    return settings


def get_http_client() -> httpx.AsyncClient:
    global http_client
    if http_client is None:
        http_client = httpx.AsyncClient(timeout=get_settings().request_timeout_seconds)
    return http_client


def get_api(cookie: Optional[str] = Header(None)) -> ProductionApi:
    """Backend client for the current request, forwarding the session cookie."""
    station_settings = get_settings()
    return HttpProductionApi(
        station_settings.backend_url,
        timeout=station_settings.request_timeout_seconds,
        headers={"Cookie": cookie} if cookie else None,
        client=get_http_client(),
    )


def get_station(username: str, api: ProductionApi) -> MultiJobBuilder:
    """Get (or create) the builder of an operator, bound to this request's client."""
    builder = stations.get(username)
    if builder is None:
        builder = MultiJobBuilder(api, username, settings=get_settings())
        stations[username] = builder
    else:
        builder.api = api
    return builder


# ============ REQUEST MODELS ============

class ScanRequest(BaseModel):
    code: str


class AddJobRequest(BaseModel):
    phase_id: str
    position: int


class StopRequest(BaseModel):
    quantities: dict[str, Union[int, str]] = {}


class OrphanRequest(BaseModel):
    action: Literal["stop", "keep"]


class DeadTimeRequest(BaseModel):
    code: int
    product_id: Optional[str] = None
    sheet_code: Optional[str] = None
    description: Optional[str] = None


# ============ LIFECYCLE ============

@app.on_event("startup")
async def load_data():
    """Load settings on startup."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    global settings

    try:
        settings = load_station_settings(get_config_path())
    except SessionError as e:
        logger.error(f"ERROR loading settings: {e}")
        raise

    logger.info(f"Backend: {settings.backend_url}")
    logger.info(f"Loaded {len(settings.dead_time_codes)} dead-time codes")


@app.on_event("shutdown")
async def close_client():
    global http_client
    if http_client is not None:
        await http_client.aclose()
        http_client = None


@app.exception_handler(SessionError)
async def session_error_handler(request: Request, exc: SessionError):
    status_code = 400
    for error_class, code in ERROR_STATUS:
        if isinstance(exc, error_class):
            status_code = code
            break

    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")

    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.message,
            "type": type(exc).__name__,
            "details": jsonable_encoder(exc.details),
        },
    )


# ============ RESPONSE BUILDERS ============

def build_sheet_summary(sheet: ProductionSheet) -> dict:
    return {
        "id": sheet.id,
        "order_number": sheet.order_number,
        "sheet_number": sheet.sheet_number,
        "product_id": sheet.product_id,
        "quantity": sheet.quantity,
        "qr_value": sheet.qr_value,
    }


def build_job_response(job: JobItem) -> dict:
    return {
        "id": job.id,
        "qr_value": job.qr_value,
        "sheet": build_sheet_summary(job.sheet),
        "phase_id": job.phase_id,
        "position": job.position,
        "stage": job.stage,
        "open_log_id": job.open_log_id,
    }


def build_report_response(report: SessionReport) -> dict:
    return {
        "username": report.username,
        "start": report.start,
        "total_seconds": report.total_seconds,
        "jobs": [asdict(job) for job in report.jobs],
        "summary": generate_session_summary(report),
    }


def build_station_response(builder: MultiJobBuilder) -> dict:
    """Build the snapshot of an operator station."""
    blocked = None
    if builder.blocked is not None:
        session = builder.blocked.session
        blocked = {
            "status": builder.blocked.status,
            "reason": builder.blocked.reason,
            "session": {"kind": session.kind, **asdict(session)} if session is not None else None,
        }

    autosave_error = builder.autosaver.last_error
    response = {
        "username": builder.username,
        "state": builder.state,
        "jobs": [build_job_response(job) for job in builder.jobs],
        "pending_sheet": (
            build_sheet_summary(builder.pending_sheet) if builder.pending_sheet else None
        ),
        "elapsed_seconds": builder.tick(),
        "blocked": blocked,
        "orphan_stored_count": builder.orphan_stored_count,
        "autosave_error": str(autosave_error) if autosave_error else None,
    }
    return jsonable_encoder(response)


# ============ ENDPOINTS ============

@app.get("/")
async def root():
    """Serve a placeholder page."""
    return HTMLResponse(content="<h1>Phase Progression Station</h1>")


@app.get("/api/config")
async def get_config():
    """Get station configuration."""
    station_settings = get_settings()
    return {
        "version": __version__,
        "poll_interval_seconds": station_settings.poll_interval_seconds,
        "autosave_debounce_ms": station_settings.autosave_debounce_ms,
        "min_multi_jobs": station_settings.min_multi_jobs,
        "dead_time_codes": [
            {
                "code": c.code,
                "label": c.label,
                "requires_product_manual": c.requires_product_manual,
                "requires_product_or_sheet": c.requires_product_or_sheet,
            }
            for c in sorted(station_settings.dead_time_codes.values(), key=lambda c: c.code)
        ],
    }


@app.get("/api/stations/{username}")
async def get_station_state(username: str, api: ProductionApi = Depends(get_api)):
    """Get a station snapshot; when idle, re-read server state first."""
    builder = get_station(username, api)
    outcome = await builder.refresh()

    response = build_station_response(builder)
    response["resume"] = outcome.state.value if outcome else None
    return response


@app.post("/api/stations/{username}/scan")
async def scan_sheet(username: str, request: ScanRequest, api: ProductionApi = Depends(get_api)):
    """Resolve a scanned sheet and move to phase picking."""
    builder = get_station(username, api)
    if builder.state != "scanning":
        builder.begin_scan()
    await builder.scan(request.code)
    return build_station_response(builder)


@app.post("/api/stations/{username}/scan/cancel")
async def cancel_scan(username: str, api: ProductionApi = Depends(get_api)):
    builder = get_station(username, api)
    builder.cancel_scan()
    return build_station_response(builder)


@app.get("/api/stations/{username}/phases")
async def get_phase_options(username: str, api: ProductionApi = Depends(get_api)):
    """List the phases of the scanned sheet with remaining quantities."""
    builder = get_station(username, api)
    return {
        "phases": [
            {
                "phase_id": option.phase_id,
                "position": option.position,
                "remaining": option.remaining,
                "planned_minutes": option.planned_minutes,
                "already_picked": option.already_picked,
                "eligible": option.eligible,
            }
            for option in builder.phase_options()
        ]
    }


@app.post("/api/stations/{username}/jobs")
async def add_job(username: str, request: AddJobRequest, api: ProductionApi = Depends(get_api)):
    builder = get_station(username, api)
    await builder.add_job(request.phase_id, request.position)
    return build_station_response(builder)


@app.delete("/api/stations/{username}/jobs/{job_id}")
async def remove_job(username: str, job_id: str, api: ProductionApi = Depends(get_api)):
    builder = get_station(username, api)
    if not await builder.remove_job(job_id):
        raise HTTPException(status_code=404, detail=f"No job {job_id}")
    return build_station_response(builder)


@app.post("/api/stations/{username}/start")
async def start_session(username: str, api: ProductionApi = Depends(get_api)):
    builder = get_station(username, api)
    await builder.start()
    return build_station_response(builder)


@app.post("/api/stations/{username}/stop")
async def stop_session(username: str, request: StopRequest, api: ProductionApi = Depends(get_api)):
    """Stop the running session with the quantities confirmed per job id."""
    builder = get_station(username, api)
    report = await builder.stop(PresetPrompt(quantities=dict(request.quantities)))

    response = build_station_response(builder)
    response["report"] = jsonable_encoder(build_report_response(report))
    return response


@app.post("/api/stations/{username}/abandon")
async def abandon_build(username: str, api: ProductionApi = Depends(get_api)):
    builder = get_station(username, api)
    await builder.abandon()
    return build_station_response(builder)


@app.post("/api/stations/{username}/orphan")
async def resolve_orphan(username: str, request: OrphanRequest, api: ProductionApi = Depends(get_api)):
    """Apply the operator's stop/keep choice for an unrecoverable session."""
    builder = get_station(username, api)
    await builder.resolve_orphan(OrphanAction(request.action))
    return build_station_response(builder)


@app.post("/api/stations/{username}/dead-time")
async def start_dead_time(username: str, request: DeadTimeRequest, api: ProductionApi = Depends(get_api)):
    runner = DeadTimeRunner(api, username, get_settings())
    session = await runner.start(
        request.code,
        manual_product_id=request.product_id or "",
        sheet_code=request.sheet_code,
        description=request.description,
    )
    return jsonable_encoder({"kind": session.kind, **asdict(session)})


@app.post("/api/stations/{username}/dead-time/{dead_time_id}/finish")
async def finish_dead_time(username: str, dead_time_id: str, api: ProductionApi = Depends(get_api)):
    runner = DeadTimeRunner(api, username, get_settings())
    await runner.finish(dead_time_id)
    return {"success": True}
