"""FastAPI application serving cached calendars and the admin surface."""
import logging
import os
import secrets
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, Mapping, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel, Field

from .config import AppConfig, ConfigManager, apply_env_overrides
from .fetcher import Fetcher
from .models import StatusReport
from .orchestrator import FetchOrchestrator
from .scheduler import FetchScheduler
from .storage import StateStore, CalendarStore

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
}

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
security = HTTPBasic()
router = APIRouter()


class ConfigUpdate(BaseModel):
    urls: Dict[str, str]


class IntervalUpdate(BaseModel):
    minutes: int = Field(ge=1)


def get_orchestrator(request: Request) -> FetchOrchestrator:
    return request.app.state.orchestrator


def current_status(request: Request) -> StatusReport:
    report = request.app.state.orchestrator.status()
    report.next_fetch = request.app.state.scheduler.get_next_run_time()
    return report


def require_admin(
    request: Request,
    credentials: HTTPBasicCredentials = Depends(security),
) -> str:
    """Check HTTP basic credentials against the configured admin account."""
    config: AppConfig = request.app.state.config
    user_ok = secrets.compare_digest(
        credentials.username.encode('utf-8'), config.admin_user.encode('utf-8')
    )
    pass_ok = secrets.compare_digest(
        credentials.password.encode('utf-8'), config.admin_pass.encode('utf-8')
    )
    if not (user_ok and pass_ok):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


# Calendar feed endpoints
@router.get("/calendars/{filename}")
async def get_calendar(filename: str, orchestrator: FetchOrchestrator = Depends(get_orchestrator)):
    """Serve a cached calendar document as-is."""
    try:
        content = orchestrator.calendar_store.load(filename)
    except ValueError:
        raise HTTPException(status_code=404, detail="Calendar not found")

    if content is None:
        raise HTTPException(status_code=404, detail="Calendar not found")

    return Response(
        content=content,
        media_type="text/calendar; charset=utf-8",
        headers=NO_CACHE_HEADERS,
    )


# Status and resync endpoints
@router.get("/api/status")
async def get_status(request: Request):
    """Last and next fetch time and per-identity cache state."""
    return current_status(request).model_dump(mode='json')


@router.post("/api/resync")
async def resync(orchestrator: FetchOrchestrator = Depends(get_orchestrator)):
    """Run a fetch cycle and report its outcome."""
    try:
        result = await orchestrator.refresh_all()
    except OSError as e:
        logger.error(f"Resync failed writing state: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    return {
        "success": True,
        "results": result.results,
        "sources": result.sources,
        "lastFetch": result.timestamp.isoformat(),
    }


# Admin endpoints
@router.get("/api/config")
async def read_config(
    orchestrator: FetchOrchestrator = Depends(get_orchestrator),
    user: str = Depends(require_admin),
):
    """Configured fallback URLs."""
    return {"urls": dict(orchestrator.state.urls)}


@router.put("/api/config")
async def update_config(
    update: ConfigUpdate,
    orchestrator: FetchOrchestrator = Depends(get_orchestrator),
    user: str = Depends(require_admin),
):
    """Replace fallback URLs and refresh immediately."""
    try:
        result = await orchestrator.update_urls(update.urls)
    except KeyError as e:
        raise HTTPException(status_code=400, detail=str(e.args[0]))
    except OSError as e:
        logger.error(f"Config update failed writing state: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    logger.info(f"Fallback URLs updated by {user}")
    return {
        "urls": dict(orchestrator.state.urls),
        "results": result.results,
        "lastFetch": result.timestamp.isoformat(),
    }


@router.put("/api/interval")
async def update_interval(
    update: IntervalUpdate,
    request: Request,
    user: str = Depends(require_admin),
):
    """Persist a new refresh interval and apply it to the running schedule."""
    config: AppConfig = request.app.state.config
    manager: ConfigManager = request.app.state.config_manager

    # Re-read the file so environment overrides are not written back
    stored = manager.load()
    stored.fetch_interval_minutes = update.minutes
    try:
        manager.save(stored)
    except OSError as e:
        logger.error(f"Interval update failed writing settings: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    config.fetch_interval_minutes = update.minutes
    scheduler: FetchScheduler = request.app.state.scheduler
    rescheduled = scheduler.reschedule(update.minutes)
    next_fetch = scheduler.get_next_run_time()
    logger.info(f"Refresh interval set to {update.minutes} minutes by {user}")
    return {
        "minutes": update.minutes,
        "rescheduled": rescheduled,
        "nextFetch": next_fetch.isoformat() if next_fetch else None,
    }


@router.get("/admin", response_class=HTMLResponse)
async def admin_page(
    request: Request,
    orchestrator: FetchOrchestrator = Depends(get_orchestrator),
    user: str = Depends(require_admin),
):
    """Admin page."""
    return templates.TemplateResponse(request, "admin.html", {
        "identities": orchestrator.config.identities,
        "urls": orchestrator.state.urls,
        "status": current_status(request),
    })


@router.post("/admin")
async def admin_form(
    request: Request,
    orchestrator: FetchOrchestrator = Depends(get_orchestrator),
    user: str = Depends(require_admin),
):
    """Handle the admin URL form."""
    form = await request.form()
    urls = {
        name: str(form[f"url_{name}"])
        for name in orchestrator.config.identities
        if f"url_{name}" in form
    }
    await orchestrator.update_urls(urls)
    return RedirectResponse(url="/admin", status_code=303)


def create_app(
    data_dir: Path,
    environ: Optional[Mapping[str, str]] = None,
    fetcher: Optional[Fetcher] = None,
    run_scheduler: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    environ = os.environ if environ is None else environ

    config_manager = ConfigManager(data_dir / "settings.toml")
    config = config_manager.load()
    config = apply_env_overrides(config, environ)

    state_store = StateStore(data_dir)
    calendar_store = CalendarStore(data_dir)
    orchestrator = FetchOrchestrator(
        config=config,
        fetcher=fetcher or Fetcher(config.request_timeout, config.user_agent),
        state_store=state_store,
        calendar_store=calendar_store,
        state=state_store.load(config, environ),
    )
    scheduler = FetchScheduler()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        logger.info(f"Starting calrelay with {len(config.identities)} calendars")
        if run_scheduler:
            scheduler.start()
            scheduler.schedule(orchestrator.refresh_all, config.fetch_interval_minutes)

        yield

        logger.info("Shutting down calrelay")
        scheduler.shutdown()

    app = FastAPI(title="calrelay", lifespan=lifespan)
    app.state.config = config
    app.state.config_manager = config_manager
    app.state.orchestrator = orchestrator
    app.state.scheduler = scheduler
    app.include_router(router)
    return app
