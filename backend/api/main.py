from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends, HTTPException, Query, BackgroundTasks
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from typing import List, Optional, Dict, Any
from datetime import datetime
import logging
import asyncio
import re

from api.database import get_db, init_db, ScrapeRun, SessionLocal, engine
from api.config import settings
from scrapers.manager import RunController
from pydantic import BaseModel

settings.log_dir.mkdir(parents=True, exist_ok=True)

ANSI_ESCAPE = re.compile(r'\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])')
LOG_LEVEL = getattr(logging, settings.log_level.upper())


class ColorStripFormatter(logging.Formatter):
    """Drops the Colors escape codes so logs/backend.log stays plain text."""

    def format(self, record):
        return ANSI_ESCAPE.sub('', super().format(record))


def build_handlers() -> List[logging.Handler]:
    """File handler (colours stripped) plus a colour-preserving console handler."""
    to_file = logging.FileHandler(settings.log_file, encoding='utf-8')
    to_file.setFormatter(ColorStripFormatter(settings.log_format))
    to_console = logging.StreamHandler()
    to_console.setFormatter(logging.Formatter(settings.log_format))
    return [to_file, to_console]


logging.basicConfig(level=LOG_LEVEL, handlers=build_handlers(), force=True)

# Per-source loggers ('scraper.realtor', 'scraper.centris') write once, not via root
scraper_logger = logging.getLogger('scraper')
scraper_logger.propagate = False
if not scraper_logger.handlers:
    for handler in build_handlers():
        scraper_logger.addHandler(handler)
scraper_logger.setLevel(LOG_LEVEL)

logger = logging.getLogger(__name__)


class PollingEndpointFilter(logging.Filter):
    """Hides access-log lines for endpoints the dashboard polls."""
    QUIET_PATHS = ('/api/scraper/status', '/health')

    def filter(self, record):
        message = record.getMessage()
        return not any(path in message for path in self.QUIET_PATHS)


logging.getLogger("uvicorn.access").addFilter(PollingEndpointFilter())


async def dispose_engine():
    """Close pooled database connections without blocking the event loop."""
    loop = asyncio.get_running_loop()
    try:
        await asyncio.wait_for(
            loop.run_in_executor(None, lambda: engine.dispose(close=True)),
            timeout=2.0
        )
        logger.info("Database connections closed")
    except asyncio.TimeoutError:
        logger.warning("Engine dispose timed out, closing synchronously")
        engine.dispose(close=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("=" * 60)
    logger.info("Listing Tracker backend starting")
    logger.info(f"Database: {settings.database_url} | log file: {settings.log_file}")
    logger.info(
        f"Sources: realtor={'on' if settings.enable_realtor_scraping else 'off'}, "
        f"centris={'on' if settings.enable_centris_scraping else 'off'}"
    )
    init_db()
    logger.info("=" * 60)

    yield

    logger.info("Listing Tracker backend stopping")
    try:
        await asyncio.wait_for(dispose_engine(), timeout=5.0)
    except asyncio.TimeoutError:
        logger.warning("Shutdown cleanup timed out")
    logger.info("Shutdown complete")


app = FastAPI(
    title="Listing Tracker API",
    version="1.0.0",
    lifespan=lifespan
)

# Wildcard origins cannot be combined with credentials
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Pydantic models for API responses
class ScrapeRunResponse(BaseModel):
    id: int
    run_type: str
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    tracking_lists_processed: Optional[int] = 0
    listings_found: Optional[int] = 0
    listings_new: Optional[int] = 0
    listings_updated: Optional[int] = 0
    listings_delisted: Optional[int] = 0
    errors: Optional[List[Dict[str, Any]]] = None

    class Config:
        from_attributes = True


class ScraperStatusResponse(BaseModel):
    running: bool
    current_run: Optional[ScrapeRunResponse] = None
    last_run: Optional[ScrapeRunResponse] = None


class RunStartedResponse(BaseModel):
    id: int


async def run_scrape_in_background(run_id: int):
    """Execute a started run on its own database session."""
    db = SessionLocal()
    try:
        await RunController(db).execute_run(run_id)
    finally:
        db.close()


# API Endpoints

@app.get("/")
async def root():
    return {"message": "Listing Tracker API", "version": "1.0.0"}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/api/scraper/run", status_code=202, response_model=RunStartedResponse)
async def trigger_scrape(
    background_tasks: BackgroundTasks,
    run_type: str = Query("manual", pattern="^(manual|scheduled)$"),
    db: Session = Depends(get_db)
):
    """Start a scrape run; it executes in the background"""
    controller = RunController(db)
    if controller.is_run_in_progress():
        return JSONResponse(
            status_code=409,
            content={"error": "CONFLICT", "message": "A scrape run is already in progress"},
        )

    run_id = controller.start_run(run_type)
    background_tasks.add_task(run_scrape_in_background, run_id)
    return {"id": run_id}


@app.get("/api/scraper/runs", response_model=List[ScrapeRunResponse])
async def list_runs(
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db)
):
    """Most recent scrape runs first"""
    return db.query(ScrapeRun).order_by(ScrapeRun.started_at.desc(), ScrapeRun.id.desc()).limit(limit).all()


@app.get("/api/scraper/runs/{run_id}", response_model=ScrapeRunResponse)
async def get_run(run_id: int, db: Session = Depends(get_db)):
    run = db.get(ScrapeRun, run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Scrape run not found")
    return run


@app.get("/api/scraper/status", response_model=ScraperStatusResponse)
async def scraper_status(db: Session = Depends(get_db)):
    """Whether a run is in progress, plus the current and last finished runs"""
    current = (
        db.query(ScrapeRun)
        .filter(ScrapeRun.status == 'running')
        .order_by(ScrapeRun.started_at.desc())
        .first()
    )
    last = (
        db.query(ScrapeRun)
        .filter(ScrapeRun.status != 'running')
        .order_by(ScrapeRun.started_at.desc(), ScrapeRun.id.desc())
        .first()
    )
    return {"running": current is not None, "current_run": current, "last_run": last}


@app.get("/api/scraper/health")
async def scraper_health(db: Session = Depends(get_db)):
    """Circuit breaker, proxy budget and fingerprint state"""
    return RunController(db).get_health()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        access_log=True,
        log_config=None,  # Keep the handlers configured above
        timeout_keep_alive=5,
        timeout_graceful_shutdown=5.0,
    )
