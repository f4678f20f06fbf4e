"""
Listing Sync API - FastAPI Backend
Serves the CAPTCHA tap page and relay endpoints, and exposes the
reconcile and status-check jobs over HTTP.
"""

import json
from datetime import datetime
from string import Template
from typing import Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Depends, Query, Request
from fastapi.responses import HTMLResponse, Response
from playwright.async_api import Error as PlaywrightError
from pydantic import BaseModel, Field, validator

from api.config import config
from api.logging_config import logger, log_request, setup_logging
from browser.remote_assist import RemoteAssistRelay, get_relay
from core.engine import ALL_SOURCES_JOB, ListingSyncEngine, UnknownSourceError, get_engine
from core.error_handler import CaptchaSessionNotFound, ListingSyncError
from core.reconciler import CrawlReconciler
from core.scheduler import JobScheduler
from core.status_checker import SWEEP_JOB

VERSION = "1.0.0"


# === Lifespan Management ===

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    setup_logging()
    logger.info("Starting Listing Sync API...")
    for problem in config.validate():
        logger.warning(f"Config: {problem}")

    engine = get_engine()
    await engine.initialize()
    logger.info("Database initialized")

    if config.SCHEDULER_ENABLED:
        scheduler = JobScheduler.from_config(engine, config)
        scheduler.start()
        app.state.scheduler = scheduler
    else:
        logger.info("Scheduler disabled")

    yield
    # Shutdown
    logger.info("Shutting down Listing Sync API...")
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler:
        scheduler.stop()
    await engine.close()
    logger.info("Browser sessions closed")


# Initialize FastAPI app
app = FastAPI(
    title="Listing Sync API",
    description="Vehicle listing acquisition and reconciliation service",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if config.DEBUG else None,
    redoc_url="/redoc" if config.DEBUG else None,
)


# === Request Logging Middleware ===

@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all HTTP requests."""
    start_time = datetime.now()
    response = await call_next(request)
    duration = (datetime.now() - start_time).total_seconds() * 1000
    log_request(request.method, request.url.path, response.status_code, duration)
    return response


# === Pydantic Models with Validation ===

class ClickRequest(BaseModel):
    x: float
    y: float
    displayWidth: float = 0
    displayHeight: float = 0


class CheckStatusRequest(BaseModel):
    url: str = Field(..., min_length=1)

    @validator('url')
    def absolute_url(cls, v):
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError('url must be an absolute http(s) URL')
        return v


# === CAPTCHA Tap Page ===

SOLVE_PAGE = Template("""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <title>Solve CAPTCHA</title>
  <style>
    * { box-sizing: border-box; }
    body { font-family: system-ui, sans-serif; margin: 0; padding: 16px; background: #1a1a1a; color: #eee; min-height: 100vh; }
    h1 { font-size: 1.25rem; margin-bottom: 8px; }
    p { color: #999; font-size: 0.9rem; margin-bottom: 16px; }
    #imgWrap { max-width: 100%; overflow: auto; -webkit-overflow-scrolling: touch; }
    #captchaImg { display: block; max-width: 100%; height: auto; cursor: pointer; border: 2px solid #444; border-radius: 8px; }
    #status { margin-top: 12px; font-size: 0.85rem; color: #6a6; }
    .error { color: #f66; }
  </style>
</head>
<body>
  <h1>Solve the CAPTCHA</h1>
  <p>Tap the screenshot wherever the CAPTCHA needs a click (for example "I'm not a robot").</p>
  <div id="imgWrap"><img id="captchaImg" alt="CAPTCHA" /></div>
  <div id="status">Loading...</div>
  <script>
    const sessionId = $session_id;
    const baseUrl = $base_url;
    const img = document.getElementById('captchaImg');
    const status = document.getElementById('status');

    function loadScreenshot() {
      fetch(baseUrl + '/captcha-session/' + sessionId + '/screenshot')
        .then(r => { if (!r.ok) throw new Error(r.status); return r.blob(); })
        .then(blob => {
          img.src = URL.createObjectURL(blob);
          img.onload = () => { status.textContent = 'Tap the image.'; };
        })
        .catch(() => { status.textContent = 'Could not load the screenshot. Session expired?'; status.classList.add('error'); });
    }

    img.addEventListener('click', function(e) {
      const rect = img.getBoundingClientRect();
      status.textContent = 'Sending tap...';
      fetch(baseUrl + '/captcha-session/' + sessionId + '/click', {
        method: 'POST',
        headers: { 'Content-Type': 'application/json' },
        body: JSON.stringify({
          x: e.clientX - rect.left,
          y: e.clientY - rect.top,
          displayWidth: rect.width,
          displayHeight: rect.height
        })
      })
        .then(r => { if (!r.ok) throw new Error(); status.textContent = 'Tap sent. Once the CAPTCHA is solved you can close this page.'; loadScreenshot(); })
        .catch(() => { status.textContent = 'Could not send the tap.'; status.classList.add('error'); });
    });

    loadScreenshot();
    setInterval(loadScreenshot, 5000);
  </script>
</body>
</html>
""")


def _base_url(request: Request) -> str:
    if config.APP_URL:
        return config.APP_URL.rstrip("/")
    return str(request.base_url).rstrip("/")


# === Health ===

@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "message": f"Listing Sync API v{VERSION}", "docs": "/docs" if config.DEBUG else "disabled"}


@app.get("/health")
async def health(engine: ListingSyncEngine = Depends(get_engine)):
    """Detailed health check."""
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "sources": sorted(engine.extractors),
        "running_jobs": engine.reconciler.run_guard.running_jobs(),
        "captcha_sessions": len(engine.relay.store),
        "browser": engine.session_manager.get_stats(),
        "version": VERSION,
    }


# === CAPTCHA Relay Endpoints ===

@app.get("/captcha-solve/{session_id}", response_class=HTMLResponse)
async def captcha_solve_page(session_id: str, request: Request, relay: RemoteAssistRelay = Depends(get_relay)):
    """Page for solving a CAPTCHA from a phone: tapping the screenshot clicks the server-side browser."""
    try:
        relay.get_session(session_id)
    except CaptchaSessionNotFound:
        raise HTTPException(status_code=404, detail="Session not found or expired")

    html = SOLVE_PAGE.substitute(
        session_id=json.dumps(session_id),
        base_url=json.dumps(_base_url(request)),
    )
    return HTMLResponse(html)


@app.get("/captcha-session/{session_id}/screenshot")
async def captcha_screenshot(session_id: str, relay: RemoteAssistRelay = Depends(get_relay)):
    try:
        session = relay.get_session(session_id)
        image = await relay.screenshot(session_id)
    except (CaptchaSessionNotFound, PlaywrightError):
        raise HTTPException(status_code=404, detail="Session not found")

    return Response(
        content=image,
        media_type="image/png",
        headers={
            "X-Viewport-Width": str(session.viewport_width),
            "X-Viewport-Height": str(session.viewport_height),
        },
    )


@app.post("/captcha-session/{session_id}/click")
async def captcha_click(session_id: str, body: ClickRequest, relay: RemoteAssistRelay = Depends(get_relay)):
    try:
        await relay.record_tap(session_id, body.x, body.y, body.displayWidth, body.displayHeight)
    except CaptchaSessionNotFound:
        raise HTTPException(status_code=404, detail="Session not found or expired")
    return {"ok": True}


# === Parser Endpoints ===

@app.post("/parser/check-status")
async def check_status(body: CheckStatusRequest, engine: ListingSyncEngine = Depends(get_engine)):
    """Classify a single listing and store the new status if it is in the catalog."""
    change = await engine.check_status(body.url)
    return {
        "url": change.url,
        "old_status": change.old_status.value if change.old_status else None,
        "status": change.new_status.value,
    }


@app.get("/parser/check-status")
async def check_stale_listings(
    days: Optional[int] = Query(default=None, ge=0),
    check_all: bool = False,
    engine: ListingSyncEngine = Depends(get_engine),
):
    """Re-check listings whose status was not confirmed within ``days`` days."""
    result = await engine.sweep_statuses(days_old=days, check_all=check_all)
    if result is None:
        return {"skipped": True, "reason": f"{SWEEP_JOB} already running"}
    return result.to_dict()


@app.post("/parser/reconcile")
async def reconcile_all(engine: ListingSyncEngine = Depends(get_engine)):
    """Reconcile every configured source, one after another."""
    results = await engine.reconcile_all()
    if results is None:
        return {"skipped": True, "reason": f"{ALL_SOURCES_JOB} already running"}
    return {
        "sources": {
            source_tag: result.to_dict() if result is not None else {"aborted": True}
            for source_tag, result in results.items()
        }
    }


@app.post("/parser/reconcile/{source_tag}")
async def reconcile_source(source_tag: str, engine: ListingSyncEngine = Depends(get_engine)):
    """Crawl a source, upsert what it shows and mark what it no longer shows as removed."""
    try:
        result = await engine.reconcile_source(source_tag)
    except UnknownSourceError:
        raise HTTPException(status_code=404, detail=f"Unknown source: {source_tag}")
    except ListingSyncError as e:
        logger.error(f"Reconcile of {source_tag} aborted: {e}")
        raise HTTPException(status_code=502, detail=str(e))

    if result is None:
        return {"skipped": True, "reason": f"{CrawlReconciler.job_name(source_tag)} already running"}
    return result.to_dict()


@app.get("/parser/stats")
async def listing_stats(source_tag: Optional[str] = None, engine: ListingSyncEngine = Depends(get_engine)):
    """Listing counts by status, optionally for one source."""
    return await engine.store.count_by_status(source_tag)
