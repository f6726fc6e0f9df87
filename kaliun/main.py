"""Kaliun Connect Server - FastAPI Application Entry Point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse
from sqlmodel import Session

from kaliun.api.deps import RedirectToLogin, login_redirect
from kaliun.config import settings
from kaliun.database import engine, init_db
from kaliun.errors import register_exception_handlers
from kaliun.services import store
from kaliun.services.identity import ACCESS_COOKIE, build_strategy
from kaliun.utils.clock import isoformat, utcnow

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database and identity backend on startup."""
    init_db()
    with Session(engine) as session:
        store.delete_expired_local_sessions(session)
    app.state.identity = build_strategy(settings)
    logger.info("%s listening on %s", settings.server_name, settings.base_url)
    yield


app = FastAPI(
    title="Kaliun Connect",
    description="Provisioning and OAuth device authorization for Kaliun home servers",
    version="2.0.0",
    lifespan=lifespan,
)

# Also available before startup runs (mounted apps, tests without lifespan)
app.state.identity = build_strategy(settings)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)


@app.exception_handler(RedirectToLogin)
async def _redirect_to_login(_: Request, exc: RedirectToLogin):
    return login_redirect()


# --- Register API routers ---
from kaliun.api.auth import router as auth_router  # noqa: E402
from kaliun.api.claim import router as claim_router  # noqa: E402
from kaliun.api.dashboard import router as dashboard_router  # noqa: E402
from kaliun.api.installations import router as installations_router  # noqa: E402
from kaliun.api.oauth import router as oauth_router  # noqa: E402

API_PREFIX = "/api/v1"

# Device surface
app.include_router(installations_router, prefix=API_PREFIX)
app.include_router(oauth_router)

# Human surface
app.include_router(auth_router)
app.include_router(claim_router)
app.include_router(dashboard_router)


@app.get("/")
def root(request: Request):
    if request.cookies.get(ACCESS_COOKIE):
        return RedirectResponse("/installations", status_code=303)
    return RedirectResponse("/login", status_code=303)


@app.get("/health")
def health():
    return {"status": "ok", "timestamp": isoformat(utcnow())}
