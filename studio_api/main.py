"""
Studio API
FastAPI backend for class scheduling, registrations and check-ins.
"""

import os
import logging
import secrets
import uuid
from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.sessions import SessionMiddleware

from studio_api import __version__
from studio_api.routers import checkins, registrations, schedules
from studio_api.services.errors import StudioError

# Setup logging
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Studio API",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)

allowed_origins = [
    o.strip()
    for o in str(os.getenv("CORS_ORIGINS", "http://localhost:3000")).split(",")
    if o.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

is_dev = os.getenv("DEVELOPMENT_MODE", "False").lower() == "true"
session_secret = str(os.getenv("SESSION_SECRET") or "").strip()
if not session_secret:
    logger.warning("SESSION_SECRET not set, using an ephemeral secret (sessions reset on restart)")
    session_secret = secrets.token_urlsafe(32)

app.add_middleware(
    SessionMiddleware,
    secret_key=session_secret,
    same_site="lax",
    https_only=not is_dev,
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    rid = request.headers.get("x-request-id") or uuid.uuid4().hex[:12]
    request.state.request_id = rid
    response = await call_next(request)
    response.headers["X-Request-ID"] = rid
    return response


@app.exception_handler(StudioError)
async def studio_error_handler(request: Request, exc: StudioError):
    rid = getattr(getattr(request, "state", object()), "request_id", "-")
    logger.info(f"{request.url.path}: {exc.code} {exc.message} rid={rid}")
    return JSONResponse(exc.to_dict(), status_code=exc.http_status)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    rid = getattr(getattr(request, "state", object()), "request_id", "-")
    logger.exception(f"Unhandled error on {request.url.path} rid={rid}")
    return JSONResponse(
        {"ok": False, "error": "Internal server error", "type": "INTERNAL"},
        status_code=500,
    )


@app.get("/health")
async def health():
    return {"status": "healthy"}


app.include_router(schedules.router, tags=["Schedules"])
app.include_router(registrations.router, tags=["Registrations"])
app.include_router(checkins.router, tags=["Check-ins"])
