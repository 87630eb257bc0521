"""FastAPI backend for igen: generation lifecycle, provider webhooks, catalog sync."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from igen import __version__
from igen.config import get_settings
from igen.errors import ErrorKind, IgenError, ProviderError

settings = get_settings()

logger = logging.getLogger(__name__)
logging.basicConfig(level=settings.igen_log_level.upper())


# ---------------------------------------------------------------------------
# Lifespan: poll sweeper runs alongside the API
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    from igen.services import build_sweeper

    current = get_settings()
    if not current.igen_webhook_secret:
        logger.warning("IGEN_WEBHOOK_SECRET is not set; webhook callers are not authenticated")
    sweeper = build_sweeper() if current.igen_sweeper_enabled else None
    if sweeper is not None:
        sweeper.start()
    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.stop()


app = FastAPI(
    title="igen API",
    description="Image-generation orchestration: submit, reconcile, browse.",
    version=__version__,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Error mapping: stable {"error": {"kind", "message"}} bodies
# ---------------------------------------------------------------------------
STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.PROVIDER_UNREACHABLE: 503,
    ErrorKind.PROVIDER_REJECTED: 502,
    ErrorKind.PROVIDER_AUTH: 502,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.STORAGE: 500,
    ErrorKind.INVALID_WEBHOOK: 400,
    ErrorKind.INTERNAL: 500,
}


def error_response(kind: ErrorKind, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=STATUS_BY_KIND.get(kind, 500),
        content={"error": {"kind": kind.value, "message": message}},
    )


@app.exception_handler(IgenError)
async def igen_error_handler(request: Request, exc: IgenError):
    if isinstance(exc, ProviderError):
        # Raw provider bodies stay in the logs
        logger.warning(
            "provider_error path=%s provider=%s status=%s body=%s",
            request.url.path,
            exc.provider,
            exc.status_code,
            exc.body[:500],
        )
    elif STATUS_BY_KIND.get(exc.kind, 500) >= 500:
        logger.error("request_failed path=%s kind=%s error=%s", request.url.path, exc.kind.value, exc.message)
    return error_response(exc.kind, exc.message)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{location}: {first.get('msg', 'invalid request')}" if location else first.get("msg", "invalid request")
    return error_response(ErrorKind.VALIDATION, message)


# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------
cors_origins = settings.cors_origin_list
logger.info("CORS configured for origins: %s", cors_origins)
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Health & root
# ---------------------------------------------------------------------------
class HealthResponse(BaseModel):
    status: str
    data_dir: str


@app.get("/health", response_model=HealthResponse)
@app.get("/api/health", response_model=HealthResponse)
async def health():
    """Health check endpoint."""
    return HealthResponse(status="ok", data_dir=str(settings.data_dir))


@app.get("/api/")
async def root():
    return {"message": "igen API", "version": __version__}


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
from backend.routes import catalog, generations, webhooks  # noqa: E402

app.include_router(generations.router, prefix="/api", tags=["generations"])
app.include_router(catalog.router, prefix="/api", tags=["catalog"])
app.include_router(webhooks.router, tags=["webhooks"])
