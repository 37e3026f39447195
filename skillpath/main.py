"""
main.py - SkillPath FastAPI application entry point.

Start with: uvicorn skillpath.main:app --reload --port 8000
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from skillpath.config import settings

# ---------------------------------------------------------------------------
# Logging - configured before anything else
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan - startup & shutdown hooks
# ---------------------------------------------------------------------------
def _make_lifespan(database_url: Optional[str], generator: Any):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup:
          1. Database engine + session factory, create missing tables
          2. In-memory SessionStore and RateLimiter (process-local)
          3. Generator (Mistral, or simulated when no API key) behind a semaphore
          4. Persistence gate, transcript backend + generation runner
          5. Skill catalogue
        Shutdown:
          1. Cancel outstanding generation tasks
          2. Drop all sessions, dispose the engine
        """
        from skillpath.agents.assessment_agent.llm_service import build_generator
        from skillpath.agents.assessment_agent.orchestrator import GenerationRunner
        from skillpath.agents.assessment_agent.persistence import PersistenceGate, SqlAssessmentBackend
        from skillpath.agents.assessment_agent.prompts import default_catalogue
        from skillpath.database import build_engine, build_session_factory, create_schema
        from skillpath.rate_limit import RateLimiter
        from skillpath.sessions import SessionStore

        # --- 1. Database ---
        engine = build_engine(database_url or settings.database_url, echo=settings.debug)
        await create_schema(engine)
        app.state.engine = engine
        app.state.session_factory = build_session_factory(engine)
        logger.info("Database schema ready")

        # --- 2. In-memory state ---
        app.state.sessions = SessionStore()
        app.state.rate_limiter = RateLimiter()

        # --- 3. Generator - semaphore MUST be created inside async context ---
        app.state.generation_semaphore = asyncio.Semaphore(settings.generation_concurrency)
        app.state.generator = generator or build_generator(
            settings.mistral_api_key,
            app.state.generation_semaphore,
            model=settings.mistral_model,
            repair_model=settings.mistral_repair_model,
            temperature=settings.generation_temperature,
            repair_temperature=settings.repair_temperature,
            max_tokens=settings.generation_max_tokens,
            repair_max_tokens=settings.repair_max_tokens,
            attempts=settings.generation_retry_attempts,
            repair_attempts=settings.repair_retry_attempts,
        )
        logger.info(
            "Generator initialized type=%s concurrency=%d",
            type(app.state.generator).__name__, settings.generation_concurrency,
        )

        # --- 4. Persistence gate + runner ---
        backend = SqlAssessmentBackend(app.state.session_factory)
        app.state.transcript = backend
        app.state.gate = PersistenceGate(app.state.sessions, backend)
        app.state.runner = GenerationRunner(
            app.state.sessions, app.state.generator, app.state.gate, transcript=backend,
        )

        # --- 5. Skill catalogue ---
        app.state.catalogue = default_catalogue()

        logger.info("SkillPath v%s starting up", settings.app_version)
        yield

        # --- Shutdown ---
        await app.state.runner.shutdown()
        app.state.sessions.teardown()
        app.state.rate_limiter.reset()
        await engine.dispose()
        logger.info("SkillPath shutting down")

    return lifespan


# ---------------------------------------------------------------------------
# Error response helper
# ---------------------------------------------------------------------------
def _make_error_response(
    code: str,
    message: str,
    details: list[dict[str, Any]] | None = None,
    status_code: int = 500,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Build a standard {error: {code, message, details}} response."""
    body = {
        "error": {
            "code": code,
            "message": message,
            "details": details or [],
        }
    }
    return JSONResponse(status_code=status_code, content=body, headers=headers)


# ---------------------------------------------------------------------------
# Global exception handlers
# ---------------------------------------------------------------------------
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    Converts Pydantic / FastAPI 422 validation errors to standard format.
    Returns ALL field violations in one response.
    """
    details = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"] if loc != "body")
        details.append({"field": field or None, "issue": error["msg"]})
    return _make_error_response(
        code="VALIDATION_ERROR",
        message="Request validation failed",
        details=details,
        status_code=422,
    )


_CODE_MAP = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
}


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Converts HTTPException to standard error format, keeping its headers (Retry-After)."""
    return _make_error_response(
        code=_CODE_MAP.get(exc.status_code, f"HTTP_{exc.status_code}"),
        message=str(exc.detail),
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    """Explicit ValueError raises from business logic surface as 422 VALIDATION_ERROR."""
    return _make_error_response(code="VALIDATION_ERROR", message=str(exc), status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Catch-all for unexpected errors.
    DEBUG=true  -> includes exception type & message in details (dev only).
    DEBUG=false -> generic message; full traceback logged server-side only.
    """
    logger.error("Unhandled exception on %s %s", request.method, request.url.path, exc_info=True)
    if settings.debug:
        details = [{"issue": f"{type(exc).__name__}: {exc}"}]
        message = "An unexpected error occurred (debug details included)"
    else:
        details = []
        message = "An unexpected error occurred"
    return _make_error_response(
        code="INTERNAL_ERROR",
        message=message,
        details=details,
        status_code=500,
    )


# ---------------------------------------------------------------------------
# Health endpoint (no auth required)
# ---------------------------------------------------------------------------
async def health_check() -> dict:
    """Returns service health status for load balancers and deployment checks."""
    return {
        "status": "ok",
        "version": settings.app_version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------
def create_app(database_url: Optional[str] = None, generator: Any = None) -> FastAPI:
    """
    Build the FastAPI app. Tests pass a SQLite database_url and a fake generator;
    production uses settings for both.
    """
    from skillpath.agents.assessment_agent.routes import router as assessment_router

    application = FastAPI(
        title="SkillPath API",
        version=settings.app_version,
        description="Conversational skill assessment that produces a personalised learning path.",
        lifespan=_make_lifespan(database_url, generator),
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["ETag", "Retry-After"],
    )
    application.add_exception_handler(RequestValidationError, validation_exception_handler)
    application.add_exception_handler(StarletteHTTPException, http_exception_handler)
    application.add_exception_handler(ValueError, value_error_handler)
    application.add_exception_handler(Exception, unhandled_exception_handler)
    application.add_api_route("/api/health", health_check, methods=["GET"], tags=["System"])
    application.include_router(assessment_router)
    return application


app = create_app()
