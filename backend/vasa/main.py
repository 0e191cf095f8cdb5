from fastapi import FastAPI, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

import vasa.models  # noqa: F401  (registers tables on Base.metadata)
from vasa.config import VERSION, settings, validate_config, get_config_status, ConfigValidationError
from vasa.database import Base, engine, get_db
from vasa.middleware import SecurityHeadersMiddleware
from vasa.services import ElevenLabsService, Mem0Service, OpenAIService
from vasa.services.turn_writer import TurnWriter
from vasa.utils.helpers import utcnow
from vasa.utils.logger import logger
from vasa.utils.rate_limit import limiter

from vasa.api import (
    admin,
    conversations,
    memory,
    status,
    webhooks,
)

app = FastAPI(title="VASA Memory Backend", version=VERSION)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.detail})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", []) if p != "body")
    message = f"{field}: {first.get('msg', 'invalid request')}" if field else "Invalid request body"
    return JSONResponse(status_code=400, content={"success": False, "error": message})


def build_services(target: FastAPI) -> None:
    """Vendor clients live for the whole process and are shared by every request."""
    target.state.mem0 = Mem0Service()
    target.state.openai = OpenAIService()
    target.state.elevenlabs = ElevenLabsService()
    target.state.turn_writer = TurnWriter(retry_delay=settings.MEMORY_WRITE_RETRY_DELAY)


async def close_services(target: FastAPI) -> None:
    writer = getattr(target.state, "turn_writer", None)
    if writer is not None:
        await writer.drain()

    for name in ("mem0", "openai", "elevenlabs"):
        service = getattr(target.state, name, None)
        if service is None:
            continue
        try:
            await service.aclose()
        except Exception as e:
            logger.error(f"Error closing {name} client: {e}")


@app.on_event("startup")
async def startup_event():
    logger.info("VASA Memory Backend Starting...")

    try:
        result = validate_config(raise_on_error=settings.ENVIRONMENT == "production")
        for warning in result.get("warnings", []):
            logger.warning(f"Config warning: {warning}")
        for error in result.get("errors", []):
            logger.error(f"Config error: {error}")
    except ConfigValidationError as e:
        logger.critical(f"FATAL: {e}")
        raise SystemExit(1)

    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created/verified")

    build_services(app)
    logger.info("VASA Memory Backend Started")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("VASA Memory Backend Shutting Down...")
    await close_services(app)
    logger.info("VASA Memory Backend Shutdown Complete")


app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(conversations.router)
app.include_router(webhooks.router)
app.include_router(memory.router)
app.include_router(status.router)
app.include_router(admin.router)


@app.get("/")
async def root():
    return {"message": "VASA Memory API", "status": "running", "version": VERSION}


@app.get("/health")
def health(db: Session = Depends(get_db)):
    """Database probe plus configuration presence."""
    health_status = {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "version": VERSION,
        "checks": {},
    }

    try:
        db.execute(text("SELECT 1"))
        health_status["checks"]["database"] = "ok"
    except Exception as e:
        health_status["checks"]["database"] = f"error: {str(e)[:100]}"
        health_status["status"] = "unhealthy"

    config_status = get_config_status()
    health_status["checks"]["config"] = config_status

    if health_status["status"] == "healthy" and not (
        config_status.get("mem0_configured") and config_status.get("openai_configured")
    ):
        health_status["status"] = "degraded"

    return health_status
