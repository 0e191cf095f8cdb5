# backend/vasa/api/status.py
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from vasa.config import VERSION, settings
from vasa.dependencies import get_elevenlabs, get_mem0, get_openai
from vasa.services.elevenlabs_service import ElevenLabsService
from vasa.services.mem0_service import Mem0Service
from vasa.services.openai_service import OpenAIService
from vasa.utils.helpers import utcnow

router = APIRouter(prefix="/api", tags=["status"])

ENDPOINTS = [
    "POST /api/start-conversation",
    "POST /api/end-conversation",
    "POST /api/webhook",
    "POST /api/conversation-initiation-webhook",
    "GET|POST /api/get-conversation-context",
    "POST /api/memory/chat",
    "GET /api/memory/get",
    "POST /api/memory/search",
    "POST /api/memory/turn",
    "GET /api/status",
]


def _label(ok: bool, missing: str) -> str:
    return "configured" if ok else f"missing {missing}"


@router.get("/status")
def api_status(
    mem0: Mem0Service = Depends(get_mem0),
    openai: OpenAIService = Depends(get_openai),
    elevenlabs: ElevenLabsService = Depends(get_elevenlabs),
):
    """200 when every collaborator is configured, 206 otherwise."""
    checks = {
        "openai": openai.configured,
        "mem0": mem0.configured,
        "webhook": elevenlabs.webhook_security_enabled,
        "database": bool(settings.DATABASE_URL),
    }
    all_configured = all(checks.values())

    body = {
        "status": "online",
        "timestamp": utcnow().isoformat(),
        "version": VERSION,
        "environment": settings.ENVIRONMENT,
        "services": {
            "api": "online",
            "webhook": _label(checks["webhook"], "webhook secret"),
            "mem0": _label(checks["mem0"], "Mem0 API key"),
            "openai": _label(checks["openai"], "OpenAI API key"),
            "database": _label(checks["database"], "DATABASE_URL"),
        },
        "endpoints": ENDPOINTS,
        "configuration": "complete" if all_configured else "incomplete",
    }
    return JSONResponse(status_code=200 if all_configured else 206, content=body)
