# backend/vasa/api/memory.py
import asyncio
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from pydantic import BaseModel

from vasa.agents.stage_classifier import Stage, classify, detect_breakthrough, detect_themes
from vasa.config import settings
from vasa.dependencies import get_mem0, get_openai, get_recorder, get_store, get_turn_writer
from vasa.services.context_assembler import format_turns
from vasa.services.mem0_service import Mem0Service
from vasa.services.memory_store import TURN_ROLES, MemoryStore
from vasa.services.openai_service import OpenAIService
from vasa.services.stage_recorder import StageRecorder
from vasa.services.turn_writer import TurnWriter
from vasa.utils.helpers import clamp, utcnow
from vasa.utils.logger import logger
from vasa.utils.rate_limit import RATE_LIMITS, limiter

router = APIRouter(prefix="/api/memory", tags=["memory"])

FALLBACK_RESPONSE = (
    "I'm here with you. I'm having a little trouble reaching my memory right now, "
    "so could you tell me a bit more about what's on your mind?"
)
TIMEOUT_NOTE = "Timeout occurred - using fallback response"
MEMORY_SOURCES = ("mem0", "store", "both")


class ChatRequest(BaseModel):
    userId: Optional[str] = None
    message: Optional[str] = None


class SearchRequest(BaseModel):
    userId: Optional[str] = None
    query: Optional[str] = None
    limit: Optional[int] = 5


class TurnRequest(BaseModel):
    userId: Optional[str] = None
    conversationId: Optional[str] = None
    role: Optional[str] = None
    content: Optional[str] = None
    stage: Optional[str] = None


def _require_configured(service, category: str) -> None:
    if not service.configured:
        raise HTTPException(status_code=500, detail=f"{category} not configured")


def _store_chat_turns(
    store: MemoryStore, recorder: StageRecorder, user_id: str, message: str, response: str
) -> None:
    """Keep chat exchanges in the store too; failures do not affect the reply."""
    if store.get_user(user_id) is None:
        return
    try:
        current = store.current_stage(user_id)
        detected = classify(message, current)
        store.append_turn(user_id, "user", message, detected, source="memory_chat")
        store.append_turn(user_id, "assistant", response, detected, source="memory_chat")
    except Exception as e:
        logger.warning(f"[MemoryChat] Could not store chat turns for {user_id}: {e}")
        return
    recorder.record_transition_safe(user_id, detected, current, trigger=message)


@router.post("/chat")
@limiter.limit(RATE_LIMITS["chat"])
async def memory_chat(
    request: Request,
    payload: ChatRequest,
    background_tasks: BackgroundTasks,
    store: MemoryStore = Depends(get_store),
    mem0: Mem0Service = Depends(get_mem0),
    openai: OpenAIService = Depends(get_openai),
    recorder: StageRecorder = Depends(get_recorder),
    writer: TurnWriter = Depends(get_turn_writer),
):
    if not payload.userId or not payload.message:
        raise HTTPException(status_code=400, detail="userId and message are required")
    _require_configured(mem0, "Mem0")
    _require_configured(openai, "OpenAI")

    user_id, message = payload.userId, payload.message

    async def _answer():
        memories = await mem0.search(user_id, message, settings.CHAT_MEMORY_LIMIT)
        reply = await openai.generate_contextual_response(message, memories)
        return reply, memories

    try:
        reply, memories = await asyncio.wait_for(_answer(), timeout=settings.CHAT_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.warning(f"[MemoryChat] Timed out after {settings.CHAT_TIMEOUT_SECONDS}s for {user_id}, using fallback")
        return {
            "success": True,
            "response": FALLBACK_RESPONSE,
            "memoriesUsed": 0,
            "note": TIMEOUT_NOTE,
        }
    except Exception as e:
        logger.error(f"[MemoryChat] Failed for {user_id}: {type(e).__name__}: {e}")
        raise HTTPException(status_code=500, detail="Failed to process chat")

    exchange = [
        {"role": "user", "content": message},
        {"role": "assistant", "content": reply},
    ]
    metadata = {"api_interaction": True, "timestamp": utcnow().isoformat()}
    background_tasks.add_task(writer.run, lambda: mem0.add(exchange, user_id, metadata), "memory_chat")
    _store_chat_turns(store, recorder, user_id, message, reply)

    return {"success": True, "response": reply, "memoriesUsed": len(memories)}


@router.get("/get")
async def get_memories(
    userId: Optional[str] = None,
    source: str = "both",
    limit: int = 10,
    store: MemoryStore = Depends(get_store),
    mem0: Mem0Service = Depends(get_mem0),
):
    if not userId:
        raise HTTPException(status_code=400, detail="userId is required")

    # "firebase" is what older clients send for the document store
    source = "store" if source == "firebase" else source
    if source not in MEMORY_SOURCES:
        raise HTTPException(status_code=400, detail=f"source must be one of {', '.join(MEMORY_SOURCES)}")

    limit = clamp(limit, 1, 100, 10)
    memories = {}

    if source in ("mem0", "both"):
        _require_configured(mem0, "Mem0")
        try:
            memories["mem0"] = await mem0.get_all(userId, limit)
        except Exception as e:
            logger.error(f"[MemoryGet] Mem0 fetch failed for {userId}: {e}")
            raise HTTPException(status_code=500, detail="Failed to get memories")

    if source in ("store", "both"):
        user = store.get_user(userId)
        memories["store"] = {
            "profile": user.profile_dict() if user else None,
            "turns": format_turns(store.recent_turns(userId, limit)),
            "stage_history": [t.to_dict() for t in store.stage_history(userId)],
        }

    return {"success": True, "memories": memories, "timestamp": utcnow().isoformat()}


@router.post("/search")
async def search_memories(
    payload: SearchRequest,
    mem0: Mem0Service = Depends(get_mem0),
):
    if not payload.userId or not payload.query:
        raise HTTPException(status_code=400, detail="userId and query are required")
    _require_configured(mem0, "Mem0")

    try:
        results: List[dict] = await mem0.search(payload.userId, payload.query, clamp(payload.limit, 1, 50, 5))
    except Exception as e:
        logger.error(f"[MemorySearch] Failed for {payload.userId}: {e}")
        raise HTTPException(status_code=500, detail="Failed to search memories")

    return {"success": True, "memories": results, "total": len(results)}


@router.post("/turn")
def store_turn(
    payload: TurnRequest,
    store: MemoryStore = Depends(get_store),
    recorder: StageRecorder = Depends(get_recorder),
):
    """Persist one live voice turn: classify, move the stage, append."""
    if not payload.userId or not payload.content:
        raise HTTPException(status_code=400, detail="userId and content are required")
    if payload.role not in TURN_ROLES:
        raise HTTPException(status_code=400, detail=f"role must be one of {', '.join(TURN_ROLES)}")

    user_id = payload.userId
    if store.get_user(user_id) is None:
        store.create_user(user_id)

    current = store.current_stage(user_id)
    if payload.stage:
        try:
            detected = Stage.parse(payload.stage)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown stage: {payload.stage}")
    else:
        detected = classify(payload.content, current)

    breakthrough = detect_breakthrough(payload.content) if payload.role == "user" else None
    turn = store.append_turn(
        user_id,
        payload.role,
        payload.content,
        detected,
        conversation_id=payload.conversationId,
        source="voice_session",
        metadata={"themes": detect_themes(payload.content), "breakthrough": breakthrough},
    )

    transitioned = recorder.record_transition_safe(
        user_id, detected, current, conversation_id=payload.conversationId, trigger=payload.content
    )
    if breakthrough:
        store.increment_breakthroughs(user_id)

    return {
        "success": True,
        "turnId": turn.id,
        "stage": detected.value,
        "symbol": detected.symbol,
        "transitioned": transitioned,
    }
