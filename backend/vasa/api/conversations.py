# backend/vasa/api/conversations.py
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from vasa.agents.stage_classifier import DEFAULT_STAGE, Stage
from vasa.config import settings
from vasa.dependencies import get_assembler, get_elevenlabs, get_resolver, get_store
from vasa.services.context_assembler import ContextAssembler, format_turns
from vasa.services.conversation_resolver import ConversationResolver, new_conversation_id
from vasa.services.elevenlabs_service import ElevenLabsService
from vasa.services.memory_store import MemoryStore
from vasa.utils.helpers import clamp, utcnow
from vasa.utils.logger import logger

router = APIRouter(prefix="/api", tags=["conversations"])

NO_CONTEXT_TEXT = "No previous conversation context available."
MEMORY_UNAVAILABLE_TEXT = "Memory system temporarily unavailable."


class StartConversationRequest(BaseModel):
    userUUID: Optional[str] = None
    conversationData: Optional[Dict[str, Any]] = None
    agentConfig: Optional[Dict[str, Any]] = None
    userProfile: Optional[Dict[str, Any]] = None


class EndConversationRequest(BaseModel):
    conversationId: Optional[str] = None
    reason: Optional[str] = "user_ended"


class ConversationContextRequest(BaseModel):
    user_id: Optional[str] = None
    conversation_id: Optional[str] = None
    limit: Optional[int] = None


def first_message(is_new: bool) -> str:
    if is_new:
        return "Hello! It's great to meet you!"
    return "Hello! I remember our previous conversations. It's good to talk with you again!"


def dynamic_variables(user_id: str, display_name: Optional[str], stage: Stage, summary: str) -> Dict[str, Any]:
    return {
        "user_id": user_id,
        "user_name": display_name or "User",
        "current_stage": stage.value,
        "current_stage_symbol": stage.symbol,
        "current_stage_description": stage.description,
        "previous_conversations": summary,
    }


@router.post("/start-conversation")
async def start_conversation(
    payload: StartConversationRequest,
    store: MemoryStore = Depends(get_store),
    resolver: ConversationResolver = Depends(get_resolver),
    assembler: ContextAssembler = Depends(get_assembler),
    elevenlabs: ElevenLabsService = Depends(get_elevenlabs),
):
    user_id = (payload.userUUID or "").strip()
    if not user_id:
        raise HTTPException(status_code=400, detail="userUUID is required")

    conversation_data = payload.conversationData or {}
    agent_config = payload.agentConfig or {}
    agent_id = agent_config.get("agent_id") or agent_config.get("agentId") or elevenlabs.agent_id or None

    user, created = store.start_session(user_id, payload.userProfile)

    conversation_id = conversation_data.get("conversation_id") or new_conversation_id(user_id)
    resolver.register(
        user_id,
        conversation_id,
        source="conversation_start",
        agent_id=agent_id,
        session_type=conversation_data.get("session_type", "therapeutic_session"),
        started_via="api_endpoint",
    )

    summary = assembler.build_context_summary(user_id, settings.CONTEXT_TURN_LIMIT)
    stage = Stage.parse(user.current_stage, default=DEFAULT_STAGE)
    signed_url = await elevenlabs.get_signed_url(agent_id) if agent_id else None

    logger.info(f"[Conversations] Started {conversation_id} for {user_id} (new_user={created})")
    return {
        "success": True,
        "conversationId": conversation_id,
        "userProfile": user.profile_dict(),
        "context": summary,
        "agentConfig": {
            "agent_id": agent_id,
            "signed_url": signed_url,
            "dynamic_variables": dynamic_variables(user_id, user.display_name, stage, summary),
            "overrides": {"agent": {"first_message": first_message(created)}},
        },
    }


@router.post("/end-conversation")
def end_conversation(
    payload: EndConversationRequest,
    resolver: ConversationResolver = Depends(get_resolver),
):
    if not payload.conversationId:
        raise HTTPException(status_code=400, detail="conversationId is required")

    if not resolver.end(payload.conversationId, payload.reason or "user_ended"):
        raise HTTPException(status_code=404, detail="Conversation not found")

    return {"success": True, "conversationId": payload.conversationId, "status": "ended"}


def _conversation_context(
    user_id: Optional[str],
    conversation_id: Optional[str],
    limit: Any,
    resolver: ConversationResolver,
    assembler: ContextAssembler,
) -> Dict[str, Any]:
    if not user_id and not conversation_id:
        raise HTTPException(status_code=400, detail="Provide either user_id or conversation_id")

    if not user_id:
        user_id = resolver.resolve_user(conversation_id)
        if not user_id:
            return {"success": False, "error": "Conversation not mapped to a user", "conversation_id": conversation_id}

    limit = clamp(limit, 1, 20, settings.CONTEXT_TURN_LIMIT)
    turns = assembler.recent_turns(user_id, limit)
    return {
        "success": True,
        "user_uuid": user_id,
        "conversation_count": len(turns),
        "context": format_turns(turns),
        "context_summary": assembler.build_context_summary(user_id, limit),
        "timestamp": utcnow().isoformat(),
    }


@router.get("/get-conversation-context")
def get_conversation_context(
    user_id: Optional[str] = None,
    conversation_id: Optional[str] = None,
    limit: Optional[int] = None,
    resolver: ConversationResolver = Depends(get_resolver),
    assembler: ContextAssembler = Depends(get_assembler),
):
    return _conversation_context(user_id, conversation_id, limit, resolver, assembler)


@router.post("/get-conversation-context")
def post_conversation_context(
    payload: ConversationContextRequest,
    resolver: ConversationResolver = Depends(get_resolver),
    assembler: ContextAssembler = Depends(get_assembler),
):
    return _conversation_context(payload.user_id, payload.conversation_id, payload.limit, resolver, assembler)


def _initiation_user_id(body: Dict[str, Any], resolver: ConversationResolver) -> Optional[str]:
    client_data = body.get("conversation_initiation_client_data") or {}
    variables = body.get("dynamic_variables") or client_data.get("dynamic_variables") or {}
    user_id = body.get("user_id") or variables.get("user_id")
    if user_id:
        return user_id
    conversation_id = body.get("conversation_id")
    return resolver.resolve_user(conversation_id) if conversation_id else None


@router.post("/conversation-initiation-webhook")
async def conversation_initiation_webhook(
    request: Request,
    store: MemoryStore = Depends(get_store),
    resolver: ConversationResolver = Depends(get_resolver),
    assembler: ContextAssembler = Depends(get_assembler),
):
    """
    ElevenLabs asks for per-call variables before the agent speaks.
    Always 200: an unknown caller still gets a usable (empty) context.
    """
    try:
        body = await request.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    try:
        user_id = _initiation_user_id(body, resolver)
        user = store.get_user(user_id) if user_id else None
        if user is None:
            logger.info(f"[Initiation] No known user for call (user_id={user_id})")
            return {
                "dynamic_variables": dynamic_variables(user_id or "unknown", None, DEFAULT_STAGE, NO_CONTEXT_TEXT),
                "conversation_config_override": {"agent": {"first_message": first_message(True)}},
            }

        summary = assembler.build_context_summary(user.id, settings.CONTEXT_TURN_LIMIT)
        stage = Stage.parse(user.current_stage, default=DEFAULT_STAGE)
        history = " ".join(t.content for t in assembler.recent_turns(user.id, settings.CONTEXT_TURN_LIMIT))
        variables = dynamic_variables(user.id, user.display_name, stage, summary)
        variables["conversation_history"] = history

        return {
            "dynamic_variables": variables,
            "conversation_config_override": {
                "agent": {"first_message": first_message(not history)},
            },
        }
    except Exception as e:
        logger.error(f"[Initiation] Failed to build context: {e}")
        return {
            "dynamic_variables": {
                "previous_conversations": MEMORY_UNAVAILABLE_TEXT,
                "user_name": "User",
                "conversation_history": "",
                "user_id": "unknown",
            }
        }
