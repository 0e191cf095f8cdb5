# backend/vasa/api/webhooks.py
"""
ElevenLabs post-call webhook.

Every path answers HTTP 200: ElevenLabs retries non-2xx deliveries and
disables the webhook after repeated failures, and a retry cannot fix a bad
signature, an unknown conversation or a database outage. The outcome is
reported in the body as {success, message}. The route is not rate limited
for the same reason.

The turn is stored before answering; the Mem0 writes run as background
tasks through the TurnWriter so the vendor never waits on Mem0.
"""

import json
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request

from vasa.agents.stage_classifier import classify, detect_breakthrough, detect_themes
from vasa.dependencies import (
    get_elevenlabs,
    get_mem0,
    get_recorder,
    get_resolver,
    get_store,
    get_turn_writer,
)
from vasa.services.conversation_resolver import ConversationResolver
from vasa.services.elevenlabs_service import ElevenLabsService
from vasa.services.mem0_service import Mem0Service
from vasa.services.memory_store import MemoryStore
from vasa.services.stage_recorder import StageRecorder
from vasa.services.turn_writer import TurnWriter
from vasa.utils.helpers import agent_lines, format_transcript, utcnow
from vasa.utils.logger import logger

router = APIRouter(prefix="/api", tags=["webhooks"])

SIGNATURE_HEADER = "ElevenLabs-Signature"


def _result(success: bool, message: str, **extra: Any) -> Dict[str, Any]:
    return {"success": success, "message": message, **extra}


def queue_mem0_writes(
    background_tasks: BackgroundTasks,
    writer: TurnWriter,
    mem0: Mem0Service,
    user_id: str,
    conversation_id: str,
    transcript_text: str,
    transcript_length: int,
    summary: Optional[str],
) -> None:
    """One background write per memory, so a retry never re-adds the other."""
    metadata = {
        "source": "elevenlabs_real_conversation",
        "conversation_id": conversation_id,
        "timestamp": utcnow().isoformat(),
        "transcript_length": transcript_length,
        "type": "voice_conversation_real",
    }
    background_tasks.add_task(
        writer.run,
        lambda: mem0.add(transcript_text, user_id, metadata),
        f"mem0_transcript:{conversation_id}",
    )
    if summary:
        summary_metadata = {**metadata, "type": "conversation_summary"}
        background_tasks.add_task(
            writer.run,
            lambda: mem0.add(f"Conversation summary: {summary}", user_id, summary_metadata),
            f"mem0_summary:{conversation_id}",
        )


async def handle_post_call(
    raw_body: bytes,
    signature: Optional[str],
    background_tasks: BackgroundTasks,
    store: MemoryStore,
    recorder: StageRecorder,
    resolver: ConversationResolver,
    mem0: Mem0Service,
    elevenlabs: ElevenLabsService,
    writer: TurnWriter,
) -> Dict[str, Any]:
    if elevenlabs.webhook_security_enabled:
        if not elevenlabs.verify_webhook_signature(raw_body=raw_body, signature_header=signature):
            logger.warning("[Webhook] Rejected post-call delivery with invalid signature")
            return _result(False, "Invalid signature")

    try:
        body = json.loads(raw_body or b"{}")
    except (ValueError, UnicodeDecodeError):
        logger.warning("[Webhook] Malformed JSON body")
        return _result(False, "Malformed body")

    data = body.get("data") if isinstance(body, dict) else None
    if not isinstance(data, dict):
        return _result(False, "No data field received")

    conversation_id = data.get("conversation_id")
    if not conversation_id:
        return _result(False, "No conversation_id received")

    user_id = resolver.resolve_user(conversation_id)
    if not user_id:
        logger.warning(f"[Webhook] Dropping post-call event for unmapped conversation {conversation_id}")
        return _result(False, "Conversation not mapped to a user", conversation_id=conversation_id)

    transcript = data.get("transcript")
    if not isinstance(transcript, list) or not transcript:
        logger.info(f"[Webhook] No transcript for {conversation_id}")
        return _result(True, "No transcript provided", conversation_id=conversation_id, user_uuid=user_id)

    transcript_text = format_transcript(transcript)
    analysis = data.get("analysis") or {}
    summary = analysis.get("transcript_summary") if isinstance(analysis, dict) else None

    current = store.current_stage(user_id)
    agent_text = agent_lines(transcript)
    detected = classify(agent_text, current)
    breakthrough = detect_breakthrough(transcript_text)

    try:
        store.append_turn(
            user_id,
            role="system",
            content=transcript_text,
            stage=detected,
            conversation_id=conversation_id,
            source="elevenlabs_post_call",
            metadata={
                "transcript_length": len(transcript),
                "summary": summary,
                "themes": detect_themes(transcript_text),
                "breakthrough": breakthrough,
                "call_metadata": data.get("metadata") or {},
            },
        )
    except Exception as e:
        logger.error(f"[Webhook] Failed to store turn for {conversation_id}: {e}")
        return _result(False, "Failed to store conversation", conversation_id=conversation_id, user_uuid=user_id)

    recorder.record_transition_safe(
        user_id, detected, current, conversation_id=conversation_id, trigger=agent_text or ""
    )
    if breakthrough:
        try:
            store.increment_breakthroughs(user_id)
        except Exception as e:
            logger.warning(f"[Webhook] Breakthrough counter not updated: {e}")

    if mem0.configured:
        queue_mem0_writes(
            background_tasks, writer, mem0, user_id, conversation_id, transcript_text, len(transcript), summary
        )
    else:
        logger.warning("[Webhook] MEM0_API_KEY not configured, transcript kept in store only")

    try:
        resolver.end(conversation_id, reason="post_call")
    except Exception as e:
        logger.warning(f"[Webhook] Could not mark {conversation_id} ended: {e}")

    logger.info(
        f"[Webhook] Stored post-call transcript for {user_id} "
        f"(conversation={conversation_id}, entries={len(transcript)}, stage={detected.value})"
    )
    return _result(
        mem0.configured,
        "Conversation stored" if mem0.configured else "Conversation stored; semantic memory unavailable",
        conversation_id=conversation_id,
        user_uuid=user_id,
        stage=detected.value,
        memory_queued=mem0.configured,
    )


@router.post("/webhook")
async def elevenlabs_post_call(
    request: Request,
    background_tasks: BackgroundTasks,
    store: MemoryStore = Depends(get_store),
    recorder: StageRecorder = Depends(get_recorder),
    resolver: ConversationResolver = Depends(get_resolver),
    mem0: Mem0Service = Depends(get_mem0),
    elevenlabs: ElevenLabsService = Depends(get_elevenlabs),
    writer: TurnWriter = Depends(get_turn_writer),
):
    try:
        raw_body = await request.body()
        return await handle_post_call(
            raw_body,
            request.headers.get(SIGNATURE_HEADER),
            background_tasks,
            store,
            recorder,
            resolver,
            mem0,
            elevenlabs,
            writer,
        )
    except Exception as e:
        logger.exception(f"[Webhook] Unhandled error processing post-call event: {type(e).__name__}: {e}")
        return _result(False, "Internal error processing webhook")
