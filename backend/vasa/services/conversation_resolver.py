# backend/vasa/services/conversation_resolver.py
"""
Conversation id -> user id resolution.

ElevenLabs post-call webhooks only carry the vendor conversation id. The
mapping written at conversation start is the source of truth; when it is
missing we fall back to pulling a user id out of the conversation id itself.
The fallback is lossy: it only works for ids this service issued
(vasa__<user_id>__<hex>) or ids that embed a UUID, and the extracted id is
only trusted when a matching User exists.
"""
import re
import uuid
from typing import Any, Dict, List, Optional

from vasa.models import ConversationMapping
from vasa.services.memory_store import MemoryStore
from vasa.utils.logger import logger

CONVERSATION_ID_PREFIX = "vasa"
_ISSUED_ID_RE = re.compile(r"^vasa__(?P<user_id>.+)__[0-9a-f]+$")
_UUID_RE = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE)


def new_conversation_id(user_id: str) -> str:
    return f"{CONVERSATION_ID_PREFIX}__{user_id}__{uuid.uuid4().hex[:12]}"


def candidate_user_ids(conversation_id: str) -> List[str]:
    """User ids that may be embedded in a conversation id, most specific first."""
    if not conversation_id:
        return []
    candidates = []
    match = _ISSUED_ID_RE.match(conversation_id)
    if match:
        candidates.append(match.group("user_id"))
    for found in _UUID_RE.findall(conversation_id):
        if found not in candidates:
            candidates.append(found)
    return candidates


class ConversationResolver:
    def __init__(self, store: MemoryStore):
        self.store = store

    def resolve_user(self, conversation_id: str) -> Optional[str]:
        """Read-only: repeated calls without intervening writes agree."""
        if not conversation_id:
            return None

        mapping = self.store.get_mapping(conversation_id)
        if mapping is not None:
            return mapping.user_id

        for candidate in candidate_user_ids(conversation_id):
            if self.store.get_user(candidate) is not None:
                logger.warning(
                    f"[ConversationResolver] No mapping for {conversation_id}, "
                    f"resolved by id pattern to {candidate}"
                )
                return candidate

        logger.warning(f"[ConversationResolver] Could not resolve user for conversation {conversation_id}")
        return None

    def register(self, user_id: str, conversation_id: str, **extra: Any) -> ConversationMapping:
        source = extra.pop("source", "conversation_start")
        agent_id = extra.pop("agent_id", None)
        mapping = self.store.upsert_mapping(
            conversation_id,
            user_id,
            source=source,
            agent_id=agent_id,
            extra=extra,
        )
        logger.info(f"[ConversationResolver] Registered {conversation_id} -> {user_id}")
        return mapping

    def end(self, conversation_id: str, reason: str = "user_ended") -> bool:
        mapping = self.store.end_mapping(conversation_id, reason)
        if mapping is None:
            logger.warning(f"[ConversationResolver] Cannot end unknown conversation {conversation_id}")
            return False
        logger.info(f"[ConversationResolver] Ended {conversation_id} ({reason})")
        return True

    def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        return [m.to_dict() for m in self.store.mappings_for_user(user_id)]

    def cleanup_ended(self, days_old: int = 30) -> int:
        deleted = self.store.delete_ended_mappings(days_old)
        logger.info(f"[ConversationResolver] Cleaned up {deleted} ended conversations older than {days_old} days")
        return deleted
