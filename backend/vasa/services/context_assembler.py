# backend/vasa/services/context_assembler.py
from typing import Any, Dict, List

from vasa.agents.stage_classifier import DEFAULT_STAGE, Stage
from vasa.models import ConversationTurn
from vasa.services.memory_store import MemoryStore
from vasa.utils.helpers import clamp, truncate_text

DEFAULT_TURN_LIMIT = 10
MAX_TURN_LIMIT = 20
EXCERPT_LENGTH = 100


def new_session_summary(stage: Stage) -> str:
    return f"This is a new session. The user is currently in the {stage.label} stage."


def render_summary(turns: List[ConversationTurn], stage: Stage, total_sessions: int) -> str:
    """Pure rendering of already-fetched turns (oldest first)."""
    if not turns:
        return new_session_summary(stage)

    excerpts = " | ".join(
        f"{turn.role}: {truncate_text(turn.content or '', EXCERPT_LENGTH)}" for turn in turns
    )
    return (
        f"Previous conversation context: {excerpts} "
        f"Current stage: {stage.label}. Total sessions: {total_sessions}."
    )


def format_turns(turns: List[ConversationTurn]) -> List[Dict[str, Any]]:
    return [
        {
            "role": turn.role,
            "content": turn.content,
            "timestamp": turn.created_at.isoformat() if turn.created_at else None,
            "stage": turn.stage,
        }
        for turn in turns
    ]


class ContextAssembler:
    """Builds the opening context message sent to the voice agent. Read-only."""

    def __init__(self, store: MemoryStore):
        self.store = store

    def recent_turns(self, user_id: str, limit: Any = DEFAULT_TURN_LIMIT) -> List[ConversationTurn]:
        limit = clamp(limit, 1, MAX_TURN_LIMIT, DEFAULT_TURN_LIMIT)
        return self.store.recent_turns(user_id, limit)

    def build_context_summary(self, user_id: str, limit: Any = DEFAULT_TURN_LIMIT) -> str:
        user = self.store.get_user(user_id)
        stage = Stage.parse(user.current_stage, default=DEFAULT_STAGE) if user else DEFAULT_STAGE
        total_sessions = (user.total_sessions or 0) if user else 0
        return render_summary(self.recent_turns(user_id, limit), stage, total_sessions)
