# backend/vasa/services/memory_store.py
"""
Memory store adapter.

Wraps every read and write of users, conversation turns, stage transitions
and conversation mappings. Each public write commits on its own: there are
no multi-row transactions and no locks, so concurrent requests rely on
per-row atomicity only. Turns are always new rows, which keeps concurrent
deliveries for the same conversation from overwriting each other.
"""
from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from vasa.agents.stage_classifier import DEFAULT_STAGE, Stage
from vasa.database import safe_commit
from vasa.models import ConversationMapping, ConversationTurn, StageTransition, User
from vasa.utils.helpers import utcnow
from vasa.utils.logger import logger

TURN_ROLES = ("user", "assistant", "system")


class StoreError(Exception):
    """Raised when a write cannot be committed."""


class MemoryStore:
    def __init__(self, db: Session):
        self.db = db

    def _commit(self, operation: str) -> None:
        ok, error = safe_commit(self.db, operation)
        if not ok:
            raise StoreError(error)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def get_user(self, user_id: str) -> Optional[User]:
        if not user_id:
            return None
        return self.db.get(User, user_id)

    def current_stage(self, user_id: str) -> Stage:
        user = self.get_user(user_id)
        if user is None:
            return DEFAULT_STAGE
        return Stage.parse(user.current_stage, default=DEFAULT_STAGE)

    def create_user(self, user_id: str, profile: Optional[Dict[str, Any]] = None, total_sessions: int = 0) -> User:
        profile = profile or {}
        now = utcnow()
        user = User(
            id=user_id,
            created_at=now,
            last_active=now,
            journey_started=now,
            current_stage=DEFAULT_STAGE.value,
            display_name=profile.get("display_name") or "",
            goals=list(profile.get("goals") or profile.get("therapeutic_goals") or []),
            preferences={
                "session_length": "standard",
                "intensity": "moderate",
                "communication_style": "conversational",
                **(profile.get("preferences") or {}),
            },
            timezone=profile.get("timezone") or "UTC",
            total_sessions=total_sessions,
            stages_completed=0,
            breakthrough_moments=0,
        )
        self.db.add(user)
        self._commit("create user")
        logger.info(f"[MemoryStore] Created user {user_id}")
        return user

    def update_profile(self, user_id: str, profile: Dict[str, Any]) -> User:
        user = self.get_user(user_id)
        if user is None:
            return self.create_user(user_id, profile)

        if profile.get("display_name") is not None:
            user.display_name = profile["display_name"]
        goals = profile.get("goals", profile.get("therapeutic_goals"))
        if goals is not None:
            user.goals = list(goals)
        if profile.get("preferences"):
            user.preferences = {**(user.preferences or {}), **profile["preferences"]}
        if profile.get("timezone"):
            user.timezone = profile["timezone"]
        user.last_active = utcnow()
        self._commit("update profile")
        return user

    def start_session(self, user_id: str, profile: Optional[Dict[str, Any]] = None) -> Tuple[User, bool]:
        """
        Count a new session for the user, creating them on first contact.
        Returns (user, created).
        """
        user = self.get_user(user_id)
        if user is None:
            return self.create_user(user_id, profile, total_sessions=1), True

        if profile:
            self.update_profile(user_id, profile)
        user.total_sessions = (user.total_sessions or 0) + 1
        user.last_active = utcnow()
        self._commit("start session")
        return user, False

    def increment_breakthroughs(self, user_id: str) -> None:
        user = self.get_user(user_id)
        if user is None:
            return
        user.breakthrough_moments = (user.breakthrough_moments or 0) + 1
        self._commit("increment breakthroughs")

    def delete_user_data(self, user_id: str) -> Dict[str, int]:
        """Admin cleanup: remove the user and everything they own."""
        counts = {
            "turns": self.db.query(ConversationTurn).filter(ConversationTurn.user_id == user_id).delete(),
            "stage_transitions": self.db.query(StageTransition).filter(StageTransition.user_id == user_id).delete(),
            "conversation_mappings": self.db.query(ConversationMapping).filter(ConversationMapping.user_id == user_id).delete(),
            "users": self.db.query(User).filter(User.id == user_id).delete(),
        }
        self._commit("delete user data")
        logger.warning(f"[MemoryStore] Deleted all data for user {user_id}: {counts}")
        return counts

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def append_turn(
        self,
        user_id: str,
        role: str,
        content: str,
        stage: Stage,
        conversation_id: Optional[str] = None,
        source: str = "voice_session",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ConversationTurn:
        if role not in TURN_ROLES:
            raise ValueError(f"role must be one of {TURN_ROLES}, got {role!r}")

        turn = ConversationTurn(
            user_id=user_id,
            conversation_id=conversation_id,
            role=role,
            content=content or "",
            stage=Stage.parse(stage, default=DEFAULT_STAGE).value,
            source=source,
            metadata_=metadata or {},
            created_at=utcnow(),
        )
        self.db.add(turn)
        user = self.get_user(user_id)
        if user is not None:
            user.last_active = utcnow()
        self._commit("append turn")
        return turn

    def recent_turns(self, user_id: str, limit: int = 10) -> List[ConversationTurn]:
        """Most recent `limit` turns, oldest first."""
        rows = (
            self.db.query(ConversationTurn)
            .filter(ConversationTurn.user_id == user_id)
            .order_by(ConversationTurn.created_at.desc(), ConversationTurn.id.desc())
            .limit(limit)
            .all()
        )
        return list(reversed(rows))

    def count_turns(self, user_id: str, conversation_id: Optional[str] = None) -> int:
        q = self.db.query(ConversationTurn).filter(ConversationTurn.user_id == user_id)
        if conversation_id:
            q = q.filter(ConversationTurn.conversation_id == conversation_id)
        return q.count()

    # ------------------------------------------------------------------
    # Stage transitions
    # ------------------------------------------------------------------

    def add_stage_transition(
        self,
        user: User,
        from_stage: Stage,
        to_stage: Stage,
        conversation_id: Optional[str] = None,
        trigger: str = "",
    ) -> StageTransition:
        transition = StageTransition(
            user_id=user.id,
            conversation_id=conversation_id,
            from_stage=from_stage.value,
            to_stage=to_stage.value,
            trigger=(trigger or "")[:100] or None,
            created_at=utcnow(),
        )
        self.db.add(transition)
        user.current_stage = to_stage.value
        if to_stage.level > from_stage.level:
            user.stages_completed = (user.stages_completed or 0) + 1
        user.last_active = utcnow()
        self._commit("record stage transition")
        return transition

    def stage_history(self, user_id: str, limit: int = 20) -> List[StageTransition]:
        return (
            self.db.query(StageTransition)
            .filter(StageTransition.user_id == user_id)
            .order_by(StageTransition.created_at.asc(), StageTransition.id.asc())
            .limit(limit)
            .all()
        )

    # ------------------------------------------------------------------
    # Conversation mappings
    # ------------------------------------------------------------------

    def get_mapping(self, conversation_id: str) -> Optional[ConversationMapping]:
        if not conversation_id:
            return None
        return self.db.get(ConversationMapping, conversation_id)

    def upsert_mapping(
        self,
        conversation_id: str,
        user_id: str,
        source: str = "conversation_start",
        agent_id: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> ConversationMapping:
        """Set-with-merge: one row per conversation id, created or refreshed."""
        if not conversation_id or not user_id:
            raise ValueError("conversation_id and user_id are required")

        now = utcnow()
        mapping = self.get_mapping(conversation_id)
        if mapping is None:
            mapping = ConversationMapping(
                conversation_id=conversation_id,
                user_id=user_id,
                status="active",
                source=source,
                agent_id=agent_id,
                extra=extra or {},
                created_at=now,
                updated_at=now,
            )
            self.db.add(mapping)
        else:
            mapping.user_id = user_id
            mapping.source = source or mapping.source
            if agent_id:
                mapping.agent_id = agent_id
            if extra:
                mapping.extra = {**(mapping.extra or {}), **extra}
            mapping.updated_at = now
        self._commit("upsert conversation mapping")
        return mapping

    def end_mapping(self, conversation_id: str, reason: str = "user_ended") -> Optional[ConversationMapping]:
        mapping = self.get_mapping(conversation_id)
        if mapping is None:
            return None
        now = utcnow()
        mapping.status = "ended"
        mapping.ended_at = now
        mapping.end_reason = reason
        mapping.updated_at = now
        self._commit("end conversation mapping")
        return mapping

    def mappings_for_user(self, user_id: str) -> List[ConversationMapping]:
        return (
            self.db.query(ConversationMapping)
            .filter(ConversationMapping.user_id == user_id)
            .order_by(ConversationMapping.created_at.desc())
            .all()
        )

    def delete_ended_mappings(self, days_old: int) -> int:
        cutoff = utcnow() - timedelta(days=days_old)
        deleted = (
            self.db.query(ConversationMapping)
            .filter(ConversationMapping.status == "ended")
            .filter(ConversationMapping.ended_at < cutoff)
            .delete(synchronize_session=False)
        )
        self._commit("cleanup ended mappings")
        return deleted
