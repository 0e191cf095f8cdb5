# backend/vasa/services/stage_recorder.py
from typing import Optional

from vasa.agents.stage_classifier import Stage, DEFAULT_STAGE
from vasa.services.memory_store import MemoryStore
from vasa.utils.logger import logger


class StageRecorder:
    """Appends StageTransition rows and keeps User.current_stage in step."""

    def __init__(self, store: MemoryStore):
        self.store = store

    def record_transition(
        self,
        user_id: str,
        detected: Stage,
        current: Stage,
        conversation_id: Optional[str] = None,
        trigger: str = "",
    ) -> bool:
        """
        Returns True when a transition was written.
        Same stage in and out writes nothing, not even last_active.
        """
        detected = Stage.parse(detected, default=DEFAULT_STAGE)
        current = Stage.parse(current, default=DEFAULT_STAGE)
        if detected == current:
            return False

        user = self.store.get_user(user_id)
        if user is None:
            logger.warning(f"[StageRecorder] Unknown user {user_id}, transition {current.value} -> {detected.value} dropped")
            return False

        self.store.add_stage_transition(
            user,
            from_stage=current,
            to_stage=detected,
            conversation_id=conversation_id,
            trigger=trigger,
        )
        logger.info(f"[StageRecorder] {user_id}: {current.symbol} {current.value} -> {detected.symbol} {detected.value}")
        return True

    def record_transition_safe(self, *args, **kwargs) -> bool:
        """Best-effort variant for turn processing: errors are logged, not raised."""
        try:
            return self.record_transition(*args, **kwargs)
        except Exception as e:
            logger.error(f"[StageRecorder] Transition write failed: {type(e).__name__}: {e}")
            return False
