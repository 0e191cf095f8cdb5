# backend/vasa/models/stage_transition.py

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from vasa.database import Base


class StageTransition(Base):
    __tablename__ = "stage_transitions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    user_id = Column(String(128), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    conversation_id = Column(String(128), index=True)

    from_stage = Column(String(50), nullable=False)
    to_stage = Column(String(50), nullable=False)

    # First 100 chars of the utterance that triggered the change
    trigger = Column(String(100))

    created_at = Column(DateTime, server_default=func.now(), index=True)

    user = relationship("User", back_populates="stage_transitions")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "conversation_id": self.conversation_id,
            "from_stage": self.from_stage,
            "to_stage": self.to_stage,
            "trigger": self.trigger,
            "timestamp": self.created_at.isoformat() if self.created_at else None,
        }
