# backend/vasa/models/conversation_turn.py

from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, JSON
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from vasa.database import Base


class ConversationTurn(Base):
    """One utterance. Rows are appended, never edited."""

    __tablename__ = "conversation_turns"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    user_id = Column(String(128), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    conversation_id = Column(String(128), index=True)

    role = Column(String(20), nullable=False)  # user | assistant | system
    content = Column(Text, nullable=False)
    stage = Column(String(50), nullable=False)

    source = Column(String(64), default="voice_session")
    metadata_ = Column("metadata", JSON)

    created_at = Column(DateTime, server_default=func.now(), index=True)

    user = relationship("User", back_populates="turns")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "conversation_id": self.conversation_id,
            "role": self.role,
            "content": self.content,
            "stage": self.stage,
            "source": self.source,
            "metadata": self.metadata_ or {},
            "timestamp": self.created_at.isoformat() if self.created_at else None,
        }
