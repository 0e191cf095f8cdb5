# backend/vasa/models/conversation_mapping.py

from sqlalchemy import Column, String, DateTime, ForeignKey, JSON
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from vasa.database import Base


class ConversationMapping(Base):
    """Binds a vendor conversation id to the user who owns it."""

    __tablename__ = "conversation_mappings"

    conversation_id = Column(String(128), primary_key=True, index=True)
    user_id = Column(String(128), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    status = Column(String(20), nullable=False, default="active", index=True)  # active | ended
    source = Column(String(64), default="conversation_start")
    agent_id = Column(String(128))
    extra = Column(JSON)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
    ended_at = Column(DateTime)
    end_reason = Column(String(64))

    user = relationship("User", back_populates="conversation_mappings")

    def to_dict(self) -> dict:
        return {
            "conversation_id": self.conversation_id,
            "user_uuid": self.user_id,
            "status": self.status,
            "source": self.source,
            "agent_id": self.agent_id,
            "extra": self.extra or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "end_reason": self.end_reason,
        }
