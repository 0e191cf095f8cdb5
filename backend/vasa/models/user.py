# backend/vasa/models/user.py

from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from vasa.database import Base


class User(Base):
    __tablename__ = "users"

    # Opaque id issued by the auth provider (Firebase uid)
    id = Column(String(128), primary_key=True, index=True)

    created_at = Column(DateTime, server_default=func.now())
    last_active = Column(DateTime, server_default=func.now())
    journey_started = Column(DateTime, server_default=func.now())

    current_stage = Column(String(50), nullable=False, default="pointed_origin", index=True)

    # Profile
    display_name = Column(String(255))
    goals = Column(JSON)
    preferences = Column(JSON)
    timezone = Column(String(64), default="UTC")

    # Metrics
    total_sessions = Column(Integer, nullable=False, default=0)
    stages_completed = Column(Integer, nullable=False, default=0)
    breakthrough_moments = Column(Integer, nullable=False, default=0)

    turns = relationship("ConversationTurn", back_populates="user", cascade="all, delete-orphan")
    stage_transitions = relationship("StageTransition", back_populates="user", cascade="all, delete-orphan")
    conversation_mappings = relationship("ConversationMapping", back_populates="user", cascade="all, delete-orphan")

    def profile_dict(self) -> dict:
        return {
            "user_id": self.id,
            "current_stage": self.current_stage,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_active": self.last_active.isoformat() if self.last_active else None,
            "profile": {
                "display_name": self.display_name or "",
                "goals": list(self.goals or []),
                "preferences": dict(self.preferences or {}),
                "timezone": self.timezone or "UTC",
            },
            "metrics": {
                "total_sessions": self.total_sessions or 0,
                "stages_completed": self.stages_completed or 0,
                "breakthrough_moments": self.breakthrough_moments or 0,
            },
        }
