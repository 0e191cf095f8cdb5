# backend/vasa/models/__init__.py
from vasa.models.user import User
from vasa.models.conversation_turn import ConversationTurn
from vasa.models.stage_transition import StageTransition
from vasa.models.conversation_mapping import ConversationMapping

__all__ = ['User', 'ConversationTurn', 'StageTransition', 'ConversationMapping']
