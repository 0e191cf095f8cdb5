# backend/vasa/dependencies.py
"""
FastAPI dependency getters.

Vendor clients are built once in the startup hook and live on app.state;
the database-backed services are cheap and built per request around the
request's session. Tests swap any of these via app.dependency_overrides.
"""
from fastapi import Depends, Request
from sqlalchemy.orm import Session

from vasa.database import get_db
from vasa.services.context_assembler import ContextAssembler
from vasa.services.conversation_resolver import ConversationResolver
from vasa.services.elevenlabs_service import ElevenLabsService
from vasa.services.mem0_service import Mem0Service
from vasa.services.memory_store import MemoryStore
from vasa.services.openai_service import OpenAIService
from vasa.services.stage_recorder import StageRecorder
from vasa.services.turn_writer import TurnWriter


def get_store(db: Session = Depends(get_db)) -> MemoryStore:
    return MemoryStore(db)


def get_recorder(store: MemoryStore = Depends(get_store)) -> StageRecorder:
    return StageRecorder(store)


def get_resolver(store: MemoryStore = Depends(get_store)) -> ConversationResolver:
    return ConversationResolver(store)


def get_assembler(store: MemoryStore = Depends(get_store)) -> ContextAssembler:
    return ContextAssembler(store)


def get_mem0(request: Request) -> Mem0Service:
    return request.app.state.mem0


def get_openai(request: Request) -> OpenAIService:
    return request.app.state.openai


def get_elevenlabs(request: Request) -> ElevenLabsService:
    return request.app.state.elevenlabs


def get_turn_writer(request: Request) -> TurnWriter:
    return request.app.state.turn_writer
