# backend/vasa/agents/voice_session.py
"""
Voice session controller.

Python side of the browser voice client: drives a streaming voice SDK
object, injects the memory context once per session, classifies every
transcript fragment into a stage and hands the turn to the memory backend
without waiting for the write.

UI states:
    resting -> connecting -> connected <-> thinking
    (any failure, disconnect or end goes back to resting)
"""
from __future__ import annotations

import asyncio
import inspect
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Dict, Optional

import httpx

from vasa.agents.stage_classifier import DEFAULT_STAGE, Stage, classify
from vasa.config import settings
from vasa.services.turn_writer import TurnWriter
from vasa.utils.logger import logger


class SessionState(str, Enum):
    RESTING = "resting"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    THINKING = "thinking"


class VoiceConnectionError(Exception):
    """The voice SDK could not open a session."""


class VoiceClient(ABC):
    """The streaming voice SDK as seen by the session controller."""

    @abstractmethod
    async def start_session(self, agent_id: str, dynamic_variables: Optional[Dict[str, Any]] = None) -> Optional[str]:
        """Open the session; returns the vendor conversation id when known."""

    @abstractmethod
    async def end_session(self) -> None:
        ...

    @abstractmethod
    async def send_message(self, text: str) -> None:
        """Send a contextual (non-spoken) message to the agent."""


class MemoryClient(ABC):
    @abstractmethod
    async def get_context_summary(self, user_id: str) -> str:
        ...

    @abstractmethod
    async def store_turn(
        self,
        user_id: str,
        role: str,
        content: str,
        stage: Stage,
        conversation_id: Optional[str] = None,
    ) -> Any:
        ...


class ApiMemoryClient(MemoryClient):
    """MemoryClient backed by this service's own HTTP API."""

    def __init__(self, base_url: Optional[str] = None, timeout: float = 10.0):
        self.base_url = (base_url or settings.VASA_API_BASE_URL).rstrip("/")
        self._http = httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def get_context_summary(self, user_id: str) -> str:
        resp = await self._http.post(
            "/api/get-conversation-context",
            json={"user_id": user_id, "limit": settings.CONTEXT_TURN_LIMIT},
        )
        resp.raise_for_status()
        return resp.json().get("context_summary") or ""

    async def store_turn(
        self,
        user_id: str,
        role: str,
        content: str,
        stage: Stage,
        conversation_id: Optional[str] = None,
    ) -> Any:
        resp = await self._http.post(
            "/api/memory/turn",
            json={
                "userId": user_id,
                "conversationId": conversation_id,
                "role": role,
                "content": content,
                "stage": stage.value,
            },
        )
        resp.raise_for_status()
        return resp.json()

    async def aclose(self) -> None:
        await self._http.aclose()


IdleCallback = Callable[[], Any]


class VoiceSession:
    def __init__(
        self,
        voice_client: VoiceClient,
        memory_client: MemoryClient,
        user_id: str,
        agent_id: Optional[str] = None,
        *,
        idle_timeout: Optional[float] = None,
        on_idle: Optional[IdleCallback] = None,
        turn_writer: Optional[TurnWriter] = None,
        initial_stage: Stage = DEFAULT_STAGE,
    ):
        self.voice_client = voice_client
        self.memory_client = memory_client
        self.user_id = user_id
        self.agent_id = agent_id or settings.ELEVENLABS_AGENT_ID or ""
        self.idle_timeout = idle_timeout if idle_timeout is not None else settings.SESSION_IDLE_TIMEOUT_SECONDS
        self.on_idle = on_idle
        self.turn_writer = turn_writer or TurnWriter(retry_delay=settings.MEMORY_WRITE_RETRY_DELAY, name="voice_turn")

        self.state = SessionState.RESTING
        self.current_stage = initial_stage
        self.conversation_id: Optional[str] = None
        self.context_sent = False
        self._idle_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Session control
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.state != SessionState.RESTING:
            return

        self.state = SessionState.CONNECTING
        self.context_sent = False
        try:
            self.conversation_id = await self.voice_client.start_session(
                self.agent_id,
                dynamic_variables={"user_id": self.user_id},
            )
        except Exception as e:
            self.state = SessionState.RESTING
            logger.error(f"[VoiceSession] Failed to connect for {self.user_id}: {e}")
            raise VoiceConnectionError(str(e)) from e

        logger.info(f"[VoiceSession] Session started for {self.user_id} (conversation={self.conversation_id})")
        self._touch()

    async def end(self) -> None:
        self._cancel_idle_timer()
        if self.state == SessionState.RESTING:
            return
        try:
            await self.voice_client.end_session()
        finally:
            self.state = SessionState.RESTING
            logger.info(f"[VoiceSession] Session ended for {self.user_id}")

    # ------------------------------------------------------------------
    # SDK callbacks
    # ------------------------------------------------------------------

    async def on_connect(self) -> None:
        self.state = SessionState.CONNECTED
        self._touch()
        await self.inject_context()

    async def inject_context(self) -> bool:
        """Send the context summary once per session."""
        if self.context_sent:
            return False
        # set before awaiting so a second connect event cannot double-send
        self.context_sent = True
        try:
            summary = await self.memory_client.get_context_summary(self.user_id)
            if summary:
                await self.voice_client.send_message(summary)
            return True
        except Exception as e:
            logger.warning(f"[VoiceSession] Context injection failed for {self.user_id}: {e}")
            return False

    def on_message(self, message: Dict[str, Any]) -> Optional[asyncio.Task]:
        """
        Handle one SDK message. Transcript fragments are classified and
        submitted for storage; the returned task is not awaited here.
        """
        self._touch()

        msg_type = message.get("type")
        if msg_type == "agent_response_start":
            self.state = SessionState.THINKING
            return None
        if msg_type == "agent_response_end":
            self.state = SessionState.CONNECTED
            return None

        text = (message.get("message") or message.get("text") or "").strip()
        if not text:
            return None

        role = "user" if message.get("source") == "user" else "assistant"
        stage = classify(text, self.current_stage)
        if stage != self.current_stage:
            logger.info(f"[VoiceSession] Stage {self.current_stage.symbol} -> {stage.symbol} for {self.user_id}")
        self.current_stage = stage

        conversation_id = self.conversation_id
        return self.turn_writer.submit(
            lambda: self.memory_client.store_turn(self.user_id, role, text, stage, conversation_id),
            label="voice_turn",
        )

    def on_disconnect(self) -> None:
        self._cancel_idle_timer()
        self.state = SessionState.RESTING

    def on_error(self, error: Any) -> None:
        logger.error(f"[VoiceSession] Voice error for {self.user_id}: {error}")
        self._cancel_idle_timer()
        self.state = SessionState.RESTING

    # ------------------------------------------------------------------
    # Idle timer
    # ------------------------------------------------------------------

    def _touch(self) -> None:
        """Re-arm the idle timer."""
        self._cancel_idle_timer()
        if self.idle_timeout and self.idle_timeout > 0:
            self._idle_task = asyncio.get_running_loop().create_task(self._idle_countdown())

    def _cancel_idle_timer(self) -> None:
        task = self._idle_task
        self._idle_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _idle_countdown(self) -> None:
        await asyncio.sleep(self.idle_timeout)
        logger.info(f"[VoiceSession] Idle for {self.idle_timeout:.0f}s, ending session for {self.user_id}")
        self._idle_task = None
        try:
            await self.end()
        except Exception as e:
            logger.error(f"[VoiceSession] Failed to end idle session: {e}")
        if self.on_idle is not None:
            result = self.on_idle()
            if inspect.isawaitable(result):
                await result
