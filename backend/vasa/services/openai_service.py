# backend/vasa/services/openai_service.py
from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from vasa.config import settings
from vasa.utils.logger import logger

NO_MEMORIES_TEXT = "No relevant memories found."


def memory_text(entry: Dict[str, Any]) -> str:
    return (entry.get("memory") or entry.get("text") or entry.get("content") or "").strip()


def build_system_prompt(memories: List[Dict[str, Any]]) -> str:
    lines = [f"- {memory_text(m)}" for m in memories or [] if memory_text(m)]
    memories_text = "\n".join(lines) if lines else NO_MEMORIES_TEXT
    return (
        "You are a helpful AI assistant with access to conversation history. \n"
        "Use the following memories to provide contextual and personalized responses:\n\n"
        "User Memories:\n"
        f"{memories_text}\n\n"
        "Instructions:\n"
        "- Use the memories to provide context-aware responses\n"
        "- Reference previous conversations when relevant\n"
        "- Maintain continuity in the conversation\n"
        "- Be natural and conversational"
    )


class OpenAIService:
    def __init__(self, api_key: Optional[str] = None):
        api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self.client: Optional[AsyncOpenAI] = AsyncOpenAI(api_key=api_key) if api_key else None

        self.model = (settings.OPENAI_MODEL or "gpt-4o-mini").strip()
        self.temperature = settings.OPENAI_TEMPERATURE
        self.max_tokens = settings.OPENAI_MAX_TOKENS

        if self.client is None:
            logger.warning("OPENAI_API_KEY is missing")

    @property
    def configured(self) -> bool:
        return self.client is not None

    async def generate_contextual_response(self, message: str, memories: List[Dict[str, Any]]) -> str:
        """Answer `message` with the user's retrieved memories in the system prompt."""
        if self.client is None:
            raise RuntimeError("OPENAI_API_KEY missing")

        llm_start = time.time()
        resp = await self.client.chat.completions.create(
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            messages=[
                {"role": "system", "content": build_system_prompt(memories)},
                {"role": "user", "content": message},
            ],
        )
        llm_elapsed = (time.time() - llm_start) * 1000
        logger.info(f"[LATENCY] OpenAI completion: {llm_elapsed:.2f}ms (model={self.model}, memories={len(memories or [])})")
        return (resp.choices[0].message.content or "").strip()

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.close()
