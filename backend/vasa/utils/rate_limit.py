# backend/vasa/utils/rate_limit.py
"""
Shared slowapi limiter.

Endpoints opt in with `@limiter.limit(...)` and must accept a `request: Request`
argument. The limiter is attached to `app.state` in main.py.
"""
from slowapi import Limiter
from slowapi.util import get_remote_address

from vasa.config import settings

limiter = Limiter(key_func=get_remote_address)

# Not applied to vendor webhooks: ElevenLabs disables a webhook that keeps
# getting non-2xx answers.
RATE_LIMITS = {
    "chat": settings.CHAT_RATE_LIMIT,   # OpenAI + Mem0 per request
}
