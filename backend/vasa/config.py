# backend/vasa/config.py
import os
from pathlib import Path
from dotenv import load_dotenv

BACKEND_DIR = Path(__file__).resolve().parents[1]   # backend/
REPO_DIR = BACKEND_DIR.parent                        # repo root

ENV_BACKEND = BACKEND_DIR / ".env"
ENV_REPO = REPO_DIR / ".env"
ENV_FILE = ENV_BACKEND if ENV_BACKEND.exists() else ENV_REPO

load_dotenv(dotenv_path=str(ENV_FILE), override=False)

VERSION = "1.0.0"


def _parse_origins(raw: str) -> list[str]:
    # split, strip, drop empties, drop trailing slashes
    out = []
    for o in (raw or "").split(","):
        o = (o or "").strip().rstrip("/")
        if o:
            out.append(o)
    return out


class Settings:
    DATABASE_URL: str = os.getenv("DATABASE_URL", f"sqlite:///{BACKEND_DIR / 'vasa_memory.db'}")

    OPENAI_API_KEY: str | None = os.getenv("OPENAI_API_KEY")
    OPENAI_MODEL: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    OPENAI_TEMPERATURE: float = float(os.getenv("OPENAI_TEMPERATURE", "0.7"))
    OPENAI_MAX_TOKENS: int = int(os.getenv("OPENAI_MAX_TOKENS", "1000"))

    # ================= Mem0 Configuration =================
    MEM0_API_KEY: str | None = os.getenv("MEM0_API_KEY")
    MEM0_BASE_URL: str = os.getenv("MEM0_BASE_URL", "https://api.mem0.ai")

    # ================= ElevenLabs Configuration =================
    ELEVENLABS_API_KEY: str | None = os.getenv("ELEVENLABS_API_KEY")

    # Default conversational agent used when a caller does not pass one
    ELEVENLABS_AGENT_ID: str | None = os.getenv("ELEVENLABS_AGENT_ID")

    # Secret for verifying post-call webhooks (HMAC "t=...,v0=..." header)
    ELEVENLABS_WEBHOOK_SECRET: str | None = os.getenv("ELEVENLABS_WEBHOOK_SECRET")

    # IMPORTANT: keep localhost + 127.0.0.1 for Vite dev
    CORS_ORIGINS: list[str] = _parse_origins(
        os.getenv(
            "CORS_ORIGINS",
            "http://127.0.0.1:5173,http://localhost:5173,http://127.0.0.1:3000,http://localhost:3000",
        )
    )

    # ================= Environment Configuration =================
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    LOG_FILE: str | None = os.getenv("LOG_FILE")

    # ================= Memory / Session Behaviour =================
    # /api/memory/chat: search + completion must finish inside this window
    CHAT_TIMEOUT_SECONDS: float = float(os.getenv("CHAT_TIMEOUT_SECONDS", "10"))
    CHAT_MEMORY_LIMIT: int = int(os.getenv("CHAT_MEMORY_LIMIT", "3"))
    CHAT_RATE_LIMIT: str = os.getenv("CHAT_RATE_LIMIT", "60/minute")

    CONTEXT_TURN_LIMIT: int = int(os.getenv("CONTEXT_TURN_LIMIT", "10"))

    # Delay before the single retry of a failed memory write
    MEMORY_WRITE_RETRY_DELAY: float = float(os.getenv("MEMORY_WRITE_RETRY_DELAY", "2.0"))

    # Voice client idle sign-out (seconds)
    SESSION_IDLE_TIMEOUT_SECONDS: float = float(os.getenv("SESSION_IDLE_TIMEOUT_SECONDS", "900"))

    CONVERSATION_RETENTION_DAYS: int = int(os.getenv("CONVERSATION_RETENTION_DAYS", "30"))

    # Required as X-Admin-Key on /api/admin/* when set
    ADMIN_API_KEY: str | None = os.getenv("ADMIN_API_KEY")

    # Base URL the Python voice client uses to reach this service
    VASA_API_BASE_URL: str = os.getenv("VASA_API_BASE_URL", "http://127.0.0.1:8000")


settings = Settings()


# =============================================================================
# CONFIGURATION VALIDATION
# =============================================================================

class ConfigValidationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def validate_config(raise_on_error: bool = True) -> dict:
    """
    Validate all configuration settings.

    Args:
        raise_on_error: If True, raises ConfigValidationError on critical errors.
                       If False, returns dict with errors and warnings.

    Returns:
        Dict with 'errors' (critical) and 'warnings' (non-critical) lists.

    Raises:
        ConfigValidationError: If raise_on_error=True and critical errors found.
    """
    errors = []
    warnings = []

    # Critical - App won't function
    if not settings.DATABASE_URL:
        errors.append("DATABASE_URL is required")

    # Required for the memory features
    if not settings.MEM0_API_KEY:
        errors.append("MEM0_API_KEY is required for semantic memory storage")
    if not settings.OPENAI_API_KEY:
        errors.append("OPENAI_API_KEY is required for memory chat responses")

    # Warnings - Degraded functionality
    if not settings.ELEVENLABS_WEBHOOK_SECRET:
        warnings.append("ELEVENLABS_WEBHOOK_SECRET missing - webhook verification disabled")
    if not settings.ELEVENLABS_AGENT_ID:
        warnings.append("ELEVENLABS_AGENT_ID missing - callers must pass agentConfig.agent_id")
    if not settings.ELEVENLABS_API_KEY:
        warnings.append("ELEVENLABS_API_KEY missing - signed session URLs disabled")

    # Production-specific warnings
    if settings.ENVIRONMENT == "production":
        if not settings.CORS_ORIGINS or any("localhost" in o for o in settings.CORS_ORIGINS):
            warnings.append("CORS_ORIGINS includes localhost in production - consider restricting")
        if settings.DATABASE_URL.startswith("sqlite"):
            warnings.append("DATABASE_URL points at SQLite in production")

    result = {"errors": errors, "warnings": warnings}

    if raise_on_error and errors:
        raise ConfigValidationError(f"Configuration errors: {'; '.join(errors)}")

    return result


def get_config_status() -> dict:
    """
    Get configuration status for health check endpoints.

    Returns:
        Dict with configuration presence and validation status.
    """
    return {
        "environment": settings.ENVIRONMENT,
        "database_configured": bool(settings.DATABASE_URL),
        "openai_configured": bool(settings.OPENAI_API_KEY),
        "mem0_configured": bool(settings.MEM0_API_KEY),
        "elevenlabs_configured": bool(settings.ELEVENLABS_API_KEY and settings.ELEVENLABS_AGENT_ID),
        "webhook_security_enabled": bool(settings.ELEVENLABS_WEBHOOK_SECRET),
    }
