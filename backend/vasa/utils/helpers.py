from typing import Any, Dict, List, Optional
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def truncate_text(text: str, max_length: int = 100, suffix: str = "...") -> str:
    """
    Keep the first max_length characters, appending suffix when cut.
    Example: truncate_text("abcdef", 3) -> "abc..."
    """
    if not text or len(text) <= max_length:
        return text or ""

    return text[:max_length] + suffix


def clamp(value: Any, low: int, high: int, default: int) -> int:
    """Coerce value to int and clamp it into [low, high]."""
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return max(low, min(high, number))


def transcript_entry_text(entry: Dict[str, Any]) -> str:
    """ElevenLabs transcript entries carry text under different keys."""
    if not isinstance(entry, dict):
        return ""
    return (entry.get("message") or entry.get("content") or entry.get("text") or "").strip()


def format_transcript(transcript: List[Dict[str, Any]], agent_label: str = "VASA", user_label: str = "User") -> str:
    """
    Flatten an ElevenLabs post-call transcript into "Role: text" lines.
    Entries without text are skipped.
    """
    lines = []
    for entry in transcript or []:
        text = transcript_entry_text(entry)
        if not text:
            continue
        role = agent_label if entry.get("role") == "agent" else user_label
        lines.append(f"{role}: {text}")
    return "\n".join(lines)


def agent_lines(transcript: List[Dict[str, Any]]) -> Optional[str]:
    """Concatenated agent-side text of a transcript, or None."""
    parts = [transcript_entry_text(e) for e in transcript or [] if isinstance(e, dict) and e.get("role") == "agent"]
    parts = [p for p in parts if p]
    return " ".join(parts) if parts else None
