# backend/vasa/api/admin.py
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel

from vasa.config import settings
from vasa.dependencies import get_mem0, get_resolver, get_store
from vasa.services.conversation_resolver import ConversationResolver
from vasa.services.mem0_service import Mem0Service
from vasa.services.memory_store import MemoryStore
from vasa.utils.helpers import utcnow
from vasa.utils.logger import logger

router = APIRouter(prefix="/api/admin", tags=["admin"])

CLEANUP_ACTIONS = ("cleanup_ended", "clear_user_data")


class CleanupRequest(BaseModel):
    action: str = "cleanup_ended"
    days_old: Optional[int] = None
    user_id: Optional[str] = None


def require_admin(x_admin_key: Optional[str] = Header(default=None)) -> None:
    if settings.ADMIN_API_KEY and x_admin_key != settings.ADMIN_API_KEY:
        raise HTTPException(status_code=401, detail="Invalid admin key")


@router.post("/cleanup-conversations", dependencies=[Depends(require_admin)])
async def cleanup_conversations(
    payload: CleanupRequest,
    store: MemoryStore = Depends(get_store),
    resolver: ConversationResolver = Depends(get_resolver),
    mem0: Mem0Service = Depends(get_mem0),
):
    if payload.action not in CLEANUP_ACTIONS:
        raise HTTPException(status_code=400, detail=f"action must be one of {', '.join(CLEANUP_ACTIONS)}")

    if payload.action == "cleanup_ended":
        days_old = payload.days_old if payload.days_old is not None else settings.CONVERSATION_RETENTION_DAYS
        if days_old < 0:
            raise HTTPException(status_code=400, detail="days_old must be >= 0")
        deleted = resolver.cleanup_ended(days_old)
        return {
            "success": True,
            "action": payload.action,
            "deleted_count": deleted,
            "days_old": days_old,
            "timestamp": utcnow().isoformat(),
        }

    if not payload.user_id:
        raise HTTPException(status_code=400, detail="user_id is required for clear_user_data")

    counts = store.delete_user_data(payload.user_id)
    mem0_cleared = False
    if mem0.configured:
        try:
            await mem0.delete_all(payload.user_id)
            mem0_cleared = True
        except Exception as e:
            logger.error(f"[Admin] Mem0 cleanup failed for {payload.user_id}: {e}")

    return {
        "success": True,
        "action": payload.action,
        "user_uuid": payload.user_id,
        "deleted": counts,
        "mem0_cleared": mem0_cleared,
        "timestamp": utcnow().isoformat(),
    }
