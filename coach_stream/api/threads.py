"""Thread API: stored conversation snapshots and the thread index."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, HTTPException, status

from coach_stream.core.redis import get_redis_client
from coach_stream.core.threads import ThreadManager, ThreadSnapshot

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/threads")
async def list_threads(limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
    """List thread summaries, most recently updated first."""
    try:
        tm = ThreadManager(redis_client=get_redis_client())
        summaries = await tm.list_threads(limit=limit, offset=offset)
        return [s.model_dump() for s in summaries]
    except Exception as e:
        logger.error(f"Failed to list threads: {e}")
        raise HTTPException(status_code=500, detail="Failed to list threads")


@router.get("/threads/{thread_id}", response_model=ThreadSnapshot, response_model_by_alias=True)
async def get_thread(thread_id: str) -> ThreadSnapshot:
    """Stored state of a thread as ``{todos, files, messages}``.

    A thread that was never stored yields an empty snapshot rather than 404,
    so a client can open any thread id.
    """
    try:
        tm = ThreadManager(redis_client=get_redis_client())
        return await tm.get_snapshot(thread_id)
    except Exception as e:
        logger.error(f"Failed to get thread {thread_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.delete("/threads/{thread_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_thread(thread_id: str):
    tm = ThreadManager(redis_client=get_redis_client())
    if not await tm.delete_thread(thread_id):
        raise HTTPException(status_code=500, detail="Failed to delete thread")
    return None


@router.delete("/threads")
async def clear_threads() -> Dict[str, Any]:
    """Delete every stored thread."""
    tm = ThreadManager(redis_client=get_redis_client())
    deleted = await tm.clear_all_threads()
    return {"deleted": deleted}
