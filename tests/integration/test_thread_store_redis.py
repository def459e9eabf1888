"""Integration tests for ThreadManager against a real Redis.

Run with ``pytest --run-integration-tests``; Redis is started from
docker-compose.integration.yml by testcontainers.
"""

import pytest

from coach_stream.core.keys import RedisKeys
from coach_stream.core.threads import ChatThread, Message, MessageRole, ThreadManager, TodoItem


def _thread(thread_id: str, updated_at: int, text: str = "Plan my long run") -> ChatThread:
    return ChatThread(
        id=thread_id,
        messages=[
            Message(id=f"{thread_id}-h", role=MessageRole.HUMAN, content=text),
            Message(id=f"{thread_id}-a", role=MessageRole.AI, content="Start easy."),
        ],
        todos=[TodoItem(id="1", content="Pick a route")],
        files={"route.md": "# Loop"},
        updated_at=updated_at,
    )


@pytest.mark.integration
@pytest.mark.asyncio
async def test_save_and_get_round_trip(async_redis_client):
    tm = ThreadManager(redis_client=async_redis_client)
    thread = _thread("t1", 1000)

    assert await tm.save_thread(thread)
    stored = await tm.get_thread("t1")

    assert stored.messages == thread.messages
    assert stored.todos == thread.todos
    assert stored.files == thread.files
    summaries = await tm.list_threads()
    assert summaries[0].message_count == len(thread.messages)


@pytest.mark.integration
@pytest.mark.asyncio
async def test_stale_write_is_skipped(async_redis_client):
    tm = ThreadManager(redis_client=async_redis_client)

    assert await tm.save_thread(_thread("t1", 2000, "newer"))
    assert await tm.save_thread(_thread("t1", 2000, "same stamp")) is False
    assert await tm.save_thread(_thread("t1", 1000, "older")) is False

    stored = await tm.get_thread("t1")
    assert stored.messages[0].content == "newer"
    assert await async_redis_client.zscore(RedisKeys.threads_index(), "t1") == 2000


@pytest.mark.integration
@pytest.mark.asyncio
async def test_index_cap_evicts_oldest(async_redis_client):
    tm = ThreadManager(redis_client=async_redis_client, index_max=2)
    for i, thread_id in enumerate(["a", "b", "c"]):
        await tm.save_thread(_thread(thread_id, 1000 + i))

    assert [s.id for s in await tm.list_threads()] == ["c", "b"]
    assert await async_redis_client.exists(RedisKeys.thread("a")) == 0
    assert not await async_redis_client.hexists(RedisKeys.thread_summaries(), "a")


@pytest.mark.integration
@pytest.mark.asyncio
async def test_clear_all_threads(async_redis_client):
    tm = ThreadManager(redis_client=async_redis_client)
    await tm.save_thread(_thread("a", 1000))
    await tm.save_thread(_thread("b", 1001))
    await tm.set_current_thread_id("b")

    assert await tm.clear_all_threads() == 2
    assert await tm.list_threads() == []
    assert await tm.get_current_thread_id() is None
    assert await async_redis_client.dbsize() == 0
