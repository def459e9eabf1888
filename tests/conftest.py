"""
Test configuration and fixtures for Coach Stream.
"""

import asyncio
import json
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from redis.asyncio import Redis as AsyncRedis
from testcontainers.compose import DockerCompose

from coach_stream.core.threads import ChatThread


def pytest_addoption(parser):
    """Add custom pytest command-line options."""
    parser.addoption(
        "--run-integration-tests",
        action="store_true",
        default=False,
        help="Run tests against a real Redis started with testcontainers",
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless explicitly requested."""
    skip_integration = pytest.mark.skip(
        reason="Use --run-integration-tests to run integration tests"
    )
    for item in items:
        if "integration" in item.keywords and not config.getoption("--run-integration-tests"):
            item.add_marker(skip_integration)


@pytest.fixture(scope="session")
def redis_container():
    """Redis from docker-compose.integration.yml, on an ephemeral host port."""
    os.environ.setdefault("REDIS_IMAGE", "redis:7-alpine")
    compose = DockerCompose(
        context="./",
        compose_file_name="docker-compose.integration.yml",
        pull=True,
    )
    compose.start()
    yield compose
    compose.stop()


@pytest.fixture(scope="session")
def redis_url(redis_container):
    host, port = redis_container.get_service_host_and_port("redis", 6379)
    return f"redis://{host}:{port}"


@pytest_asyncio.fixture()
async def async_redis_client(redis_url):
    client = AsyncRedis.from_url(redis_url, decode_responses=False)

    # Flush database to ensure clean state for this test
    await client.flushdb()

    yield client

    await client.aclose()


class FakePipeline:
    """Queues commands and runs them against FakeRedis on execute()."""

    def __init__(self, redis: "FakeRedis"):
        self._redis = redis
        self._ops: List[Any] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self._ops = []
        return False

    def __getattr__(self, name):
        method = getattr(self._redis, name)

        def queue(*args, **kwargs):
            self._ops.append((method, args, kwargs))
            return self

        return queue

    async def execute(self):
        results = [await method(*args, **kwargs) for method, args, kwargs in self._ops]
        self._ops = []
        return results


def _encode(value):
    return value.encode() if isinstance(value, str) else value


def _redis_slice(items: list, start: int, end: int) -> list:
    return items[start : None if end == -1 else end + 1]


class FakeRedis:
    """In-memory stand-in for the subset of redis.asyncio.Redis used by ThreadManager."""

    def __init__(self):
        self.strings: Dict[str, bytes] = {}
        self.hashes: Dict[str, Dict[str, bytes]] = {}
        self.zsets: Dict[str, Dict[str, float]] = {}
        self.expirations: Dict[str, Optional[int]] = {}

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def ping(self):
        return True

    async def aclose(self):
        pass

    async def get(self, key):
        return self.strings.get(key)

    async def set(self, key, value, ex=None):
        self.strings[key] = _encode(value)
        self.expirations[key] = ex
        return True

    async def delete(self, *keys):
        count = 0
        for key in keys:
            for store in (self.strings, self.hashes, self.zsets):
                if store.pop(key, None) is not None:
                    count += 1
        return count

    async def zscore(self, key, member):
        return self.zsets.get(key, {}).get(member)

    async def zadd(self, key, mapping):
        zset = self.zsets.setdefault(key, {})
        added = len([m for m in mapping if m not in zset])
        zset.update({m: float(s) for m, s in mapping.items()})
        return added

    async def zcard(self, key):
        return len(self.zsets.get(key, {}))

    def _ordered(self, key) -> List[str]:
        return [m for m, _ in sorted(self.zsets.get(key, {}).items(), key=lambda kv: (kv[1], kv[0]))]

    async def zrange(self, key, start, end):
        return [_encode(m) for m in _redis_slice(self._ordered(key), start, end)]

    async def zrevrange(self, key, start, end):
        return [_encode(m) for m in _redis_slice(self._ordered(key)[::-1], start, end)]

    async def zrem(self, key, *members):
        zset = self.zsets.get(key, {})
        return len([zset.pop(m) for m in members if m in zset])

    async def hset(self, key, field, value):
        self.hashes.setdefault(key, {})[field] = _encode(value)
        return 1

    async def hdel(self, key, *fields):
        fields_map = self.hashes.get(key, {})
        return len([fields_map.pop(f) for f in fields if f in fields_map])

    async def hmget(self, key, fields):
        fields_map = self.hashes.get(key, {})
        return [fields_map.get(f) for f in fields]


class MemoryThreadStore:
    """ThreadStore keeping every written snapshot in memory."""

    def __init__(self):
        self.saved: List[ChatThread] = []
        self.threads: Dict[str, ChatThread] = {}
        self.current_thread_id: Optional[str] = None

    async def save_thread(self, thread: ChatThread) -> bool:
        self.saved.append(thread)
        self.threads[thread.id] = thread
        return True

    async def get_thread(self, thread_id: str) -> Optional[ChatThread]:
        return self.threads.get(thread_id)

    async def set_current_thread_id(self, thread_id: str) -> bool:
        self.current_thread_id = thread_id
        return True


def sse(event: str, payload: Any, newline: str = "\n") -> str:
    """One event record in wire form."""
    data = payload if isinstance(payload, str) else json.dumps(payload)
    lines = [f"event: {event}"] + [f"data: {line}" for line in data.split("\n")]
    return newline.join(lines) + newline * 2


class ScriptedAgentClient:
    """Agent client whose stream replays scripted chunks.

    A chunk may be an ``asyncio.Event``; the stream waits for it before going
    on, which lets a test hold a stream open. An exception chunk is raised
    from the byte stream.
    """

    def __init__(self, chunks: Optional[List[Any]] = None):
        self.chunks = list(chunks or [])
        self.requests: List[Dict[str, Any]] = []
        self.remote_state = None

    @asynccontextmanager
    async def open_stream(self, thread_id, messages):
        self.requests.append({"thread_id": thread_id, "messages": list(messages)})

        async def _chunks():
            for chunk in self.chunks:
                if isinstance(chunk, asyncio.Event):
                    await chunk.wait()
                    continue
                if isinstance(chunk, Exception):
                    raise chunk
                yield chunk.encode() if isinstance(chunk, str) else chunk

        yield _chunks()

    async def get_thread_state(self, thread_id):
        return self.remote_state

    async def aclose(self):
        pass


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def memory_store():
    return MemoryThreadStore()


@pytest.fixture
def scripted_client():
    """Factory for ScriptedAgentClient instances."""
    return ScriptedAgentClient


@pytest.fixture
def sse_record():
    """Builder for wire-form event records."""
    return sse
