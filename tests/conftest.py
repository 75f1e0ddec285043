"""Shared test fixtures."""

import sqlite3
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

import httpx
import orjson
import pytest

from appconfig import AppConfig, ConfigHolder, ModelInfo
from keystore import SecretProvider
from memstore import MemoryStore
from server import GatewayState, create_app


class FakeSecrets(SecretProvider):
    def __init__(self, values: Optional[Dict[str, str]] = None) -> None:
        self.values = dict(values or {})
        self.lookups = 0

    async def get_secret(self, name: str) -> Optional[str]:
        self.lookups += 1
        return self.values.get(name)

    async def set_secret(self, name: str, value: str) -> None:
        self.values[name] = value


class FakeUpstream:
    """Stands in for OpenRouter behind httpx.MockTransport; records every request."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.reply: Callable[[httpx.Request], httpx.Response] = lambda request: completion("ok")

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.reply(request)

    def body(self, i: int = -1) -> Dict[str, Any]:
        return orjson.loads(self.requests[i].content)


def completion(text: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": text}}]})


def delta_frame(text: str, finish_reason: Optional[str] = None) -> bytes:
    choice: Dict[str, Any] = {"delta": {"content": text}}
    if finish_reason is not None:
        choice["finish_reason"] = finish_reason
    return b"data: " + orjson.dumps({"choices": [choice]}) + b"\n\n"


DONE_FRAME = b"data: [DONE]\n\n"


def sse_response(*chunks: bytes, error: Optional[Exception] = None) -> httpx.Response:
    async def body() -> AsyncIterator[bytes]:
        for c in chunks:
            yield c
        if error is not None:
            raise error

    return httpx.Response(200, content=body(), headers={"content-type": "text/event-stream"})


def parse_sse(raw: bytes) -> List[Tuple[str, Dict[str, Any]]]:
    events: List[Tuple[str, Dict[str, Any]]] = []
    for block in raw.split(b"\n\n"):
        name = ""
        data = b""
        for line in block.split(b"\n"):
            if line.startswith(b"event: "):
                name = line[len(b"event: "):].decode()
            elif line.startswith(b"data: "):
                data = line[len(b"data: "):]
        if name:
            events.append((name, orjson.loads(data)))
    return events


def make_config(**overrides: Any) -> AppConfig:
    base: Dict[str, Any] = {
        "text_default_model": "p:modelA",
        "vision_default_model": "openrouter:vision-default",
        "fallback_model": "openrouter:fallback",
        "models": [ModelInfo(id="p:modelA", label="Model A", capability="text")],
    }
    base.update(overrides)
    return AppConfig(**base)


def count_rows(store: MemoryStore, table: str) -> int:
    """Row count read through a separate connection to the store's file."""
    conn = sqlite3.connect(store.db_path)
    try:
        return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
    finally:
        conn.close()


@pytest.fixture
def store(tmp_path):
    s = MemoryStore(db_path=str(tmp_path / "memory.sqlite3"))
    yield s
    s.close()


@pytest.fixture
def secrets() -> FakeSecrets:
    return FakeSecrets({"openrouter": "sk-test"})


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def config() -> ConfigHolder:
    return ConfigHolder(make_config())


@pytest.fixture
async def gateway(store, secrets, upstream, config):
    client = httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler))
    yield GatewayState(config=config, store=store, secrets=secrets, client=client)
    await client.aclose()


@pytest.fixture
async def api(gateway):
    app = create_app(gateway)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://127.0.0.1") as client:
        yield client
