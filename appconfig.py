# appconfig.py
import os
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

import orjson
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

VERSION = "1.0.0"
PROVIDER = "openrouter"

# Configure via env if you want
DATA_DIR = os.path.expanduser(os.getenv("HALO_DATA_DIR", os.path.join("~", ".halodesk")))
CONFIG_PATH = os.getenv("HALO_CONFIG_PATH", os.path.join(DATA_DIR, "config.json"))
DB_PATH = os.getenv("HALO_DB_PATH", os.path.join(DATA_DIR, "halodesk.sqlite3"))
LOG_PATH = os.getenv("HALO_LOG_PATH", os.path.join(DATA_DIR, "halodesk.log"))
LOG_LEVEL = os.getenv("HALO_LOG_LEVEL", "INFO")
HOST = os.getenv("HALO_HOST", "127.0.0.1")
PORT = int(os.getenv("HALO_PORT", "8000"))
OPENROUTER_URL = os.getenv("OPENROUTER_URL", "https://openrouter.ai/api/v1/chat/completions")
SECRET_BACKEND = os.getenv("SECRET_BACKEND", "keyring")
KEEPALIVE_SECONDS = float(os.getenv("HALO_KEEPALIVE_SECONDS", "15"))


class ModelInfo(BaseModel):
    id: str
    label: str
    capability: str


def _default_models() -> List[ModelInfo]:
    return [
        ModelInfo(id="openrouter:openai/gpt-4o-mini", label="GPT-4o mini", capability="text"),
        ModelInfo(id="openrouter:openai/gpt-4o-mini-vision", label="GPT-4o mini (vision)", capability="vision"),
    ]


class AppConfig(BaseModel):
    text_default_model: str = "openrouter:openai/gpt-4o-mini"
    vision_default_model: str = "openrouter:openai/gpt-4o-mini-vision"
    fallback_model: str = "openrouter:openai/gpt-4o-mini"
    models: List[ModelInfo] = Field(default_factory=_default_models)


def load_or_init(path: str = CONFIG_PATH) -> AppConfig:
    """Read the config document at ``path``; write and return defaults if missing."""
    if os.path.exists(path):
        with open(path, "rb") as f:
            return AppConfig.model_validate(orjson.loads(f.read()))
    config = AppConfig()
    save_config(path, config)
    logger.info("Wrote default config to %s", path)
    return config


def save_config(path: str, config: AppConfig) -> None:
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(path, "wb") as f:
        f.write(orjson.dumps(config.model_dump(), option=orjson.OPT_INDENT_2))


class RWLock:
    """
    Async read-write lock.
    - Any number of readers may hold it together.
    - A writer holds it alone.
    - Once a writer is waiting, new readers queue behind it so writes are not starved.
    """

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and self._writers_waiting == 0)
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._cond:
            self._writers_waiting += 1
            try:
                await self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            except BaseException:
                # readers parked behind this writer must re-check
                self._writers_waiting -= 1
                self._cond.notify_all()
                raise
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()


class ConfigHolder:
    """The live configuration shared by every request."""

    def __init__(self, config: Optional[AppConfig] = None):
        self._config = config or AppConfig()
        self._lock = RWLock()

    async def snapshot(self) -> AppConfig:
        async with self._lock.read():
            return self._config.model_copy(deep=True)

    async def replace(self, config: AppConfig, path: Optional[str] = None) -> None:
        async with self._lock.write():
            if path:
                save_config(path, config)
            self._config = config.model_copy(deep=True)
        logger.info("Config updated (text=%s, vision=%s)", config.text_default_model, config.vision_default_model)
