# keystore.py
"""
Secret providers for the upstream API key.

The gateway only talks to the ``SecretProvider`` interface; which backend is
used (OS keychain via ``keyring`` or plain environment variables) is chosen at
startup by ``SECRET_BACKEND``.
"""

import os
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

import keyring
from keyring.errors import KeyringError

from appconfig import PROVIDER, SECRET_BACKEND
from errors import KeyMissing

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "HaloRouter"
KEY_MISSING_MSG = "OpenRouter key missing. Set it in Settings."


class SecretProvider(ABC):
    @abstractmethod
    async def get_secret(self, name: str) -> Optional[str]:
        """Return the secret, or None when it is not set."""

    @abstractmethod
    async def set_secret(self, name: str, value: str) -> None:
        ...

    async def has_secret(self, name: str) -> bool:
        value = await self.get_secret(name)
        return bool(value)


class KeyringSecrets(SecretProvider):
    def __init__(self, service: str = KEYRING_SERVICE):
        self.service = service

    async def get_secret(self, name: str) -> Optional[str]:
        try:
            return await asyncio.to_thread(keyring.get_password, self.service, name)
        except KeyringError as e:
            logger.warning("Keyring lookup failed for %s/%s: %s", self.service, name, e)
            return None

    async def set_secret(self, name: str, value: str) -> None:
        await asyncio.to_thread(keyring.set_password, self.service, name, value)


class EnvSecrets(SecretProvider):
    """Secrets from ``<NAME>_API_KEY`` environment variables."""

    @staticmethod
    def _var(name: str) -> str:
        return f"{name.upper()}_API_KEY"

    async def get_secret(self, name: str) -> Optional[str]:
        return os.getenv(self._var(name))

    async def set_secret(self, name: str, value: str) -> None:
        os.environ[self._var(name)] = value


def make_secret_provider(backend: str = SECRET_BACKEND) -> SecretProvider:
    if (backend or "").strip().lower() == "env":
        return EnvSecrets()
    return KeyringSecrets()


async def get_api_key(secrets: SecretProvider, name: str = PROVIDER) -> str:
    key = await secrets.get_secret(name)
    if key is None or not key.strip():
        raise KeyMissing(KEY_MISSING_MSG)
    return key.strip()
