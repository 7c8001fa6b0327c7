from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from app.config import settings
from app.external.remnawave_api import RemnaWaveAPI, RemnaWaveServer


class RemnaWaveConfigurationError(Exception):
    """Raised when the provisioning panel credentials are missing."""


class RemnaWaveService:
    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        secret_key: str | None = None,
        *,
        timeout: float | None = None,
    ):
        self.base_url = base_url if base_url is not None else settings.REMNAWAVE_API_URL
        self.api_key = api_key if api_key is not None else settings.REMNAWAVE_API_KEY
        self.secret_key = secret_key if secret_key is not None else settings.REMNAWAVE_SECRET_KEY
        self.timeout = timeout if timeout is not None else settings.REMNAWAVE_TIMEOUT_SECONDS

    @property
    def configuration_error(self) -> str | None:
        if not self.base_url:
            return 'REMNAWAVE_API_URL is not set'
        if not self.api_key:
            return 'REMNAWAVE_API_KEY is not set'
        return None

    @property
    def is_configured(self) -> bool:
        return self.configuration_error is None

    @asynccontextmanager
    async def get_api_client(self) -> AsyncIterator[RemnaWaveAPI]:
        if not self.is_configured:
            raise RemnaWaveConfigurationError(self.configuration_error)
        async with RemnaWaveAPI(
            self.base_url,
            self.api_key,
            self.secret_key or None,
            timeout=self.timeout,
        ) as api:
            yield api

    async def get_servers(self) -> list[RemnaWaveServer]:
        async with self.get_api_client() as api:
            return await api.get_servers()
