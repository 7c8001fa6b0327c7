from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import httpx
import structlog


logger = structlog.get_logger(__name__)


class TrafficLimitStrategy(Enum):
    NO_RESET = 'NO_RESET'
    DAY = 'DAY'
    WEEK = 'WEEK'
    MONTH = 'MONTH'


class RemnaWaveAPIError(Exception):
    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_data: Any = None,
        *,
        remote_id: str | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.response_data = response_data
        # set when the panel created something but its reply could not be read
        self.remote_id = remote_id
        super().__init__(message)


@dataclass
class RemnaWaveServer:
    id: int
    name: str
    description: str | None = None
    is_active: bool = True


@dataclass
class RemnaWavePlan:
    id: int
    server_id: int
    name: str
    description: str | None = None
    price: float = 0.0
    duration: int = 0
    is_active: bool = True


@dataclass
class RemnaWaveSubscription:
    id: str
    user_id: int
    server_id: int
    plan_id: int
    status: str
    expires_at: datetime | None = None


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _format_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat().replace('+00:00', 'Z')


class RemnaWaveAPI:
    """Thin async client for the subscription provisioning panel.

    Every response is wrapped in ``{"success": bool, "message": str, "data": ...}``;
    a non-2xx status or ``success = false`` raises :class:`RemnaWaveAPIError`.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        secret_key: str | None = None,
        *,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.secret_key = secret_key
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _headers(self) -> dict[str, str]:
        headers = {
            'Content-Type': 'application/json',
            'Accept': 'application/json',
            'Authorization': f'Bearer {self.api_key}',
            'X-API-Key': self.api_key,
        }
        if self.secret_key:
            headers['X-Secret-Key'] = self.secret_key
        return headers

    async def __aenter__(self) -> RemnaWaveAPI:
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers(),
            timeout=self.timeout,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _make_request(self, method: str, endpoint: str, data: dict | None = None) -> Any:
        if self._client is None:
            raise RemnaWaveAPIError('Client is not started, use "async with RemnaWaveAPI(...)"')

        try:
            response = await self._client.request(method, endpoint, json=data)
        except httpx.TimeoutException as exc:
            logger.warning('Таймаут запроса к RemnaWave API', method=method, endpoint=endpoint)
            raise RemnaWaveAPIError(f'Request timed out: {method} {endpoint}') from exc
        except httpx.HTTPError as exc:
            logger.warning('Ошибка соединения с RemnaWave API', method=method, endpoint=endpoint, error=str(exc))
            raise RemnaWaveAPIError(f'Request failed: {exc!s}') from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.status_code >= 400:
            message = payload.get('message') if isinstance(payload, dict) else response.text[:200]
            raise RemnaWaveAPIError(
                f'API returned status {response.status_code}: {message}',
                status_code=response.status_code,
                response_data=payload,
            )

        if not isinstance(payload, dict):
            raise RemnaWaveAPIError('Malformed response body', status_code=response.status_code)

        if not payload.get('success', False):
            raise RemnaWaveAPIError(
                f'API error: {payload.get("message") or payload.get("error") or "unknown"}',
                status_code=response.status_code,
                response_data=payload,
            )

        return payload.get('data')

    async def get_servers(self) -> list[RemnaWaveServer]:
        data = await self._make_request('GET', '/servers')
        return [self._parse_server(item) for item in data or []]

    async def get_plans(self, server_id: int) -> list[RemnaWavePlan]:
        data = await self._make_request('GET', f'/servers/{server_id}/plans')
        return [self._parse_plan(item) for item in data or []]

    async def create_subscription(
        self,
        *,
        user_id: int,
        server_id: int,
        plan_id: int,
        expire_at: datetime,
        traffic_limit_gb: int = 0,
        traffic_limit_strategy: TrafficLimitStrategy = TrafficLimitStrategy.NO_RESET,
    ) -> RemnaWaveSubscription:
        data = await self._make_request(
            'POST',
            '/subscriptions',
            {
                'user_id': user_id,
                'server_id': server_id,
                'plan_id': plan_id,
                'expires_at': _format_datetime(expire_at),
                'traffic_limit_gb': traffic_limit_gb,
                'traffic_limit_strategy': traffic_limit_strategy.value,
            },
        )
        return self._parse_subscription(data)

    async def update_subscription(self, subscription_id: str, data: dict[str, Any]) -> RemnaWaveSubscription:
        body = {key: _format_datetime(value) if isinstance(value, datetime) else value for key, value in data.items()}
        result = await self._make_request('PUT', f'/subscriptions/{subscription_id}', body)
        return self._parse_subscription(result)

    async def delete_subscription(self, subscription_id: str) -> bool:
        await self._make_request('DELETE', f'/subscriptions/{subscription_id}')
        return True

    @staticmethod
    def _parse_server(item: dict) -> RemnaWaveServer:
        try:
            return RemnaWaveServer(
                id=int(item['id']),
                name=item.get('name') or f'Server {item["id"]}',
                description=item.get('description'),
                is_active=bool(item.get('is_active', True)),
            )
        except (KeyError, ValueError, TypeError, AttributeError) as exc:
            raise RemnaWaveAPIError(f'Malformed server payload: {exc!s}', response_data=item) from exc

    @staticmethod
    def _parse_plan(item: dict) -> RemnaWavePlan:
        try:
            return RemnaWavePlan(
                id=int(item['id']),
                server_id=int(item.get('server_id') or 0),
                name=item.get('name') or f'Plan {item["id"]}',
                description=item.get('description'),
                price=float(item.get('price') or 0),
                duration=int(item.get('duration') or 0),
                is_active=bool(item.get('is_active', True)),
            )
        except (KeyError, ValueError, TypeError, AttributeError) as exc:
            raise RemnaWaveAPIError(f'Malformed plan payload: {exc!s}', response_data=item) from exc

    @staticmethod
    def _parse_subscription(item: dict | None) -> RemnaWaveSubscription:
        if not isinstance(item, dict) or item.get('id') in (None, ''):
            raise RemnaWaveAPIError('Subscription payload has no id', response_data=item)
        remote_id = str(item['id'])
        try:
            return RemnaWaveSubscription(
                id=remote_id,
                user_id=int(item.get('user_id') or 0),
                server_id=int(item.get('server_id') or 0),
                plan_id=int(item.get('plan_id') or 0),
                status=item.get('status') or 'active',
                expires_at=_parse_datetime(item.get('expires_at')),
            )
        except (KeyError, ValueError, TypeError, AttributeError) as exc:
            raise RemnaWaveAPIError(
                f'Malformed subscription payload: {exc!s}',
                response_data=item,
                remote_id=remote_id,
            ) from exc
