from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import httpx
from loguru import logger

from app.core.config import settings
from app.core.errors import ProviderError
from app.services.error_taxonomy import transport_error_code
from app.services.provider_models import ProviderRequest
from app.services.storage import preview_url


RETRIABLE_STATUSES = {408, 429, 500, 502, 503, 504}
RETRIABLE_CODES = {'ECONNRESET', 'ETIMEDOUT'}


def is_retriable(error: ProviderError) -> bool:
    return error.status_code in RETRIABLE_STATUSES or error.code in RETRIABLE_CODES


def _json_or_text(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _error_message(data: Any, fallback: str) -> str:
    if isinstance(data, dict):
        for key in ('error', 'message', 'detail'):
            if data.get(key):
                return str(data[key])
    if isinstance(data, str) and data:
        return data[:300]
    return fallback


def extract_provider_id(response: Any) -> Optional[str]:
    """
    id может прийти в data.id, data.request_id или на верхнем уровне.
    """
    if not isinstance(response, dict):
        return None

    candidates = []
    data = response.get('data')
    if isinstance(data, dict):
        candidates += [data.get('id'), data.get('request_id'), data.get('requestId')]
    candidates += [response.get('id'), response.get('request_id'), response.get('requestId')]

    for value in candidates:
        if value:
            return str(value)
    return None


def extract_output_urls(data: Any) -> List[str]:
    if not isinstance(data, dict):
        return []

    outputs = data.get('outputs')
    if outputs is None:
        outputs = data.get('output') or data.get('images') or []
    if isinstance(outputs, (str, dict)):
        outputs = [outputs]

    urls: List[str] = []
    for item in outputs:
        if isinstance(item, str) and item:
            urls.append(item)
        elif isinstance(item, dict) and item.get('url'):
            urls.append(str(item['url']))
    return urls


class WaveSpeedClient:
    """
    Клиент провайдера генерации изображений.
    transport подменяется в тестах (httpx.MockTransport).
    """

    def __init__(
            self,
            *,
            base_url: Optional[str] = None,
            api_key: Optional[str] = None,
            timeout_s: Optional[float] = None,
            retry_delay_s: Optional[float] = None,
            transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = (base_url or settings.WAVESPEED_API_BASE).rstrip('/')
        self.api_key = api_key if api_key is not None else settings.WAVESPEED_API_KEY
        self.timeout_s = timeout_s or settings.PROVIDER_TIMEOUT_S
        self.retry_delay_s = settings.PROVIDER_RETRY_DELAY_S if retry_delay_s is None else retry_delay_s
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(10.0, read=self.timeout_s),
            headers={
                'Authorization': f'Bearer {self.api_key}',
                'Content-Type': 'application/json',
            },
            transport=self.transport
        )

    async def _submit_once(self, request: ProviderRequest) -> Dict[str, Any]:
        url = f'{self.base_url}{request.endpoint}'
        async with self._client() as client:
            try:
                response = await client.post(url, json=request.body)
            except httpx.RequestError as e:
                raise ProviderError(
                    f'Failed to connect to provider: {e}',
                    code=transport_error_code(e)
                ) from e

        data = _json_or_text(response)
        if not response.is_success:
            raise ProviderError(
                _error_message(data, f'Provider error {response.status_code}'),
                status_code=response.status_code,
                response_data=data
            )
        if not isinstance(data, dict):
            raise ProviderError('malformed provider response', status_code=response.status_code, response_data=data)
        return data

    async def submit(self, request: ProviderRequest) -> Dict[str, Any]:
        """
        POST с одной повторной попыткой на 408/429/5xx или обрыв соединения.
        """
        logger.info(
            f'[WaveSpeed] submit {request.endpoint} '
            f'images={[preview_url(u) for u in request.body.get("images", [])]}'
        )
        try:
            return await self._submit_once(request)
        except ProviderError as e:
            if not is_retriable(e):
                raise
            logger.warning(
                f'[WaveSpeed] submit retrying once due to transient error '
                f'(status={e.status_code}, code={e.code})'
            )
            await asyncio.sleep(self.retry_delay_s)
            return await self._submit_once(request)

    async def get_prediction_result(self, provider_request_id: str) -> Dict[str, Any]:
        """
        Один GET без ретраев. Возвращает содержимое data.
        """
        url = f'{self.base_url}/api/v3/predictions/{provider_request_id}/result'
        async with self._client() as client:
            try:
                response = await client.get(url)
            except httpx.RequestError as e:
                raise ProviderError(
                    f'Failed to connect to provider: {e}',
                    code=transport_error_code(e)
                ) from e

        data = _json_or_text(response)
        if not response.is_success:
            raise ProviderError(
                _error_message(data, f'Provider error {response.status_code}'),
                status_code=response.status_code,
                response_data=data
            )
        if not isinstance(data, dict):
            return {}
        payload = data.get('data')
        return payload if isinstance(payload, dict) else data
