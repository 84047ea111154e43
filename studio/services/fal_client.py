from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from studio.config import get_settings
from studio.services.provider import ProviderHTTPError
from studio.utils.logging import get_logger
from studio.utils.text import clamp_text


logger = get_logger('fal')


class FalError(ProviderHTTPError):
    pass


class FalClient:
    def __init__(
        self,
        api_key: str | None = None,
        webhook_url: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = get_settings()
        self.run_url = 'https://fal.run'
        self.queue_url = 'https://queue.fal.run'
        self.api_key = settings.fal_key if api_key is None else api_key
        self.webhook_url = (settings.fal_webhook_url if webhook_url is None else webhook_url).strip()
        self._client = client or httpx.AsyncClient(timeout=settings.provider_http_timeout_seconds)

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        return {
            'Authorization': f'Key {self.api_key}',
            'Content-Type': 'application/json',
        }

    @staticmethod
    def app_id(endpoint: str) -> str:
        # Queue status/result routes drop the sub-path: fal-ai/flux-2/edit -> fal-ai/flux-2
        parts = [p for p in endpoint.split('/') if p]
        return '/'.join(parts[:2])

    @staticmethod
    def error_detail(resp: httpx.Response) -> tuple[str, Optional[str]]:
        try:
            body = resp.json()
        except ValueError:
            return clamp_text(resp.text or '', 500), None
        detail = body.get('detail') if isinstance(body, dict) else None
        if isinstance(detail, list) and detail:
            first = detail[0] if isinstance(detail[0], dict) else {}
            return str(first.get('msg') or detail[0]), first.get('type')
        if isinstance(detail, str):
            return detail, None
        if isinstance(body, dict) and body.get('error'):
            return str(body['error']), body.get('error_type')
        return clamp_text(resp.text or '', 500), None

    def _raise_for(self, op: str, resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return
        detail, kind = self.error_detail(resp)
        raise FalError(f'FAL {op} error {resp.status_code}: {detail}', resp.status_code, kind)

    async def run(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        resp = await self._client.post(f'{self.run_url}/{endpoint}', headers=self._headers(), json=payload)
        self._raise_for('run', resp)
        return resp.json()

    async def submit(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        params = {'fal_webhook': self.webhook_url} if self.webhook_url else None
        resp = await self._client.post(
            f'{self.queue_url}/{endpoint}',
            headers=self._headers(),
            json=payload,
            params=params,
        )
        self._raise_for('submit', resp)
        return resp.json()

    async def get_status(self, endpoint: str, request_id: str) -> Dict[str, Any]:
        url = f'{self.queue_url}/{self.app_id(endpoint)}/requests/{request_id}/status'
        resp = await self._client.get(url, headers=self._headers())
        self._raise_for('status', resp)
        return resp.json()

    async def get_result(self, endpoint: str, request_id: str) -> Dict[str, Any]:
        url = f'{self.queue_url}/{self.app_id(endpoint)}/requests/{request_id}'
        resp = await self._client.get(url, headers=self._headers())
        self._raise_for('result', resp)
        return resp.json()

    @staticmethod
    def extract_request_id(record: Dict[str, Any]) -> str:
        for candidate in (record.get('request_id'), record.get('requestId'), record.get('gateway_request_id')):
            value = str(candidate or '').strip()
            if value:
                return value
        return ''

    @staticmethod
    def get_status_value(record: Dict[str, Any]) -> str:
        return str(record.get('status') or '').strip().upper()

    @staticmethod
    def get_queue_position(record: Dict[str, Any]) -> Optional[int]:
        value = record.get('queue_position')
        try:
            return int(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    def parse_result_urls(self, record: Dict[str, Any]) -> List[str]:
        urls: List[str] = []

        def extend_from(value: Any) -> None:
            if isinstance(value, str):
                cleaned = value.strip()
                if cleaned:
                    urls.append(cleaned)
            elif isinstance(value, dict):
                extend_from(value.get('url'))
            elif isinstance(value, list):
                for item in value:
                    extend_from(item)

        extend_from(record.get('images'))
        extend_from(record.get('image'))
        extend_from(record.get('video'))
        extend_from(record.get('videos'))
        output = record.get('output')
        if isinstance(output, dict):
            extend_from(output.get('images'))
            extend_from(output.get('video'))

        # Preserve order while removing duplicates.
        return list(dict.fromkeys(urls))
