from __future__ import annotations

import base64
from typing import Any, Dict, List, Tuple

import httpx

from studio.config import get_settings
from studio.services.provider import ProviderHTTPError
from studio.utils.logging import get_logger
from studio.utils.text import clamp_text


logger = get_logger('gemini')

BLOCKING_FINISH_REASONS = {'SAFETY', 'PROHIBITED_CONTENT', 'IMAGE_SAFETY', 'BLOCKLIST', 'SPII'}


class GeminiError(ProviderHTTPError):
    pass


class GeminiClient:
    def __init__(self, api_key: str | None = None, client: httpx.AsyncClient | None = None) -> None:
        settings = get_settings()
        self.base_url = 'https://generativelanguage.googleapis.com/v1beta'
        self.api_key = settings.gemini_api_key if api_key is None else api_key
        self._client = client or httpx.AsyncClient(timeout=settings.provider_http_timeout_seconds)

    async def close(self) -> None:
        await self._client.aclose()

    async def fetch_image(self, url: str) -> Tuple[bytes, str]:
        resp = await self._client.get(url, follow_redirects=True)
        if resp.status_code >= 400:
            raise GeminiError(f'Reference image fetch error {resp.status_code}', 400)
        content_type = resp.headers.get('content-type', 'image/png').split(';')[0].strip()
        return resp.content, content_type

    async def generate_content(
        self,
        model_id: str,
        prompt: str,
        images: List[Tuple[bytes, str]] | None = None,
    ) -> Dict[str, Any]:
        parts: List[Dict[str, Any]] = [{'text': prompt}]
        for data, mime_type in images or []:
            parts.append({'inline_data': {'mime_type': mime_type, 'data': base64.b64encode(data).decode('ascii')}})
        body = {
            'contents': [{'parts': parts}],
            'generationConfig': {'responseModalities': ['IMAGE', 'TEXT']},
        }
        resp = await self._client.post(
            f'{self.base_url}/models/{model_id}:generateContent',
            headers={'x-goog-api-key': self.api_key, 'Content-Type': 'application/json'},
            json=body,
        )
        if resp.status_code >= 400:
            message, status = self.error_detail(resp)
            raise GeminiError(f'Gemini error {resp.status_code}: {message}', resp.status_code, status)
        return resp.json()

    @staticmethod
    def error_detail(resp: httpx.Response) -> Tuple[str, str | None]:
        try:
            body = resp.json()
        except ValueError:
            return clamp_text(resp.text or '', 500), None
        error = body.get('error') if isinstance(body, dict) else None
        if isinstance(error, dict):
            return str(error.get('message') or ''), error.get('status')
        return clamp_text(resp.text or '', 500), None

    @staticmethod
    def extract_images(record: Dict[str, Any]) -> List[Tuple[bytes, str]]:
        feedback = record.get('promptFeedback') or {}
        block_reason = feedback.get('blockReason')
        if block_reason:
            raise GeminiError(f'Prompt blocked by safety filter: {block_reason}', 400, 'blocked')

        images: List[Tuple[bytes, str]] = []
        finish_reasons: List[str] = []
        for candidate in record.get('candidates') or []:
            finish_reasons.append(str(candidate.get('finishReason') or ''))
            content = candidate.get('content') or {}
            for part in content.get('parts') or []:
                inline = part.get('inlineData') or part.get('inline_data')
                if not isinstance(inline, dict) or not inline.get('data'):
                    continue
                mime_type = inline.get('mimeType') or inline.get('mime_type') or 'image/png'
                images.append((base64.b64decode(inline['data']), mime_type))

        if images:
            return images
        blocked = [r for r in finish_reasons if r in BLOCKING_FINISH_REASONS]
        if blocked:
            raise GeminiError(f'Image blocked by safety filter: {blocked[0]}', 400, 'blocked')
        logger.warning('gemini_no_image', finish_reasons=finish_reasons)
        raise GeminiError('Gemini returned no image')
