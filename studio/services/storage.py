from __future__ import annotations

import asyncio
import mimetypes
import os
import uuid
from dataclasses import dataclass
from urllib.parse import urlparse

import httpx

from studio.config import get_settings
from studio.services.provider import ProviderOutput
from studio.utils.logging import get_logger


logger = get_logger('storage')

VIDEO_EXTENSIONS = {'.mp4', '.webm', '.mov'}


@dataclass
class StoredAsset:
    storage_key: str
    url: str
    media_type: str


class AssetStorage:
    """Copies provider outputs out of ephemeral provider storage onto local disk."""

    def __init__(
        self,
        base_path: str | None = None,
        public_base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = get_settings()
        self.base_path = base_path or settings.asset_storage_path
        self.public_base_url = (public_base_url or settings.public_asset_base_url).rstrip('/')
        self._client = client or httpx.AsyncClient(timeout=settings.provider_http_timeout_seconds)

    async def close(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _extension(content_type: str | None, url: str | None = None) -> str:
        if url:
            ext = os.path.splitext(urlparse(url).path)[1].lower()
            if ext:
                return ext
        if content_type:
            ext = mimetypes.guess_extension(content_type.split(';')[0].strip())
            if ext:
                return '.jpg' if ext == '.jpe' else ext
        return '.png'

    def _write(self, user_id: int, data: bytes, ext: str) -> StoredAsset:
        if not data:
            raise ValueError('empty asset')
        user_dir = os.path.join(self.base_path, str(user_id))
        os.makedirs(user_dir, exist_ok=True)
        filename = f'{uuid.uuid4().hex}{ext}'
        with open(os.path.join(user_dir, filename), 'wb') as f:
            f.write(data)
        storage_key = f'{user_id}/{filename}'
        media_type = 'video' if ext in VIDEO_EXTENSIONS else 'image'
        return StoredAsset(storage_key=storage_key, url=f'{self.public_base_url}/{storage_key}', media_type=media_type)

    async def store_url(self, user_id: int, url: str) -> StoredAsset:
        resp = await self._client.get(url, follow_redirects=True)
        resp.raise_for_status()
        ext = self._extension(resp.headers.get('content-type'), url)
        return await asyncio.to_thread(self._write, user_id, resp.content, ext)

    async def store_bytes(self, user_id: int, data: bytes, content_type: str | None = None) -> StoredAsset:
        return await asyncio.to_thread(self._write, user_id, data, self._extension(content_type))

    async def store(self, user_id: int, output: ProviderOutput) -> StoredAsset:
        if output.data is not None:
            return await self.store_bytes(user_id, output.data, output.content_type)
        if output.url:
            return await self.store_url(user_id, output.url)
        raise ValueError('provider output has neither url nor data')

    def remove(self, storage_key: str) -> None:
        path = os.path.join(self.base_path, storage_key)
        try:
            os.remove(path)
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.warning('asset_remove_failed', storage_key=storage_key, error=str(exc))
