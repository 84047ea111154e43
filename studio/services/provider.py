from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Union

import httpx

from studio.modelspecs.base import ModelSpec
from studio.services.errors import (
    ContentPolicyRejected,
    GenerationError,
    InvalidParameters,
    ProviderTimeout,
    ProviderUnavailable,
    UnknownProviderError,
)
from studio.utils.text import error_text, lowered


POLL_QUEUED = 'queued'
POLL_PROCESSING = 'processing'
POLL_COMPLETED = 'completed'
POLL_FAILED = 'failed'

POLICY_MARKERS = (
    'content_policy_violation',
    'content policy',
    'sensitive',
    'safety',
    'blocked',
    'nsfw',
    'prohibited',
)


class ProviderHTTPError(Exception):
    """Non-2xx answer from a provider API."""

    def __init__(self, message: str, status_code: int | None = None, kind: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.kind = kind


@dataclass
class GenerationRequest:
    job_id: str
    user_id: int
    model: ModelSpec
    prompt: str
    options: Dict[str, str]
    reference_urls: List[str] = field(default_factory=list)
    extras: Dict[str, Any] = field(default_factory=dict)

    @property
    def endpoint(self) -> str:
        return self.model.endpoint_for(self.reference_urls)

    def build_input(self) -> Dict[str, Any]:
        return self.model.build_input(self.prompt, self.options, self.reference_urls, self.extras)


@dataclass
class ProviderOutput:
    url: Optional[str] = None
    data: Optional[bytes] = None
    content_type: Optional[str] = None


@dataclass
class SyncResult:
    outputs: List[ProviderOutput]


@dataclass
class AsyncHandle:
    request_id: str
    endpoint: str
    position: Optional[int] = None


@dataclass
class PollStatus:
    state: str
    position: Optional[int] = None
    result_urls: List[str] = field(default_factory=list)
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (POLL_COMPLETED, POLL_FAILED)


SubmitResult = Union[SyncResult, AsyncHandle]


class ProviderAdapter(Protocol):
    name: str
    is_async: bool

    async def submit(self, request: GenerationRequest) -> SubmitResult:
        ...

    async def poll_status(self, handle: AsyncHandle) -> PollStatus:
        ...

    async def close(self) -> None:
        ...


def _looks_like_policy(text: str) -> bool:
    return any(marker in text for marker in POLICY_MARKERS)


def map_provider_error(exc: BaseException) -> GenerationError:
    """Collapse any adapter failure into the shared taxonomy."""
    if isinstance(exc, GenerationError):
        return exc
    message = error_text(exc)
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        return ProviderTimeout()
    if isinstance(exc, httpx.TransportError):
        return ProviderUnavailable()
    if isinstance(exc, ProviderHTTPError):
        text = lowered(message) + ' ' + lowered(exc.kind)
        if _looks_like_policy(text):
            return ContentPolicyRejected()
        if exc.status_code in (400, 404, 413, 422):
            return InvalidParameters(message)
        if exc.status_code in (408, 504):
            return ProviderTimeout()
        if exc.status_code == 429 or (exc.status_code is not None and exc.status_code >= 500):
            return ProviderUnavailable()
        return UnknownProviderError(message)
    if _looks_like_policy(lowered(message)):
        return ContentPolicyRejected()
    return UnknownProviderError(message)


def failure_from_status(status: PollStatus) -> GenerationError:
    """Terminal ``failed`` poll answers go through the same mapping as raised errors."""
    exc = ProviderHTTPError(status.error or 'Generation failed', kind=status.error_code)
    mapped = map_provider_error(exc)
    if isinstance(mapped, UnknownProviderError):
        return UnknownProviderError(status.error or None)
    return mapped
