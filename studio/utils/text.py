from __future__ import annotations

from typing import Optional


def clamp_text(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + '...'


def error_text(exc: BaseException, fallback: str = 'Generation failed') -> str:
    message = str(exc).strip()
    return message or fallback


def lowered(value: Optional[str]) -> str:
    return str(value or '').strip().lower()
