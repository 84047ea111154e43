from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from studio.services.poller import PollManager


_poller: Optional['PollManager'] = None


def set_poller(poller: Optional['PollManager']) -> None:
    global _poller
    _poller = poller


def get_poller() -> Optional['PollManager']:
    return _poller
