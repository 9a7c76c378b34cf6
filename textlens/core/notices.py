"""User-visible error and success notices with auto-dismiss timers."""

import itertools
import logging
import time
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

ERROR_TTL: float = 5.0
SUCCESS_TTL: float = 3.0


@dataclass
class Notice:
    """A transient message shown to the user."""
    id: int
    level: str  # 'error' or 'success'
    message: str
    expires_at: float


class NoticeBoard:
    """Hold notices until they expire or are dismissed."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._ids = itertools.count(1)
        self._notices: list[Notice] = []

    def post_error(self, message: str) -> Notice:
        logger.warning(message)
        return self._post('error', message, ERROR_TTL)

    def post_success(self, message: str) -> Notice:
        logger.info(message)
        return self._post('success', message, SUCCESS_TTL)

    def _post(self, level: str, message: str, ttl: float) -> Notice:
        notice = Notice(
            id=next(self._ids),
            level=level,
            message=message,
            expires_at=self._clock() + ttl
        )
        self._notices.append(notice)
        return notice

    def dismiss(self, notice_id: int) -> None:
        """Remove a notice before it expires."""
        self._notices = [n for n in self._notices if n.id != notice_id]

    def clear_errors(self) -> None:
        """Hide every error notice."""
        self._notices = [n for n in self._notices if n.level != 'error']

    def active(self) -> list[Notice]:
        """Notices that have not expired, oldest first."""
        now = self._clock()
        self._notices = [n for n in self._notices if n.expires_at > now]
        return list(self._notices)

    def errors(self) -> list[Notice]:
        return [n for n in self.active() if n.level == 'error']
