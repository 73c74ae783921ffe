"""In-process notice board for non-blocking, dismissable notifications."""

import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

MAX_NOTICES = 50


@dataclass
class Notice:
    id: int
    level: str  # "info", "warning" or "error"
    message: str
    source: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class NoticeBoard:
    """Bounded list of notices. The oldest notice is dropped once full."""

    LEVELS = ("info", "warning", "error")

    def __init__(self, max_notices: int = MAX_NOTICES):
        self._notices: deque[Notice] = deque(maxlen=max_notices)
        self._ids = itertools.count(1)

    def post(self, message: str, level: str = "info", source: str | None = None) -> Notice:
        if level not in self.LEVELS:
            raise ValueError(f"Unknown notice level: {level}")
        notice = Notice(id=next(self._ids), level=level, message=message, source=source)
        self._notices.append(notice)
        logger.debug("Notice #%s [%s] from %s: %s", notice.id, level, source, message)
        return notice

    def dismiss(self, notice_id: int) -> bool:
        for notice in self._notices:
            if notice.id == notice_id:
                self._notices.remove(notice)
                return True
        return False

    def clear(self, source: str | None = None):
        """Drop all notices, or only those posted by ``source``."""
        if source is None:
            self._notices.clear()
            return
        for notice in [n for n in self._notices if n.source == source]:
            self._notices.remove(notice)

    def active(self, level: str | None = None) -> list[Notice]:
        if level is None:
            return list(self._notices)
        return [n for n in self._notices if n.level == level]

    def __len__(self) -> int:
        return len(self._notices)
