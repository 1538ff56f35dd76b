"""User notices and refresh signals.

The core never renders anything. It posts short-lived notices to a
``Notifier`` and tells interested views to re-fetch through a ``RefreshBus``.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from enum import Flag, auto
from typing import Callable, Deque, Dict, List, Optional

from elibrary.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notice:
    message: str
    level: str = "info"
    duration: float = 5.0
    created_at: float = field(default_factory=time.monotonic)

    def is_active(self, now: Optional[float] = None) -> bool:
        now = time.monotonic() if now is None else now
        return now - self.created_at < self.duration


class Notifier:
    """Collects transient, timed, non-blocking notices for the presentation layer."""

    def __init__(self, sink: Optional[Callable[[Notice], None]] = None,
                 duration: Optional[float] = None, history: int = 50) -> None:
        self._sink = sink
        self._duration = settings.notice_seconds if duration is None else duration
        self._notices: Deque[Notice] = deque(maxlen=history)

    def notify(self, message: str, level: str = "info") -> Notice:
        notice = Notice(message=message, level=level, duration=self._duration)
        self._notices.append(notice)
        logger.info(f"Notice ({level}): {message}")
        if self._sink is not None:
            self._sink(notice)
        return notice

    def active(self, now: Optional[float] = None) -> List[Notice]:
        return [n for n in self._notices if n.is_active(now)]

    def history(self) -> List[Notice]:
        return list(self._notices)

    def drain(self) -> List[Notice]:
        notices = list(self._notices)
        self._notices.clear()
        return notices


class RefreshSignal(Flag):
    NONE = 0
    AVAILABILITY = auto()
    MY_LOANS = auto()
    ALL_LOANS = auto()


Listener = Callable[[RefreshSignal], None]


class RefreshBus:
    """Fan-out of refresh signals to the views that show availability or loans.

    Views re-fetch from the server when notified; nothing is patched locally.
    """

    def __init__(self, history: int = 50) -> None:
        self._listeners: Dict[RefreshSignal, List[Listener]] = defaultdict(list)
        # recent emissions, oldest dropped first
        self.emitted: Deque[RefreshSignal] = deque(maxlen=history)

    def subscribe(self, signal: RefreshSignal, listener: Listener) -> Callable[[], None]:
        self._listeners[signal].append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners[signal]:
                self._listeners[signal].remove(listener)

        return unsubscribe

    def emit(self, signals: RefreshSignal) -> None:
        if not signals:
            return
        self.emitted.append(signals)
        logger.debug(f"Refresh requested: {signals}")
        for subscribed, listeners in list(self._listeners.items()):
            if not subscribed & signals:
                continue
            for listener in list(listeners):
                listener(subscribed & signals)
