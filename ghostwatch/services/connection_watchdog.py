"""
Connection circuit breaker.

Telethon sometimes loses its connection and keeps logging timeouts
forever without recovering. This handler watches the log stream: ten
timeout / not-connected errors within five minutes terminate the process
so the supervisor can start a fresh one.
"""

import logging
import os
import time
from collections import deque
from typing import Callable, Deque, Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_MARKERS = ("TIMEOUT", "NOT CONNECTED")


def _exit_process() -> None:
    logging.shutdown()
    os._exit(1)


class ConnectionWatchdog(logging.Handler):
    def __init__(
        self,
        max_errors: int = 10,
        window_seconds: float = 300.0,
        markers: Sequence[str] = DEFAULT_MARKERS,
        terminate: Optional[Callable[[], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(level=logging.ERROR)
        self.max_errors = max_errors
        self.window_seconds = window_seconds
        self.markers = tuple(m.upper() for m in markers)
        self._terminate = terminate or _exit_process
        self._clock = clock
        self._hits: Deque[float] = deque()
        self.tripped = False

    def matches(self, record: logging.LogRecord) -> bool:
        try:
            text = record.getMessage()
        except Exception:
            text = str(record.msg)
        if record.exc_info and record.exc_info[1] is not None:
            text = f"{text} {record.exc_info[1]}"
        upper = text.upper()
        return any(marker in upper for marker in self.markers)

    def emit(self, record: logging.LogRecord) -> None:
        if self.tripped or record.name == __name__ or not self.matches(record):
            return

        now = self._clock()
        self._hits.append(now)
        while self._hits and now - self._hits[0] > self.window_seconds:
            self._hits.popleft()

        if len(self._hits) >= self.max_errors:
            self.tripped = True
            logger.critical(
                "%d connection errors within %ss, terminating process",
                len(self._hits),
                self.window_seconds,
            )
            self._terminate()

    def install(self, target: Optional[logging.Logger] = None) -> "ConnectionWatchdog":
        (target or logging.getLogger()).addHandler(self)
        return self

    def uninstall(self, target: Optional[logging.Logger] = None) -> None:
        (target or logging.getLogger()).removeHandler(self)
