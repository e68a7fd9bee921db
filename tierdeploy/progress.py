"""Console progress sink for pushes and deployment steps."""

from __future__ import annotations

import logging
import sys
import time
from typing import TextIO

logger = logging.getLogger(__name__)

_BAR_WIDTH = 30
_MIN_INTERVAL = 0.2  # seconds between redraws on a terminal


class ConsoleProgress:
    """Draws ``(activity, status, percent)`` updates as a single status line.

    On a terminal the line is redrawn in place (throttled); otherwise one
    log line is emitted per 10% step so CI logs stay readable.

    Usage::

        sink = ConsoleProgress()
        pusher = ChunkedFilePusher(on_progress=sink)
    """

    def __init__(self, stream: TextIO | None = None, width: int = _BAR_WIDTH) -> None:
        self._stream = stream or sys.stderr
        self._width = width
        self._interactive = hasattr(self._stream, "isatty") and self._stream.isatty()
        self._last_draw = 0.0
        self._last_decile = -1
        self._activity: str | None = None

    def __call__(self, activity: str, status: str, percent: float) -> None:
        percent = max(0.0, min(100.0, percent))
        if activity != self._activity:
            self._finish_line()
            self._activity = activity
            self._last_decile = -1

        if self._interactive:
            now = time.monotonic()
            if percent < 100.0 and now - self._last_draw < _MIN_INTERVAL:
                return
            self._last_draw = now
            filled = int(self._width * percent / 100.0)
            bar = "#" * filled + "-" * (self._width - filled)
            self._stream.write(f"\r{activity} [{bar}] {percent:5.1f}%  {status}\x1b[K")
            self._stream.flush()
            if percent >= 100.0:
                self._finish_line()
        else:
            decile = int(percent // 10)
            if decile > self._last_decile:
                self._last_decile = decile
                logger.info("%s: %.0f%% (%s)", activity, percent, status)

    def _finish_line(self) -> None:
        if self._interactive and self._activity is not None:
            self._stream.write("\n")
            self._stream.flush()
            self._activity = None

    def close(self) -> None:
        """Terminate any partially drawn line."""
        self._finish_line()
