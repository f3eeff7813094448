"""Elapsed-time counter for a chanting session."""

import logging

logger = logging.getLogger(__name__)


def format_elapsed(total_seconds) -> str:
    """Format seconds as HH:MM:SS."""
    secs = max(0, int(total_seconds or 0))
    h = secs // 3600
    m = (secs % 3600) // 60
    s = secs % 60
    return f"{h:02d}:{m:02d}:{s:02d}"


class SessionClock:
    """Counts whole seconds while started.

    Ticks are scheduled against ``loop.time()`` deadlines so they do not
    drift with callback latency. ``start`` and ``stop`` are idempotent.
    """

    def __init__(self, loop, interval=1.0, on_tick=None):
        self.loop = loop
        self.interval = interval
        self.on_tick = on_tick
        self.elapsed_seconds = 0
        self._handle = None
        self._deadline = None

    @property
    def running(self) -> bool:
        return self._handle is not None

    def start(self):
        if self._handle is not None:
            return
        self._deadline = self.loop.time() + self.interval
        self._handle = self.loop.call_at(self._deadline, self._tick)

    def stop(self):
        if self._handle is None:
            return
        self._handle.cancel()
        self._handle = None

    def reset(self):
        self.stop()
        self.elapsed_seconds = 0

    def _tick(self):
        if self._handle is None:
            return
        self.elapsed_seconds += 1
        self._deadline += self.interval
        self._handle = self.loop.call_at(self._deadline, self._tick)
        if self.on_tick is not None:
            try:
                self.on_tick(self.elapsed_seconds)
            except Exception:
                logger.exception("Clock tick handler raised")
