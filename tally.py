"""Counter state and its write-behind mirror in the document store."""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

logger = logging.getLogger(__name__)

MALA_SIZE = 108


@dataclass(frozen=True)
class TallyState:
    count: int = 0
    mala_count: int = 0

    @property
    def total_japa(self) -> int:
        return self.mala_count * MALA_SIZE + self.count

    def incremented(self):
        """Return the state after one more japa, rolling into a new mala at 108."""
        count = self.count + 1
        if count >= MALA_SIZE:
            return TallyState(0, self.mala_count + 1)
        return TallyState(count, self.mala_count)

    @classmethod
    def from_total(cls, total):
        return cls(total % MALA_SIZE, total // MALA_SIZE)


class TallyStore:
    """Authoritative in-memory tally with fire-and-forget persistence.

    ``sink`` is the document store. It needs ``read_counter()``,
    ``write_counter(count, mala_count)`` and
    ``increment_daily(day, chants, malas)``, where a ``day`` of None means
    the sink's own current day. Sink calls run on ``executor``
    and their results are handed back to ``loop`` so every state change
    happens on the loop thread.

    At most one counter write and one daily write are in flight. Requests
    that arrive meanwhile are folded into a single follow-up write that
    carries the latest state.
    """

    def __init__(self, sink, loop, executor=None, state=None, today=None, on_error=None):
        self.sink = sink
        self.loop = loop
        self.executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="tally")
        # None: the sink keys increments by its own current day
        self.today = today
        self.on_error = on_error
        self._state = state or TallyState()
        self._closed = False

        self._counter_write = None
        self._latest = None
        self._dirty = False

        self._daily_write = None
        self._daily_inflight = None
        self._daily_pending = {}

    @property
    def state(self):
        return self._state

    def load(self):
        """Read the stored counter once, at session start."""
        try:
            count, mala_count = self.sink.read_counter()
        except Exception as exc:
            logger.warning("Could not read stored counter, starting from local state: %s", exc)
            self._report("Could not load your saved count.", exc)
            return self._state
        total = max(0, int(mala_count)) * MALA_SIZE + max(0, int(count))
        self._state = TallyState.from_total(total)
        return self._state

    def increment(self):
        self._state = self._state.incremented()
        return self._state

    # ── Counter document ─────────────────────────────────────────────────────

    def persist(self, state=None):
        self._latest = state or self._state
        self._dirty = True
        if self._counter_write is None and not self._closed:
            self._start_counter_write()

    def _start_counter_write(self):
        snapshot = self._latest
        self._latest = None
        future = self.executor.submit(self.sink.write_counter, snapshot.count, snapshot.mala_count)
        self._counter_write = future
        future.add_done_callback(
            lambda f: self.loop.call_soon_threadsafe(self._counter_written, f, snapshot)
        )

    def _counter_written(self, future, snapshot):
        if self._closed or future is not self._counter_write:
            return
        self._counter_write = None
        exc = future.exception()
        if exc is not None:
            logger.warning("Saving count %d/%d failed: %s", snapshot.mala_count, snapshot.count, exc)
            self._report("Your count could not be saved. It will be retried.", exc)
        elif self._latest is None:
            self._dirty = False
        if self._latest is not None:
            self._start_counter_write()

    # ── Daily aggregate ──────────────────────────────────────────────────────

    def record_daily_increment(self, day=None, chants=1, malas=0):
        key = day or (self.today().isoformat() if self.today else None)
        pending = self._daily_pending.setdefault(key, [0, 0])
        pending[0] += chants
        pending[1] += malas
        if self._daily_write is None and not self._closed:
            self._start_daily_write()

    def _start_daily_write(self):
        day, (chants, malas) = next(iter(self._daily_pending.items()))
        del self._daily_pending[day]
        future = self.executor.submit(self.sink.increment_daily, day, chants, malas)
        self._daily_write = future
        self._daily_inflight = (day, chants, malas)
        future.add_done_callback(
            lambda f: self.loop.call_soon_threadsafe(self._daily_written, f)
        )

    def _daily_written(self, future):
        if self._closed or future is not self._daily_write:
            return
        day, chants, malas = self._daily_inflight
        self._daily_write = self._daily_inflight = None
        exc = future.exception()
        if exc is not None:
            logger.warning("Daily stat for %s not updated: %s", day or "today", exc)
            self._report("Today's count could not be saved. It will be retried.", exc)
            self._requeue_daily(day, chants, malas)
            # the next increment triggers the retry
            return
        if self._daily_pending:
            self._start_daily_write()

    def _requeue_daily(self, day, chants, malas):
        pending = self._daily_pending.setdefault(day, [0, 0])
        pending[0] += chants
        pending[1] += malas

    # ── Session end ──────────────────────────────────────────────────────────

    @property
    def pending_daily(self):
        return {day: tuple(amounts) for day, amounts in self._daily_pending.items()}

    def flush(self, timeout=10):
        """Write whatever is still unsaved and wait for it.

        Called once when the session ends. After this the store no longer
        schedules writes on the loop. Returns True when everything reached
        the sink.
        """
        self._closed = True
        if self._counter_write is not None:
            try:
                self._counter_write.result(timeout)
            except Exception as exc:
                logger.info("Last in-flight count write failed, rewriting: %s", exc)
                self._dirty = True
        self._counter_write = None

        if self._daily_write is not None:
            day, chants, malas = self._daily_inflight
            try:
                self._daily_write.result(timeout)
            except Exception as exc:
                logger.info("Last in-flight daily write failed, rewriting: %s", exc)
                self._requeue_daily(day, chants, malas)
        self._daily_write = self._daily_inflight = None

        ok = True
        if self._dirty:
            state = self._state
            try:
                self.executor.submit(self.sink.write_counter, state.count, state.mala_count).result(timeout)
                self._dirty = False
                self._latest = None
            except Exception as exc:
                logger.error("Final save of count failed: %s", exc)
                ok = False

        for day, (chants, malas) in list(self._daily_pending.items()):
            try:
                self.executor.submit(self.sink.increment_daily, day, chants, malas).result(timeout)
                del self._daily_pending[day]
            except Exception as exc:
                logger.error("Final daily stat for %s failed: %s", day or "today", exc)
                ok = False
        return ok

    def _report(self, message, exc):
        if self.on_error is None:
            return
        try:
            self.on_error(message, exc)
        except Exception:
            logger.exception("Error handler raised")
