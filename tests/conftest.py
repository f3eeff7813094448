import heapq
import itertools
import os
import tempfile
from concurrent.futures import Future

import pytest

# The web app reads its configuration at import time.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("CLIPS_DIR", tempfile.mkdtemp(prefix="naamjaap-clips-"))
os.environ.pop("LLM_API_KEY", None)
os.environ.pop("OPENAI_API_KEY", None)

from utterance import Completion  # noqa: E402


# ── Event loop and executors ──────────────────────────────────────────────────

class _Handle:
    def __init__(self, when, callback, args):
        self.when = when
        self.callback = callback
        self.args = args
        self._cancelled = False

    def cancel(self):
        self._cancelled = True

    def cancelled(self):
        return self._cancelled


class ManualLoop:
    """Deterministic stand-in for an asyncio loop: time only moves on advance()."""

    def __init__(self):
        self.now = 0.0
        self._seq = itertools.count()
        self._queue = []

    def time(self):
        return self.now

    def call_at(self, when, callback, *args):
        handle = _Handle(when, callback, args)
        heapq.heappush(self._queue, (when, next(self._seq), handle))
        return handle

    def call_later(self, delay, callback, *args):
        return self.call_at(self.now + delay, callback, *args)

    def call_soon(self, callback, *args):
        return self.call_at(self.now, callback, *args)

    call_soon_threadsafe = call_soon

    def run_until(self, target):
        while self._queue and self._queue[0][0] <= target:
            when, _, handle = heapq.heappop(self._queue)
            self.now = max(self.now, when)
            if not handle.cancelled():
                handle.callback(*handle.args)
        self.now = max(self.now, target)

    def advance(self, seconds):
        self.run_until(self.now + seconds)

    def run_ready(self):
        self.run_until(self.now)

    def scheduled(self):
        return sum(1 for _, _, h in self._queue if not h.cancelled())


class ImmediateExecutor:
    """Runs submitted work inline and returns a finished Future."""

    def submit(self, fn, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future


class DeferredExecutor:
    """Holds submitted work until the test runs it."""

    def __init__(self):
        self.jobs = []

    def submit(self, fn, *args, **kwargs):
        future = Future()
        self.jobs.append((future, fn, args, kwargs))
        return future

    def run_next(self):
        future, fn, args, kwargs = self.jobs.pop(0)
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future


# ── Document store ────────────────────────────────────────────────────────────

class FakeSink:
    def __init__(self, count=0, mala_count=0):
        self.counter = (count, mala_count)
        self.writes = []
        self.daily = []
        self.fail_writes = 0
        self.fail_daily = 0
        self.fail_read = False

    def read_counter(self):
        if self.fail_read:
            raise ConnectionError("store offline")
        return self.counter

    def write_counter(self, count, mala_count):
        if self.fail_writes:
            self.fail_writes -= 1
            raise ConnectionError("write rejected")
        self.counter = (count, mala_count)
        self.writes.append((count, mala_count))

    def increment_daily(self, day, chants=1, malas=0):
        if self.fail_daily:
            self.fail_daily -= 1
            raise ConnectionError("daily rejected")
        self.daily.append((day, chants, malas))


# ── Utterance sources ─────────────────────────────────────────────────────────

class FakeSource:
    """Records speak() calls; the test fires the completions."""

    def __init__(self):
        self.calls = []
        self.completions = []
        self.stops = 0
        self.max_in_flight = 0
        self.fail_speak = False

    def speak(self, phrase, selection, rate, continuous=False):
        if self.fail_speak:
            raise RuntimeError("audio device gone")
        completion = Completion()
        self.calls.append((phrase, selection, rate, continuous))
        self.completions.append(completion)
        in_flight = sum(1 for c in self.completions if c.pending)
        self.max_in_flight = max(self.max_in_flight, in_flight)
        return completion

    def stop(self):
        self.stops += 1

    @property
    def last(self):
        return self.completions[-1]


class StubbornCompletion(Completion):
    """A completion whose backend ignores cancellation and fires anyway."""

    def cancel(self):
        return False


class StubbornSource(FakeSource):
    def speak(self, phrase, selection, rate, continuous=False):
        completion = StubbornCompletion()
        self.calls.append((phrase, selection, rate, continuous))
        self.completions.append(completion)
        return completion


class FakeSpeechBackend:
    """Installed voices map to their language tag; the first one is the default."""

    def __init__(self, voices=("hi-IN-Wavenet-D",), languages=None):
        self.voices = list(voices)
        self.languages = languages or {}
        self.said = []
        self.cancels = 0
        self.fail_say = False

    def find_voice(self, voice_id, language=None):
        if not self.voices:
            return None
        if voice_id in self.voices:
            return voice_id
        for v in self.voices:
            if language and self.languages.get(v, "").split("-")[0] == language.split("-")[0]:
                return v
        return self.voices[0]

    def say(self, text, voice, language, rate, on_done):
        if self.fail_say:
            raise RuntimeError("speech engine crashed")
        self.said.append({"text": text, "voice": voice, "language": language,
                          "rate": rate, "on_done": on_done})

    def cancel(self):
        self.cancels += 1


class FakePlayer:
    """Clip player whose play head follows the manual loop's clock."""

    def __init__(self, loop, duration=2.0):
        self.loop = loop
        self.duration = duration
        self.loaded = None
        self.runs = []  # [start_time, end_time or None]
        self._rate = 1.0
        self._pos = 0.0
        self._started_at = None

    def _sync(self):
        if self._started_at is None:
            return
        now = self.loop.time()
        pos = self._pos + (now - self._started_at) * self._rate
        if pos >= self.duration:
            end = self._started_at + (self.duration - self._pos) / self._rate
            self.runs[-1][1] = end
            self._pos = self.duration
            self._started_at = None

    @property
    def rate(self):
        return self._rate

    @rate.setter
    def rate(self, value):
        self._sync()
        if self._started_at is not None:
            self._pos = self.position
            self._started_at = self.loop.time()
        self._rate = value

    @property
    def position(self):
        self._sync()
        if self._started_at is None:
            return self._pos
        return self._pos + (self.loop.time() - self._started_at) * self._rate

    @property
    def playing(self):
        self._sync()
        return self._started_at is not None

    def load(self, handle):
        self.pause()
        self.loaded = handle
        self._pos = 0.0

    def play(self):
        self._sync()
        if self._started_at is not None or self._pos >= self.duration:
            return
        self._started_at = self.loop.time()
        self.runs.append([self._started_at, None])

    def pause(self):
        self._sync()
        if self._started_at is None:
            return
        self._pos = self.position
        self.runs[-1][1] = self.loop.time()
        self._started_at = None

    def seek(self, seconds):
        self._sync()
        self._pos = seconds
        if self._started_at is not None:
            self._started_at = self.loop.time()


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture
def loop():
    return ManualLoop()


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def executor():
    return ImmediateExecutor()


@pytest.fixture
def flask_app(tmp_path):
    from app import app, db

    app.config.update(TESTING=True, CLIPS_DIR=str(tmp_path))
    with app.app_context():
        db.drop_all()
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture
def user_client(client):
    r = client.post("/api/register", json={"username": "radha", "password": "krishna108"})
    assert r.status_code == 201
    return client
