"""Offline speech through pyttsx3 on a dedicated worker thread.

pyttsx3 engines are not thread-safe and only one ``runAndWait`` may run at a
time, so a single worker thread owns the engine. ``say`` and ``cancel`` only
hand work over and never block the caller's event loop.
"""

import logging
import queue
import re
import threading

import pyttsx3

logger = logging.getLogger(__name__)

INIT_TIMEOUT = 10


def normalise_tag(tag) -> str:
    """Reduce a pyttsx3 or IETF language entry to e.g. ``hi-in``.

    espeak reports languages as bytes with a leading priority byte
    (``b"\\x05en-us"``); other drivers use ``en_US``.
    """
    if isinstance(tag, bytes):
        tag = tag.decode("utf-8", "ignore")
    return re.sub(r"[^a-z0-9-]", "", str(tag).lower().replace("_", "-"))


class Pyttsx3Speech:
    """Speech backend for ``SpeechUtterance``.

    Cancelling takes effect at the next word boundary: the worker checks for
    a newer request from the engine's ``started-word`` callback and stops
    the engine there, on its own thread.
    """

    def __init__(self, driver_name=None):
        self._requests = queue.Queue()
        self._lock = threading.Lock()
        self._seq = 0
        self._speaking = None
        self._engine = None
        self._voices = []
        self._default_voice = None
        self._base_rate = 200
        self._init_error = None
        self._ready = threading.Event()
        self._thread = threading.Thread(target=self._run, args=(driver_name,),
                                        name="speech", daemon=True)
        self._thread.start()
        if not self._ready.wait(INIT_TIMEOUT):
            raise RuntimeError("speech engine did not start")
        if self._init_error is not None:
            raise self._init_error

    def voices(self):
        return list(self._voices)

    def find_voice(self, voice_id, language=None):
        """Pick the local voice to speak with.

        Exact id or name first, then a voice for ``language`` (full tag, then
        the primary subtag), then the engine's default voice. None only when
        no voice is installed at all.
        """
        if not self._voices:
            return None
        for v in self._voices:
            if voice_id in (v["id"], v["name"]):
                return v["id"]
        if language:
            wanted = normalise_tag(language)
            primary = wanted.split("-")[0]
            for v in self._voices:
                if wanted in v["languages"]:
                    return v["id"]
            for v in self._voices:
                if any(tag.split("-")[0] == primary for tag in v["languages"]):
                    return v["id"]
        return self._default_voice or self._voices[0]["id"]

    def say(self, text, voice, language, rate, on_done):
        with self._lock:
            self._seq += 1
            seq = self._seq
        self._requests.put((seq, text, voice, rate, on_done))

    def cancel(self):
        with self._lock:
            self._seq += 1

    def close(self):
        self.cancel()
        self._requests.put(None)

    # ── Worker thread ────────────────────────────────────────────────────────

    def _run(self, driver_name):
        try:
            engine = pyttsx3.init(driverName=driver_name)
            self._base_rate = engine.getProperty("rate") or 200
            self._default_voice = engine.getProperty("voice")
            self._voices = [
                {"id": v.id, "name": v.name,
                 "languages": [normalise_tag(lang) for lang in (v.languages or [])]}
                for v in engine.getProperty("voices") or []
            ]
            engine.connect("started-word", self._on_word)
        except Exception as exc:
            self._init_error = exc
            self._ready.set()
            return
        self._engine = engine
        self._ready.set()

        while True:
            job = self._requests.get()
            if job is None:
                break
            seq, text, voice, rate, on_done = job
            if seq != self._seq:
                # superseded before it started
                continue
            self._speaking = seq
            try:
                engine.setProperty("voice", voice)
                engine.setProperty("rate", int(self._base_rate * rate))
                engine.say(text)
                engine.runAndWait()
            except Exception as exc:
                logger.debug("Speech failed: %s", exc)
                on_done(exc)
                continue
            finally:
                self._speaking = None
            on_done(None)

    def _on_word(self, name, location, length):
        if self._speaking is not None and self._speaking != self._seq:
            self._engine.stop()
