"""Audible output for one chant repetition.

Each ``speak`` call returns a :class:`Completion` that fires exactly once,
always from a later loop callback, and never after the source has been
stopped. Two strategies are provided: synthesized speech, and a looping
clip played through two alternating players so repetitions join without a
gap.
"""

import logging

logger = logging.getLogger(__name__)

CLIP_LEAD_SECONDS = 0.5
CLIP_POLL_SECONDS = 0.05


class Completion:
    """Single-fire notification that an utterance finished.

    ``error`` holds the failure, if any. A cancelled completion never
    fires, so a callback attached to it can rely on the utterance still
    being wanted.
    """

    def __init__(self):
        self.error = None
        self._done = False
        self._cancelled = False
        self._callbacks = []

    @property
    def done(self) -> bool:
        return self._done

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def pending(self) -> bool:
        return not (self._done or self._cancelled)

    def add_done_callback(self, fn):
        if self._cancelled:
            return
        if self._done:
            self._run(fn)
            return
        self._callbacks.append(fn)

    def fire(self, error=None) -> bool:
        if not self.pending:
            return False
        self._done = True
        self.error = error
        callbacks, self._callbacks = self._callbacks, []
        for fn in callbacks:
            self._run(fn)
        return True

    def cancel(self) -> bool:
        if not self.pending:
            return False
        self._cancelled = True
        self._callbacks = []
        return True

    def _run(self, fn):
        try:
            fn(self)
        except Exception:
            logger.exception("Completion callback raised")


class SpeechUtterance:
    """Speaks the phrase through a speech backend.

    The backend provides ``find_voice(voice_id, language)``, which falls
    back to another local voice when the requested one is missing and
    returns None only when no voice is usable at all,
    ``say(text, voice, language, rate, on_done)`` and ``cancel()``.
    ``on_done(error)`` may be called from any thread.
    """

    def __init__(self, backend, loop):
        self.backend = backend
        self.loop = loop
        self._current = None

    def speak(self, phrase, selection, rate, continuous=False):
        self.stop()
        completion = Completion()
        self._current = completion

        try:
            voice = self.backend.find_voice(selection.voice_id, selection.language_tag)
        except Exception as exc:
            logger.debug("Voice lookup failed: %s", exc)
            self.loop.call_soon(completion.fire, exc)
            return completion
        if voice is None:
            logger.debug("No speech voice installed, skipping speech")
            self.loop.call_soon(completion.fire)
            return completion

        def on_done(error=None):
            self.loop.call_soon_threadsafe(completion.fire, error)

        try:
            self.backend.say(phrase, voice, selection.language_tag, rate, on_done)
        except Exception as exc:
            logger.debug("Speech request failed: %s", exc)
            self.loop.call_soon(completion.fire, exc)
        return completion

    def stop(self):
        current, self._current = self._current, None
        if current is None or not current.pending:
            return
        current.cancel()
        try:
            self.backend.cancel()
        except Exception as exc:
            logger.debug("Cancelling speech failed: %s", exc)


class ClipLooper:
    """Plays a clip through a pool of exactly two players.

    In continuous mode, once the active player is within ``lead`` seconds
    of its end the other player is rewound and started and the active slot
    flips; that handoff completes the current utterance. The next
    ``speak`` finds the new player already running and simply waits for
    its handoff. In one-shot mode the clip plays once and completes when
    the player stops.

    Players provide ``load(handle)``, ``play()``, ``pause()``,
    ``seek(seconds)``, a writable ``rate`` and readable ``position``,
    ``duration`` and ``playing``.
    """

    def __init__(self, players, loop, lead=CLIP_LEAD_SECONDS, poll_interval=CLIP_POLL_SECONDS):
        players = list(players)
        if len(players) != 2:
            raise ValueError("ClipLooper needs exactly two players")
        self.players = players
        self.loop = loop
        self.lead = lead
        self.poll_interval = poll_interval
        self.active_slot = 0
        self.handoffs = 0
        self._loaded = None
        self._completion = None
        self._continuous = False
        self._poll_handle = None

    @property
    def active(self):
        return self.players[self.active_slot]

    @property
    def standby(self):
        return self.players[1 - self.active_slot]

    def speak(self, phrase, selection, rate, continuous=False):
        completion = Completion()
        if self._completion is not None:
            self._completion.cancel()
        self._completion = completion
        self._continuous = continuous

        try:
            if selection.clip_handle != self._loaded:
                self._load(selection.clip_handle)
            for player in self.players:
                player.rate = rate
            player = self.active
            if not (continuous and player.playing):
                self.standby.pause()
                player.seek(0)
                player.play()
        except Exception as exc:
            logger.debug("Clip playback failed: %s", exc)
            self._completion = None
            self._cancel_poll()
            self.loop.call_soon(completion.fire, exc)
            return completion

        if self._poll_handle is None:
            self._poll_handle = self.loop.call_later(self.poll_interval, self._poll)
        return completion

    def stop(self):
        self._cancel_poll()
        completion, self._completion = self._completion, None
        if completion is not None:
            completion.cancel()
        for player in self.players:
            try:
                player.pause()
                player.seek(0)
            except Exception as exc:
                logger.debug("Stopping clip player failed: %s", exc)

    def _load(self, handle):
        for player in self.players:
            player.pause()
            player.load(handle)
        self._loaded = handle
        self.active_slot = 0

    def _cancel_poll(self):
        if self._poll_handle is not None:
            self._poll_handle.cancel()
            self._poll_handle = None

    def _remaining(self, player):
        rate = player.rate or 1.0
        return max(0.0, player.duration - player.position) / rate

    def _poll(self):
        self._poll_handle = None
        completion = self._completion
        if completion is None or not completion.pending:
            return

        player = self.active
        try:
            playing = player.playing
            remaining = self._remaining(player)
            if self._continuous:
                lead = min(self.lead, player.duration / (2 * (player.rate or 1.0)))
                if remaining <= lead or not playing:
                    self._handoff()
                    self._finish(None)
                    return
            elif not playing or remaining <= 0:
                self._finish(None)
                return
        except Exception as exc:
            logger.debug("Clip player failed mid-loop: %s", exc)
            self._finish(exc)
            return

        self._poll_handle = self.loop.call_later(self.poll_interval, self._poll)

    def _handoff(self):
        nxt = self.standby
        nxt.seek(0)
        nxt.play()
        self.active_slot = 1 - self.active_slot
        self.handoffs += 1

    def _finish(self, error):
        completion, self._completion = self._completion, None
        completion.fire(error)


class UtteranceRouter:
    """Sends each utterance to the strategy matching its audio selection."""

    def __init__(self, speech, clip):
        self.strategies = {"speech": speech, "clip": clip}
        self._last = None

    def speak(self, phrase, selection, rate, continuous=False):
        strategy = self.strategies[selection.kind]
        if self._last is not None and self._last is not strategy:
            self._last.stop()
        self._last = strategy
        return strategy.speak(phrase, selection, rate, continuous=continuous)

    def stop(self):
        for strategy in self.strategies.values():
            strategy.stop()
