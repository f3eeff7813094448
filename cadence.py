"""Auto-chant cadence engine.

Drives repeated utterances, counts one japa per completed utterance, and
keeps the session clock running while the cycle is active. All methods run
on the event loop thread; none of them raise.

States::

    idle --start()--> playing --completion--> playing
      ^                  |
      +------stop()------+
"""

import logging
from functools import partial

from chant_session import MODES, MODE_AUTO, MODE_MANUAL, ChantSession, clamp_speed

logger = logging.getLogger(__name__)

IDLE = "idle"
PLAYING = "playing"

# Pause between a completion and the next utterance. Purely cosmetic.
CYCLE_GAP_SECONDS = 0.05


class CadenceEngine:
    """Coordinates utterance source, tally store and session clock.

    ``listener`` is called with ``(event, engine)`` for ``"count"``,
    ``"mala"``, ``"start"`` and ``"stop"`` so a display can re-render.
    ``watchdog`` (seconds, 0 for none) treats an utterance that never
    completes as completed.
    """

    def __init__(self, source, tally, clock, loop, session=None,
                 gap=CYCLE_GAP_SECONDS, watchdog=0, listener=None):
        self.source = source
        self.tally = tally
        self.clock = clock
        self.loop = loop
        self.session = session or ChantSession()
        self.gap = gap
        self.watchdog = watchdog
        self.listener = listener

        self.session_japa = 0
        self.session_malas = 0

        self._state = IDLE
        self._cycle = None
        self._pending = None
        self._rearm = None
        self._watchdog_handle = None
        self._manual = None

    @property
    def state(self):
        return self._state

    @property
    def tally_state(self):
        return self.tally.state

    # ── Entry points ─────────────────────────────────────────────────────────

    def start(self) -> bool:
        if self.session.mode != MODE_AUTO or self._state != IDLE:
            return False
        self._cancel_manual()
        token = object()
        self._cycle = token
        self.session.active = True
        self.clock.start()
        self._state = PLAYING
        logger.info("Auto chant started at %d/%d",
                    self.tally.state.mala_count, self.tally.state.count)
        self._notify("start")
        self._issue(token)
        return True

    def stop(self) -> bool:
        was_running = self._state == PLAYING or self.session.active

        # order matters: a late completion must find the cycle already dead
        self.session.active = False
        self._cycle = None

        pending, self._pending = self._pending, None
        if pending is not None:
            pending.cancel()
        self._cancel_manual()
        try:
            self.source.stop()
        except Exception as exc:
            logger.warning("Utterance source did not stop cleanly: %s", exc)

        for handle in (self._rearm, self._watchdog_handle):
            if handle is not None:
                handle.cancel()
        self._rearm = self._watchdog_handle = None

        self.clock.stop()
        self._state = IDLE
        if was_running:
            logger.info("Auto chant stopped after %d japa this session", self.session_japa)
            self._notify("stop")
        return was_running

    def toggle(self) -> bool:
        """Start when idle, stop when playing. Returns whether it is now playing."""
        if self._state == PLAYING:
            self.stop()
        else:
            self.start()
        return self._state == PLAYING

    def set_mode(self, mode) -> bool:
        if mode not in MODES:
            logger.warning("Ignoring unknown chant mode %r", mode)
            return False
        if mode == self.session.mode:
            return True
        self.stop()
        self.session.mode = mode
        return True

    def configure(self, chant_text=None, audio_selection=None, speed_factor=None):
        """Change what the next utterance sounds like.

        The utterance already in flight is left alone.
        """
        if chant_text is not None:
            self.session.chant_text = chant_text
        if audio_selection is not None:
            self.session.audio_selection = audio_selection
        if speed_factor is not None:
            try:
                self.session.speed_factor = clamp_speed(speed_factor)
            except (TypeError, ValueError):
                logger.warning("Ignoring invalid speed %r", speed_factor)

    def tap(self):
        """Count one japa by hand. Returns the new tally, or None outside manual mode."""
        if self.session.mode != MODE_MANUAL:
            return None
        state = self._count()
        self._cancel_manual()
        try:
            phrase, selection, rate = self.session.utterance_args()
            self._manual = self.source.speak(phrase, selection, rate, continuous=False)
        except Exception as exc:
            logger.debug("Manual utterance failed: %s", exc)
        return state

    def close(self):
        """Tear down when the chanting view goes away."""
        self.stop()
        self.clock.reset()

    # ── Cycle ────────────────────────────────────────────────────────────────

    def _issue(self, token):
        if token is not self._cycle:
            return
        self._rearm = None
        phrase, selection, rate = self.session.utterance_args()
        try:
            completion = self.source.speak(phrase, selection, rate, continuous=True)
        except Exception as exc:
            logger.debug("Utterance could not start, counting it anyway: %s", exc)
            self._rearm = self.loop.call_later(self.gap, self._after_failed_issue, token)
            return

        self._pending = completion
        if self.watchdog:
            self._watchdog_handle = self.loop.call_later(
                self.watchdog, self._on_watchdog, token, completion)
        completion.add_done_callback(partial(self._on_complete, token))

    def _after_failed_issue(self, token):
        if token is not self._cycle or not self.session.active:
            return
        self._advance(token)

    def _on_complete(self, token, completion):
        if token is not self._cycle or not self.session.active:
            return
        if completion is not self._pending:
            return
        self._pending = None
        if self._watchdog_handle is not None:
            self._watchdog_handle.cancel()
            self._watchdog_handle = None
        if completion.error is not None:
            logger.debug("Utterance failed, counting it anyway: %s", completion.error)
        self._advance(token)

    def _advance(self, token):
        self._count()
        if token is self._cycle:
            self._rearm = self.loop.call_later(self.gap, self._issue, token)

    def _on_watchdog(self, token, completion):
        self._watchdog_handle = None
        if token is not self._cycle or completion is not self._pending:
            return
        logger.warning("Utterance did not finish within %ss, moving on", self.watchdog)
        self._pending = None
        completion.cancel()
        try:
            self.source.stop()
        except Exception as exc:
            logger.warning("Utterance source did not stop cleanly: %s", exc)
        self._advance(token)

    def _cancel_manual(self):
        manual, self._manual = self._manual, None
        if manual is not None and manual.pending:
            manual.cancel()
            try:
                self.source.stop()
            except Exception as exc:
                logger.warning("Utterance source did not stop cleanly: %s", exc)

    def _count(self):
        before = self.tally.state
        state = self.tally.increment()
        completed_mala = state.mala_count > before.mala_count
        self.session_japa += 1
        if completed_mala:
            self.session_malas += 1
        try:
            self.tally.persist(state)
            self.tally.record_daily_increment(malas=1 if completed_mala else 0)
        except Exception as exc:
            logger.warning("Could not queue tally persistence: %s", exc)
        self._notify("count")
        if completed_mala:
            logger.info("Mala %d complete", state.mala_count)
            self._notify("mala")
        return state

    def _notify(self, event):
        if self.listener is None:
            return
        try:
            self.listener(event, self)
        except Exception:
            logger.exception("Cadence listener raised on %s", event)
