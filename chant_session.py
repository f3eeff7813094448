"""The explicit chanting session: what to chant, how, and how fast."""

import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

MODE_MANUAL = "manual"
MODE_AUTO = "auto"
MODES = (MODE_MANUAL, MODE_AUTO)

DEFAULT_CHANT_TEXT = "राधा राधा"
FALLBACK_CHANT_TEXT = "Om"
DEFAULT_VOICE_ID = "hi-IN-Wavenet-D"
DEFAULT_LANGUAGE = "hi-IN"
DEFAULT_SPEED = 50

MIN_RATE = 0.5
MAX_RATE = 2.0


@dataclass(frozen=True)
class SpeechSelection:
    voice_id: str
    language_tag: str = DEFAULT_LANGUAGE
    kind: str = field(default="speech", init=False)


@dataclass(frozen=True)
class ClipSelection:
    clip_handle: object
    kind: str = field(default="clip", init=False)


def clamp_speed(speed_factor) -> int:
    speed = int(round(float(speed_factor)))
    return max(0, min(100, speed))


def speed_to_rate(speed_factor) -> float:
    """Map a 0-100 slider value onto a 0.5x-2.0x playback rate."""
    return MIN_RATE + (clamp_speed(speed_factor) / 100) * (MAX_RATE - MIN_RATE)


@dataclass
class ChantSession:
    """One continuous period of chanting.

    The cadence engine owns and mutates this object. Everything else reads it.
    """

    chant_text: str = DEFAULT_CHANT_TEXT
    audio_selection: object = field(default_factory=lambda: SpeechSelection(DEFAULT_VOICE_ID))
    speed_factor: int = DEFAULT_SPEED
    mode: str = MODE_MANUAL
    active: bool = False

    @property
    def rate(self) -> float:
        return speed_to_rate(self.speed_factor)

    def utterance_args(self):
        """Snapshot of (phrase, selection, rate) for the next utterance."""
        return self.chant_text, self.audio_selection, self.rate
