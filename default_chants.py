"""Bundled chants offered before the user records or uploads their own."""

from dataclasses import asdict, dataclass
from typing import Optional

from chant_session import ClipSelection, SpeechSelection


@dataclass(frozen=True)
class DefaultChant:
    id: str
    text: str
    description: str
    voice_name: Optional[str] = None
    lang: Optional[str] = None
    audio_file: Optional[str] = None  # relative to the bundled audio directory

    def selection(self, audio_dir):
        """Audio selection for this chant, a clip when one is bundled."""
        if self.audio_file:
            return ClipSelection(str(audio_dir / self.audio_file))
        return SpeechSelection(self.voice_name, self.lang or "hi-IN")

    def to_dict(self):
        return asdict(self)


DEFAULT_CHANTS = [
    DefaultChant("radha-radha-premanand", "राधा राधा", "Authentic chant musically.",
                 audio_file="Gausalla Street 2.m4a"),
    DefaultChant("radha-radha", "राधा राधा", "Radha Radha slowly.",
                 audio_file="radhaSlowly.m4a"),
    DefaultChant("ram-ram", "राम राम", "Ram Ram.",
                 audio_file="ramram.m4a"),
    DefaultChant("om-namah-shivaye", "ॐ नमः शिवाय", "Deep male voice.",
                 audio_file="omNamahShiv.m4a"),
    DefaultChant("hare-krishna", "हरे कृष्णा", "Gentle, calm male voice.",
                 voice_name="hi-IN-Wavenet-D", lang="hi-IN"),
    DefaultChant("jai-shri-ram", "जय श्री राम", "Powerful male voice.",
                 voice_name="hi-IN-Wavenet-B", lang="hi-IN"),
    DefaultChant("waheguru", "वाहेगुरु", "Clear, resonant male voice.",
                 voice_name="hi-IN-Wavenet-D", lang="hi-IN"),
]

CHANTS_BY_ID = {c.id: c for c in DEFAULT_CHANTS}

# Some chants read better in their own script on screen.
DISPLAY_TEXT = {"वाहेगुरु": "ਵਾਹਿਗੁਰੂ"}


def display_text(chant_text):
    return DISPLAY_TEXT.get(chant_text, chant_text)
