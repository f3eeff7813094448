#!/usr/bin/env python3
"""
naamjaap: chant along with a counter that keeps your malas.

Counts are stored by the Naam Jaap web service (app.py); this client runs
the chanting itself on your machine, speaking the chant or looping a clip.

Quick start:
  1. Put NAAMJAAP_SERVER, NAAMJAAP_USERNAME and NAAMJAAP_PASSWORD in .env
  2. naamjaap --list-chants
  3. naamjaap --chant hare-krishna --mode auto

Keys while chanting:
  Enter   tap (manual) / pause-resume (auto)
  m       switch between manual and auto
  q       finish the session
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path

import requests
from dotenv import load_dotenv
from tqdm import tqdm

from cadence import CadenceEngine
from chant_session import (
    DEFAULT_CHANT_TEXT, DEFAULT_LANGUAGE, DEFAULT_SPEED, MODE_AUTO, MODE_MANUAL, MODES,
    ChantSession, ClipSelection, SpeechSelection, clamp_speed,
)
from clock import SessionClock, format_elapsed
from default_chants import CHANTS_BY_ID, DEFAULT_CHANTS, display_text
from remote import HttpDocumentStore
from tally import MALA_SIZE, TallyStore
from utterance import ClipLooper, SpeechUtterance, UtteranceRouter

logger = logging.getLogger("naamjaap")

DEFAULT_SERVER = "http://127.0.0.1:5000"
DEFAULT_AUDIO_DIR = Path(__file__).resolve().parent / "static" / "audio"
CLIP_CACHE_DIR = Path.home() / ".cache" / "naamjaap"


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="naamjaap",
        description="Chant with an automatic or tap-driven counter",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Tap along, speaking with the voice saved on the server:
  naamjaap

  # Loop a bundled recording automatically:
  naamjaap --chant ram-ram --mode auto

  # Your own clip, a bit faster:
  naamjaap --clip ~/chants/om.m4a --text "Om" --mode auto --speed 70

  # Let the AI pick a voice:
  naamjaap --style "a calm Indian male voice" --mode auto
        """,
    )
    parser.add_argument("--server", default=os.getenv("NAAMJAAP_SERVER", DEFAULT_SERVER),
                        help=f"Naam Jaap web service URL (default: {DEFAULT_SERVER})")
    parser.add_argument("--username", default=os.getenv("NAAMJAAP_USERNAME"))
    parser.add_argument("--password", default=os.getenv("NAAMJAAP_PASSWORD"))
    parser.add_argument("--mode", choices=MODES, default=MODE_MANUAL,
                        help="manual: Enter counts one japa; auto: chants by itself")
    parser.add_argument("--chant", metavar="ID", default=None,
                        help="Use a bundled chant (see --list-chants)")
    parser.add_argument("--text", default=None, help="Chant text to speak")
    parser.add_argument("--voice", default=None, metavar="NAME", help="Speech voice id or name")
    parser.add_argument("--lang", default=None, metavar="TAG", help="Speech language, e.g. hi-IN")
    parser.add_argument("--clip", type=Path, default=None, metavar="FILE",
                        help="Loop this audio file instead of speaking")
    parser.add_argument("--style", default=None, metavar="TEXT",
                        help="Describe a voice and let the AI choose one")
    parser.add_argument("--speed", type=int, default=None, metavar="0-100",
                        help=f"Chant speed (default: saved preference or {DEFAULT_SPEED})")
    parser.add_argument("--audio-dir", type=Path, default=DEFAULT_AUDIO_DIR, metavar="DIR",
                        help="Directory holding the bundled chant recordings")
    parser.add_argument("--device", default=None, help="Audio output device (sounddevice name or index)")
    parser.add_argument("--watchdog", type=float, default=0, metavar="SECONDS",
                        help="Move on if one utterance takes longer than this (0: wait forever)")
    parser.add_argument("--list-chants", action="store_true", help="List bundled chants and exit")
    parser.add_argument("--list-voices", action="store_true", help="List installed speech voices and exit")
    return parser.parse_args(argv)


def print_chant_list(audio_dir):
    print(f"{len(DEFAULT_CHANTS)} bundled chants:")
    print("-" * 70)
    for c in DEFAULT_CHANTS:
        kind = "clip " if c.audio_file else "voice"
        missing = "" if not c.audio_file or (audio_dir / c.audio_file).exists() else "  (audio missing)"
        print(f"  {c.id:<24} {kind}  {display_text(c.text):<14} {c.description}{missing}")
    print("-" * 70)


def build_session(args, prefs, store=None):
    """Turn command-line choices and saved preferences into a ChantSession.

    Precedence: --clip, --chant, --voice/--style, then the saved preferences.
    Returns ``(session, notices)``.
    """
    notices = []
    text = prefs.get("chantText") or DEFAULT_CHANT_TEXT
    voice = prefs.get("voiceName")
    lang = prefs.get("voiceLang") or DEFAULT_LANGUAGE
    selection = None

    if args.chant:
        chant = CHANTS_BY_ID.get(args.chant)
        if chant is None:
            raise SystemExit(f"Unknown chant '{args.chant}'. Try --list-chants.")
        text = chant.text
        selection = chant.selection(args.audio_dir)
        if isinstance(selection, ClipSelection) and not Path(selection.clip_handle).exists():
            raise SystemExit(f"Audio for '{chant.id}' not found in {args.audio_dir}")

    if args.style and store is not None:
        result = store.suggest_voice(args.style)
        if result.get("success"):
            config = result["data"]["voiceConfig"]
            voice, lang = config["voiceName"], config["lang"]
            notices.append(f"AI picked {voice} ({lang})")
            if result["data"].get("feasibilityReasoning"):
                notices.append(result["data"]["feasibilityReasoning"])
            selection = None
        else:
            notices.append(result.get("error") or "Could not generate voice style.")

    if args.voice:
        voice = args.voice
        selection = None
    if args.lang:
        lang = args.lang

    if args.clip:
        if not args.clip.exists():
            raise SystemExit(f"Clip not found: {args.clip}")
        selection = ClipSelection(str(args.clip))

    if selection is None and not (args.style or args.voice) and store is not None \
            and prefs.get("audioKind") == "clip" and prefs.get("clipUrl"):
        try:
            path = store.download(prefs["clipUrl"], CLIP_CACHE_DIR)
            selection = ClipSelection(str(path))
        except requests.RequestException as exc:
            notices.append(f"Saved clip unavailable, speaking instead: {exc}")

    if selection is None:
        selection = SpeechSelection(voice or "", lang)
    if args.text:
        text = args.text

    speed = args.speed if args.speed is not None else prefs.get("speedFactor", DEFAULT_SPEED)
    session = ChantSession(
        chant_text=text,
        audio_selection=selection,
        speed_factor=clamp_speed(speed),
        mode=args.mode,
    )
    return session, notices


def build_source(loop, device=None):
    # Audio libraries need PortAudio and a speech driver; only load them here.
    from backends import SoundDevicePlayer
    from speech import Pyttsx3Speech

    speech = SpeechUtterance(Pyttsx3Speech(), loop)
    clip = ClipLooper([SoundDevicePlayer(device), SoundDevicePlayer(device)], loop)
    return UtteranceRouter(speech, clip)


class Display:
    """Mala progress bar plus session time, today's japa and notices."""

    def __init__(self, start_state, todays_japa=0):
        self.todays_japa = todays_japa
        self.engine = None
        self.bar = tqdm(total=MALA_SIZE, initial=start_state.count, unit="japa",
                        desc=f"Mala {start_state.mala_count + 1}", dynamic_ncols=True)

    def listener(self, event, engine):
        if event == "count":
            self.todays_japa += 1
        elif event == "mala":
            tqdm.write(f"  Mala {engine.tally_state.mala_count} complete. Jai!")
        elif event in ("start", "stop"):
            tqdm.write("  Auto chant running." if event == "start" else "  Auto chant paused.")
        self.render()

    def tick(self, elapsed):
        self.render()

    def notice(self, message, exc=None):
        tqdm.write(f"  ! {message}")

    def render(self):
        engine = self.engine
        if engine is None:
            return
        state = engine.tally_state
        self.bar.n = state.count
        self.bar.set_description(f"Mala {state.mala_count + 1}")
        self.bar.set_postfix_str(
            f"{format_elapsed(engine.clock.elapsed_seconds)} total {state.total_japa} today {self.todays_japa}"
        )

    def close(self):
        self.bar.close()


async def chant(engine, display):
    """Run the session until the user quits."""
    loop = asyncio.get_running_loop()
    done = asyncio.Event()

    def on_key():
        line = sys.stdin.readline()
        key = line.strip().lower()
        if line == "" or key == "q":
            done.set()
        elif key == "m":
            new_mode = MODE_AUTO if engine.session.mode == MODE_MANUAL else MODE_MANUAL
            engine.set_mode(new_mode)
            tqdm.write(f"  Mode: {new_mode}")
        elif engine.session.mode == MODE_MANUAL:
            engine.tap()
        else:
            engine.toggle()

    loop.add_reader(sys.stdin.fileno(), on_key)
    try:
        loop.add_signal_handler(signal.SIGINT, done.set)
    except NotImplementedError:
        logger.debug("Signal handlers unavailable; Ctrl-C raises KeyboardInterrupt")

    if engine.session.mode == MODE_AUTO:
        engine.start()
    display.render()
    try:
        await done.wait()
    finally:
        loop.remove_reader(sys.stdin.fileno())
        engine.stop()


def run(args):
    store = HttpDocumentStore(args.server)
    try:
        store.login(args.username, args.password)
        prefs = store.preferences()
        todays = store.todays_japa()
    except requests.RequestException as exc:
        print(f"ERROR: cannot reach {args.server} as {args.username}: {exc}")
        return 1

    session, notices = build_session(args, prefs, store)
    for n in notices:
        print(f"  {n}")
    print(f"Chanting: {display_text(session.chant_text)}  "
          f"({session.audio_selection.kind}, speed {session.speed_factor}, {session.mode})")

    loop = asyncio.new_event_loop()
    try:
        source = build_source(loop, args.device)
    except Exception as exc:
        print(f"ERROR: audio output unavailable: {exc}")
        loop.close()
        return 1

    selection = session.audio_selection
    if selection.kind == "speech":
        resolved = source.strategies["speech"].backend.find_voice(selection.voice_id, selection.language_tag)
        if resolved is None:
            print("WARNING: no speech voices are installed; "
                  "chants will be counted without sound.")
        elif resolved != selection.voice_id:
            print(f"Voice '{selection.voice_id}' is not installed here, speaking with '{resolved}' "
                  "(see --list-voices).")

    started = datetime.now(timezone.utc)
    tally = TallyStore(store, loop)
    tally.load()
    display = Display(tally.state, todays)
    tally.on_error = display.notice
    clock = SessionClock(loop, on_tick=display.tick)
    engine = CadenceEngine(source, tally, clock, loop, session=session,
                           watchdog=args.watchdog, listener=display.listener)
    display.engine = engine

    try:
        loop.run_until_complete(chant(engine, display))
    except KeyboardInterrupt:
        engine.stop()
    finally:
        elapsed = clock.elapsed_seconds
        engine.close()
        display.close()
        saved = tally.flush()
        loop.close()

    if not saved:
        print("WARNING: some counts could not be saved; they are still on your screen above.")
    ended = datetime.now(timezone.utc)
    if engine.session_japa:
        try:
            store.append_session(started, ended, engine.session_japa, engine.session_malas,
                                 session.chant_text)
        except requests.RequestException as exc:
            print(f"WARNING: session not added to history: {exc}")
    print(f"\nSession: {engine.session_japa} japa, {engine.session_malas} malas in {format_elapsed(elapsed)}")
    print(f"Total: {tally.state.mala_count} malas + {tally.state.count} ({tally.state.total_japa} japa)")
    return 0


def main(argv=None):
    load_dotenv()
    args = parse_args(argv)
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=os.getenv("LOG_LEVEL", "WARNING").upper(),
    )

    if args.list_chants:
        print_chant_list(args.audio_dir)
        return 0
    if args.list_voices:
        from speech import Pyttsx3Speech
        backend = Pyttsx3Speech()
        for v in backend.voices():
            print(f"  {v['name']:<30} {v['id']}  {', '.join(v['languages'])}")
        backend.close()
        return 0
    if not args.username or not args.password:
        print("ERROR: username and password required (NAAMJAAP_USERNAME / NAAMJAAP_PASSWORD in .env)")
        return 1
    return run(args)


if __name__ == "__main__":
    sys.exit(main())
