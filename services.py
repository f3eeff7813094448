"""Voice-style suggestion and audio transcription over an OpenAI-compatible API.

Both calls return ``{"success": True, "data": ...}`` or
``{"success": False, "error": "..."}``; nothing raises past this module.
"""

import base64
import binascii
import json
import logging
import os
import re

import requests

logger = logging.getLogger(__name__)

# Voices the suggestion may pick from, by IETF language tag.
VOICE_OPTIONS = {
    "en-US": ["Algenib", "Achernar", "en-US-Wavenet-A", "en-US-Wavenet-D"],
    "hi-IN": ["hi-IN-Wavenet-A", "hi-IN-Wavenet-B", "hi-IN-Wavenet-C", "hi-IN-Wavenet-D"],
}

SYS_PROMPT = (
    "You help customize the audio style for a chanting application. "
    "Pick a TTS voice that sounds realistic, smooth and musical rather than synthetic. "
    "If the user names a person or a style, choose a voice that captures its essence: "
    "calm, devotional, with a gentle rhythm. First work out the language of the desired "
    "style, then choose 'voiceName' and 'lang' from the valid options below; the voice "
    "must support that language. If the style cannot be mimicked with these voices, "
    "explain why in 'feasibilityReasoning'.\n\n"
    "Valid options:\n"
    + "\n".join(f"- {lang}: {', '.join(names)}" for lang, names in VOICE_OPTIONS.items())
    + "\n\nReturn strict JSON: "
    '{"voiceConfig": {"voiceName": "...", "lang": "..."}, "feasibilityReasoning": "..."}'
)

USER_TMPL = "The user wants the chant to sound like: {style}"

_DATA_URI = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?P<params>(;[^;,]*)*?);base64,(?P<data>.*)$", re.S)


class ServiceError(Exception):
    pass


def _config():
    base = (os.environ.get("LLM_API_BASE") or os.environ.get("OPENAI_API_BASE")
            or "https://api.openai.com")
    key = os.environ.get("LLM_API_KEY") or os.environ.get("OPENAI_API_KEY")
    if not key:
        raise ServiceError("no API key configured (set LLM_API_KEY)")
    return base.rstrip("/"), key


def _parse_json_from_text(text):
    m = re.search(r"\{[\s\S]*\}", text or "")
    if not m:
        raise ServiceError("model returned no JSON")
    try:
        return json.loads(m.group(0))
    except ValueError as exc:
        raise ServiceError(f"model returned invalid JSON: {exc}") from exc


def _voice_config(payload):
    config = payload.get("voiceConfig") or {}
    # accept the nested prebuilt form too
    config = config.get("prebuiltVoiceConfig", config)
    voice_name = str(config.get("voiceName") or "").strip()
    lang = str(config.get("lang") or "").strip()
    if lang not in VOICE_OPTIONS:
        raise ServiceError(f"unsupported language {lang!r}")
    if voice_name not in VOICE_OPTIONS[lang]:
        raise ServiceError(f"voice {voice_name!r} is not available for {lang}")
    result = {"voiceConfig": {"voiceName": voice_name, "lang": lang}}
    reasoning = payload.get("feasibilityReasoning")
    if reasoning:
        result["feasibilityReasoning"] = str(reasoning)
    return result


def suggest_voice(desired_style, timeout=60):
    """Ask the model for a voice matching ``desired_style``."""
    try:
        base, key = _config()
        model = os.environ.get("LLM_MODEL", "gpt-4o-mini")
        r = requests.post(
            f"{base}/v1/chat/completions",
            headers={"Authorization": f"Bearer {key}", "content-type": "application/json"},
            json={
                "model": model,
                "response_format": {"type": "json_object"},
                "messages": [
                    {"role": "system", "content": SYS_PROMPT},
                    {"role": "user", "content": USER_TMPL.format(style=desired_style)},
                ],
            },
            timeout=timeout,
        )
        r.raise_for_status()
        text = r.json()["choices"][0]["message"]["content"]
        data = _voice_config(_parse_json_from_text(text))
    except (requests.RequestException, ServiceError, KeyError, IndexError, TypeError, ValueError) as exc:
        logger.exception("Voice suggestion failed")
        return {"success": False, "error": f"Failed to generate voice style: {exc}"}
    return {"success": True, "data": data}


def to_data_uri(raw: bytes, mimetype: str) -> str:
    return f"data:{mimetype};base64,{base64.b64encode(raw).decode()}"


def decode_data_uri(uri):
    """Return ``(mimetype, bytes)`` for a base64 data URI."""
    m = _DATA_URI.match(uri or "")
    if not m:
        raise ServiceError("expected a base64 data URI")
    try:
        raw = base64.b64decode(m.group("data"), validate=False)
    except (binascii.Error, ValueError) as exc:
        raise ServiceError(f"invalid base64 audio: {exc}") from exc
    if not raw:
        raise ServiceError("audio is empty")
    return m.group("mime") or "application/octet-stream", raw


def _extension(mimetype):
    sub = mimetype.split("/", 1)[-1]
    return {"mpeg": "mp3", "x-m4a": "m4a", "mp4": "m4a", "x-wav": "wav"}.get(sub, sub)


def transcribe(audio_data_uri, timeout=120):
    """Transcribe the chant recorded in ``audio_data_uri``."""
    try:
        mimetype, raw = decode_data_uri(audio_data_uri)
        base, key = _config()
        model = os.environ.get("TRANSCRIBE_MODEL", "whisper-1")
        r = requests.post(
            f"{base}/v1/audio/transcriptions",
            headers={"Authorization": f"Bearer {key}"},
            data={"model": model},
            files={"file": (f"chant.{_extension(mimetype)}", raw, mimetype)},
            timeout=timeout,
        )
        r.raise_for_status()
        transcript = (r.json().get("text") or "").strip()
        if not transcript:
            raise ServiceError("no speech recognised")
    except (requests.RequestException, ServiceError, KeyError, TypeError, ValueError) as exc:
        logger.exception("Transcription failed")
        return {"success": False, "error": f"Failed to transcribe audio: {exc}"}
    return {"success": True, "data": {"transcript": transcript}}
