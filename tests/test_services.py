import json
from unittest import mock

import pytest
import requests

import services


def chat_response(content):
    resp = mock.Mock()
    resp.raise_for_status.return_value = None
    resp.json.return_value = {"choices": [{"message": {"content": content}}]}
    return resp


@pytest.fixture
def api_key(monkeypatch):
    monkeypatch.setenv("LLM_API_KEY", "sk-test")
    monkeypatch.setenv("LLM_API_BASE", "http://llm.local/")
    monkeypatch.delenv("LLM_MODEL", raising=False)
    monkeypatch.delenv("TRANSCRIBE_MODEL", raising=False)


def test_suggest_voice(api_key, monkeypatch):
    content = json.dumps({"voiceConfig": {"voiceName": "hi-IN-Wavenet-B", "lang": "hi-IN"},
                          "feasibilityReasoning": "A deep Hindi voice fits."})
    post = mock.Mock(return_value=chat_response(content))
    monkeypatch.setattr(services.requests, "post", post)

    result = services.suggest_voice("deep devotional baritone")

    assert result == {"success": True, "data": {
        "voiceConfig": {"voiceName": "hi-IN-Wavenet-B", "lang": "hi-IN"},
        "feasibilityReasoning": "A deep Hindi voice fits.",
    }}
    url = post.call_args.args[0]
    body = post.call_args.kwargs["json"]
    assert url == "http://llm.local/v1/chat/completions"
    assert post.call_args.kwargs["headers"]["Authorization"] == "Bearer sk-test"
    assert body["model"] == "gpt-4o-mini"
    assert body["response_format"] == {"type": "json_object"}
    assert "deep devotional baritone" in body["messages"][1]["content"]


def test_suggest_voice_accepts_prebuilt_form_in_prose(api_key, monkeypatch):
    content = ('Sure: {"voiceConfig": {"prebuiltVoiceConfig": '
               '{"voiceName": "Achernar", "lang": "en-US"}}}')
    monkeypatch.setattr(services.requests, "post", mock.Mock(return_value=chat_response(content)))
    result = services.suggest_voice("a soft female voice")
    assert result["data"] == {"voiceConfig": {"voiceName": "Achernar", "lang": "en-US"}}


@pytest.mark.parametrize("content", [
    '{"voiceConfig": {"voiceName": "hi-IN-Wavenet-B", "lang": "fr-FR"}}',
    '{"voiceConfig": {"voiceName": "en-US-Wavenet-A", "lang": "hi-IN"}}',
    "no json here",
])
def test_suggest_voice_rejects_unusable_answers(api_key, monkeypatch, content):
    monkeypatch.setattr(services.requests, "post", mock.Mock(return_value=chat_response(content)))
    result = services.suggest_voice("something unusual")
    assert result["success"] is False
    assert result["error"].startswith("Failed to generate voice style: ")


def test_suggest_voice_without_key(monkeypatch):
    monkeypatch.delenv("LLM_API_KEY", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    post = mock.Mock()
    monkeypatch.setattr(services.requests, "post", post)
    result = services.suggest_voice("calm male voice")
    assert result["success"] is False
    post.assert_not_called()


def test_suggest_voice_http_error(api_key, monkeypatch):
    monkeypatch.setattr(services.requests, "post",
                        mock.Mock(side_effect=requests.ConnectionError("refused")))
    result = services.suggest_voice("calm male voice")
    assert result == {"success": False, "error": "Failed to generate voice style: refused"}


def test_decode_data_uri():
    assert services.decode_data_uri("data:audio/webm;codecs=opus;base64,UklGRg==") == \
        ("audio/webm", b"RIFF")
    with pytest.raises(services.ServiceError):
        services.decode_data_uri("http://example.com/a.mp3")
    with pytest.raises(services.ServiceError):
        services.decode_data_uri("data:audio/webm;base64,")


def test_transcribe(api_key, monkeypatch):
    resp = mock.Mock()
    resp.raise_for_status.return_value = None
    resp.json.return_value = {"text": " राधा राधा \n"}
    post = mock.Mock(return_value=resp)
    monkeypatch.setattr(services.requests, "post", post)

    result = services.transcribe(services.to_data_uri(b"RIFF", "audio/mpeg"))

    assert result == {"success": True, "data": {"transcript": "राधा राधा"}}
    assert post.call_args.args[0] == "http://llm.local/v1/audio/transcriptions"
    assert post.call_args.kwargs["data"] == {"model": "whisper-1"}
    assert post.call_args.kwargs["files"]["file"] == ("chant.mp3", b"RIFF", "audio/mpeg")


def test_transcribe_with_nothing_recognised(api_key, monkeypatch):
    resp = mock.Mock()
    resp.raise_for_status.return_value = None
    resp.json.return_value = {"text": ""}
    monkeypatch.setattr(services.requests, "post", mock.Mock(return_value=resp))
    result = services.transcribe("data:audio/mp4;base64,UklGRg==")
    assert result["success"] is False
    assert result["error"].startswith("Failed to transcribe audio: ")


def test_transcribe_bad_input_never_reaches_the_api(api_key, monkeypatch):
    post = mock.Mock()
    monkeypatch.setattr(services.requests, "post", post)
    assert services.transcribe("not a data uri")["success"] is False
    post.assert_not_called()
