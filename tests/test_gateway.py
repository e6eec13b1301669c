import pytest
import requests

from sitecraft import gateway as gateway_mod
from sitecraft.cancellation import CancellationToken
from sitecraft.credentials import CredentialStore, MemoryBackend
from sitecraft.errors import (
    EmptyGeneration,
    GenerationCancelled,
    MissingCredential,
    UpstreamOverloaded,
    UpstreamRejected,
)
from sitecraft.gateway import ModelGateway
from sitecraft.models import ModelDescriptor, get_model


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


def _gemini_ok(text="<html>site</html>"):
    return FakeResponse(200, {"candidates": [{"content": {"parts": [{"text": text}]}}]})


class Recorder:
    """Stands in for requests.post, replaying canned responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def __call__(self, url, **kwargs):
        self.calls.append({"url": url, **kwargs})
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def store():
    s = CredentialStore(MemoryBackend(), env={})
    s.set_api_key("gemini", "g-key")
    s.set_api_key("openai", "o-key")
    s.set_api_key("claude", "c-key")
    return s


def _gateway(store, sleeps):
    return ModelGateway(store, sleep=sleeps.append, timeout=5)


def test_missing_credential_fails_before_network(monkeypatch):
    def never(*a, **k):
        raise AssertionError("network must not be touched")

    monkeypatch.setattr(gateway_mod.requests, "post", never)
    gw = ModelGateway(CredentialStore(MemoryBackend(), env={}))
    with pytest.raises(MissingCredential) as exc:
        gw.generate("hi", get_model("gemini-2.0-flash-exp"))
    assert "API key not found for gemini" in str(exc.value)


def test_gemini_body_puts_image_before_text(monkeypatch, store):
    rec = Recorder(_gemini_ok())
    monkeypatch.setattr(gateway_mod.requests, "post", rec)
    out = _gateway(store, []).generate("build it", get_model("gemini-2.0-flash-exp"), image=b"png", image_mime_type="image/png")
    assert out == "<html>site</html>"
    call = rec.calls[0]
    assert call["url"].endswith("/models/gemini-2.0-flash-exp:generateContent")
    assert call["params"] == {"key": "g-key"}
    parts = call["json"]["contents"][0]["parts"]
    assert parts[0] == {"inlineData": {"mimeType": "image/png", "data": "cG5n"}}
    assert parts[1] == {"text": "build it"}
    config = call["json"]["generationConfig"]
    assert config["topK"] == 40
    assert config["topP"] == 0.95
    assert config["maxOutputTokens"] == 8192
    assert call["timeout"] == 5


def test_gemini_without_image_or_vision_sends_text_only(monkeypatch, store):
    rec = Recorder(_gemini_ok())
    monkeypatch.setattr(gateway_mod.requests, "post", rec)
    blind = ModelDescriptor(id="gemini-text", name="Text", provider="gemini", max_tokens=100, supports_vision=False)
    gw = _gateway(store, [])
    gw.generate("a", get_model("gemini-1.5-pro"))
    gw.generate("b", blind, image=b"png")
    assert rec.calls[0]["json"]["contents"][0]["parts"] == [{"text": "a"}]
    assert rec.calls[1]["json"]["contents"][0]["parts"] == [{"text": "b"}]


def test_overload_retries_three_times_with_growing_delays(monkeypatch, store):
    rec = Recorder(FakeResponse(503, {"error": {"message": "overloaded"}}))
    monkeypatch.setattr(gateway_mod.requests, "post", rec)
    sleeps = []
    with pytest.raises(UpstreamOverloaded) as exc:
        _gateway(store, sleeps).generate("x", get_model("gemini-2.0-flash-exp"))
    assert len(rec.calls) == 3
    assert sleeps == [2.0, 4.0]
    assert exc.value.attempts == 3
    assert exc.value.status == 503


def test_overload_then_success(monkeypatch, store):
    rec = Recorder(FakeResponse(503), _gemini_ok("done"))
    monkeypatch.setattr(gateway_mod.requests, "post", rec)
    sleeps = []
    assert _gateway(store, sleeps).generate("x", get_model("gemini-2.0-flash-exp")) == "done"
    assert sleeps == [2.0]


def test_other_errors_are_not_retried(monkeypatch, store):
    rec = Recorder(FakeResponse(400, {"error": {"message": "API key not valid"}}))
    monkeypatch.setattr(gateway_mod.requests, "post", rec)
    sleeps = []
    with pytest.raises(UpstreamRejected) as exc:
        _gateway(store, sleeps).generate("x", get_model("gemini-2.0-flash-exp"))
    assert exc.value.status == 400
    assert exc.value.upstream_message == "API key not valid"
    assert len(rec.calls) == 1
    assert sleeps == []


def test_transport_error_becomes_rejection(monkeypatch, store):
    monkeypatch.setattr(gateway_mod.requests, "post", Recorder(requests.ConnectionError("refused")))
    with pytest.raises(UpstreamRejected) as exc:
        _gateway(store, []).generate("x", get_model("gemini-2.0-flash-exp"))
    assert exc.value.status == 0


def test_empty_text_raises(monkeypatch, store):
    monkeypatch.setattr(gateway_mod.requests, "post", Recorder(FakeResponse(200, {"candidates": []})))
    with pytest.raises(EmptyGeneration):
        _gateway(store, []).generate("x", get_model("gemini-2.0-flash-exp"))


def test_progress_reported_once_on_success(monkeypatch, store):
    monkeypatch.setattr(gateway_mod.requests, "post", Recorder(_gemini_ok("full text")))
    seen = []
    _gateway(store, []).generate("x", get_model("gemini-2.0-flash-exp"), on_progress=lambda t, d: seen.append((t, d)))
    assert seen == [("full text", True)]


def test_openai_request_shape(monkeypatch, store):
    rec = Recorder(FakeResponse(200, {"choices": [{"message": {"content": "from gpt"}}]}))
    monkeypatch.setattr(gateway_mod.requests, "post", rec)
    out = _gateway(store, []).generate("go", get_model("gpt-4o"), image=b"png", image_mime_type="image/jpeg")
    assert out == "from gpt"
    call = rec.calls[0]
    assert call["headers"]["Authorization"] == "Bearer o-key"
    content = call["json"]["messages"][0]["content"]
    assert content[0]["type"] == "image_url"
    assert content[0]["image_url"]["url"] == "data:image/jpeg;base64,cG5n"
    assert content[1] == {"type": "text", "text": "go"}
    assert call["json"]["max_tokens"] == 4096


def test_claude_529_counts_as_overload(monkeypatch, store):
    rec = Recorder(FakeResponse(529), FakeResponse(200, {"content": [{"type": "text", "text": "from claude"}]}))
    monkeypatch.setattr(gateway_mod.requests, "post", rec)
    sleeps = []
    out = _gateway(store, sleeps).generate("go", get_model("claude-3-5-sonnet"))
    assert out == "from claude"
    assert sleeps == [2.0]
    headers = rec.calls[0]["headers"]
    assert headers["x-api-key"] == "c-key"
    assert headers["anthropic-version"] == "2023-06-01"


def test_superseded_request_drops_late_text(monkeypatch, store):
    token = CancellationToken("old")

    def post(url, **kwargs):
        token.cancel()
        return _gemini_ok("late")

    monkeypatch.setattr(gateway_mod.requests, "post", post)
    seen = []
    with pytest.raises(GenerationCancelled):
        _gateway(store, []).generate(
            "x", get_model("gemini-2.0-flash-exp"), on_progress=lambda t, d: seen.append(t), token=token
        )
    assert seen == []


@pytest.mark.parametrize(
    "payload",
    [
        {"candidates": [{"content": {"parts": []}}, {"content": {"parts": [{"text": "second candidate"}]}}]},
        {"candidates": [{"content": {"parts": [{"text": "  "}, {"text": "second part"}]}}]},
        {"candidates": [{"finishReason": "SAFETY"}]},
    ],
)
def test_gemini_text_comes_from_first_part_of_first_candidate(monkeypatch, store, payload):
    monkeypatch.setattr(gateway_mod.requests, "post", Recorder(FakeResponse(200, payload)))
    with pytest.raises(EmptyGeneration):
        _gateway(store, []).generate("x", get_model("gemini-2.0-flash-exp"))
