from __future__ import annotations

import base64
import logging
import os
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from sitecraft.cancellation import CancellationToken
from sitecraft.credentials import CredentialStore
from sitecraft.errors import EmptyGeneration, MissingCredential, UpstreamOverloaded, UpstreamRejected
from sitecraft.models import ModelDescriptor
from sitecraft.retry import linear_backoff, retry_until

log = logging.getLogger(__name__)

GEMINI_ENDPOINT = os.getenv(
    "GEMINI_ENDPOINT", "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
)
OPENAI_ENDPOINT = os.getenv("OPENAI_ENDPOINT", "https://api.openai.com/v1/chat/completions")
ANTHROPIC_ENDPOINT = os.getenv("ANTHROPIC_ENDPOINT", "https://api.anthropic.com/v1/messages")
ANTHROPIC_VERSION = "2023-06-01"

try:
    TEMPERATURE = float(os.getenv("TEMPERATURE", "0.7"))
except ValueError:
    TEMPERATURE = 0.7

try:
    LLM_TIMEOUT_SECS = int(os.getenv("LLM_TIMEOUT_SECS", "120"))
except ValueError:
    LLM_TIMEOUT_SECS = 120

try:
    GATEWAY_MAX_ATTEMPTS = int(os.getenv("GATEWAY_MAX_ATTEMPTS", "3"))
except ValueError:
    GATEWAY_MAX_ATTEMPTS = 3

BACKOFF_STEP_SECONDS = 2.0

# Status codes that mean "busy, try again" rather than "your request is wrong".
OVERLOAD_STATUSES: Dict[str, Tuple[int, ...]] = {
    "gemini": (503,),
    "openai": (503,),
    "claude": (503, 529),
}

# Catalog ids that differ from the provider's API model name.
_API_MODEL_NAMES = {"claude-3-5-sonnet": "claude-3-5-sonnet-latest"}

ProgressCallback = Callable[[str, bool], None]
HttpRequest = Tuple[str, Dict[str, str], Dict[str, str], Dict[str, Any]]


def _error_message(resp: requests.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
    try:
        return resp.text[:400] or str(resp.status_code)
    except Exception:
        return str(resp.status_code)


def _extract_gemini_text(payload: Dict[str, Any]) -> Optional[str]:
    # only candidates[0].content.parts[0].text counts
    try:
        txt = payload["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError):
        return None
    return txt if isinstance(txt, str) and txt.strip() else None


def _extract_openai_text(payload: Dict[str, Any]) -> Optional[str]:
    choices = payload.get("choices") or []
    if not choices:
        return None
    content = (choices[0].get("message") or {}).get("content")
    if isinstance(content, list):
        content = "".join(c.get("text", "") for c in content if isinstance(c, dict))
    return content if isinstance(content, str) and content.strip() else None


def _extract_claude_text(payload: Dict[str, Any]) -> Optional[str]:
    blocks = payload.get("content") or []
    texts = [b.get("text") for b in blocks if isinstance(b, dict) and b.get("type", "text") == "text"]
    text = texts[0] if texts else None
    return text if isinstance(text, str) and text.strip() else None


class ModelGateway:
    """One entry point for the text-generation providers in the model catalog.

    Overload responses are retried with a linear backoff; every other failure
    surfaces at once as a typed ``GenerationError``.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        *,
        timeout: float = LLM_TIMEOUT_SECS,
        sleep: Callable[[float], None] = time.sleep,
        max_attempts: int = GATEWAY_MAX_ATTEMPTS,
    ) -> None:
        self.credentials = credentials
        self.timeout = timeout
        self.sleep = sleep
        self.max_attempts = max_attempts

    def _gemini_request(
        self, key: str, prompt: str, model: ModelDescriptor, image: Optional[str], mime: str
    ) -> HttpRequest:
        parts: List[Dict[str, Any]] = []
        if image and model.supports_vision:
            parts.append({"inlineData": {"mimeType": mime, "data": image}})
        parts.append({"text": prompt})
        body = {
            "contents": [{"parts": parts}],
            "generationConfig": {
                "temperature": TEMPERATURE,
                "topK": 40,
                "topP": 0.95,
                "maxOutputTokens": model.max_tokens,
            },
        }
        return GEMINI_ENDPOINT.format(model=model.id), {"key": key}, {}, body

    def _openai_request(
        self, key: str, prompt: str, model: ModelDescriptor, image: Optional[str], mime: str
    ) -> HttpRequest:
        content: List[Dict[str, Any]] = []
        if image and model.supports_vision:
            content.append({"type": "image_url", "image_url": {"url": f"data:{mime};base64,{image}"}})
        content.append({"type": "text", "text": prompt})
        body = {
            "model": _API_MODEL_NAMES.get(model.id, model.id),
            "messages": [{"role": "user", "content": content}],
            "temperature": TEMPERATURE,
            "max_tokens": model.max_tokens,
        }
        return OPENAI_ENDPOINT, {}, {"Authorization": f"Bearer {key}"}, body

    def _claude_request(
        self, key: str, prompt: str, model: ModelDescriptor, image: Optional[str], mime: str
    ) -> HttpRequest:
        content: List[Dict[str, Any]] = []
        if image and model.supports_vision:
            content.append({"type": "image", "source": {"type": "base64", "media_type": mime, "data": image}})
        content.append({"type": "text", "text": prompt})
        body = {
            "model": _API_MODEL_NAMES.get(model.id, model.id),
            "max_tokens": model.max_tokens,
            "temperature": TEMPERATURE,
            "messages": [{"role": "user", "content": content}],
        }
        headers = {"x-api-key": key, "anthropic-version": ANTHROPIC_VERSION}
        return ANTHROPIC_ENDPOINT, {}, headers, body

    def generate(
        self,
        prompt: str,
        model: ModelDescriptor,
        *,
        image: Optional[bytes] = None,
        image_mime_type: str = "image/png",
        on_progress: Optional[ProgressCallback] = None,
        token: Optional[CancellationToken] = None,
    ) -> str:
        provider = model.provider
        key = self.credentials.get_api_key(provider)
        if not key:
            raise MissingCredential(provider)

        builders = {
            "gemini": self._gemini_request,
            "openai": self._openai_request,
            "claude": self._claude_request,
        }
        encoded = base64.b64encode(image).decode("ascii") if image else None
        url, params, headers, body = builders[provider](key, prompt, model, encoded, image_mime_type)
        overload = OVERLOAD_STATUSES.get(provider, (503,))

        def _attempt(attempt: int) -> requests.Response:
            start = time.time()
            try:
                resp = requests.post(url, params=params, headers=headers, json=body, timeout=self.timeout)
            except requests.RequestException as e:
                log.warning("gateway provider=%s attempt=%d request error: %r", provider, attempt, e)
                raise UpstreamRejected(provider, 0, repr(e)) from e
            if token is not None:
                token.raise_if_cancelled()
            log.info(
                "gateway provider=%s model=%s attempt=%d status=%s dur_ms=%d",
                provider,
                model.id,
                attempt,
                resp.status_code,
                int((time.time() - start) * 1000),
            )
            if resp.status_code in overload:
                raise UpstreamOverloaded(provider, resp.status_code, attempts=attempt)
            if resp.status_code != 200:
                raise UpstreamRejected(provider, resp.status_code, _error_message(resp))
            return resp

        resp = retry_until(
            _attempt,
            lambda r: True,
            max_attempts=self.max_attempts,
            backoff=linear_backoff(BACKOFF_STEP_SECONDS),
            retry_on=(UpstreamOverloaded,),
            sleep=self.sleep,
            token=token,
            label=f"gateway {provider}",
        )

        try:
            data = resp.json()
        except ValueError:
            log.warning("gateway provider=%s: non-JSON body", provider)
            raise EmptyGeneration(provider)
        extract = {
            "gemini": _extract_gemini_text,
            "openai": _extract_openai_text,
            "claude": _extract_claude_text,
        }[provider]
        text = extract(data) if isinstance(data, dict) else None
        if not text:
            log.warning("gateway provider=%s: empty response text", provider)
            raise EmptyGeneration(provider)
        if on_progress is not None:
            on_progress(text, True)
        return text
