from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Dict, Mapping, Optional

try:
    import redis
except Exception:
    redis = None

log = logging.getLogger(__name__)

CREDENTIALS_BACKEND = os.getenv("CREDENTIALS_BACKEND", "file").strip().lower()
CREDENTIALS_FILE = Path(os.getenv("CREDENTIALS_FILE", "cache/credentials.json"))
REDIS_URL = os.getenv("REDIS_URL", "").strip()
_REDIS_TIMEOUT = float(os.getenv("REDIS_CREDENTIALS_TIMEOUT", "0.35") or 0.35)

PROVIDERS = ("gemini", "openai", "claude", "unsplash")

# Environment fallbacks, consulted after the overlay and the persisted store.
ENV_KEYS: Dict[str, str] = {
    "gemini": "GEMINI_API_KEY",
    "openai": "OPENAI_API_KEY",
    "claude": "ANTHROPIC_API_KEY",
    "unsplash": "UNSPLASH_ACCESS_KEY",
}


def storage_key(provider: str) -> str:
    return f"ai_{provider}_key"


class MemoryBackend:
    def __init__(self, initial: Optional[Mapping[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value


class FileBackend:
    """JSON file keyed by ``ai_<provider>_key``; writes go through a tmp file + replace."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path or CREDENTIALS_FILE)
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, ValueError):
            log.warning("credentials: unreadable store file=%s; treating as empty", self.path)
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items() if isinstance(v, str)}

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            state = self._read()
            state[key] = value
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(".tmp")
            tmp.write_text(json.dumps(state, separators=(",", ":")), encoding="utf-8")
            tmp.replace(self.path)


class RedisBackend:
    def __init__(self, url: Optional[str] = None, client=None) -> None:
        if client is None:
            if redis is None:
                raise RuntimeError("redis package is not installed")
            client = redis.from_url(
                url or REDIS_URL or "redis://localhost:6379/0",
                decode_responses=True,
                socket_timeout=_REDIS_TIMEOUT,
                socket_connect_timeout=_REDIS_TIMEOUT,
            )
        self._client = client

    def get(self, key: str) -> Optional[str]:
        raw = self._client.get(key)
        return raw if raw else None

    def set(self, key: str, value: str) -> None:
        self._client.set(key, value)


def backend_from_env():
    kind = CREDENTIALS_BACKEND
    if kind == "memory":
        return MemoryBackend()
    if kind == "redis":
        try:
            return RedisBackend(REDIS_URL)
        except Exception as exc:
            log.warning("credentials: Redis backend unavailable, falling back to file: %s", exc)
    return FileBackend(CREDENTIALS_FILE)


class CredentialStore:
    """Provider-keyed API keys.

    Lookup order is the in-memory overlay, then the persistence backend, then the
    environment. Writes update overlay and backend together; the last write wins.
    """

    def __init__(self, backend=None, env: Optional[Mapping[str, str]] = None) -> None:
        self.backend = backend if backend is not None else MemoryBackend()
        self._env = os.environ if env is None else env
        self._overlay: Dict[str, str] = {}
        self._lock = threading.Lock()

    def set_api_key(self, provider: str, api_key: str) -> None:
        value = (api_key or "").strip()
        if not value:
            raise ValueError("API key must be a non-empty string")
        with self._lock:
            self._overlay[provider] = value
            try:
                self.backend.set(storage_key(provider), value)
            except Exception as exc:
                # The overlay still holds the key for this process
                log.warning("credentials: failed to persist key provider=%s err=%s", provider, exc)
        log.info("credentials: stored key provider=%s", provider)

    def get_api_key(self, provider: str) -> Optional[str]:
        with self._lock:
            value = self._overlay.get(provider)
        if value:
            return value
        try:
            value = self.backend.get(storage_key(provider))
        except Exception as exc:
            log.warning("credentials: backend read failed provider=%s err=%s", provider, exc)
            value = None
        if value:
            return value
        env_name = ENV_KEYS.get(provider)
        if env_name:
            value = (self._env.get(env_name) or "").strip()
        return value or None

    def has_api_key(self, provider: str) -> bool:
        return bool(self.get_api_key(provider))

    def status(self) -> Dict[str, bool]:
        return {p: self.has_api_key(p) for p in PROVIDERS}
