from __future__ import annotations

import logging
import threading
import uuid
from typing import Dict, Optional

from sitecraft.errors import GenerationCancelled

log = logging.getLogger(__name__)


class CancellationToken:
    """Marks one generation; cancelled when a newer request from the same session starts."""

    def __init__(self, request_id: Optional[str] = None, session_key: str = "") -> None:
        self.request_id = request_id or uuid.uuid4().hex
        self.session_key = session_key
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise GenerationCancelled(self.request_id)


class RequestRegistry:
    """Tracks the active request per session so a new one supersedes the old."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: Dict[str, CancellationToken] = {}

    def begin(self, session_key: str, request_id: Optional[str] = None) -> CancellationToken:
        key = (session_key or "").strip() or "__global__"
        token = CancellationToken(request_id, key)
        with self._lock:
            previous = self._active.get(key)
            self._active[key] = token
        if previous is not None and not previous.cancelled:
            previous.cancel()
            log.info("request superseded session=%s old=%s new=%s", key, previous.request_id, token.request_id)
        return token

    def finish(self, token: CancellationToken) -> None:
        with self._lock:
            if self._active.get(token.session_key) is token:
                del self._active[token.session_key]

    def is_current(self, token: CancellationToken) -> bool:
        with self._lock:
            return self._active.get(token.session_key) is token

    def active_count(self) -> int:
        with self._lock:
            return len(self._active)
