from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

import requests
from pydantic import ValidationError

from sitecraft import cache
from sitecraft.credentials import CredentialStore
from sitecraft.errors import ImageProviderError, MissingCredential
from sitecraft.models import ImageRecord

log = logging.getLogger(__name__)

UNSPLASH_BASE_URL = os.getenv("UNSPLASH_BASE_URL", "https://api.unsplash.com").rstrip("/")
try:
    UNSPLASH_TIMEOUT_SECS = float(os.getenv("UNSPLASH_TIMEOUT_SECS", "15"))
except ValueError:
    UNSPLASH_TIMEOUT_SECS = 15.0

# Last-resort queries when nothing smarter returned results.
CATEGORY_QUERIES: Dict[str, str] = {
    "hero": "modern website hero abstract",
    "about": "team professional business",
    "services": "professional business service",
    "portfolio": "creative work design",
    "contact": "office contact professional",
    "testimonials": "happy people testimonial",
    "team": "professional team business",
    "gallery": "creative gallery art",
    "blog": "reading writing blog",
    "restaurant": "food restaurant dining",
    "technology": "technology computer modern",
    "fashion": "fashion style modern",
    "travel": "travel destination beautiful",
    "fitness": "fitness health gym",
    "education": "education learning study",
    "default": "modern professional business",
}


def _records(items: List[Dict[str, Any]]) -> List[ImageRecord]:
    try:
        return [ImageRecord.from_unsplash(item) for item in items]
    except ValidationError as e:
        raise ImageProviderError(f"Unsplash returned a malformed photo: {e.error_count()} error(s)") from e


class UnsplashClient:
    """Thin wrapper over the Unsplash photo search endpoint."""

    def __init__(
        self,
        credentials: CredentialStore,
        *,
        timeout: float = UNSPLASH_TIMEOUT_SECS,
        use_cache: Optional[bool] = None,
    ) -> None:
        self.credentials = credentials
        self.timeout = timeout
        self.use_cache = cache.CACHE_ENABLED if use_cache is None else use_cache

    def _access_key(self) -> str:
        key = self.credentials.get_api_key("unsplash")
        if not key:
            raise MissingCredential("unsplash")
        return key

    def search(self, query: str, count: int = 1) -> List[ImageRecord]:
        query = (query or "").strip()
        count = max(1, int(count))
        if self.use_cache:
            hit = cache.get(query, count)
            if hit is not None:
                log.debug("unsplash: cache hit query=%r count=%d", query, count)
                return _records([item for item in hit if isinstance(item, dict)])
        key = self._access_key()
        try:
            resp = requests.get(
                f"{UNSPLASH_BASE_URL}/search/photos",
                params={"query": query, "per_page": count, "orientation": "landscape"},
                headers={"Authorization": f"Client-ID {key}", "Accept-Version": "v1"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ImageProviderError(f"Unsplash request error: {e!r}") from e
        if resp.status_code != 200:
            try:
                msg = resp.text[:200]
            except Exception:
                msg = str(resp.status_code)
            raise ImageProviderError(f"Unsplash API error (HTTP {resp.status_code}): {msg}", status=resp.status_code)
        try:
            data: Dict[str, Any] = resp.json()
        except ValueError as e:
            raise ImageProviderError("Unsplash returned a non-JSON body", status=resp.status_code) from e
        if not isinstance(data, dict) or not isinstance(data.get("results") or [], list):
            raise ImageProviderError("Unsplash returned an unexpected body", status=resp.status_code)
        results = [r for r in (data.get("results") or []) if isinstance(r, dict)]
        log.info("unsplash: query=%r count=%d results=%d total=%s", query, count, len(results), data.get("total"))
        records = _records(results)
        if self.use_cache and results:
            cache.set(query, count, results)
        return records

    def by_category(self, category: str, count: int = 3) -> List[ImageRecord]:
        query = CATEGORY_QUERIES.get((category or "").lower(), CATEGORY_QUERIES["default"])
        return self.search(query, count)
