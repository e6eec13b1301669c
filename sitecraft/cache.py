import os, json, hashlib, time
import logging
from pathlib import Path
from typing import Any, Optional

log = logging.getLogger(__name__)

CACHE_DIR = Path(os.getenv("IMAGE_CACHE_DIR", "cache/images"))
try:
    CACHE_TTL_SECONDS = int(os.getenv("IMAGE_CACHE_TTL_SECONDS", "86400"))
except ValueError:
    CACHE_TTL_SECONDS = 86400
CACHE_ENABLED = os.getenv("IMAGE_CACHE_ENABLED", "1").lower() in {"1", "true", "yes", "on"}


def _key(query: str, count: int, schema_version: str = "v1") -> str:
    h = hashlib.sha256()
    h.update((query or "").strip().lower().encode("utf-8"))
    h.update(("\n" + str(count)).encode("utf-8"))
    h.update(("\n" + schema_version).encode("utf-8"))
    return h.hexdigest()


def get(query: str, count: int) -> Optional[list[dict[str, Any]]]:
    """Cached search results, or None on a miss; 0 TTL means entries never expire."""
    path = CACHE_DIR / f"{_key(query, count)}.json"
    if not path.exists():
        return None
    if CACHE_TTL_SECONDS > 0 and time.time() - path.stat().st_mtime > CACHE_TTL_SECONDS:
        path.unlink(missing_ok=True)
        return None
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError):
        log.warning("image cache: unreadable entry %s; ignoring", path.name)
        return None
    return data if isinstance(data, list) else None


def set(query: str, count: int, results: list[dict[str, Any]]) -> None:
    CACHE_DIR.mkdir(parents=True, exist_ok=True)
    path = CACHE_DIR / f"{_key(query, count)}.json"
    tmp = path.with_suffix(".json.tmp")
    with tmp.open("w", encoding="utf-8") as f:
        json.dump(results, f, ensure_ascii=False, separators=(",", ":"))
    tmp.replace(path)
