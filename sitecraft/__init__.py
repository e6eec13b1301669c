import os
from pathlib import Path
from typing import Optional, Tuple

__version__ = "0.1.0"


def _parse_env_line(line: str) -> Optional[Tuple[str, str]]:
    """``KEY=VALUE`` (optionally ``export``-prefixed and quoted) -> (key, value)."""
    s = line.strip()
    if not s or s.startswith("#") or "=" not in s:
        return None
    key, val = (part.strip() for part in s.split("=", 1))
    if key.startswith("export "):
        key = key[len("export "):].strip()
    if len(val) >= 2 and val[0] == val[-1] and val[0] in ("'", '"'):
        val = val[1:-1]
    return (key, val) if key else None


def _load_provider_keys() -> None:
    # Tests must never pick up real provider keys from a local .env
    if os.getenv("PYTEST_CURRENT_TEST"):
        return
    env_file = Path(os.getenv("SITECRAFT_ENV_FILE", ".env"))
    if not env_file.is_file():
        return
    try:
        lines = env_file.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for line in lines:
        parsed = _parse_env_line(line)
        if parsed is not None:
            # variables already in the environment win
            os.environ.setdefault(*parsed)


_load_provider_keys()
