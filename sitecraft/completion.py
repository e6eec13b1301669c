from __future__ import annotations

import logging
import os
import re
from typing import Callable, Dict, List, Optional, Pattern, Tuple

from pydantic import BaseModel, Field

from sitecraft.cancellation import CancellationToken
from sitecraft.errors import GenerationCancelled, GenerationError
from sitecraft.retry import retry_until

log = logging.getLogger(__name__)

try:
    CONTINUATION_MAX_ATTEMPTS = int(os.getenv("CONTINUATION_MAX_ATTEMPTS", "3"))
except ValueError:
    CONTINUATION_MAX_ATTEMPTS = 3


def _attr(*words: str) -> str:
    # id="..." or class="..." whose value contains one of the words as a whole token
    alt = "|".join(words)
    return rf"""\b(?:id|class)\s*=\s*["'][^"']*\b(?:{alt})\b"""


def _heading(*words: str) -> str:
    alt = "|".join(words)
    return rf"<h[1-6]\b[^>]*>[^<]*\b(?:{alt})\b"


_RAW_REQUIREMENTS: Dict[str, List[str]] = {
    "header": [r"<header\b", r"<nav\b", _attr("header", "navbar", "site-header")],
    "hero": [_attr("hero", "banner", "jumbotron", "masthead")],
    "about": [_attr("about", "about-us", "story"), _heading("about")],
    "services": [_attr("services", "service", "features", "offerings"), _heading("services", "what we do")],
    "testimonials": [_attr("testimonials", "testimonial", "reviews"), _heading("testimonials", "what our clients say")],
    "portfolio": [_attr("portfolio", "gallery", "projects", "our-work", "showcase"), _heading("portfolio", "gallery", "our work")],
    "stats": [_attr("stats", "statistics", "counters", "counter", "numbers", "achievements", "metrics")],
    "contact": [_attr("contact", "contact-us"), r"<form\b", _heading("contact", "get in touch")],
    "footer": [r"<footer\b", _attr("footer", "site-footer")],
}

SECTION_REQUIREMENTS: Dict[str, List[Pattern[str]]] = {
    name: [re.compile(p, re.IGNORECASE) for p in patterns] for name, patterns in _RAW_REQUIREMENTS.items()
}

_CLOSE_HTML_RE = re.compile(r"</html\s*>", re.IGNORECASE)
_CLOSE_BODY_RE = re.compile(r"</body\s*>", re.IGNORECASE)


class CompletionReport(BaseModel):
    is_complete: bool
    present_sections: List[str] = Field(default_factory=list)
    missing_sections: List[str] = Field(default_factory=list)
    last_section: Optional[str] = None
    has_closing_html: bool = False
    has_closing_body: bool = False


def detect_sections(html: str) -> List[str]:
    content = html or ""
    return [name for name, patterns in SECTION_REQUIREMENTS.items() if any(p.search(content) for p in patterns)]


def check_completeness(html: str) -> CompletionReport:
    content = html or ""
    present = detect_sections(content)
    missing = [name for name in SECTION_REQUIREMENTS if name not in present]
    has_html = bool(_CLOSE_HTML_RE.search(content))
    has_body = bool(_CLOSE_BODY_RE.search(content))
    return CompletionReport(
        is_complete=not missing and has_html and has_body,
        present_sections=present,
        missing_sections=missing,
        last_section=present[-1] if present else None,
        has_closing_html=has_html,
        has_closing_body=has_body,
    )


_FENCE_OPEN_RE = re.compile(r"^\s*```[A-Za-z0-9_-]*[ \t]*\n?")
_FENCE_CLOSE_RE = re.compile(r"\n?```\s*$")
_WRAPPER_RES = [
    re.compile(r"<!doctype[^>]*>", re.IGNORECASE),
    re.compile(r"<head\b[^>]*>.*?</head\s*>", re.IGNORECASE | re.DOTALL),
    re.compile(r"<html\b[^>]*>", re.IGNORECASE),
    re.compile(r"<head\b[^>]*>", re.IGNORECASE),
    re.compile(r"<body\b[^>]*>", re.IGNORECASE),
    re.compile(r"<main\b[^>]*>", re.IGNORECASE),
]
_CLOSING_ORDER = ("main", "body", "html")


def _clean_fragment(fragment: str, existing: str) -> str:
    text = _FENCE_OPEN_RE.sub("", fragment or "", count=1)
    text = _FENCE_CLOSE_RE.sub("", text, count=1)
    for rx in _WRAPPER_RES:
        text = rx.sub("", text)
    lower_existing = existing.lower()
    for tag in _CLOSING_ORDER:
        # keep a closing tag only if the document still needs one
        if f"</{tag}" in lower_existing or (tag == "main" and "<main" not in lower_existing):
            text = re.sub(rf"</{tag}\s*>", "", text, flags=re.IGNORECASE)
    return text.strip()


def _trim_dangling_tag(html: str) -> str:
    lt = html.rfind("<")
    if lt > html.rfind(">"):
        return html[:lt]
    return html


def merge_continuation(existing: str, continuation: str) -> str:
    """Splice a continuation fragment into a truncated document.

    The fragment lands before the last ``</main>``, else ``</body>``, else ``</html>``,
    else at the end of the text.
    """
    base = existing or ""
    fragment = _clean_fragment(continuation, base)
    if not fragment:
        return base
    lower = base.lower()
    for tag in _CLOSING_ORDER:
        idx = lower.rfind(f"</{tag}")
        if idx != -1:
            return base[:idx].rstrip() + "\n" + fragment + "\n" + base[idx:]
    return _trim_dangling_tag(base).rstrip() + "\n" + fragment + "\n"


def extract_continuation_markup(text: str) -> str:
    """Continuations should be raw HTML, but some models answer with the JSON envelope."""
    raw = (text or "").strip()
    if raw.startswith("{") or raw.startswith("```json"):
        from sitecraft.parsing import parse_generated_content

        parsed = parse_generated_content(raw)
        primary = parsed.primary_page() if parsed.success else None
        if primary is not None:
            return primary.content
    return raw


def complete_single_page(
    html: str,
    prompt: str,
    continue_fn: Callable[[str], str],
    *,
    max_attempts: int = CONTINUATION_MAX_ATTEMPTS,
    token: Optional[CancellationToken] = None,
) -> Tuple[str, CompletionReport]:
    """Drive continuation requests until the page passes ``check_completeness``.

    ``continue_fn`` receives a continuation prompt and returns the model text. Returns the
    (possibly still incomplete) document and its final report. A failed continuation call
    only ends that attempt.
    """
    from sitecraft.prompts import build_continuation_prompt

    report = check_completeness(html)
    if report.is_complete:
        return html, report
    log.info(
        "completion: incomplete page missing=%s closing_body=%s closing_html=%s",
        report.missing_sections,
        report.has_closing_body,
        report.has_closing_html,
    )
    state = {"html": html, "report": report, "calls": 0}

    def _attempt(attempt: int) -> CompletionReport:
        current: CompletionReport = state["report"]
        state["calls"] += 1
        try:
            text = continue_fn(
                build_continuation_prompt(
                    prompt,
                    last_section=current.last_section,
                    missing_sections=current.missing_sections,
                )
            )
        except GenerationCancelled:
            raise
        except GenerationError as exc:
            log.warning("completion: continuation attempt=%d failed: %s", attempt, exc)
            return current
        fragment = extract_continuation_markup(text)
        if not fragment:
            log.warning("completion: continuation attempt=%d returned no markup", attempt)
            return current
        state["html"] = merge_continuation(state["html"], fragment)
        state["report"] = check_completeness(state["html"])
        return state["report"]

    final = retry_until(
        _attempt,
        lambda r: r.is_complete,
        max_attempts=max_attempts,
        token=token,
        label="continuation",
    )
    if not final.is_complete:
        log.warning("completion: still incomplete after %d attempts missing=%s", state["calls"], final.missing_sections)
    return state["html"], final
