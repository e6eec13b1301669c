from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from jsonschema import Draft202012Validator
from pydantic import BaseModel, Field

from sitecraft.errors import UnparseableResponse
from sitecraft.models import GeneratedFile, GenerationResponse, Issue
from sitecraft.prompts import files_schema

log = logging.getLogger(__name__)

MIN_CONTENT_LENGTH = 100
PREVIEW_CHARS = 200

_EXT_TYPES = {
    ".html": "html",
    ".htm": "html",
    ".css": "css",
    ".js": "js",
    ".mjs": "js",
    ".json": "json",
}
_TYPE_ALIASES = {"javascript": "js", "htm": "html", "stylesheet": "css"}

DEFAULT_STYLESHEET = """/* Default styles */
*, *::before, *::after { box-sizing: border-box; }
body { margin: 0; font-family: system-ui, -apple-system, "Segoe UI", sans-serif; line-height: 1.6; }
img { max-width: 100%; height: auto; display: block; }
"""
DEFAULT_SCRIPT = """// Default script
document.addEventListener('DOMContentLoaded', function () {});
"""


class ParsedFiles(BaseModel):
    files: List[GeneratedFile]
    pages: Optional[List[str]] = None
    issues: List[Dict[str, Any]] = Field(default_factory=list)


Strategy = Callable[[str], Optional[ParsedFiles]]


def infer_type(path: str, declared: Optional[str] = None) -> Optional[str]:
    if declared:
        d = declared.strip().lower()
        d = _TYPE_ALIASES.get(d, d)
        if d in ("html", "css", "js", "json"):
            return d
    lower = (path or "").lower()
    for ext, kind in _EXT_TYPES.items():
        if lower.endswith(ext):
            return kind
    return None


_ESCAPE_RE = re.compile(r"\\(u[0-9a-fA-F]{4}|.)", re.DOTALL)
_SIMPLE_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", '"': '"', "\\": "\\", "/": "/", "b": "\b", "f": "\f"}


def _unescape_loose(s: str) -> str:
    def repl(m: re.Match[str]) -> str:
        tok = m.group(1)
        if tok.startswith("u") and len(tok) == 5:
            return chr(int(tok[1:], 16))
        return _SIMPLE_ESCAPES.get(tok, "\\" + tok)

    return _ESCAPE_RE.sub(repl, s)


def unescape_json_string(s: str) -> str:
    """Undo JSON string escaping; tolerates truncated or invalid escapes."""
    try:
        return json.loads('"' + s + '"', strict=False)
    except ValueError:
        return _unescape_loose(s)


def _file(path: str, content: str, kind: Optional[str]) -> Optional[GeneratedFile]:
    ftype = infer_type(path, kind)
    if not path or ftype is None:
        log.warning("parse: skipping file with unknown type path=%r declared=%r", path, kind)
        return None
    return GeneratedFile(path=path, content=content, type=ftype)


def _markup_length(files: Sequence[GeneratedFile]) -> int:
    return sum(len(f.content) for f in files if f.is_markup)


# --- strategy 1: "path"/"content" tuples -------------------------------------------------

_PATH_RE = re.compile(r'"path"\s*:\s*"((?:[^"\\]|\\.)*)"')
_CONTENT_RE = re.compile(r'"content"\s*:\s*"((?:[^"\\]|\\.)*)(?:"|\Z)', re.DOTALL)
_TYPE_RE = re.compile(r'"type"\s*:\s*"([A-Za-z]+)"')
_PAGES_RE = re.compile(r'"pages"\s*:\s*\[([^\]]*)\]')
_STRING_RE = re.compile(r'"((?:[^"\\]|\\.)*)"')


def _recover_pages(text: str) -> Optional[List[str]]:
    m = _PAGES_RE.search(text)
    if not m:
        return None
    pages = [unescape_json_string(p) for p in _STRING_RE.findall(m.group(1))]
    return pages or None


def _scan_objects(text: str) -> Tuple[List[Tuple[int, int]], Set[int]]:
    """Offsets of every ``{...}`` object and of every string opening quote, from the first ``{``.

    Unclosed objects (truncated output) run to the end of the text.
    """
    spans: List[Tuple[int, int]] = []
    string_starts: Set[int] = set()
    first = text.find("{")
    if first < 0:
        return spans, string_starts
    stack: List[int] = []
    in_string = escaped = False
    for i in range(first, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
            string_starts.add(i)
        elif ch == "{":
            stack.append(i)
        elif ch == "}" and stack:
            spans.append((stack.pop(), i + 1))
    spans.extend((start, len(text)) for start in stack)
    return spans, string_starts


def _file_object(text: str, pos: int, spans: Sequence[Tuple[int, int]]) -> Optional[str]:
    """Innermost object around ``pos``; key order inside it is free."""
    start, end = max(((s, e) for s, e in spans if s < pos < e), default=(None, None))
    return None if start is None else text[start:end]


def extract_file_tuples(text: str) -> Optional[ParsedFiles]:
    """Pull every path/content pair out of JSON-ish text, even when the JSON is broken."""
    matches = list(_PATH_RE.finditer(text))
    if not matches:
        return None
    spans, string_starts = _scan_objects(text)
    files: List[GeneratedFile] = []
    seen = set()
    for idx, m in enumerate(matches):
        segment = _file_object(text, m.start(), spans) if m.start() in string_starts else None
        if segment is None:
            # no enclosing object: read forward up to the next "path" key
            end = matches[idx + 1].start() if idx + 1 < len(matches) else len(text)
            segment = text[m.end():end]
        content_m = _CONTENT_RE.search(segment)
        if not content_m:
            continue
        path = unescape_json_string(m.group(1)).strip()
        if path in seen:
            continue
        type_m = _TYPE_RE.search(segment[: content_m.start()]) or _TYPE_RE.search(segment[content_m.end():])
        f = _file(path, unescape_json_string(content_m.group(1)), type_m.group(1) if type_m else None)
        if f is not None:
            seen.add(path)
            files.append(f)
    if _markup_length(files) <= MIN_CONTENT_LENGTH:
        return None
    return ParsedFiles(files=files, pages=_recover_pages(text))


# --- strategy 2: bare HTML documents -----------------------------------------------------

_HTML_DOC_RE = re.compile(r"<!doctype\s+html[^>]*>.*?</html\s*>", re.IGNORECASE | re.DOTALL)


def sniff_raw_html(text: str) -> Optional[ParsedFiles]:
    if _PATH_RE.search(text):
        return None
    docs = [m.group(0) for m in _HTML_DOC_RE.finditer(text)]
    if not docs:
        return None
    files = [
        GeneratedFile(path="index.html" if i == 0 else f"page{i + 1}.html", content=doc, type="html")
        for i, doc in enumerate(docs)
    ]
    return ParsedFiles(files=files)


# --- strategy 3: JSON document -----------------------------------------------------------

_FENCED_JSON_RE = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)


def _balanced_json_slices(s: str) -> Iterator[str]:
    in_str = False
    esc = False
    depth = 0
    start_idx = -1
    for i, ch in enumerate(s):
        if not in_str and ch == "{":
            if depth == 0:
                start_idx = i
            depth += 1
        elif not in_str and ch == "}":
            if depth > 0:
                depth -= 1
                if depth == 0 and start_idx != -1:
                    yield s[start_idx : i + 1]
                    start_idx = -1
        elif ch == '"':
            if not esc:
                in_str = not in_str
            esc = False
            continue
        esc = (ch == "\\") and not esc


def _repair_json_loose(text: str) -> str:
    """Close an unterminated string and any open brackets/braces of truncated JSON."""
    t = (text or "").strip()
    if not t:
        return t
    in_str = False
    esc = False
    stack: List[str] = []
    for ch in t:
        if ch == '"' and not esc:
            in_str = not in_str
        if not in_str:
            if ch in "{[":
                stack.append("}" if ch == "{" else "]")
            elif ch in "}]" and stack:
                stack.pop()
        esc = (ch == "\\") and not esc
    if esc:
        t = t[:-1]
    if in_str:
        t += '"'
    t = re.sub(r",\s*$", "", t)
    return t + "".join(reversed(stack))


def _escape_control_chars(s: str) -> str:
    out: List[str] = []
    in_str = False
    esc = False
    for ch in s:
        if in_str and not esc and ch in "\n\r\t":
            out.append({"\n": "\\n", "\r": "\\r", "\t": "\\t"}[ch])
            continue
        if ch == '"' and not esc:
            in_str = not in_str
        esc = (ch == "\\") and not esc
        out.append(ch)
    return "".join(out)


def _sanitize(candidate: str) -> str:
    s = re.sub(r",\s*([}\]])", r"\1", candidate)
    s = s.replace("“", '"').replace("”", '"').replace("’", "'")
    return _escape_control_chars(s)


def _load_loose(candidate: str) -> Any:
    try:
        return json.loads(candidate)
    except ValueError:
        pass
    try:
        return json.loads(_sanitize(candidate))
    except ValueError:
        pass
    return json.loads(_sanitize(_repair_json_loose(candidate)))


def _json_candidates(text: str) -> Iterator[str]:
    for m in _FENCED_JSON_RE.finditer(text):
        yield m.group(1)
    slices = list(_balanced_json_slices(text))
    for s in sorted(slices, key=lambda c: '"files"' not in c):
        yield s
    first = text.find("{")
    if first != -1:
        yield _repair_json_loose(text[first:])


_files_validator = Draft202012Validator(files_schema())


def _normalize_entries(raw: Any) -> List[Tuple[str, Any, Optional[str]]]:
    entries: List[Tuple[str, Any, Optional[str]]] = []
    if isinstance(raw, dict):
        for key, val in raw.items():
            if isinstance(val, str):
                entries.append((str(key), val, None))
            elif isinstance(val, dict):
                entries.append((str(val.get("path") or key), val.get("content", val.get("code")), val.get("type")))
    elif isinstance(raw, list):
        for item in raw:
            if not isinstance(item, dict):
                continue
            path = item.get("path") or item.get("filename") or item.get("name") or ""
            content = item.get("content")
            if content is None:
                content = item.get("code")
            entries.append((str(path), content, item.get("type")))
    return entries


def _document_files(doc: Dict[str, Any]) -> Tuple[List[GeneratedFile], List[Dict[str, Any]]]:
    issues: List[Dict[str, Any]] = []
    errors = sorted(_files_validator.iter_errors(doc), key=lambda e: list(e.path))
    if errors:
        issues.append(
            {
                "severity": "info",
                "kind": "NormalizedDocument",
                "message": "Model output deviated from the files contract and was normalized",
                "detail": {"errors": [e.message[:200] for e in errors[:3]]},
            }
        )
    raw = doc.get("files")
    if raw is None:
        raw = [
            {"path": name, "content": doc[key]}
            for key, name in (("html", "index.html"), ("css", "styles.css"), ("js", "script.js"))
            if isinstance(doc.get(key), str)
        ]
    files: List[GeneratedFile] = []
    seen = set()
    for path, content, kind in _normalize_entries(raw):
        path = path.strip()
        if not isinstance(content, str) or path in seen:
            continue
        f = _file(path, content, kind if isinstance(kind, str) else None)
        if f is not None:
            seen.add(path)
            files.append(f)
    return files, issues


def extract_json_document(text: str) -> Optional[ParsedFiles]:
    for candidate in _json_candidates(text):
        try:
            doc = _load_loose(candidate)
        except ValueError:
            continue
        if not isinstance(doc, dict):
            continue
        files, issues = _document_files(doc)
        if not files:
            continue
        pages = doc.get("pages")
        if not (isinstance(pages, list) and all(isinstance(p, str) for p in pages)):
            pages = None
        return ParsedFiles(files=files, pages=pages, issues=issues)
    return None


# --- strategy 4: "=== name ===" sections -------------------------------------------------

_SECTION_MARKER_RE = re.compile(r"^\s*={3,}\s*([\w./-]+\.\w+)\s*={3,}\s*$", re.MULTILINE)
_FENCE_OPEN_RE = re.compile(r"^\s*```[\w-]*[ \t]*\n")
_FENCE_CLOSE_RE = re.compile(r"\n?```\s*$")


def _strip_fences(s: str) -> str:
    s = _FENCE_OPEN_RE.sub("", s, count=1)
    return _FENCE_CLOSE_RE.sub("", s, count=1).strip("\n")


def split_delimited_sections(text: str) -> Optional[ParsedFiles]:
    markers = list(_SECTION_MARKER_RE.finditer(text))
    if not markers:
        return None
    files: List[GeneratedFile] = []
    for idx, m in enumerate(markers):
        end = markers[idx + 1].start() if idx + 1 < len(markers) else len(text)
        body = _strip_fences(text[m.end():end])
        f = _file(m.group(1), body, None)
        if f is not None and body.strip():
            files.append(f)
    return ParsedFiles(files=files) if files else None


# --- strategy 5: whatever HTML is left ---------------------------------------------------

_HTML_START_RE = re.compile(r"<!doctype|<html\b|<body\b", re.IGNORECASE)
_HTML_END_RE = re.compile(r"</html\s*>", re.IGNORECASE)


def synthesize_fallback(text: str) -> Optional[ParsedFiles]:
    start = _HTML_START_RE.search(text)
    if not start:
        return None
    snippet = text[start.start():]
    end = _HTML_END_RE.search(snippet)
    if end:
        snippet = snippet[: end.end()]
    if "\\n" in snippet or '\\"' in snippet:
        snippet = _unescape_loose(snippet)
    return ParsedFiles(
        files=[GeneratedFile(path="index.html", content=snippet, type="html")],
        issues=[
            {
                "severity": "warn",
                "kind": "FallbackMarkup",
                "message": "Recovered raw HTML from an unstructured response",
            }
        ],
    )


STRATEGIES: List[Tuple[str, Strategy]] = [
    ("file_tuples", extract_file_tuples),
    ("raw_html", sniff_raw_html),
    ("json_document", extract_json_document),
    ("delimited_sections", split_delimited_sections),
    ("fallback_markup", synthesize_fallback),
]


def run_cascade(text: str, strategies: Sequence[Tuple[str, Strategy]] = STRATEGIES) -> Optional[Tuple[str, ParsedFiles]]:
    """First strategy that yields at least one markup file wins."""
    for name, strategy in strategies:
        try:
            parsed = strategy(text)
        except Exception as exc:
            log.warning("parse: strategy=%s raised %s", name, exc)
            continue
        if parsed is None:
            continue
        if not any(f.is_markup for f in parsed.files):
            log.info("parse: strategy=%s produced no markup; trying next", name)
            continue
        return name, parsed
    return None


def _finalize(parsed: ParsedFiles, strategy: str) -> GenerationResponse:
    files = list(parsed.files)
    issues = list(parsed.issues)
    if not any(f.path == "index.html" for f in files):
        primary = next(f for f in files if f.is_markup)
        files.insert(0, GeneratedFile(path="index.html", content=primary.content, type="html"))
        issues.append(
            {"severity": "info", "kind": "SynthesizedFile", "message": f"index.html copied from {primary.path}"}
        )
    if not any(f.type == "css" for f in files):
        files.append(GeneratedFile(path="styles.css", content=DEFAULT_STYLESHEET, type="css"))
        issues.append({"severity": "info", "kind": "SynthesizedFile", "message": "Added default styles.css"})
    if not any(f.type == "js" for f in files):
        files.append(GeneratedFile(path="script.js", content=DEFAULT_SCRIPT, type="js"))
        issues.append({"severity": "info", "kind": "SynthesizedFile", "message": "Added default script.js"})
    markup_paths = [f.path for f in files if f.is_markup]
    pages = [p for p in (parsed.pages or []) if p in markup_paths] or markup_paths
    return GenerationResponse(
        success=True,
        files=files,
        pages=pages,
        issues=[Issue(**i) for i in issues],
        strategy=strategy,
    )


def parse_generated_content(text: str) -> GenerationResponse:
    """Turn raw model text into files. Never raises; failure is ``success=False``."""
    raw = text or ""
    outcome = run_cascade(raw)
    if outcome is None:
        err = UnparseableResponse(len(raw), raw[:PREVIEW_CHARS])
        log.warning("parse: no strategy matched length=%d", len(raw))
        return GenerationResponse(success=False, error=err.message, issues=[Issue(**err.as_issue())])
    name, parsed = outcome
    log.info("parse: strategy=%s files=%d", name, len(parsed.files))
    return _finalize(parsed, name)
