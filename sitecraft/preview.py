from __future__ import annotations

import io
import os
import re
import zipfile
from typing import Dict, Optional, Sequence

from jinja2 import Environment, FileSystemLoader, select_autoescape

from sitecraft.models import GeneratedFile

_env = Environment(
    loader=FileSystemLoader(os.path.join(os.path.dirname(__file__), "templates")),
    autoescape=select_autoescape(["html", "xml"]),
    enable_async=False,
)

VIEWPORTS: Dict[str, Dict[str, str]] = {
    "desktop": {"name": "desktop", "label": "Desktop", "width": "100%", "height": "100%"},
    "tablet": {"name": "tablet", "label": "Tablet", "width": "768px", "height": "1024px"},
    "mobile": {"name": "mobile", "label": "Mobile", "width": "375px", "height": "667px"},
}

_HEAD_CLOSE_RE = re.compile(r"</head\s*>", re.IGNORECASE)
_BODY_CLOSE_RE = re.compile(r"</body\s*>", re.IGNORECASE)


def _find(files: Sequence[GeneratedFile], *, path: Optional[str] = None, ftype: Optional[str] = None) -> Optional[GeneratedFile]:
    for f in files:
        if (path is not None and f.path == path) or (ftype is not None and f.type == ftype):
            return f
    return None


def _inject(html: str, pattern: re.Pattern, snippet: str) -> str:
    m = pattern.search(html)
    if m is None:
        return html + snippet
    return html[: m.start()] + snippet + html[m.start():]


def render_empty_preview(message: str = "Generate a website to see the preview") -> str:
    return _env.get_template("empty_preview.html").render(title="No Preview Available", message=message)


def build_preview_html(files: Sequence[GeneratedFile], page: str = "index.html") -> str:
    """Self-contained document for ``page`` with the first stylesheet and script inlined."""
    html_file = _find(files, path=page)
    if html_file is None or not html_file.is_markup:
        return render_empty_preview()
    html = html_file.content
    css = _find(files, ftype="css")
    js = _find(files, ftype="js")
    if css is not None:
        html = _inject(html, _HEAD_CLOSE_RE, f"<style>{css.content}</style>")
    if js is not None:
        html = _inject(html, _BODY_CLOSE_RE, f"<script>{js.content}</script>")
    return html


def render_viewport_frame(html: str, viewport: str = "desktop") -> str:
    """Wrap a preview document in an iframe sized like the chosen device."""
    dims = VIEWPORTS.get(viewport)
    if dims is None:
        raise KeyError(viewport)
    return _env.get_template("viewport_frame.html").render(viewport=dims, html=html)


def export_zip(files: Sequence[GeneratedFile]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for f in files:
            zf.writestr(f.path.lstrip("/"), f.content)
    return buf.getvalue()
