import io
import zipfile

import pytest

from sitecraft.models import GeneratedFile
from sitecraft.preview import (
    build_preview_html,
    export_zip,
    render_empty_preview,
    render_viewport_frame,
)


def _files(index="<html><head><title>t</title></head><body><p>x</p></body></html>"):
    return [
        GeneratedFile(path="index.html", content=index, type="html"),
        GeneratedFile(path="about.html", content="<html><body>About</body></html>", type="html"),
        GeneratedFile(path="styles.css", content="p{margin:0}", type="css"),
        GeneratedFile(path="script.js", content="init()", type="js"),
    ]


def test_assets_are_inlined_before_closing_tags():
    html = build_preview_html(_files())
    assert html.index("<style>p{margin:0}</style>") < html.index("</head>")
    assert html.index("<script>init()</script>") < html.index("</body>")


def test_other_pages_can_be_previewed():
    html = build_preview_html(_files(), page="about.html")
    assert "About" in html
    assert "<script>init()</script></body>" in html


def test_fragment_without_head_gets_assets_appended():
    html = build_preview_html(_files(index="<section>bare</section>"))
    assert html.startswith("<section>bare</section>")
    assert html.endswith("<style>p{margin:0}</style><script>init()</script>")


def test_missing_page_renders_placeholder():
    html = build_preview_html(_files(), page="contact.html")
    assert "No Preview Available" in html
    assert html == render_empty_preview()


def test_viewport_frame_escapes_document():
    frame = render_viewport_frame('<p class="x">a & b</p>', "tablet")
    assert 'srcdoc="&lt;p class=&#34;x&#34;&gt;a &amp; b&lt;/p&gt;"' in frame
    assert "768px" in frame
    assert "Tablet Preview" in frame


def test_desktop_frame_has_no_device_label():
    frame = render_viewport_frame("<p>x</p>", "desktop")
    assert "Preview &middot;" not in frame
    assert "100%" in frame


def test_unknown_viewport():
    with pytest.raises(KeyError):
        render_viewport_frame("<p>x</p>", "watch")


def test_export_zip_contains_every_file():
    data = export_zip(_files())
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        assert zf.namelist() == ["index.html", "about.html", "styles.css", "script.js"]
        assert zf.read("script.js") == b"init()"
