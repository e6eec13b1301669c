import json

import pytest

from sitecraft import parsing
from sitecraft.models import GeneratedFile
from sitecraft.parsing import (
    ParsedFiles,
    extract_file_tuples,
    extract_json_document,
    parse_generated_content,
    run_cascade,
    sniff_raw_html,
    split_delimited_sections,
    synthesize_fallback,
)

INDEX_HTML = (
    '<!DOCTYPE html>\n<html lang="en">\n<head>\n\t<title>Caf\u00e9 "Bean"</title>\n'
    '<link rel="stylesheet" href="styles.css">\n</head>\n<body>\n'
    '<a href="/menu" class="btn">See the menu \u2192</a>\n<p>Path: C:\\beans\\roast</p>\n'
    "</body>\n</html>"
)
STYLES = "body {\n  font-family: \"Inter\", sans-serif;\n}\n"
SCRIPT = "document.querySelector('.btn').addEventListener('click', () => console.log(\"hi\\n\"));\n"


def _doc(files, pages=None):
    payload = {"files": [{"path": p, "content": c, "type": t} for p, c, t in files]}
    if pages is not None:
        payload["pages"] = pages
    return json.dumps(payload)


SAMPLES = [
    _doc([("index.html", INDEX_HTML, "html"), ("styles.css", STYLES, "css"), ("script.js", SCRIPT, "js")]),
    '{"files": [{"path": "index.html", "content": "<!DOCTYPE html><html><body><h1>Hello</h1>' + "x" * 150,
    "Here you go:\n<!DOCTYPE html><html><body>One</body></html>\n<!DOCTYPE html><html><body>Two</body></html>",
    "=== index.html ===\n```html\n<html><body>Hi</body></html>\n```\n=== styles.css ===\nbody { color: red; }\n",
    'The model said: "html": "<html><body>\\n<h1>Hi</h1>\\n</body></html>" and more',
    "I cannot help with that.",
    "",
]


def test_round_trip_preserves_files_exactly():
    files = [("index.html", INDEX_HTML, "html"), ("styles.css", STYLES, "css"), ("script.js", SCRIPT, "js")]
    out = parse_generated_content(_doc(files, pages=["index.html"]))
    assert out.success is True
    assert out.strategy == "file_tuples"
    assert [(f.path, f.content, f.type) for f in out.files] == files
    assert out.pages == ["index.html"]
    assert out.issues == []


@pytest.mark.parametrize("text", SAMPLES)
def test_parsing_is_idempotent(text):
    first = parse_generated_content(text)
    second = parse_generated_content(text)
    assert first.model_dump() == second.model_dump()


@pytest.mark.parametrize("text", SAMPLES)
def test_successful_parse_always_has_renderable_core_files(text):
    out = parse_generated_content(text)
    if not out.success:
        assert out.files == []
        return
    assert out.get_file("index.html") is not None
    assert any(f.type == "css" for f in out.files)
    assert any(f.type == "js" for f in out.files)
    assert out.pages and all(out.get_file(p) is not None for p in out.pages)


def test_truncated_json_is_recovered_from_file_tuples():
    out = parse_generated_content(SAMPLES[1])
    assert out.success is True
    assert out.strategy == "file_tuples"
    index = out.get_file("index.html")
    assert index.content.startswith("<!DOCTYPE html><html><body><h1>Hello</h1>")
    assert out.get_file("styles.css").content == parsing.DEFAULT_STYLESHEET
    kinds = [i.kind for i in out.issues]
    assert kinds.count("SynthesizedFile") == 2


def test_file_tuples_need_enough_markup():
    text = '{"files": [{"path": "index.html", "content": "<p>tiny</p>", "type": "html"}]}'
    assert extract_file_tuples(text) is None


def test_file_tuples_skip_unknown_types_and_duplicates():
    body = "<html><body>" + "a" * 120 + "</body></html>"
    text = json.dumps(
        {
            "files": [
                {"path": "index.html", "content": body, "type": "html"},
                {"path": "logo.png", "content": "binary", "type": "image"},
                {"path": "index.html", "content": "<p>second copy</p>", "type": "html"},
            ]
        }
    )
    parsed = extract_file_tuples(text)
    assert [f.path for f in parsed.files] == ["index.html"]
    assert parsed.files[0].content == body


def test_type_is_inferred_from_extension_when_missing():
    body = "<html><body>" + "b" * 120 + "</body></html>"
    text = '{"files": [{"path": "about.htm", "content": "%s"}, {"path": "app.js", "content": "let a = 1;"}]}' % body
    parsed = extract_file_tuples(text)
    assert [(f.path, f.type) for f in parsed.files] == [("about.htm", "html"), ("app.js", "js")]


def test_index_html_is_copied_from_primary_markup():
    body = "<html><body>" + "c" * 120 + "</body></html>"
    out = parse_generated_content(_doc([("home.html", body, "html")]))
    assert out.files[0].path == "index.html"
    assert out.files[0].content == body
    assert out.get_file("home.html").content == body
    assert out.pages == ["index.html", "home.html"]


def test_sniff_raw_html_names_pages_in_order():
    out = parse_generated_content(SAMPLES[2])
    assert out.strategy == "raw_html"
    assert out.pages == ["index.html", "page2.html"]
    assert "One" in out.get_file("index.html").content
    assert "Two" in out.get_file("page2.html").content


def test_sniff_raw_html_declines_when_file_tuples_exist():
    assert sniff_raw_html('"path": "a.html" <!DOCTYPE html><html><body></body></html>') is None


def test_json_document_with_files_mapping_is_normalized():
    text = "```json\n" + json.dumps(
        {"files": {"index.html": "<html><body>hi</body></html>", "styles.css": "body{}"}}
    ) + "\n```"
    out = parse_generated_content(text)
    assert out.success is True
    assert out.strategy == "json_document"
    assert out.get_file("index.html").content == "<html><body>hi</body></html>"
    assert out.get_file("styles.css").type == "css"
    assert "NormalizedDocument" in [i.kind for i in out.issues]


def test_json_document_repairs_trailing_commas_and_aliases():
    text = 'Sure! {"files": [{"filename": "index.html", "code": "<html><body>ok</body></html>"},], }'
    out = parse_generated_content(text)
    assert out.success is True
    assert out.strategy == "json_document"
    assert out.get_file("index.html").content == "<html><body>ok</body></html>"


def test_json_document_escapes_raw_control_characters():
    text = '{"files": [{"filename": "index.html", "content": "<html>\n<body>hi</body>\n</html>"}]}'
    parsed = extract_json_document(text)
    assert parsed is not None
    assert parsed.files[0].content == "<html>\n<body>hi</body>\n</html>"


def test_json_document_prefers_object_with_files():
    text = 'meta {"note": "ignore me"} then {"files": [{"path": "index.html", "content": "<p>x</p>", "type": "html"}]}'
    parsed = extract_json_document(text)
    assert parsed.files[0].path == "index.html"


def test_delimited_sections_strip_fences():
    parsed = split_delimited_sections(SAMPLES[3])
    assert [(f.path, f.content) for f in parsed.files] == [
        ("index.html", "<html><body>Hi</body></html>"),
        ("styles.css", "body { color: red; }"),
    ]
    assert parse_generated_content(SAMPLES[3]).strategy == "delimited_sections"


def test_fallback_unescapes_json_escaped_markup():
    parsed = synthesize_fallback(SAMPLES[4])
    assert parsed.files[0].content == "<html><body>\n<h1>Hi</h1>\n</body></html>"
    out = parse_generated_content(SAMPLES[4])
    assert out.strategy == "fallback_markup"
    assert "FallbackMarkup" in [i.kind for i in out.issues]


def test_unparseable_text_reports_length_and_preview():
    text = SAMPLES[5]
    out = parse_generated_content(text)
    assert out.success is False
    assert out.files == []
    assert "Failed to parse generated content" in out.error
    issue = out.issues[0]
    assert issue.kind == "UnparseableResponse"
    assert issue.detail["content_length"] == len(text)
    assert issue.detail["preview"] == text


def test_cascade_skips_raising_and_markup_free_strategies():
    def boom(text):
        raise RuntimeError("bad strategy")

    def css_only(text):
        return ParsedFiles(files=[GeneratedFile(path="a.css", content="a{}", type="css")])

    def ok(text):
        return ParsedFiles(files=[GeneratedFile(path="a.html", content="<p>ok</p>", type="html")])

    name, parsed = run_cascade("anything", [("boom", boom), ("css", css_only), ("ok", ok)])
    assert name == "ok"
    assert parsed.files[0].path == "a.html"
    assert run_cascade("anything", [("boom", boom)]) is None


def _ordered_doc(files, key_order, pages=None):
    objects = []
    for path, content, ftype in files:
        values = {"path": path, "content": content, "type": ftype}
        objects.append({k: values[k] for k in key_order})
    payload = {"files": objects}
    if pages is not None:
        payload["pages"] = pages
    return json.dumps(payload, indent=2)


ABOUT_HTML = "<!DOCTYPE html>\n<html><body><h1>About us</h1>\n<p>" + "Roasting since 1999. " * 8 + "</p></body></html>"
LONG_STYLES = "body { color: red; }\n" + "section { padding: 2rem; }\n" * 10


@pytest.mark.parametrize(
    "key_order",
    [("content", "path", "type"), ("type", "path", "content"), ("path", "type", "content"), ("type", "content", "path")],
)
def test_round_trip_with_any_key_order(key_order):
    files = [
        ("index.html", INDEX_HTML, "html"),
        ("about.html", ABOUT_HTML, "html"),
        ("styles.css", LONG_STYLES, "css"),
        ("script.js", SCRIPT, "js"),
    ]
    out = parse_generated_content(_ordered_doc(files, key_order, pages=["index.html", "about.html"]))
    assert out.success is True
    assert [(f.path, f.content, f.type) for f in out.files] == files
    assert out.pages == ["index.html", "about.html"]


def test_file_tuples_stay_inside_their_object_when_truncated():
    text = (
        '{"files": [{"content": ' + json.dumps(INDEX_HTML)
        + ', "type": "html", "path": "index.html"}, {"type": "css", "path": "styles.css", "content": "body { mar'
    )
    parsed = extract_file_tuples(text)
    assert [(f.path, f.type) for f in parsed.files] == [("index.html", "html"), ("styles.css", "css")]
    assert parsed.files[0].content == INDEX_HTML
    assert parsed.files[1].content == "body { mar"
