from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from sitecraft.completion import SECTION_REQUIREMENTS

SINGLE_PAGE = "single-page"
MULTI_PAGE = "multi-page"

# What each mandatory section must contain; keys follow SECTION_REQUIREMENTS order.
_SECTION_GUIDANCE: Dict[str, str] = {
    "header": '<header> with logo/brand name and a <nav> linking to every section by id',
    "hero": '<section id="hero"> with headline, supporting copy, call-to-action button and [IMAGE:hero]',
    "about": '<section id="about"> with the story/mission and [IMAGE:about]',
    "services": '<section id="services"> with 3-6 service cards, each with [IMAGE:service1], [IMAGE:service2], ...',
    "testimonials": '<section id="testimonials"> with 2-4 quotes, names and [IMAGE:testimonial1], ...',
    "portfolio": '<section id="portfolio"> gallery grid using [IMAGE:gallery1], [IMAGE:gallery2], ...',
    "stats": '<section id="stats"> with 3-4 key numbers (clients, years, projects, awards)',
    "contact": '<section id="contact"> with a <form> (name, email, message) and contact details',
    "footer": "<footer> with copyright, quick links and social links",
}

_SCREENSHOT_BLOCK = """
=== SCREENSHOT ANALYSIS INSTRUCTIONS ===
- Carefully analyze the layout, design, colors, typography, and components
- Recreate the exact visual design with modern web standards
- Pay attention to spacing, alignment, and visual hierarchy
- Extract any text content visible in the image
- Identify interactive elements (buttons, forms, navigation)
========================================
"""

_IMAGE_BLOCK = """
IMAGE INTEGRATION INSTRUCTIONS:
- Use placeholder image markers like [IMAGE:hero], [IMAGE:about], [IMAGE:gallery1], [IMAGE:gallery2] in your HTML
- Syntax is [IMAGE:<section><optional number>]; number repeated images of one section (gallery1, gallery2, ...)
- Place each marker exactly where an <img> element should appear; do not wrap it in an <img> tag
- Never invent image URLs; every image must be a marker
- Use semantic class names for image containers
"""

_OUTPUT_BLOCK = """
OUTPUT FORMAT:
Return your response in the following JSON structure:
{
  "files": [
    {"path": "index.html", "content": "<!DOCTYPE html>...", "type": "html"},
    {"path": "styles.css", "content": "/* CSS content */", "type": "css"},
    {"path": "script.js", "content": "// JavaScript content", "type": "js"}
  ],
  "pages": ["index.html"]
}
- "type" is one of "html", "css", "js", "json"
- Escape every double quote and newline inside "content" strings so the JSON stays valid
- Link styles.css and script.js from every HTML file

IMPORTANT: Return ONLY the JSON response, no additional text, markdown fences or explanations.
"""


def section_checklist() -> List[str]:
    return [f"{idx}. {name.upper()}: {_SECTION_GUIDANCE.get(name, name)}"
            for idx, name in enumerate(SECTION_REQUIREMENTS, start=1)]


def build_generation_prompt(prompt: str, *, has_screenshot: bool = False, project_type: str = SINGLE_PAGE) -> str:
    """Assemble the instruction document sent to the model.

    Pure function of its inputs. The screenshot block is left out entirely when no
    screenshot was supplied, and the section checklist is only added for single-page sites.
    """
    is_multi = project_type == MULTI_PAGE
    site_kind = "multi-page website" if is_multi else "single-page website"
    lead = "Analyze the provided screenshot and create" if has_screenshot else "Create"
    parts: List[str] = [
        f"You are an expert web developer. {lead} a {site_kind} based on the following requirements:",
        "",
        (prompt or "").strip(),
    ]
    if has_screenshot:
        parts.append(_SCREENSHOT_BLOCK)
    parts.append(_IMAGE_BLOCK)
    parts.append(
        """GENERATION REQUIREMENTS:
- Use modern HTML5, CSS3, and vanilla JavaScript
- Create responsive design that works on all devices
- Use semantic HTML elements and proper accessibility features
- Include modern CSS features (Grid, Flexbox, CSS Variables)
- Implement clean, maintainable code structure"""
    )
    if is_multi:
        parts.append(
            """MULTI-PAGE REQUIREMENTS:
- Generate a separate HTML file for each page (index.html first)
- Create navigation between pages with relative links
- Share one styles.css and one script.js across all pages
- List every HTML file in "pages" in navigation order"""
        )
    else:
        checklist = "\n".join(section_checklist())
        parts.append(
            f"""=== MANDATORY SECTIONS (single-page, in this order) ===
{checklist}
Every section above MUST be present. Wrap the sections in <main> and finish the document
with </main></body></html>. Do not stop early; keep copy concise so everything fits.
======================================================="""
        )
    parts.append(_OUTPUT_BLOCK)
    return "\n".join(parts).strip() + "\n"


def build_continuation_prompt(
    original_prompt: str,
    *,
    last_section: Optional[str],
    missing_sections: Sequence[str],
) -> str:
    """Ask the model to resume a truncated single-page document."""
    missing = ", ".join(missing_sections) if missing_sections else "none (only the closing tags)"
    resume_point = (
        f"immediately after the closing tag of the {last_section.upper()} section"
        if last_section
        else "at the start of the <main> content"
    )
    guidance = "\n".join(f"- {name.upper()}: {_SECTION_GUIDANCE.get(name, name)}" for name in missing_sections)
    return f"""You were generating a single-page website and the output was cut off.

Original requirements:
{(original_prompt or '').strip()}

=== CONTINUATION INSTRUCTIONS ===
- Last complete section: {last_section or 'none'}
- Missing sections: {missing}
- Resume {resume_point}
- Output ONLY the remaining HTML: no JSON, no markdown fences, no <!DOCTYPE>, <html>, <head> or <body> opening tags
- Keep the same class naming and visual style as the existing sections
- Keep using [IMAGE:<section><number>] markers for images
- Finish with </main></body></html>
{guidance}
=================================
"""


def files_schema() -> Dict[str, Any]:
    """JSON schema of the response shape the model is instructed to emit."""
    return {
        "type": "object",
        "properties": {
            "files": {
                "type": "array",
                "minItems": 1,
                "items": {
                    "type": "object",
                    "properties": {
                        "path": {"type": "string", "minLength": 1},
                        "content": {"type": "string"},
                        "type": {"enum": ["html", "css", "js", "json"]},
                    },
                    "required": ["path", "content", "type"],
                },
            },
            "pages": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["files"],
    }
