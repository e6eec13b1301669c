from __future__ import annotations

import logging
import re
from collections import Counter
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from sitecraft.errors import IMAGE_RESOLUTION_DEGRADED, ImageProviderError, MissingCredential
from sitecraft.models import GeneratedFile, ImageRecord
from sitecraft.unsplash import CATEGORY_QUERIES, UnsplashClient

log = logging.getLogger(__name__)

MARKER_RE = re.compile(r"\[IMAGE:([A-Za-z0-9_-]+)\]")
MAX_IMAGES_PER_SECTION = 30
DEFAULT_IMAGE_COUNT = 3

SECTION_IMAGE_COUNTS: Dict[str, int] = {
    "gallery": 6,
    "portfolio": 6,
    "testimonials": 4,
    "team": 4,
    "services": 3,
    "features": 3,
    "about": 2,
    "hero": 1,
    "contact": 1,
}

# Singular marker bases map onto the section names used for counts and query templates.
_SECTION_ALIASES = {
    "service": "services",
    "feature": "features",
    "testimonial": "testimonials",
    "review": "testimonials",
    "project": "portfolio",
    "work": "portfolio",
    "member": "team",
    "image": "gallery",
    "photo": "gallery",
}

STOP_WORDS = frozenset(
    "this that with have will from they been were said each which their time would there could other "
    "make what know take than only think also back after first well want give work here should these "
    "people website page site create build design".split()
)

BUSINESS_PATTERNS: Dict[str, List[str]] = {
    "restaurant": ["restaurant", "food", "menu", "dining", "cuisine", "chef", "kitchen", "meal", "pizza", "burger", "coffee", "cafe", "bar"],
    "fitness": ["fitness", "gym", "workout", "exercise", "health", "training", "muscle", "weight", "yoga", "pilates", "cardio"],
    "technology": ["tech", "software", "app", "development", "coding", "programming", "digital", "computer", "system", "data", "ai", "machine"],
    "fashion": ["fashion", "clothing", "style", "apparel", "boutique", "designer", "trend", "outfit", "collection", "brand"],
    "travel": ["travel", "tourism", "hotel", "vacation", "trip", "destination", "booking", "resort", "adventure", "explore"],
    "education": ["education", "school", "learning", "course", "student", "teacher", "university", "academic", "study", "training"],
    "medical": ["medical", "health", "doctor", "clinic", "hospital", "healthcare", "treatment", "patient", "medicine"],
    "real-estate": ["property", "real", "estate", "house", "home", "apartment", "rent", "buy", "mortgage", "investment"],
    "finance": ["finance", "bank", "money", "investment", "loan", "credit", "financial", "accounting", "insurance"],
    "creative": ["design", "creative", "art", "portfolio", "graphic", "photography", "artistic", "visual", "gallery", "studio"],
    "automotive": ["car", "auto", "vehicle", "automotive", "repair", "service", "garage", "mechanic", "driving"],
    "beauty": ["beauty", "salon", "spa", "skincare", "makeup", "cosmetic", "hair", "nail", "massage", "wellness"],
}

# Checked in order; the first tone with any match wins.
TONE_PATTERNS: List[Tuple[str, List[str]]] = [
    ("luxury", ["luxury", "premium", "elegant"]),
    ("modern", ["modern", "sleek", "contemporary"]),
    ("friendly", ["friendly", "welcoming", "family"]),
    ("professional", ["professional", "corporate", "business"]),
    ("vibrant", ["fun", "exciting", "vibrant"]),
]
DEFAULT_TONE = "clean"
DEFAULT_BUSINESS = "business"


def _mentions(content: str, word: str) -> bool:
    return re.search(rf"\b{re.escape(word)}(?:s|es)?\b", content) is not None


def base_section(variant: str) -> str:
    """``gallery2`` -> ``gallery``, ``team-03`` -> ``team``."""
    base = re.sub(r"[\d_-]+$", "", variant).lower()
    return base or variant.lower()


def canonical_section(base: str) -> str:
    return _SECTION_ALIASES.get(base, base)


def find_placeholders(files: Sequence[GeneratedFile]) -> Dict[str, List[str]]:
    """Distinct marker variants grouped by base section, in order of first appearance."""
    found: Dict[str, List[str]] = {}
    for f in files:
        if not f.is_markup:
            continue
        for m in MARKER_RE.finditer(f.content):
            variant = m.group(1)
            variants = found.setdefault(base_section(variant), [])
            if variant not in variants:
                variants.append(variant)
    return found


def extract_keywords(text: str, limit: int = 10) -> List[str]:
    words = re.sub(r"[^\w\s]", " ", (text or "").lower()).split()
    counts = Counter(w for w in words if len(w) > 3 and w not in STOP_WORDS)
    # most_common is stable, so ties keep first-appearance order
    return [w for w, _ in counts.most_common(limit)]


def detect_business_type(content: str) -> str:
    """Table entry with the most words mentioned in ``content``; the earlier entry wins a tie."""
    text = (content or "").lower()
    best, best_score = DEFAULT_BUSINESS, 0
    for kind, patterns in BUSINESS_PATTERNS.items():
        score = sum(1 for p in patterns if _mentions(text, p))
        if score > best_score:
            best, best_score = kind, score
    return best


def detect_tone(content: str) -> str:
    text = (content or "").lower()
    for tone, words in TONE_PATTERNS:
        if any(_mentions(text, w) for w in words):
            return tone
    return DEFAULT_TONE


def extract_section_context(section: str, content: str) -> str:
    """Up to three words from the prompt lines around the last mention of ``section``."""
    lines = (content or "").split("\n")
    context = ""
    for idx, line in enumerate(lines):
        if section in line.lower():
            nearby = " ".join(lines[max(0, idx - 1) : idx + 2]).lower()
            words = [w for w in nearby.split() if len(w) > 3 and w not in {"this", "that", "with", "have", "will", "from", "section"}]
            if words:
                context = " ".join(words[:3])
    return context


class PromptContext(BaseModel):
    content: str = ""
    keywords: List[str] = Field(default_factory=list)
    business_type: str = DEFAULT_BUSINESS
    tone: str = DEFAULT_TONE


def analyze_prompt(prompt: str) -> PromptContext:
    content = (prompt or "").lower()
    keywords = extract_keywords(prompt)
    ctx = PromptContext(
        content=content,
        keywords=keywords,
        business_type=detect_business_type(content),
        tone=detect_tone(content),
    )
    log.info("images: business_type=%s tone=%s keywords=%s", ctx.business_type, ctx.tone, ctx.keywords)
    return ctx


def build_query(section: str, ctx: PromptContext) -> str:
    bt, tone = ctx.business_type, ctx.tone
    kw = " ".join(ctx.keywords[:3])
    if section == "hero":
        query = f"{bt} {tone} hero banner {kw}"
    elif section == "about":
        if bt == "restaurant":
            query = f"restaurant team chef kitchen {tone}"
        elif bt == "technology":
            query = "tech team office modern workspace"
        elif bt == "fitness":
            query = f"fitness trainer gym equipment {tone}"
        else:
            query = f"{bt} team professional {tone} {kw}"
    elif section in ("services", "features"):
        if bt == "restaurant":
            query = f"food service dining {kw}"
        elif bt == "technology":
            query = f"tech service solution digital {kw}"
        elif bt == "fitness":
            query = f"fitness service workout {kw}"
        else:
            query = f"{bt} service professional {kw}"
    elif section in ("gallery", "portfolio"):
        query = f"{bt} showcase gallery {kw} {tone}"
    elif section == "contact":
        query = f"{bt} office location contact {tone}"
    elif section == "testimonials":
        query = f"happy customers {bt} testimonial {tone}"
    else:
        query = f"{bt} {section} {kw} {tone}"
    extra = extract_section_context(section, ctx.content)
    if extra:
        query = f"{query} {extra}"
    return " ".join(query.split())


def fallback_queries(section: str, ctx: PromptContext) -> List[str]:
    queries: List[str] = []
    for q in (
        build_query(section, ctx),
        f"{ctx.business_type} {section}",
        f"{ctx.business_type} {ctx.tone}",
        section,
    ):
        q = " ".join(q.split())
        if q and q not in queries:
            queries.append(q)
    return queries


def image_count(section: str, variant_count: int) -> int:
    wanted = SECTION_IMAGE_COUNTS.get(section, DEFAULT_IMAGE_COUNT)
    return min(max(wanted, variant_count), MAX_IMAGES_PER_SECTION)


def alt_text(variant: str) -> str:
    m = re.match(r"^(.*?)[_-]?(\d+)$", variant)
    name, number = (m.group(1), m.group(2)) if m and m.group(1) else (variant, "")
    words = re.sub(r"[_-]+", " ", name).strip() or variant
    label = f"{words[:1].upper()}{words[1:]} image"
    return f"{label} {int(number)}" if number else label


def assign_images(variants: Sequence[str], images: Sequence[ImageRecord]) -> Dict[str, ImageRecord]:
    """Cycle through the candidates so every variant gets one, even with fewer images."""
    if not images:
        return {}
    return {v: images[i % len(images)] for i, v in enumerate(variants)}


class ImageResolver:
    """Replaces ``[IMAGE:...]`` markers in markup files with Unsplash ``<img>`` elements."""

    def __init__(self, client: UnsplashClient, *, css_class: str = "") -> None:
        self.client = client
        self.css_class = css_class

    def _fetch(self, section: str, count: int, ctx: PromptContext) -> List[ImageRecord]:
        for query in fallback_queries(section, ctx):
            try:
                images = self.client.search(query, count)
            except ImageProviderError as exc:
                log.warning("images: section=%s query=%r failed: %s", section, query, exc)
                continue
            if images:
                return images
            log.info("images: section=%s query=%r returned nothing; widening", section, query)
        if section in CATEGORY_QUERIES:
            category = section
        elif ctx.business_type in CATEGORY_QUERIES:
            category = ctx.business_type
        else:
            category = "default"
        return self.client.by_category(category, count)

    def resolve(
        self,
        files: Sequence[GeneratedFile],
        prompt: str,
        css_class: Optional[str] = None,
    ) -> Tuple[List[GeneratedFile], List[Dict[str, object]]]:
        css = self.css_class if css_class is None else css_class
        placeholders = find_placeholders(files)
        if not placeholders:
            return list(files), []
        ctx = analyze_prompt(prompt)
        issues: List[Dict[str, object]] = []
        replacements: Dict[str, str] = {}
        for base, variants in placeholders.items():
            section = canonical_section(base)
            try:
                images = self._fetch(section, image_count(section, len(variants)), ctx)
            except MissingCredential as exc:
                issues.append(
                    {
                        "severity": "warn",
                        "kind": IMAGE_RESOLUTION_DEGRADED,
                        "message": f"{exc.message}; image placeholders left unresolved",
                        "detail": {"sections": list(placeholders)},
                    }
                )
                break
            except ImageProviderError as exc:
                images = []
                log.warning("images: section=%s unresolved: %s", base, exc)
            if not images:
                issues.append(
                    {
                        "severity": "warn",
                        "kind": IMAGE_RESOLUTION_DEGRADED,
                        "message": f"No images found for section '{base}'",
                        "detail": {"section": base, "variants": list(variants)},
                    }
                )
                continue
            for variant, image in assign_images(variants, images).items():
                replacements[f"[IMAGE:{variant}]"] = image.markup(alt_text(variant), css)
        if not replacements:
            return list(files), issues
        out: List[GeneratedFile] = []
        for f in files:
            content = f.content
            if f.is_markup:
                for marker, markup in replacements.items():
                    content = content.replace(marker, markup)
            out.append(f if content == f.content else f.model_copy(update={"content": content}))
        log.info("images: resolved %d marker(s) across %d section(s)", len(replacements), len(placeholders))
        return out, issues
