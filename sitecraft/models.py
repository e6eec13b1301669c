from __future__ import annotations

import html as htmllib
import uuid
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Provider = Literal["gemini", "openai", "claude"]
FileType = Literal["html", "css", "js", "json"]
ProjectType = Literal["single-page", "multi-page"]


class ModelDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    provider: Provider
    max_tokens: int
    supports_vision: bool = False


AI_MODELS: List[ModelDescriptor] = [
    ModelDescriptor(
        id="gemini-2.0-flash-exp",
        name="Gemini 2.0 Flash (Experimental)",
        provider="gemini",
        max_tokens=8192,
        supports_vision=True,
    ),
    ModelDescriptor(
        id="gemini-1.5-pro",
        name="Gemini 1.5 Pro",
        provider="gemini",
        max_tokens=8192,
        supports_vision=True,
    ),
    ModelDescriptor(id="gpt-4o", name="GPT-4o", provider="openai", max_tokens=4096, supports_vision=True),
    ModelDescriptor(
        id="claude-3-5-sonnet",
        name="Claude 3.5 Sonnet",
        provider="claude",
        max_tokens=4096,
        supports_vision=True,
    ),
]

DEFAULT_MODEL = AI_MODELS[0]


def get_model(model_id: Optional[str]) -> ModelDescriptor:
    """Look up a catalog entry; an empty id selects the default model."""
    if not model_id:
        return DEFAULT_MODEL
    for model in AI_MODELS:
        if model.id == model_id:
            return model
    raise KeyError(model_id)


class GenerationRequest(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    prompt: str
    model: ModelDescriptor = DEFAULT_MODEL
    image: Optional[bytes] = Field(default=None, exclude=True)
    image_mime_type: str = "image/png"
    project_type: ProjectType = "single-page"
    on_progress: Optional[Callable[[str, bool], None]] = Field(default=None, exclude=True)
    request_id: str = Field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def has_screenshot(self) -> bool:
        return bool(self.image)


class GeneratedFile(BaseModel):
    path: str
    content: str
    type: FileType

    @property
    def is_markup(self) -> bool:
        return self.type == "html"


class Issue(BaseModel):
    severity: Literal["info", "warn", "error"] = "warn"
    kind: str
    message: str
    detail: Optional[Dict[str, Any]] = None


class GenerationResponse(BaseModel):
    success: bool
    files: List[GeneratedFile] = Field(default_factory=list)
    pages: Optional[List[str]] = None
    error: Optional[str] = None
    issues: List[Issue] = Field(default_factory=list)
    strategy: Optional[str] = None

    def primary_page(self) -> Optional[GeneratedFile]:
        for f in self.files:
            if f.is_markup:
                return f
        return None

    def get_file(self, path: str) -> Optional[GeneratedFile]:
        for f in self.files:
            if f.path == path:
                return f
        return None

    def replace_file(self, path: str, content: str) -> None:
        for idx, f in enumerate(self.files):
            if f.path == path:
                self.files[idx] = f.model_copy(update={"content": content})
                return
        raise KeyError(path)

    def add_issue(self, issue: Dict[str, Any]) -> None:
        self.issues.append(Issue(**issue))


class ImageRecord(BaseModel):
    id: str
    urls: Dict[str, str]
    alt_description: Optional[str] = None
    description: Optional[str] = None
    author_name: str = ""
    author_username: str = ""

    @classmethod
    def from_unsplash(cls, data: Dict[str, Any]) -> "ImageRecord":
        user = data.get("user") if isinstance(data.get("user"), dict) else {}
        raw_urls = data.get("urls") if isinstance(data.get("urls"), dict) else {}
        urls = {k: v for k, v in raw_urls.items() if isinstance(v, str)}
        return cls(
            id=str(data.get("id") or ""),
            urls=urls,
            alt_description=data.get("alt_description"),
            description=data.get("description"),
            author_name=str(user.get("name") or ""),
            author_username=str(user.get("username") or ""),
        )

    @property
    def url(self) -> str:
        for size in ("regular", "full", "small", "raw", "thumb"):
            if self.urls.get(size):
                return self.urls[size]
        return ""

    def markup(self, alt: str = "", css_class: str = "") -> str:
        alt_text = alt or self.alt_description or self.description or "Image"
        esc = lambda v: htmllib.escape(v or "", quote=True)  # noqa: E731
        return (
            f'<img src="{esc(self.url)}" alt="{esc(alt_text)}" class="{esc(css_class)}" loading="lazy" '
            f'data-unsplash-id="{esc(self.id)}" data-photographer="{esc(self.author_name)}" />'
        )

    def optimized_url(self, width: int, height: Optional[int] = None) -> str:
        raw = self.urls.get("raw") or self.url
        sep = "&" if "?" in raw else "?"
        url = f"{raw}{sep}w={int(width)}"
        if height:
            url += f"&h={int(height)}&fit=crop"
        return url
