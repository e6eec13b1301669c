import base64
import binascii
import json
import logging
import os
import queue
import re
import threading
import time
import uuid
from typing import Any, Dict, Iterable, List, Optional, Tuple

from fastapi import Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, StreamingResponse
from jsonschema import Draft202012Validator
from pydantic import BaseModel, Field

from sitecraft import ratelimit
from sitecraft.auth import extract_client_key, require_api_key
from sitecraft.cancellation import RequestRegistry
from sitecraft.credentials import PROVIDERS, CredentialStore, backend_from_env
from sitecraft.errors import (
    EmptyGeneration,
    GenerationCancelled,
    GenerationError,
    MissingCredential,
    UpstreamOverloaded,
    UpstreamRejected,
)
from sitecraft.gateway import BACKOFF_STEP_SECONDS, ModelGateway
from sitecraft.generator import WebsiteGenerator
from sitecraft.models import AI_MODELS, DEFAULT_MODEL, GeneratedFile, GenerationRequest, ProjectType, get_model
from sitecraft.placeholders import ImageResolver
from sitecraft.preview import VIEWPORTS, build_preview_html, export_zip, render_viewport_frame
from sitecraft.prompts import files_schema
from sitecraft.unsplash import UnsplashClient

if not logging.getLogger().handlers:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

log = logging.getLogger(__name__)

credentials = CredentialStore(backend_from_env())
registry = RequestRegistry()
generator = WebsiteGenerator(
    ModelGateway(credentials),
    ImageResolver(UnsplashClient(credentials)),
    registry,
)

app = FastAPI(title="sitecraft")

allow_origins = [o.strip() for o in os.getenv("ALLOW_ORIGINS", "*").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = str(uuid.uuid4())
    start = time.time()
    request.state.request_id = rid
    response = None
    try:
        response = await call_next(request)
        return response
    finally:
        dur_ms = int((time.time() - start) * 1000)
        log.info(
            "rid=%s method=%s path=%s status=%s dur_ms=%d",
            rid,
            request.method,
            request.url.path,
            getattr(response, "status_code", "?"),
            dur_ms,
        )


class GenerateRequest(BaseModel):
    prompt: str = Field(..., min_length=1, description="What the website should be about")
    model_id: Optional[str] = Field(default=None, description="Catalog model id; empty selects the default")
    project_type: ProjectType = "single-page"
    image_base64: Optional[str] = Field(default=None, description="Optional screenshot, base64 or data URL")
    image_mime_type: str = "image/png"
    session_id: Optional[str] = Field(default=None, description="Requests sharing a session supersede each other")


class CredentialRequest(BaseModel):
    api_key: str


class ValidateRequest(BaseModel):
    document: Dict[str, Any]


class FilesRequest(BaseModel):
    files: List[GeneratedFile] = Field(..., min_length=1)


class PreviewRequest(BaseModel):
    files: List[GeneratedFile] = Field(default_factory=list)
    page: str = "index.html"
    viewport: Optional[str] = None


def _rate_limit_headers(remaining: int, reset_ts: int, *, limited: bool = False) -> Dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(ratelimit.MAX_REQUESTS),
        "X-RateLimit-Remaining": str(remaining),
        "X-RateLimit-Reset": str(reset_ts),
    }
    if limited:
        headers["Retry-After"] = str(max(0, reset_ts - int(time.time())))
    return headers


def _rate_limited(reset_ts: int, remaining: int) -> JSONResponse:
    wait_seconds = max(0, reset_ts - int(time.time()))
    return JSONResponse(
        status_code=429,
        content={
            "error": "rate limit exceeded",
            "reset": reset_ts,
            "retry_after_seconds": wait_seconds,
            "message": f"Rate limit exceeded. Try again in {wait_seconds} seconds.",
        },
        headers=_rate_limit_headers(remaining, reset_ts, limited=True),
    )


_DATA_URL_RE = re.compile(r"^data:([\w/+.-]+);base64,", re.IGNORECASE)


def _decode_image(raw: Optional[str], mime: str) -> Tuple[Optional[bytes], str]:
    if not raw:
        return None, mime
    m = _DATA_URL_RE.match(raw)
    if m:
        mime = m.group(1)
        raw = raw[m.end():]
    return base64.b64decode(raw, validate=True), mime


def _error_status(exc: GenerationError) -> Tuple[int, Dict[str, str]]:
    if isinstance(exc, GenerationCancelled):
        return 409, {}
    if isinstance(exc, UpstreamOverloaded):
        return 503, {"Retry-After": str(int(BACKOFF_STEP_SECONDS * (exc.attempts + 1)))}
    if isinstance(exc, MissingCredential):
        return 503, {}
    if isinstance(exc, (UpstreamRejected, EmptyGeneration)):
        return 502, {}
    return 500, {}


def _error_body(exc: GenerationError) -> Dict[str, Any]:
    return {"success": False, "error": exc.message, "kind": exc.kind, "issues": [exc.as_issue()]}


def _prepare(req: GenerateRequest, request: Request, api_key: Optional[str]):
    """Shared validation for both generate endpoints: (generation request, session key) or an error response."""
    client_key = extract_client_key(api_key, request.client.host if request.client else "anon")
    allowed, remaining, reset_ts = ratelimit.check_and_increment("gen", client_key)
    log.info("rate_limit check allowed=%s remaining=%s", allowed, remaining)
    if not allowed:
        return None, _rate_limited(reset_ts, remaining)
    headers = _rate_limit_headers(remaining, reset_ts)
    try:
        model = get_model(req.model_id)
    except KeyError:
        return None, JSONResponse(status_code=404, content={"error": f"Unknown model: {req.model_id}"}, headers=headers)
    try:
        image, mime = _decode_image(req.image_base64, req.image_mime_type)
    except (binascii.Error, ValueError):
        return None, JSONResponse(status_code=422, content={"error": "image_base64 is not valid base64"}, headers=headers)
    gen_request = GenerationRequest(
        prompt=req.prompt,
        model=model,
        image=image,
        image_mime_type=mime,
        project_type=req.project_type,
        request_id=getattr(request.state, "request_id", None) or uuid.uuid4().hex,
    )
    return (gen_request, req.session_id or client_key, headers), None


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/models")
def list_models() -> Dict[str, Any]:
    return {
        "default": DEFAULT_MODEL.id,
        "models": [{**m.model_dump(), "has_api_key": credentials.has_api_key(m.provider)} for m in AI_MODELS],
    }


@app.get("/credentials/status")
def credentials_status() -> Dict[str, bool]:
    return credentials.status()


@app.post("/credentials/{provider}")
def store_credential(provider: str, req: CredentialRequest, api_key: Optional[str] = Depends(require_api_key)):
    if provider not in PROVIDERS:
        return JSONResponse(status_code=404, content={"error": f"Unknown provider: {provider}"})
    try:
        credentials.set_api_key(provider, req.api_key)
    except ValueError as e:
        return JSONResponse(status_code=400, content={"error": str(e)})
    return {"provider": provider, "stored": True}


@app.post("/generate")
def generate_endpoint(req: GenerateRequest, request: Request, api_key: Optional[str] = Depends(require_api_key)):
    prepared, error = _prepare(req, request, api_key)
    if error is not None:
        return error
    gen_request, session_key, headers = prepared
    try:
        result = generator.generate(gen_request, session_key=session_key)
    except GenerationError as exc:
        status, extra = _error_status(exc)
        log.warning("generate: failed kind=%s status=%d: %s", exc.kind, status, exc.message)
        return JSONResponse(status_code=status, content=_error_body(exc), headers={**headers, **extra})
    return JSONResponse(result.model_dump(), headers=headers)


_STREAM_DONE = object()


@app.post("/generate/stream")
def generate_stream(req: GenerateRequest, request: Request, api_key: Optional[str] = Depends(require_api_key)):
    """
    NDJSON streaming endpoint: a meta line, progress lines while the model works,
    then one result or error line.
    """
    prepared, error = _prepare(req, request, api_key)
    if error is not None:
        return error
    base_request, session_key, headers = prepared

    def _iter() -> Iterable[str]:
        events: "queue.Queue[Any]" = queue.Queue()

        def _progress(text: str, done: bool) -> None:
            events.put(("progress", {"chars": len(text), "done": done}))

        gen_request = base_request.model_copy(update={"on_progress": _progress})

        def _work() -> None:
            try:
                result = generator.generate(gen_request, session_key=session_key)
                events.put(("result", result.model_dump()))
            except GenerationError as exc:
                status, _ = _error_status(exc)
                events.put(("error", {**_error_body(exc), "status": status}))
            except Exception as exc:
                log.exception("generate_stream: worker failure")
                events.put(("error", {"success": False, "error": str(exc), "kind": "InternalError", "status": 500}))
            finally:
                events.put(_STREAM_DONE)

        threading.Thread(target=_work, daemon=True).start()
        yield json.dumps({"event": "meta", "request_id": gen_request.request_id}) + "\n"
        while True:
            item = events.get()
            if item is _STREAM_DONE:
                return
            event, data = item
            yield json.dumps({"event": event, "data": data}) + "\n"

    return StreamingResponse(_iter(), media_type="application/x-ndjson", headers=headers)


@app.post("/validate")
def validate_endpoint(req: ValidateRequest):
    """
    Validate a model-shaped document ({"files": [...], "pages": [...]}).
    Returns 200 and {"detail":{"valid":true}} on success,
            422 and {"detail":{"valid":false,"errors":[...]}} on failure.
    """
    validator = Draft202012Validator(files_schema())
    errors = [
        {"path": ".".join(str(p) for p in err.path) or "(root)", "message": str(err.message)}
        for err in validator.iter_errors(req.document)
    ]
    if errors:
        return JSONResponse(status_code=422, content={"detail": {"valid": False, "errors": errors}})
    return {"detail": {"valid": True}}


@app.post("/preview", response_class=HTMLResponse)
def preview(req: PreviewRequest):
    html = build_preview_html(req.files, req.page)
    if req.viewport:
        if req.viewport not in VIEWPORTS:
            return JSONResponse(status_code=422, content={"error": f"Unknown viewport: {req.viewport}"})
        html = render_viewport_frame(html, req.viewport)
    return HTMLResponse(html)


@app.post("/export")
def export(req: FilesRequest):
    return Response(
        content=export_zip(req.files),
        media_type="application/zip",
        headers={"Content-Disposition": 'attachment; filename="website.zip"'},
    )
