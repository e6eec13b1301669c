from __future__ import annotations

from typing import Any, Dict, Optional


class GenerationError(Exception):
    """Base class for failures raised by the generation pipeline.

    ``kind`` is the stable name reported to clients and stored on issues.
    """

    kind = "GenerationError"
    severity = "error"

    def __init__(self, message: str = "", **detail: Any) -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.detail: Dict[str, Any] = detail

    def as_issue(self) -> Dict[str, Any]:
        issue: Dict[str, Any] = {"severity": self.severity, "kind": self.kind, "message": self.message}
        if self.detail:
            issue["detail"] = dict(self.detail)
        return issue


class MissingCredential(GenerationError):
    kind = "MissingCredential"

    def __init__(self, provider: str) -> None:
        super().__init__(f"API key not found for {provider}", provider=provider)
        self.provider = provider


class UpstreamOverloaded(GenerationError):
    kind = "UpstreamOverloaded"

    def __init__(self, provider: str, status: int, attempts: int = 1) -> None:
        super().__init__(
            f"{provider} is overloaded (HTTP {status}); giving up after {attempts} attempt(s)",
            provider=provider,
            status=status,
            attempts=attempts,
        )
        self.provider = provider
        self.status = status
        self.attempts = attempts


class UpstreamRejected(GenerationError):
    kind = "UpstreamRejected"

    def __init__(self, provider: str, status: int, message: str) -> None:
        label = f"HTTP {status}" if status else "request failed"
        super().__init__(f"{provider} API error ({label}): {message}", provider=provider, status=status)
        self.provider = provider
        self.status = status
        self.upstream_message = message


class EmptyGeneration(GenerationError):
    kind = "EmptyGeneration"

    def __init__(self, provider: str) -> None:
        super().__init__(f"No content generated from {provider}", provider=provider)
        self.provider = provider


class UnparseableResponse(GenerationError):
    kind = "UnparseableResponse"

    def __init__(self, content_length: int, preview: str) -> None:
        super().__init__(
            f"Failed to parse generated content (length={content_length})",
            content_length=content_length,
            preview=preview,
        )
        self.content_length = content_length
        self.preview = preview


class GenerationCancelled(GenerationError):
    kind = "GenerationCancelled"

    def __init__(self, request_id: Optional[str] = None) -> None:
        label = f"Generation {request_id}" if request_id else "Generation"
        super().__init__(f"{label} was superseded by a newer request", request_id=request_id)
        self.request_id = request_id


class ImageProviderError(GenerationError):
    kind = "ImageProviderError"
    severity = "warn"

    def __init__(self, message: str, status: int = 0) -> None:
        super().__init__(message, status=status)
        self.status = status


# Soft failures are reported as issues only; these are their kind names.
PARTIAL_GENERATION = "PartialGeneration"
IMAGE_RESOLUTION_DEGRADED = "ImageResolutionDegraded"
