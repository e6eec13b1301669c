from __future__ import annotations

import logging
from typing import Optional

from sitecraft.cancellation import CancellationToken, RequestRegistry
from sitecraft.completion import complete_single_page
from sitecraft.errors import PARTIAL_GENERATION, GenerationError, MissingCredential
from sitecraft.gateway import ModelGateway
from sitecraft.models import GenerationRequest, GenerationResponse, Issue
from sitecraft.parsing import parse_generated_content
from sitecraft.placeholders import ImageResolver
from sitecraft.prompts import SINGLE_PAGE, build_generation_prompt

log = logging.getLogger(__name__)

IMAGE_CSS_CLASS = "w-full h-full object-cover"


class WebsiteGenerator:
    """Prompt -> model -> recovered files -> completed page -> resolved images."""

    def __init__(
        self,
        gateway: ModelGateway,
        resolver: Optional[ImageResolver] = None,
        registry: Optional[RequestRegistry] = None,
    ) -> None:
        self.gateway = gateway
        self.resolver = resolver
        self.registry = registry

    def _complete(self, response: GenerationResponse, request: GenerationRequest, token: Optional[CancellationToken]) -> None:
        page = response.get_file("index.html")
        if page is None:
            return

        def _continue(continuation_prompt: str) -> str:
            return self.gateway.generate(continuation_prompt, request.model, token=token)

        html, report = complete_single_page(page.content, request.prompt, _continue, token=token)
        if html != page.content:
            response.replace_file("index.html", html)
        if not report.is_complete:
            response.add_issue(
                {
                    "severity": "warn",
                    "kind": PARTIAL_GENERATION,
                    "message": "Page is still missing sections after continuation attempts",
                    "detail": {
                        "missing_sections": report.missing_sections,
                        "has_closing_body": report.has_closing_body,
                        "has_closing_html": report.has_closing_html,
                    },
                }
            )

    def _run(self, request: GenerationRequest, token: Optional[CancellationToken]) -> GenerationResponse:
        model = request.model
        if not self.gateway.credentials.has_api_key(model.provider):
            raise MissingCredential(model.provider)

        prompt = build_generation_prompt(
            request.prompt,
            has_screenshot=request.has_screenshot,
            project_type=request.project_type,
        )
        text = self.gateway.generate(
            prompt,
            model,
            image=request.image if request.has_screenshot else None,
            image_mime_type=request.image_mime_type,
            on_progress=request.on_progress,
            token=token,
        )
        response = parse_generated_content(text)
        if not response.success:
            return response

        if request.project_type == SINGLE_PAGE:
            self._complete(response, request, token)

        if self.resolver is not None:
            if token is not None:
                token.raise_if_cancelled()
            files, issues = self.resolver.resolve(response.files, request.prompt, IMAGE_CSS_CLASS)
            response.files = files
            for issue in issues:
                response.add_issue(issue)

        if token is not None:
            token.raise_if_cancelled()
        log.info(
            "generate: request=%s model=%s files=%d issues=%d strategy=%s",
            request.request_id,
            model.id,
            len(response.files),
            len(response.issues),
            response.strategy,
        )
        return response

    def generate(
        self,
        request: GenerationRequest,
        token: Optional[CancellationToken] = None,
        session_key: str = "",
    ) -> GenerationResponse:
        """Run the whole pipeline; hard failures raise ``GenerationError`` subclasses.

        With a registry and no explicit token, the request supersedes any earlier one from
        the same ``session_key``.
        """
        owned = False
        if token is None and self.registry is not None:
            token = self.registry.begin(session_key, request.request_id)
            owned = True
        try:
            return self._run(request, token)
        finally:
            if owned and self.registry is not None:
                self.registry.finish(token)


def generate_website(
    request: GenerationRequest,
    generator: WebsiteGenerator,
    token: Optional[CancellationToken] = None,
    session_key: str = "",
) -> GenerationResponse:
    """Like ``WebsiteGenerator.generate`` but reports hard failures as ``success=False``."""
    try:
        return generator.generate(request, token=token, session_key=session_key)
    except GenerationError as exc:
        log.warning("generate: request=%s failed kind=%s: %s", request.request_id, exc.kind, exc.message)
        return GenerationResponse(success=False, error=exc.message, issues=[Issue(**exc.as_issue())])
