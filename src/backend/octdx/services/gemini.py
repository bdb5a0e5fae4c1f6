"""
Gemini Service — the remote inference gateway.

Every request carries the source image, a task instruction and the kind of
output expected back:
  - STRUCTURED: the reply text is JSON matching a declared response schema
  - IMAGE:      the reply carries a generated image as inline data

The gateway only transports. Validation of what came back (JSON parsing,
presence of image payloads) is the orchestrator's job, so responses are handed
over as a thin envelope copied from the first candidate.
"""
from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol

from octdx.config import settings

logger = logging.getLogger(__name__)


class MissingCredentialError(RuntimeError):
    """Raised when no Gemini API key is configured."""


class OutputKind(str, Enum):
    STRUCTURED = "structured"
    IMAGE = "image"


@dataclass(frozen=True)
class InferenceRequest:
    image: bytes = field(repr=False)
    mime_type: str
    instruction: str
    output_kind: OutputKind
    response_schema: Optional[dict] = None


@dataclass(frozen=True)
class InlineImage:
    data: Optional[bytes] = field(default=None, repr=False)
    mime_type: Optional[str] = None


@dataclass(frozen=True)
class InferenceResponse:
    """First-candidate envelope of a gateway reply."""
    text: Optional[str] = None
    image: Optional[InlineImage] = None


class InferenceGateway(Protocol):
    async def infer(self, request: InferenceRequest) -> InferenceResponse:
        ...


class GeminiGateway:
    """
    InferenceGateway backed by the google-genai async client.

    Usage:
        gateway = GeminiGateway()
        response = await gateway.infer(InferenceRequest(...))
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        classification_model: Optional[str] = None,
        image_model: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self._api_key = api_key if api_key is not None else settings.gemini_api_key
        if not self._api_key:
            raise MissingCredentialError(
                "API Key Not Found: GEMINI_API_KEY is not set. "
                "Please configure it before running the application."
            )
        self.classification_model = classification_model or settings.classification_model
        self.image_model = image_model or settings.image_model
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.gateway_timeout_seconds
        )
        self._client = None

    def _get_client(self):
        """Lazy-initialize the genai client."""
        if self._client is None:
            from google import genai

            self._client = genai.Client(api_key=self._api_key)
        return self._client

    def _build_config(self, request: InferenceRequest):
        from google.genai import types

        if request.output_kind is OutputKind.STRUCTURED:
            return types.GenerateContentConfig(
                response_mime_type="application/json",
                response_schema=request.response_schema,
            )
        return types.GenerateContentConfig(response_modalities=["IMAGE"])

    async def infer(self, request: InferenceRequest) -> InferenceResponse:
        from google.genai import types

        client = self._get_client()
        model = (
            self.classification_model
            if request.output_kind is OutputKind.STRUCTURED
            else self.image_model
        )
        contents = [
            types.Part.from_bytes(data=request.image, mime_type=request.mime_type),
            types.Part.from_text(text=request.instruction),
        ]

        call = client.aio.models.generate_content(
            model=model,
            contents=contents,
            config=self._build_config(request),
        )
        try:
            if self.timeout_seconds:
                response = await asyncio.wait_for(call, timeout=self.timeout_seconds)
            else:
                response = await call
        except Exception as e:
            logger.error(f"Gemini API error ({request.output_kind.value} request, {model}): {e}")
            raise

        return self.to_envelope(response)

    @staticmethod
    def to_envelope(response: Any) -> InferenceResponse:
        """Copy the text and first inline image out of the first candidate."""
        candidates = getattr(response, "candidates", None) or []
        if not candidates:
            return InferenceResponse()
        content = getattr(candidates[0], "content", None)
        parts = getattr(content, "parts", None) or []

        texts: list[str] = []
        image: Optional[InlineImage] = None
        for part in parts:
            text = getattr(part, "text", None)
            if text:
                texts.append(text)
            inline = getattr(part, "inline_data", None)
            if inline is not None and image is None:
                data = getattr(inline, "data", None)
                if isinstance(data, str):
                    try:
                        data = base64.b64decode(data, validate=True)
                    except ValueError:
                        data = None
                image = InlineImage(data=data, mime_type=getattr(inline, "mime_type", None))

        return InferenceResponse(text="".join(texts) if texts else None, image=image)
