"""
Analysis Orchestrator — drives one image through the inference pipeline.

Initial mode issues four requests concurrently:
  1. Segmentation map            (image)
  2. Segmentation uncertainty map (image)
  3. Classification              (structured)
  4. Attention heatmap           (image)

Refinement mode (clinician feedback present) issues only the classification
and heatmap requests, both re-worded around the feedback. Segmentation
artifacts from the first analysis are kept by the caller.

All requests are joined before anything is validated. Any gateway failure
fails the whole call; there is no partial recovery and no retry.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import ValidationError

from octdx.agent import prompts
from octdx.config import settings
from octdx.models.schemas import (
    AnalysisMode,
    AnalysisOutcome,
    AnalyzableImage,
    CallState,
    Diagnosis,
    DiagnosisResult,
    GeneratedImage,
)
from octdx.services import confidence_policy
from octdx.services.error_classifier import ErrorCategory, classify, message_for
from octdx.services.gemini import (
    InferenceGateway,
    InferenceRequest,
    InferenceResponse,
    OutputKind,
)

logger = logging.getLogger(__name__)


class AnalysisError(Exception):
    """A failed orchestration call, already reduced to a user-facing message."""

    def __init__(self, category: ErrorCategory, message: Optional[str] = None):
        self.category = category
        self.message = message or message_for(category)
        super().__init__(self.message)


class InvalidResponseFormatError(AnalysisError):
    def __init__(self, detail: str = ""):
        super().__init__(ErrorCategory.INVALID_RESPONSE_FORMAT)
        self.detail = detail


class MissingArtifactError(AnalysisError):
    def __init__(self, artifact: str):
        super().__init__(
            ErrorCategory.MISSING_ARTIFACT,
            f"Failed to generate {artifact}.",
        )
        self.artifact = artifact


class Slot(str, Enum):
    SEGMENTATION = "segmentation"
    SEGMENTATION_UNCERTAINTY = "segmentation_uncertainty"
    CLASSIFICATION = "classification"
    HEATMAP = "heatmap"


ARTIFACT_NAMES = {
    Slot.SEGMENTATION: "segmented image",
    Slot.SEGMENTATION_UNCERTAINTY: "segmentation uncertainty map",
    Slot.HEATMAP: "heatmap image",
}


@dataclass(frozen=True)
class PlannedRequest:
    slot: Slot
    request: InferenceRequest


def normalise_feedback(feedback: Optional[str]) -> Optional[str]:
    """Blank feedback counts as no feedback."""
    if feedback and feedback.strip():
        return feedback.strip()
    return None


class OrchestrationCall:
    """
    One orchestration call: NOT_STARTED -> IN_FLIGHT -> SUCCEEDED | FAILED.

    A call runs at most once. IN_FLIGHT covers the whole fan-out/fan-in window.
    """

    def __init__(
        self,
        orchestrator: "AnalysisOrchestrator",
        image: AnalyzableImage,
        feedback: Optional[str] = None,
    ):
        self._orchestrator = orchestrator
        self.image = image
        self.feedback = normalise_feedback(feedback)
        self.state = CallState.NOT_STARTED
        self.outcome: Optional[AnalysisOutcome] = None
        self.error: Optional[AnalysisError] = None
        self.duration_ms: Optional[int] = None

    @property
    def mode(self) -> AnalysisMode:
        return AnalysisMode.REFINEMENT if self.feedback else AnalysisMode.INITIAL

    async def run(self) -> AnalysisOutcome:
        if self.state is not CallState.NOT_STARTED:
            raise RuntimeError(f"Orchestration call already {self.state.value}")

        self.state = CallState.IN_FLIGHT
        start = time.monotonic()
        try:
            self.outcome = await self._orchestrator._execute(self.image, self.feedback)
            self.state = CallState.SUCCEEDED
            return self.outcome
        except AnalysisError as e:
            self.error = e
            self.state = CallState.FAILED
            raise
        except Exception as e:
            logger.exception(f"Unexpected error analyzing image {self.image.id}")
            self.error = AnalysisError(classify(e))
            self.state = CallState.FAILED
            raise self.error from e
        finally:
            self.duration_ms = int((time.monotonic() - start) * 1000)
            logger.info(
                f"Orchestration {self.mode.value} for image {self.image.id}: "
                f"{self.state.value} in {self.duration_ms}ms"
            )


class AnalysisOrchestrator:
    """
    Issues the gateway requests for one image and assembles an AnalysisOutcome.

    Usage:
        orchestrator = AnalysisOrchestrator(GeminiGateway())
        outcome = await orchestrator.run(image)                        # initial
        outcome = await orchestrator.run(image, "reconsider fluid")    # refinement
    """

    def __init__(self, gateway: InferenceGateway, threshold: Optional[float] = None):
        self.gateway = gateway
        self.threshold = threshold if threshold is not None else settings.confidence_threshold

    def new_call(self, image: AnalyzableImage, feedback: Optional[str] = None) -> OrchestrationCall:
        return OrchestrationCall(self, image, feedback)

    async def run(self, image: AnalyzableImage, feedback: Optional[str] = None) -> AnalysisOutcome:
        """Run one orchestration call; raises AnalysisError on any failure."""
        return await self.new_call(image, feedback).run()

    def plan(self, image: AnalyzableImage, feedback: Optional[str] = None) -> list[PlannedRequest]:
        """The requests to issue for this image, in slot order."""
        feedback = normalise_feedback(feedback)

        def _request(instruction: str, kind: OutputKind, schema: Optional[dict] = None):
            return InferenceRequest(
                image=image.image_bytes,
                mime_type=image.mime_type,
                instruction=instruction,
                output_kind=kind,
                response_schema=schema,
            )

        planned: list[PlannedRequest] = []
        if not feedback:
            planned.append(PlannedRequest(
                Slot.SEGMENTATION,
                _request(prompts.SEGMENTATION_PROMPT, OutputKind.IMAGE),
            ))
            planned.append(PlannedRequest(
                Slot.SEGMENTATION_UNCERTAINTY,
                _request(prompts.SEGMENTATION_UNCERTAINTY_PROMPT, OutputKind.IMAGE),
            ))
        planned.append(PlannedRequest(
            Slot.CLASSIFICATION,
            _request(
                prompts.classification_prompt(feedback),
                OutputKind.STRUCTURED,
                prompts.classification_schema(),
            ),
        ))
        planned.append(PlannedRequest(
            Slot.HEATMAP,
            _request(prompts.heatmap_prompt(feedback), OutputKind.IMAGE),
        ))
        return planned

    async def _execute(self, image: AnalyzableImage, feedback: Optional[str]) -> AnalysisOutcome:
        planned = self.plan(image, feedback)

        # Fan out, then wait for every request to settle
        settled = await asyncio.gather(
            *[self.gateway.infer(p.request) for p in planned],
            return_exceptions=True,
        )
        responses: dict[Slot, InferenceResponse] = {}
        failures: list[tuple[Slot, BaseException]] = []
        for p, result in zip(planned, settled):
            if isinstance(result, BaseException):
                failures.append((p.slot, result))
            else:
                responses[p.slot] = result

        if failures:
            for slot, exc in failures:
                logger.error(f"Gemini API error on {slot.value} request for image {image.id}: {exc}")
            raise AnalysisError(classify(failures[0][1]))

        diagnosis = self._parse_classification(responses.get(Slot.CLASSIFICATION))
        diagnosis = confidence_policy.apply(diagnosis, self.threshold)

        heatmap = self._require_image(Slot.HEATMAP, responses.get(Slot.HEATMAP))
        if feedback:
            return AnalysisOutcome(
                mode=AnalysisMode.REFINEMENT,
                diagnosis=diagnosis,
                heatmap=heatmap,
            )

        return AnalysisOutcome(
            mode=AnalysisMode.INITIAL,
            diagnosis=diagnosis,
            heatmap=heatmap,
            segmented=self._require_image(Slot.SEGMENTATION, responses.get(Slot.SEGMENTATION)),
            segmentation_uncertainty=self._require_image(
                Slot.SEGMENTATION_UNCERTAINTY, responses.get(Slot.SEGMENTATION_UNCERTAINTY)
            ),
        )

    @staticmethod
    def _parse_classification(response: Optional[InferenceResponse]) -> DiagnosisResult:
        text = (response.text or "").strip() if response else ""
        if not text:
            raise InvalidResponseFormatError("empty classification response")

        # Tolerate a ```json fence around the payload
        if text.startswith("```"):
            text = text.strip("`").strip()
            if text.lower().startswith("json"):
                text = text[4:].strip()

        try:
            data = json.loads(text)
            if not isinstance(data, dict):
                raise ValueError(f"expected a JSON object, got {type(data).__name__}")
            result = DiagnosisResult.model_validate(data)
        except (ValueError, ValidationError) as e:
            logger.error(f"Failed to parse classification response: {e}. Raw: {text[:300]}")
            raise InvalidResponseFormatError(str(e)) from e

        # Only the confidence policy may withhold a diagnosis
        if result.diagnosis is Diagnosis.REQUIRES_FURTHER_REVIEW:
            logger.error(f"Model returned a withheld diagnosis directly. Raw: {text[:300]}")
            raise InvalidResponseFormatError(f"unexpected diagnosis {result.diagnosis.value!r}")
        return result

    @staticmethod
    def _require_image(slot: Slot, response: Optional[InferenceResponse]) -> GeneratedImage:
        image = response.image if response else None
        if (
            image is None
            or not isinstance(image.data, bytes)
            or not image.data
            or not image.mime_type
            or not image.mime_type.startswith("image/")
        ):
            logger.error(f"No usable inline image in {slot.value} response")
            raise MissingArtifactError(ARTIFACT_NAMES[slot])
        return GeneratedImage(data=image.data, mime_type=image.mime_type)
