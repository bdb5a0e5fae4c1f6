"""Shared fixtures: a scriptable in-memory inference gateway."""
from __future__ import annotations

import asyncio
import json
from typing import Callable, Dict, List, Optional

import pytest

from octdx.agent import prompts
from octdx.agent.image_set import ImageSet
from octdx.agent.orchestrator import AnalysisOrchestrator, Slot
from octdx.models.schemas import UploadedImage
from octdx.services.gemini import InferenceRequest, InferenceResponse, InlineImage, OutputKind

PNG_HEADER = b"\x89PNG\r\n\x1a\n"


def diagnosis_payload(**overrides) -> dict:
    payload = {
        "diagnosis": "CNV",
        "confidence": "92.5%",
        "explanation": "Subretinal fluid above a hyper-reflective sub-RPE lesion.",
        "explainability": "Attention concentrates on the lesion and adjacent fluid.",
        "uncertaintyStatement": "Features are unambiguous.",
        "segmentationUncertaintyStatement": "Fluid edges are slightly blurred.",
    }
    payload.update(overrides)
    return payload


def image_response(tag: str) -> InferenceResponse:
    return InferenceResponse(image=InlineImage(data=PNG_HEADER + tag.encode(), mime_type="image/png"))


def slot_of(request: InferenceRequest) -> Slot:
    if request.output_kind is OutputKind.STRUCTURED:
        return Slot.CLASSIFICATION
    if request.instruction == prompts.SEGMENTATION_PROMPT:
        return Slot.SEGMENTATION
    if request.instruction == prompts.SEGMENTATION_UNCERTAINTY_PROMPT:
        return Slot.SEGMENTATION_UNCERTAINTY
    return Slot.HEATMAP


Responder = Callable[[Slot, InferenceRequest], InferenceResponse]


class FakeGateway:
    """
    Records every request and answers per slot.

    `overrides[(image_bytes, slot)]` or `overrides[slot]` may hold an
    InferenceResponse or an exception instance to raise. Set `gate` to an
    asyncio.Event to hold every call until it is released.
    """

    def __init__(self):
        self.requests: List[InferenceRequest] = []
        self.overrides: Dict[object, object] = {}
        self.payload = diagnosis_payload()
        self.gate: Optional[asyncio.Event] = None
        self.in_flight = 0
        self.max_in_flight = 0
        self.started = asyncio.Event()

    @property
    def slots(self) -> List[Slot]:
        return [slot_of(r) for r in self.requests]

    def default_response(self, slot: Slot, request: InferenceRequest) -> InferenceResponse:
        if slot is Slot.CLASSIFICATION:
            return InferenceResponse(text=json.dumps(self.payload))
        suffix = "refined" if "feedback" in request.instruction else "initial"
        return image_response(f"{slot.value}:{suffix}")

    async def infer(self, request: InferenceRequest) -> InferenceResponse:
        self.requests.append(request)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.started.set()
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0.01)
        finally:
            self.in_flight -= 1

        slot = slot_of(request)
        outcome = self.overrides.get((request.image, slot), self.overrides.get(slot))
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is not None:
            return outcome
        return self.default_response(slot, request)


def upload(name: str = "scan.png", content_type: str = "image/png", data: Optional[bytes] = None) -> UploadedImage:
    return UploadedImage(filename=name, content_type=content_type, data=data or name.encode())


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def orchestrator(gateway) -> AnalysisOrchestrator:
    return AnalysisOrchestrator(gateway, threshold=70)


@pytest.fixture
def image_set(orchestrator) -> ImageSet:
    return ImageSet(orchestrator)
