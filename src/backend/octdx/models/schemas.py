"""
Domain models for the OCT Diagnosis Agent.

These Pydantic models define the data flowing between the gateway, the
analysis orchestrator and the image set. The classification schema sent to
the model is derived from DiagnosisResult, so the wire names (camelCase
aliases) live here too.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ──────────────────────────────────────────────
# Enums
# ──────────────────────────────────────────────

class Diagnosis(str, Enum):
    AMD = "AMD"
    CNV = "CNV"
    DME = "DME"
    DRUSEN = "Drusen"
    NORMAL = "Normal"
    GEOGRAPHIC_ATROPHY = "Geographic Atrophy"
    # Never produced by the model, only substituted by the confidence policy
    REQUIRES_FURTHER_REVIEW = "Requires Further Review"


CLINICAL_DIAGNOSES = [d.value for d in Diagnosis if d is not Diagnosis.REQUIRES_FURTHER_REVIEW]


class ImageStatus(str, Enum):
    PENDING = "pending"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


class CallState(str, Enum):
    """Lifecycle of a single orchestration call."""
    NOT_STARTED = "not_started"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class AnalysisMode(str, Enum):
    INITIAL = "initial"
    REFINEMENT = "refinement"


class ArtifactKind(str, Enum):
    SEGMENTED = "segmented"
    HEATMAP = "heatmap"
    SEGMENTATION_UNCERTAINTY = "segmentation_uncertainty"


# ──────────────────────────────────────────────
# Analysis results
# ──────────────────────────────────────────────

class DiagnosisResult(BaseModel):
    """Structured classification returned by the model, after the confidence policy."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    diagnosis: Diagnosis = Field(
        ...,
        description=f"The most likely diagnosis. Must be one of: {', '.join(CLINICAL_DIAGNOSES)}.",
    )
    confidence: str = Field(
        ...,
        description="A confidence score for the diagnosis, as a percentage string (e.g., '95.7%').",
    )
    explanation: str = Field(
        ...,
        description="A detailed clinical description of the findings that support the diagnosis.",
    )
    explainability: str = Field(
        ...,
        description="How the model analyzed the image and what the attention heatmap highlights.",
    )
    uncertainty_statement: str = Field(
        ...,
        alias="uncertaintyStatement",
        description="Factors that make the diagnosis challenging, or a statement that confidence is high.",
    )
    segmentation_uncertainty_statement: str = Field(
        ...,
        alias="segmentationUncertaintyStatement",
        description="Regions with ambiguous boundaries in the segmentation map.",
    )
    anomaly_report: Optional[str] = Field(
        None,
        alias="anomalyReport",
        description="Secondary findings not part of the primary diagnosis. Omit if none.",
    )

    @field_validator("diagnosis", mode="before")
    @classmethod
    def _normalise_diagnosis(cls, v):
        if isinstance(v, str):
            for member in Diagnosis:
                if member.value.lower() == v.strip().lower():
                    return member
        return v

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence_as_text(cls, v):
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return f"{v}%"
        return v

    @property
    def confidence_value(self) -> Optional[float]:
        """Numeric form of `confidence`, or None when it cannot be parsed."""
        from octdx.services.confidence_policy import parse_confidence

        return parse_confidence(self.confidence)


class GeneratedImage(BaseModel):
    """A generated image artifact (segmentation map, uncertainty map or heatmap)."""
    model_config = ConfigDict(frozen=True)

    data: bytes = Field(..., repr=False)
    mime_type: str = "image/png"


class AnalysisOutcome(BaseModel):
    """Everything one orchestration call produced for one image."""
    mode: AnalysisMode
    diagnosis: DiagnosisResult
    heatmap: GeneratedImage
    # Only present in initial mode; refinement leaves the stored maps untouched
    segmented: Optional[GeneratedImage] = None
    segmentation_uncertainty: Optional[GeneratedImage] = None


# ──────────────────────────────────────────────
# Image set entities
# ──────────────────────────────────────────────

class AnalyzableImage(BaseModel):
    """One user-submitted image and everything known about it."""
    id: str
    filename: str = ""
    mime_type: str
    image_bytes: bytes = Field(..., repr=False)
    preview_url: str
    status: ImageStatus = ImageStatus.PENDING
    result: Optional[DiagnosisResult] = None
    error: Optional[str] = None
    segmented_image: Optional[GeneratedImage] = None
    heatmap_image: Optional[GeneratedImage] = None
    segmentation_uncertainty_image: Optional[GeneratedImage] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def artifact(self, kind: ArtifactKind) -> Optional[GeneratedImage]:
        if kind is ArtifactKind.SEGMENTED:
            return self.segmented_image
        if kind is ArtifactKind.HEATMAP:
            return self.heatmap_image
        return self.segmentation_uncertainty_image


class UploadedImage(BaseModel):
    """Raw input handed to ImageSet.submit()."""
    filename: str = ""
    content_type: str = ""
    data: bytes = Field(..., repr=False)


# ──────────────────────────────────────────────
# API Request / Response Models
# ──────────────────────────────────────────────

class RefineRequest(BaseModel):
    """API request to refine an analysis with clinician feedback."""
    feedback: str = Field(
        ...,
        description="Free-text feedback used to re-evaluate the diagnosis and heatmap",
        min_length=1,
        max_length=2000,
    )


class ImageView(BaseModel):
    """API view of an AnalyzableImage; image content is served by URL."""
    id: str
    filename: str
    status: ImageStatus
    result: Optional[DiagnosisResult] = None
    error: Optional[str] = None
    preview_url: str
    segmented_image_url: Optional[str] = None
    heatmap_image_url: Optional[str] = None
    segmentation_uncertainty_image_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_image(cls, image: AnalyzableImage) -> "ImageView":
        def _url(kind: ArtifactKind) -> Optional[str]:
            if image.artifact(kind) is None:
                return None
            return f"/api/images/{image.id}/artifacts/{kind.value}"

        return cls(
            id=image.id,
            filename=image.filename,
            status=image.status,
            result=image.result,
            error=image.error,
            preview_url=image.preview_url,
            segmented_image_url=_url(ArtifactKind.SEGMENTED),
            heatmap_image_url=_url(ArtifactKind.HEATMAP),
            segmentation_uncertainty_image_url=_url(ArtifactKind.SEGMENTATION_UNCERTAINTY),
            created_at=image.created_at,
            updated_at=image.updated_at,
        )


class ImageCollection(BaseModel):
    """API response with the whole image set."""
    images: List[ImageView] = Field(default_factory=list)
    pending_count: int = 0
    is_analyzing: bool = False
