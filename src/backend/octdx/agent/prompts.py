"""
Instructions and response schema sent to the inference service.

One instruction per request in the analysis plan. The refinement variants
fold the clinician's feedback into the classification and heatmap requests;
segmentation requests have no refinement variant because they are never
re-issued.
"""
from __future__ import annotations

from typing import Any, Dict

from octdx.models.schemas import CLINICAL_DIAGNOSES, DiagnosisResult

SEGMENTATION_PROMPT = """Generate a medical segmentation map from this retinal OCT scan. \
Use a distinct, high-contrast color palette to delineate retinal layers and pathological features:
- Intraretinal and subretinal fluid: shades of vibrant blue.
- Drusen / sub-RPE deposits: shades of bright yellow.
- Disorganized tissue / CNV: shades of red.
- Healthy retinal layers: other contrasting colors such as green, teal and magenta.
Embed a clear, readable text legend on a dark bar at the bottom of the output image that \
explains the color mapping, e.g. "Color Key: Blue=Fluid, Yellow=Deposits/Drusen, Red=CNV, \
Green/Teal=Retinal Layers"."""

SEGMENTATION_UNCERTAINTY_PROMPT = """Task: generate a segmentation uncertainty map for the \
provided retinal OCT scan.

The map must show how reliable the segmentation of each region is, on a cool-to-warm color scale:
- High confidence (clear, well-defined features such as healthy layers): cool, dark colors \
(dark purple, deep blue).
- High uncertainty: warm, bright colors (bright yellow, white). Highlight the fuzzy edges of \
fluid pockets, the indistinct boundaries of drusen, blurred borders between retinal layers, \
and regions affected by artifacts, noise or low signal.
Output a heatmap-style image overlaid on the original scan structure, where color intensity \
corresponds to the level of uncertainty."""

CLASSIFICATION_PROMPT = """You are an expert AI ophthalmologist. Analyze the provided retinal OCT \
image and classify it as one of: {diagnoses}.

Clinical criteria:
- Dry AMD: large, soft drusen with RPE changes and no fluid.
- Geographic Atrophy: well-demarcated areas of RPE and outer retinal thinning or loss.
- DME: intraretinal and/or subretinal fluid without an identifiable neovascular membrane.
- Drusen: distinct sub-RPE deposits without other signs of AMD.
- CNV (wet AMD): a disruptive, often hyper-reflective lesion under or through the RPE with \
associated subretinal or intraretinal fluid.
- Normal: well-defined layers, a clear foveal depression, none of the signs above.

Fluid appears as dark, optically empty, cyst-like pockets that thicken and separate layers. \
Deposits are solid, lumpy, reflective accumulations beneath the RPE. Check for fluid first:
1. Fluid present -> the diagnosis must be CNV or DME. Look for the neovascular lesion as the \
source of the fluid; diagnose DME only when no such lesion can be identified.
2. No fluid -> the diagnosis must be Geographic Atrophy, AMD, Drusen or Normal, checked in \
that order.

After the primary diagnosis, report any secondary anomalies (epiretinal membrane, \
vitreomacular traction, lamellar hole...) in 'anomalyReport'. Assess your diagnostic \
uncertainty and describe where segmentation would be challenging.

Your response must be a JSON object conforming to the provided schema."""

CLASSIFICATION_REFINEMENT_SUFFIX = """

A previous analysis was performed. The user has provided the following feedback to refine \
your diagnosis: "{feedback}". Please re-evaluate the image, taking this feedback into account. \
Adjust your diagnosis, confidence, and explanations accordingly."""

HEATMAP_PROMPT = """Generate a visual attention map for this retinal OCT scan. Overlay a heatmap \
on the original image, using warm colors (red and yellow) to highlight the most pathologically \
significant regions for a diagnosis: fluid pockets, drusen deposits, areas of retinal thinning. \
Slightly desaturate the rest of the image so the heatmap stands out."""

HEATMAP_REFINEMENT_PROMPT = """A previous analysis was performed on this OCT scan. The user has \
provided feedback: "{feedback}". Generate a NEW attention heatmap that focuses on the areas \
relevant to this feedback, reflecting a re-evaluation of the image. Use warm colors (red, yellow) \
for important areas and desaturate the background."""


def classification_prompt(feedback: str | None = None) -> str:
    prompt = CLASSIFICATION_PROMPT.format(diagnoses=", ".join(CLINICAL_DIAGNOSES))
    if feedback:
        prompt += CLASSIFICATION_REFINEMENT_SUFFIX.format(feedback=feedback)
    return prompt


def heatmap_prompt(feedback: str | None = None) -> str:
    if feedback:
        return HEATMAP_REFINEMENT_PROMPT.format(feedback=feedback)
    return HEATMAP_PROMPT


def classification_schema() -> Dict[str, Any]:
    """Response schema for the classification request, keyed by wire (alias) names."""
    properties: Dict[str, Any] = {}
    required = []
    for name, info in DiagnosisResult.model_fields.items():
        key = info.alias or name
        prop: Dict[str, Any] = {"type": "STRING", "description": info.description}
        if name == "diagnosis":
            prop["enum"] = list(CLINICAL_DIAGNOSES)
        properties[key] = prop
        if info.is_required():
            required.append(key)
    return {"type": "OBJECT", "properties": properties, "required": required}
