"""
Confidence policy applied to every structured diagnosis.

When the model reports a confidence strictly below the threshold, the diagnosis
is replaced with "Requires Further Review" and the uncertainty statement gets a
disclosure naming the threshold, the reported confidence and the original
finding. Results with an unparsable confidence pass through untouched.
"""
from __future__ import annotations

import logging
import re
from typing import Optional

from octdx.models.schemas import Diagnosis, DiagnosisResult

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 70

# Leading number only, so "95.7%" and "40 percent" both parse
_LEADING_NUMBER = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")

LOW_CONFIDENCE_TEMPLATE = (
    "**Low Confidence Flag:** The AI's confidence of {confidence} is below the "
    "{threshold}% threshold. The initial finding was **'{original}'**. This result is "
    "highly uncertain and requires careful review. {statement}"
)


def parse_confidence(text: Optional[str]) -> Optional[float]:
    """Parse the numeric prefix of a percentage string; None if there is none."""
    if not text:
        return None
    match = _LEADING_NUMBER.match(text)
    if not match:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None


def _format_threshold(threshold: float) -> str:
    return f"{threshold:g}"


def apply(result: DiagnosisResult, threshold: float = DEFAULT_THRESHOLD) -> DiagnosisResult:
    """
    Return `result`, or an overridden copy when its confidence is below `threshold`.

    Args:
        result: Parsed classification from the model
        threshold: Percentage below which the diagnosis is withheld

    Returns:
        The same object when no override applies, otherwise a new DiagnosisResult
    """
    value = result.confidence_value
    if value is None or value >= threshold:
        return result

    original = result.diagnosis.value
    logger.info(
        "Confidence %s below %s%% threshold -- overriding '%s' with '%s'",
        result.confidence, _format_threshold(threshold), original,
        Diagnosis.REQUIRES_FURTHER_REVIEW.value,
    )
    statement = LOW_CONFIDENCE_TEMPLATE.format(
        confidence=result.confidence,
        threshold=_format_threshold(threshold),
        original=original,
        statement=result.uncertainty_statement,
    )
    return result.model_copy(
        update={
            "diagnosis": Diagnosis.REQUIRES_FURTHER_REVIEW,
            "uncertainty_statement": statement,
        }
    )
