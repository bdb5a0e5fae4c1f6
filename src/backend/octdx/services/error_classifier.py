"""
Error classification for gateway failures.

Maps an arbitrary exception raised while talking to the inference service to a
stable, user-facing category. Matching is a best-effort substring search over
the lower-cased failure text: rules are evaluated top to bottom and the first
hit wins. Anything unrecognised is Unknown.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    INVALID_CREDENTIAL = "invalid_credential"
    QUOTA_EXCEEDED = "quota_exceeded"
    CONTENT_SAFETY_BLOCKED = "content_safety_blocked"
    SERVICE_UNAVAILABLE = "service_unavailable"
    INVALID_RESPONSE_FORMAT = "invalid_response_format"
    MISSING_ARTIFACT = "missing_artifact"
    UNKNOWN = "unknown"


# Evaluated top to bottom; first match wins.
CLASSIFICATION_RULES: list[tuple[str, ErrorCategory]] = [
    ("api key not valid", ErrorCategory.INVALID_CREDENTIAL),
    ("quota", ErrorCategory.QUOTA_EXCEEDED),
    ("rate limit", ErrorCategory.QUOTA_EXCEEDED),
    ("blocked", ErrorCategory.CONTENT_SAFETY_BLOCKED),
    ("safety", ErrorCategory.CONTENT_SAFETY_BLOCKED),
    ("server error", ErrorCategory.SERVICE_UNAVAILABLE),
    ("500", ErrorCategory.SERVICE_UNAVAILABLE),
]

MESSAGES: dict[ErrorCategory, str] = {
    ErrorCategory.INVALID_CREDENTIAL: (
        "Invalid API Key. Please ensure your API key is correctly configured in your "
        "environment variables. You can verify your key on the Google AI Studio dashboard."
    ),
    ErrorCategory.QUOTA_EXCEEDED: (
        "API Quota Exceeded. You have made too many requests in a short period. Please wait "
        "a moment before trying again or check your usage limits in the Google Cloud console."
    ),
    ErrorCategory.CONTENT_SAFETY_BLOCKED: (
        "Content Safety Error. The request was blocked due to safety settings, which can "
        "occasionally be triggered by medical images. Please try a different image."
    ),
    ErrorCategory.SERVICE_UNAVAILABLE: (
        "AI Service Unavailable. The service is currently experiencing issues on the backend. "
        "Please try again in a few minutes."
    ),
    ErrorCategory.INVALID_RESPONSE_FORMAT: (
        "Could not parse the analysis result from the AI. The format was invalid."
    ),
    ErrorCategory.MISSING_ARTIFACT: (
        "The AI did not return one of the expected images."
    ),
    ErrorCategory.UNKNOWN: (
        "An unexpected error occurred during the analysis. Please check your network "
        "connection and try again. If the problem persists, check the server logs for details."
    ),
}


def classify(failure: Optional[BaseException]) -> ErrorCategory:
    """Return the category of a gateway failure. Never raises."""
    if failure is None:
        return ErrorCategory.UNKNOWN
    try:
        text = str(failure).lower()
    except Exception:
        return ErrorCategory.UNKNOWN

    for needle, category in CLASSIFICATION_RULES:
        if needle in text:
            return category
    return ErrorCategory.UNKNOWN


def message_for(category: ErrorCategory) -> str:
    """Fixed remediation message for a category."""
    return MESSAGES.get(category, MESSAGES[ErrorCategory.UNKNOWN])
