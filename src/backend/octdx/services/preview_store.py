"""
In-memory store for image previews.

Each submitted image gets an opaque preview URL that stays valid until the
image is deleted and the handle revoked.
"""
from __future__ import annotations

import logging
import uuid
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)

PREVIEW_PREFIX = "/api/previews/"


class PreviewStore:
    """Issues and revokes preview handles for submitted images."""

    def __init__(self):
        self._previews: Dict[str, Tuple[bytes, str]] = {}

    def create(self, data: bytes, mime_type: str) -> str:
        token = uuid.uuid4().hex
        self._previews[token] = (data, mime_type)
        return PREVIEW_PREFIX + token

    def get(self, url_or_token: str) -> Optional[Tuple[bytes, str]]:
        return self._previews.get(self._token(url_or_token))

    def revoke(self, url_or_token: str) -> bool:
        """Release a preview. Returns False if it was already gone."""
        released = self._previews.pop(self._token(url_or_token), None) is not None
        if not released:
            logger.debug(f"Preview {url_or_token} already revoked")
        return released

    def __contains__(self, url_or_token: str) -> bool:
        return self._token(url_or_token) in self._previews

    @staticmethod
    def _token(url_or_token: str) -> str:
        if url_or_token.startswith(PREVIEW_PREFIX):
            return url_or_token[len(PREVIEW_PREFIX):]
        return url_or_token
