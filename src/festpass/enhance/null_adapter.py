"""Null enhancer: no-op default when no AI service is configured."""

from __future__ import annotations

from festpass.errors import AIServiceError


class NullEnhancer:
    """Always unavailable; the pipeline goes straight to local enhancement."""

    @property
    def provider_name(self) -> str:
        return "null"

    @property
    def model(self) -> str:
        return ""

    def enhance(self, photo: bytes) -> bytes:
        raise AIServiceError("No AI enhancement service configured")

    def is_available(self) -> bool:
        return False
