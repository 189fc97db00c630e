"""HTTP enhancer for Gemini-style ``generateContent`` image endpoints."""

from __future__ import annotations

import base64
import logging
from typing import Any

import httpx

from festpass.defaults import AI_MODEL_CHECK_TIMEOUT_SECONDS, AI_TIMEOUT_SECONDS
from festpass.errors import AIServiceError

log = logging.getLogger("festpass.enhance.http")

DEFAULT_ENDPOINT = "https://generativelanguage.googleapis.com/v1beta"

ENHANCE_PROMPT = (
    "Enhance this portrait for an event ID card: even out lighting, improve "
    "contrast and colour, keep the person's identity, pose and background "
    "unchanged. Return only the edited image."
)


def _extract_image(data: dict[str, Any]) -> bytes:
    """Pull the first inline image out of a generateContent response."""
    for candidate in data.get("candidates") or []:
        for part in (candidate.get("content") or {}).get("parts") or []:
            inline = part.get("inline_data") or part.get("inlineData")
            if inline and inline.get("data"):
                return base64.b64decode(inline["data"])
    raise AIServiceError("Enhancement response contained no image")


class HttpEnhancer:
    """Calls one model on a remote image-generation API."""

    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        endpoint: str = DEFAULT_ENDPOINT,
        timeout: float = AI_TIMEOUT_SECONDS,
        client: httpx.Client | None = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._endpoint = endpoint.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)

    @property
    def provider_name(self) -> str:
        return "http"

    @property
    def model(self) -> str:
        return self._model

    def is_available(self) -> bool:
        return bool(self._api_key)

    def _headers(self) -> dict[str, str]:
        return {"x-goog-api-key": self._api_key, "content-type": "application/json"}

    def check_model(self) -> bool:
        """True if the endpoint knows this model and accepts our key."""
        try:
            resp = self._client.get(
                f"{self._endpoint}/models/{self._model}",
                headers=self._headers(),
                timeout=AI_MODEL_CHECK_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError as exc:
            log.info("Model check for %s failed: %s", self._model, exc)
            return False
        return resp.status_code == 200

    def enhance(self, photo: bytes) -> bytes:
        body = {
            "contents": [{
                "parts": [
                    {"text": ENHANCE_PROMPT},
                    {"inline_data": {
                        "mime_type": "image/png",
                        "data": base64.b64encode(photo).decode("ascii"),
                    }},
                ],
            }],
        }
        try:
            resp = self._client.post(
                f"{self._endpoint}/models/{self._model}:generateContent",
                headers=self._headers(),
                json=body,
            )
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise AIServiceError(f"Enhancement call to {self._model} failed: {exc}") from exc
        return _extract_image(data)
