"""Enhancer resolution: check the configured models once, return the winner.

The result is an ``EnhancerResolution`` value owned by whichever service
instance asked for it (the worker resolves at startup).  Nothing is cached
at module level, so two workers, or a worker and a test, never share a
resolution.
"""

from __future__ import annotations

import logging
import os
from typing import Sequence

import httpx

from festpass.defaults import AI_TIMEOUT_SECONDS, DEFAULT_AI_MODELS
from festpass.enhance.http_adapter import DEFAULT_ENDPOINT, HttpEnhancer
from festpass.enhance.null_adapter import NullEnhancer
from festpass.enhance.port import EnhancerResolution

log = logging.getLogger("festpass.enhance.registry")


def configured_models() -> list[str]:
    raw = os.environ.get("FESTPASS_AI_MODELS", "")
    models = [m.strip() for m in raw.split(",") if m.strip()]
    return models or list(DEFAULT_AI_MODELS)


def resolve_enhancer(
    *,
    api_key: str | None = None,
    endpoint: str | None = None,
    models: Sequence[str] | None = None,
    timeout: float | None = None,
    client: httpx.Client | None = None,
) -> EnhancerResolution:
    """Try *models* in order and return the first one that answers.

    Falls back to ``NullEnhancer`` when no key is configured or no model
    responds.  Arguments default to the ``FESTPASS_AI_*`` env vars.
    """
    api_key = api_key if api_key is not None else os.environ.get("FESTPASS_AI_API_KEY", "")
    if not api_key:
        log.info("No AI API key configured; using local enhancement only")
        return EnhancerResolution(enhancer=NullEnhancer())

    endpoint = endpoint or os.environ.get("FESTPASS_AI_ENDPOINT", DEFAULT_ENDPOINT)
    timeout = timeout if timeout is not None else float(
        os.environ.get("FESTPASS_AI_TIMEOUT", str(AI_TIMEOUT_SECONDS))
    )
    candidates = list(models) if models is not None else configured_models()
    client = client or httpx.Client(timeout=timeout)

    tried: list[str] = []
    for model in candidates:
        tried.append(model)
        enhancer = HttpEnhancer(api_key, model, endpoint=endpoint, timeout=timeout, client=client)
        if enhancer.check_model():
            log.info("AI enhancement resolved to model %s", model)
            return EnhancerResolution(enhancer=enhancer, tried=tried)
        log.warning("AI model %s did not answer", model)

    log.warning("No AI model available (tried %s); using local enhancement only", ", ".join(tried))
    return EnhancerResolution(enhancer=NullEnhancer(), tried=tried)
