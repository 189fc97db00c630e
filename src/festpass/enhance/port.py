"""Enhancer port: protocol for photo enhancement adapters."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from festpass.models import now_iso


@runtime_checkable
class EnhancerPort(Protocol):
    """Protocol for external photo enhancement services."""

    @property
    def provider_name(self) -> str: ...

    @property
    def model(self) -> str: ...

    def enhance(self, photo: bytes) -> bytes: ...

    def is_available(self) -> bool: ...


@dataclass
class EnhancerResolution:
    """Outcome of probing the configured models, held by one service instance."""

    enhancer: EnhancerPort
    tried: list[str] = field(default_factory=list)
    resolved_at: str = field(default_factory=now_iso)

    @property
    def model(self) -> str:
        return self.enhancer.model

    @property
    def available(self) -> bool:
        return self.enhancer.is_available()

    def to_dict(self) -> dict[str, object]:
        return {
            "provider": self.enhancer.provider_name,
            "model": self.model,
            "available": self.available,
            "tried": list(self.tried),
            "resolved_at": self.resolved_at,
        }
