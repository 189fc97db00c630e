"""Polling client for a registration's status endpoint.

Polls every ``interval`` seconds for at most ``max_attempts`` attempts and
then gives up, returning the last view seen.  A timed-out poll is not an
error: the caller may simply poll again later.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from festpass.defaults import POLL_INTERVAL_SECONDS, POLL_MAX_ATTEMPTS
from festpass.errors import NotFound, TransientIOError
from festpass.models import RegistrationStatusView

log = logging.getLogger("festpass.client")


@dataclass
class PollResult:
    view: RegistrationStatusView | None
    attempts: int
    timed_out: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "view": self.view.to_dict() if self.view else None,
            "attempts": self.attempts,
            "timed_out": self.timed_out,
        }


class StatusPoller:
    """Bounded status poller over httpx."""

    def __init__(
        self,
        base_url: str,
        *,
        interval: float = POLL_INTERVAL_SECONDS,
        max_attempts: int = POLL_MAX_ATTEMPTS,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.base_url = base_url.rstrip("/")
        self.interval = interval
        self.max_attempts = max_attempts
        self._client = client or httpx.Client(timeout=10.0)
        self._sleep = sleep

    def fetch(self, registration_id: str, token: str) -> RegistrationStatusView:
        """One status request."""
        try:
            resp = self._client.get(
                f"{self.base_url}/api/registrations/{registration_id}/status",
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TransportError as exc:
            raise TransientIOError(f"Status request failed: {exc}") from exc
        if resp.status_code == 404:
            raise NotFound(f"Registration not found: {registration_id}")
        if resp.status_code >= 500:
            raise TransientIOError(f"Status endpoint returned {resp.status_code}")
        resp.raise_for_status()
        return RegistrationStatusView.from_dict(resp.json())

    def poll(self, registration_id: str, token: str) -> PollResult:
        """Poll until the registration is terminal or attempts run out.

        Transient failures count as an attempt and polling continues; a 404
        or an auth failure stops immediately.
        """
        view: RegistrationStatusView | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                view = self.fetch(registration_id, token)
            except TransientIOError as exc:
                log.info("Poll attempt %d for %s failed: %s", attempt, registration_id, exc,
                         extra={"registration_id": registration_id, "attempt": attempt})
            else:
                if view.is_terminal:
                    return PollResult(view=view, attempts=attempt, timed_out=False)
            if attempt < self.max_attempts:
                self._sleep(self.interval)
        log.info("Stopped polling %s after %d attempts", registration_id, self.max_attempts,
                 extra={"registration_id": registration_id})
        return PollResult(view=view, attempts=self.max_attempts, timed_out=True)

    def close(self) -> None:
        self._client.close()
