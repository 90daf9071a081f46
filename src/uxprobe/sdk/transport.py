"""Batch delivery over HTTP."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from uxprobe.sdk.state import EmitterState, SendOutcome

log = structlog.get_logger()

# Client errors that say "try later" rather than "never".
RETRYABLE_CLIENT_ERRORS = frozenset({408, 429})


@dataclass
class RetryPolicy:
    """
    Exponential backoff with jitter.

    Retry n (1-indexed) waits min(base * 2**n + jitter, cap), where jitter is
    uniform within +/- `jitter` of base * 2**n.
    """
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.2
    max_attempts: int = 3

    def delay(self, attempt: int, rng: random.Random) -> float:
        raw = self.base_delay * 2 ** attempt
        offset = raw * self.jitter * rng.uniform(-1.0, 1.0)
        return min(raw + offset, self.max_delay)


def classify(response: httpx.Response) -> SendOutcome:
    if response.is_success:
        return SendOutcome.ACKED
    if response.is_client_error and response.status_code not in RETRYABLE_CLIENT_ERRORS:
        return SendOutcome.REJECTED
    return SendOutcome.RETRYABLE


class Transport:
    """
    Sends event batches to the ingestion service.

    Neither send path raises: failures come back as a SendOutcome and are
    logged, so host code never sees a delivery error.
    """

    def __init__(
        self,
        state: EmitterState,
        client: httpx.AsyncClient | None = None,
        policy: RetryPolicy | None = None,
        rng: random.Random | None = None,
    ):
        self.state = state
        self.policy = policy or RetryPolicy()
        self.rng = rng or random.Random()
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            base_url=state.config.endpoint,
            timeout=state.config.request_timeout,
        )

    async def send(self, batch: list[dict[str, Any]]) -> SendOutcome:
        """One delivery attempt."""
        try:
            response = await self.client.post("/events", json={"events": batch})
        except httpx.HTTPError as e:
            log.warning("transport.send.failed", events=len(batch), error=str(e))
            return SendOutcome.RETRYABLE

        outcome = classify(response)
        if outcome is SendOutcome.REJECTED:
            log.warning(
                "transport.send.rejected",
                events=len(batch),
                status_code=response.status_code,
                detail=_detail(response),
            )
        elif outcome is SendOutcome.RETRYABLE:
            log.warning(
                "transport.send.unavailable",
                events=len(batch),
                status_code=response.status_code,
            )
        else:
            self._log_partial_errors(response)
            log.debug("transport.send.ok", events=len(batch))
        return outcome

    async def send_best_effort(self, batch: list[dict[str, Any]]) -> SendOutcome:
        """
        Fire-and-forget delivery for pages that are going away.

        Uses a short timeout and is never retried.
        """
        try:
            response = await self.client.post(
                "/events",
                json={"events": batch},
                timeout=self.state.config.best_effort_timeout,
            )
        except httpx.HTTPError as e:
            log.info("transport.best_effort.failed", events=len(batch), error=str(e))
            return SendOutcome.RETRYABLE

        outcome = classify(response)
        if outcome is SendOutcome.REJECTED:
            log.warning(
                "transport.best_effort.rejected",
                events=len(batch),
                status_code=response.status_code,
                detail=_detail(response),
            )
        return outcome

    async def fetch_test(self, test_id: str) -> dict[str, Any]:
        """Loads a test definition. Raises httpx errors to the caller."""
        response = await self.client.get(f"/tests/{test_id}")
        response.raise_for_status()
        return response.json()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    def _log_partial_errors(self, response: httpx.Response) -> None:
        # Per-event server errors are not resent; they are only surfaced here.
        try:
            errors = response.json().get("errors") or []
        except (ValueError, AttributeError):
            return
        for error in errors:
            log.warning("transport.event.rejected", **error)


def _detail(response: httpx.Response) -> Any:
    try:
        return response.json().get("detail")
    except (ValueError, AttributeError):
        return response.text
