"""
Health Verifier
~~~~~~~~~~~~~~~

Judges whether a freshly started backend unit serves correctly by
querying core reference data (the currency list) over GraphQL.

A response passes iff it contains the data key and does not contain
the empty-collection sentinel. Probing is retried a bounded number of
times with exponential backoff and an explicit per-request timeout;
retrying never changes how a single response is classified.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

import httpx

from swapguard.config.schema import HealthConfig
from swapguard.core.models import HealthProbeResult

__all__ = ["HealthVerifier"]

logger = logging.getLogger(__name__)


class HealthVerifier:
    """
    Probes a backend unit's GraphQL endpoint.

    Args:
        config: Probe query, markers, timeout and retry policy.
        client: Optional pre-built ``httpx.Client``; one is created per
            verification when omitted.
        sleep: Sleep function used between attempts.
    """

    def __init__(
        self,
        config: HealthConfig,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._client = client
        self._sleep = sleep

    def url_for(self, port: int, host: str = "127.0.0.1") -> str:
        return f"http://{host}:{port}{self._config.path}"

    def classify(self, body: str) -> bool:
        """Return True if a response body shows live reference data."""
        config = self._config
        return config.data_key in body and config.empty_sentinel not in body

    def delays(self) -> list[float]:
        """Backoff delays slept before each retry."""
        delays: list[float] = []
        delay = self._config.initial_delay
        for _ in range(self._config.max_attempts - 1):
            delays.append(min(delay, self._config.max_delay))
            delay *= self._config.backoff_factor
        return delays

    def probe_once(self, url: str, client: httpx.Client) -> HealthProbeResult:
        """Issue a single probe request and classify the response."""
        try:
            response = client.post(
                url,
                json={"query": self._config.query},
                headers={"Content-Type": "application/json"},
                timeout=self._config.timeout,
            )
        except httpx.HTTPError as exc:
            logger.debug("Probe of %s failed: %s", url, exc)
            error = str(exc) or type(exc).__name__
            return HealthProbeResult(passed=False, error=error)

        body = response.text
        passed = response.is_success and self.classify(body)
        return HealthProbeResult(
            passed=passed,
            raw_response=body,
            status_code=response.status_code,
        )

    def verify(self, url: str) -> HealthProbeResult:
        """
        Probe ``url`` until it passes or the attempt budget is spent.

        Returns:
            The first passing result, or the last failing one.
        """
        if self._client is not None:
            return self._verify_with(url, self._client)
        with httpx.Client(timeout=self._config.timeout) as client:
            return self._verify_with(url, client)

    def _verify_with(self, url: str, client: httpx.Client) -> HealthProbeResult:
        delays = self.delays()
        result = HealthProbeResult(passed=False)
        for attempt in range(1, self._config.max_attempts + 1):
            result = self.probe_once(url, client)
            result.attempts = attempt
            if result.passed:
                logger.info("Health check passed for %s (attempt %d)", url, attempt)
                return result
            logger.warning(
                "Health check attempt %d/%d for %s failed: %s",
                attempt,
                self._config.max_attempts,
                url,
                result.error
                or f"HTTP {result.status_code}: {result.raw_response[:200]!r}",
            )
            if attempt <= len(delays):
                self._sleep(delays[attempt - 1])

        logger.error(
            "Health check failed for %s after %d attempts", url, result.attempts
        )
        return result
