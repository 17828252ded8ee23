"""HTTP readiness probe for deployed containers.

HealthProbe issues a single bounded GET against a readiness endpoint and
always reports a structured ProbeResult. Connection errors, timeouts and
unexpected status codes are failures with a ``reason: message`` detail; no
exception escapes check().

Polling, intervals and the overall deadline belong to the orchestrator.
Successive probes share nothing except the pooled HTTP client.

Example usage:
    >>> from healthgate.pipeline.health import HealthProbe
    >>>
    >>> probe = HealthProbe()
    >>> result = await probe.check("http://localhost:8080/health", request_timeout=1.5)
    >>> if result.success:
    ...     print("ready")
    >>> await probe.close()
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone

import httpx

from healthgate.logging import get_logger
from healthgate.models import ProbeResult


class HealthProbe:
    """Single-shot HTTP readiness checker.

    Attributes:
        expected_status_codes: Status codes treated as healthy
        logger: Structured logger instance
    """

    def __init__(self, expected_status_codes: list[int] | None = None) -> None:
        """Initialize HealthProbe.

        Args:
            expected_status_codes: Status codes treated as healthy (default [200])
        """
        self.expected_status_codes = list(expected_status_codes or [200])
        self.logger = get_logger(__name__)
        self._session: httpx.AsyncClient | None = None

    async def _get_session(self) -> httpx.AsyncClient:
        """Get or create the httpx async client.

        Returns:
            Active httpx AsyncClient
        """
        if self._session is None or self._session.is_closed:
            self._session = httpx.AsyncClient(follow_redirects=False)
        return self._session

    async def check(self, url: str, request_timeout: float) -> ProbeResult:
        """Perform one readiness check.

        Args:
            url: Readiness endpoint URL
            request_timeout: Upper bound for the whole request in seconds

        Returns:
            ProbeResult describing success or the reason for failure
        """
        start_time = time.monotonic()
        checked_at = datetime.now(timezone.utc)

        self.logger.debug("health_probe_started", url=url, timeout=request_timeout)

        try:
            session = await self._get_session()
            response = await asyncio.wait_for(
                session.get(url, timeout=request_timeout),
                timeout=request_timeout,
            )
            duration = time.monotonic() - start_time
            status_code = response.status_code

            if status_code not in self.expected_status_codes:
                detail = f"unexpected_status: HTTP {status_code}"
                self.logger.info(
                    "health_probe_bad_status",
                    url=url,
                    status_code=status_code,
                    expected=self.expected_status_codes,
                )
                return ProbeResult(
                    success=False,
                    detail=detail,
                    status_code=status_code,
                    checked_at=checked_at,
                    duration_seconds=duration,
                )

            self.logger.debug(
                "health_probe_passed",
                url=url,
                status_code=status_code,
                response_time=round(duration, 3),
            )
            return ProbeResult(
                success=True,
                detail=f"ok: HTTP {status_code}",
                status_code=status_code,
                checked_at=checked_at,
                duration_seconds=duration,
            )

        except (asyncio.TimeoutError, httpx.TimeoutException):
            duration = time.monotonic() - start_time
            self.logger.info("health_probe_timeout", url=url, timeout=request_timeout)
            return ProbeResult(
                success=False,
                detail=f"timeout: no response within {request_timeout}s",
                checked_at=checked_at,
                duration_seconds=duration,
            )

        except httpx.RequestError as e:
            duration = time.monotonic() - start_time
            self.logger.info(
                "health_probe_connection_error",
                url=url,
                error=str(e),
                error_type=type(e).__name__,
            )
            return ProbeResult(
                success=False,
                detail=f"connection_error: {type(e).__name__}: {e}",
                checked_at=checked_at,
                duration_seconds=duration,
            )

        except Exception as e:
            duration = time.monotonic() - start_time
            self.logger.error(
                "health_probe_unexpected_error",
                url=url,
                error=str(e),
                error_type=type(e).__name__,
            )
            return ProbeResult(
                success=False,
                detail=f"unexpected_error: {type(e).__name__}: {e}",
                checked_at=checked_at,
                duration_seconds=duration,
            )

    async def close(self) -> None:
        """Close the httpx client session.

        Safe to call multiple times.
        """
        if self._session is not None and not self._session.is_closed:
            await self._session.aclose()
        self._session = None
