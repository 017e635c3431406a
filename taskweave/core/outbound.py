"""Outbound HTTP calls for external and webhook steps.

One bounded-timeout request per step execution; there is no retry here.
Every call is recorded as a WebhookAttempt whether it succeeded or not.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from taskweave.exceptions import OutboundCallError
from taskweave.types import DEFAULT_SUCCESS_STATUS_CODES, WebhookAttempt

logger = logging.getLogger(__name__)

_MAX_RECORDED_TEXT = 10_000


def _parse_response_body(content: bytes, encoding: str = "utf-8") -> Any:
    """JSON when possible, else (truncated) text."""
    if not content:
        return None
    try:
        return json.loads(content)
    except (json.JSONDecodeError, ValueError):
        return content.decode(encoding, errors="replace")[:_MAX_RECORDED_TEXT]


class OutboundCaller:
    """Issues outbound requests through a shared ``httpx.AsyncClient``.

    Pass *client* to inject a transport (``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 30.0,
        success_status_codes: Optional[list[int]] = None,
    ) -> None:
        self._client = client or httpx.AsyncClient()
        self._timeout = timeout_seconds
        self._success_codes = success_status_codes or list(DEFAULT_SUCCESS_STATUS_CODES)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def send(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        body: Any = None,
        timeout_seconds: Optional[float] = None,
        success_status_codes: Optional[list[int]] = None,
    ) -> tuple[int, Any]:
        """
        Perform one request and return ``(status_code, parsed_body)``.

        Raises:
            OutboundCallError: transport failure, timeout, or a status outside
                the success allow-list.
        """
        request_kwargs: dict[str, Any] = {"headers": headers or {}}
        if body is not None and method.upper() not in ("GET", "HEAD", "DELETE"):
            if isinstance(body, (dict, list)):
                request_kwargs["json"] = body
            else:
                request_kwargs["content"] = str(body)
        try:
            response = await self._client.request(
                method.upper(), url,
                timeout=timeout_seconds or self._timeout,
                **request_kwargs,
            )
        except httpx.TimeoutException as exc:
            raise OutboundCallError(f"Request to {url} timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise OutboundCallError(f"Request to {url} failed: {exc}") from exc

        parsed = _parse_response_body(response.content)
        if response.status_code not in (success_status_codes or self._success_codes):
            raise OutboundCallError(
                f"{method.upper()} {url} returned HTTP {response.status_code}",
                status_code=response.status_code,
                details={"response_body": parsed},
            )
        return response.status_code, parsed

    async def call(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        body: Any = None,
        timeout_seconds: Optional[float] = None,
        success_status_codes: Optional[list[int]] = None,
        attempt_number: int = 1,
    ) -> WebhookAttempt:
        """Like ``send`` but never raises: the outcome is returned as an attempt record."""
        started = datetime.now(timezone.utc)
        t0 = time.monotonic()
        try:
            status_code, parsed = await self.send(
                method, url, headers, body, timeout_seconds, success_status_codes,
            )
        except OutboundCallError as exc:
            logger.warning("[Outbound] %s", exc)
            return WebhookAttempt(
                attempt_number=attempt_number,
                started_at=started,
                completed_at=datetime.now(timezone.utc),
                status="failed",
                http_status=exc.status_code,
                response_body=exc.details.get("response_body"),
                error=str(exc),
                duration_ms=int((time.monotonic() - t0) * 1000),
            )
        logger.info("[Outbound] %s %s → %d", method.upper(), url, status_code)
        return WebhookAttempt(
            attempt_number=attempt_number,
            started_at=started,
            completed_at=datetime.now(timezone.utc),
            status="success",
            http_status=status_code,
            response_body=parsed,
            duration_ms=int((time.monotonic() - t0) * 1000),
        )
