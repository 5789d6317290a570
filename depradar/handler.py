"""Transport-agnostic scan request handler.

Implements the ``POST /api/scan`` contract independently of any web
framework: callers pass the raw body and request headers, and get back
a status code, a JSON-serializable body, and response headers.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from .config import ScannerConfig
from .errors import UpstreamError, ValidationError
from .manifest import extract_from_request
from .models import PackageInput, ScanReport
from .osv import scan_packages
from .ratelimit import SlidingWindowRateLimiter, default_limiter, get_client_ip

logger = logging.getLogger(__name__)

Scanner = Callable[[Sequence[PackageInput]], Awaitable[ScanReport]]

UPSTREAM_MESSAGE = "Failed to reach the vulnerability database. Please try again."
INTERNAL_MESSAGE = "An unexpected error occurred while scanning."
RATE_LIMITED_MESSAGE = "Too many requests. Please wait before scanning again."


@dataclass
class HandlerResponse:
    """Framework-neutral HTTP response."""

    status: int
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


def _error(message: str, code: str, status: int, headers: dict[str, str] | None = None) -> HandlerResponse:
    return HandlerResponse(
        status=status,
        body={"ok": False, "error": message, "code": code},
        headers={"Cache-Control": "no-store", **(headers or {})},
    )


class ScanHandler:
    """Rate-limits, validates, and runs scan requests.

    Attributes:
        config: Scanner settings (limits, OSV endpoints).
        limiter: Rate limiter shared across requests.
    """

    def __init__(
        self,
        config: ScannerConfig | None = None,
        limiter: SlidingWindowRateLimiter | None = None,
        scanner: Scanner | None = None,
    ):
        self.config = config or ScannerConfig()
        self.limiter = limiter if limiter is not None else default_limiter
        self._scanner = scanner
        if self.config.rate_limit.enabled:
            self.limiter.start_sweeper(self.config.rate_limit.sweep_interval_s)

    def close(self) -> None:
        """Stop the limiter's background sweeper."""
        self.limiter.stop_sweeper()

    async def _scan(self, packages: Sequence[PackageInput]) -> ScanReport:
        if self._scanner is not None:
            return await self._scanner(packages)
        return await scan_packages(packages, self.config.osv)

    def _too_large(self) -> HandlerResponse:
        limit_kb = self.config.max_body_bytes // 1000
        return _error(f"Request body too large (max {limit_kb} KB).", "PAYLOAD_TOO_LARGE", 413)

    async def handle(self, raw_body: bytes | str, headers: Mapping[str, str]) -> HandlerResponse:
        """Process one scan request.

        Args:
            raw_body: Request body as received.
            headers: Request headers (any case).

        Returns:
            ``HandlerResponse`` ready to be serialized by the transport.
        """
        lowered = {str(k).lower(): v for k, v in headers.items()}
        rl = self.config.rate_limit

        remaining: int | None = None
        if rl.enabled:
            limit = self.limiter.check(get_client_ip(lowered), rl.per_minute, rl.window_ms)
            if not limit.allowed:
                retry_after = max(1, math.ceil(limit.reset_in_ms / 1000))
                return _error(RATE_LIMITED_MESSAGE, "RATE_LIMITED", 429, {"Retry-After": str(retry_after)})
            remaining = limit.remaining

        if "application/json" not in (lowered.get("content-type") or ""):
            return _error("Content-Type must be application/json.", "INVALID_CONTENT_TYPE", 415)

        content_length = lowered.get("content-length")
        if content_length is not None:
            try:
                declared = int(content_length)
            except ValueError:
                declared = None
            if declared is not None and declared > self.config.max_body_bytes:
                return self._too_large()

        body_bytes = raw_body.encode("utf-8") if isinstance(raw_body, str) else raw_body
        if len(body_bytes) > self.config.max_body_bytes:
            return self._too_large()

        try:
            body = json.loads(body_bytes.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError, RecursionError):
            return _error("Invalid JSON body.", "INVALID_JSON", 400)

        try:
            extraction = extract_from_request(body, self.config.max_packages)
            report = await self._scan(extraction.packages)
        except ValidationError as e:
            return _error(str(e), "VALIDATION_ERROR", 400)
        except UpstreamError as e:
            logger.warning("OSV fetch failed: %s", e)
            return _error(UPSTREAM_MESSAGE, "UPSTREAM_ERROR", 502)
        except Exception:
            logger.exception("Unexpected error while scanning")
            return _error(INTERNAL_MESSAGE, "INTERNAL_ERROR", 500)

        out_headers = {"Cache-Control": "no-store"}
        if remaining is not None:
            out_headers["X-Remaining-Requests"] = str(remaining)
        return HandlerResponse(status=200, body={"ok": True, "report": report.to_dict()}, headers=out_headers)
