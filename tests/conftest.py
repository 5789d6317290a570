"""Shared fixtures: OSV records and a fake aiohttp session."""

import asyncio
from typing import Any

import aiohttp
import pytest

from depradar.config import OsvConfig

BATCH_URL = "https://osv.test/v1/querybatch"
VULN_URL = "https://osv.test/v1/vulns"


class FakeResponse:
    """Minimal stand-in for ``aiohttp.ClientResponse``."""

    def __init__(self, status: int = 200, payload: Any = None, exc: Exception | None = None, delay: float = 0.0):
        self.status = status
        self._payload = payload
        self._exc = exc
        self._delay = delay

    async def json(self, content_type: str | None = "application/json") -> Any:
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._exc is not None:
            raise self._exc
        return self._payload


class _RequestContext:
    def __init__(self, factory):
        self._factory = factory

    async def __aenter__(self):
        result = self._factory()
        if isinstance(result, Exception):
            raise result
        return result

    async def __aexit__(self, *args):
        return False


class FakeOsvSession:
    """Serves canned OSV responses and records every request.

    Attributes:
        batches: Batch responses returned in order (``FakeResponse`` or
            an exception instance to raise).
        records: Vulnerability ID -> record dict, ``FakeResponse``, or
            exception instance.
        posted: Query lists received by the batch endpoint.
        fetched: Vulnerability IDs requested from the detail endpoint.
        sent_headers: Headers passed with each request, in call order.
    """

    def __init__(self, batches: list[Any] | None = None, records: dict[str, Any] | None = None):
        self.batches = list(batches or [])
        self.records = dict(records or {})
        self.posted: list[list[dict[str, Any]]] = []
        self.fetched: list[str] = []
        self.sent_headers: list[dict[str, str] | None] = []

    def post(self, url: str, json: Any = None, **kwargs: Any) -> _RequestContext:
        assert url == BATCH_URL
        self.posted.append(json["queries"])
        self.sent_headers.append(kwargs.get("headers"))

        def factory():
            return self.batches.pop(0) if self.batches else FakeResponse(500)

        return _RequestContext(factory)

    def get(self, url: str, **kwargs: Any) -> _RequestContext:
        vuln_id = url.rsplit("/", 1)[-1]
        self.fetched.append(vuln_id)
        self.sent_headers.append(kwargs.get("headers"))

        def factory():
            rec = self.records.get(vuln_id)
            if rec is None:
                return FakeResponse(404)
            if isinstance(rec, (FakeResponse, Exception)):
                return rec
            return FakeResponse(200, rec)

        return _RequestContext(factory)


def batch_response(*vuln_lists: list[str]) -> FakeResponse:
    """Build a batch response with one result per package."""
    results = []
    for ids in vuln_lists:
        if ids:
            results.append({"vulns": [{"id": i, "modified": "2024-01-01T00:00:00Z"} for i in ids]})
        else:
            results.append({})
    return FakeResponse(200, {"results": results})


@pytest.fixture
def osv_config() -> OsvConfig:
    return OsvConfig(batch_url=BATCH_URL, vuln_url=VULN_URL, request_timeout=2.0)


@pytest.fixture
def client_error() -> Exception:
    return aiohttp.ClientConnectionError("connection refused")


@pytest.fixture
def critical_record() -> dict[str, Any]:
    """A GitHub-advisory style OSV record with an explicit severity."""
    return {
        "id": "GHSA-crit-0001",
        "aliases": ["CVE-2024-0001"],
        "summary": "Prototype pollution in lodash",
        "details": "Long description.",
        "severity": [{"type": "CVSS_V3", "score": "CVSS:3.1/AV:N/AC:L/PR:N/UI:N/S:U/C:H/I:H/A:H"}],
        "affected": [
            {
                "package": {"name": "lodash", "ecosystem": "npm"},
                "ranges": [{"type": "SEMVER", "events": [{"introduced": "0"}, {"fixed": "4.17.21"}]}],
            }
        ],
        "references": [
            {"type": "ADVISORY", "url": "https://github.com/advisories/GHSA-crit-0001"},
            {"type": "WEB", "url": "http://insecure.example.com/writeup"},
        ],
        "published": "2024-02-01T00:00:00Z",
        "database_specific": {"severity": "CRITICAL", "cwe_ids": ["CWE-1321"]},
    }


@pytest.fixture
def low_record() -> dict[str, Any]:
    """A record with only a CVSS vector to derive severity from."""
    return {
        "id": "GHSA-low-0002",
        "summary": "Minor information leak",
        "severity": [{"type": "CVSS_V3", "score": "CVSS:3.1/AV:L/AC:H/PR:H/UI:R/S:U/C:L/I:N/A:N"}],
    }
