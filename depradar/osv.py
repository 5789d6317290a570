"""Async OSV client and scan pipeline.

Uses ``aiohttp`` to resolve packages against OSV in two phases:

1. Batch queries (sequential, ``chunk_size`` per request) return only
   vulnerability identifiers per package.
2. Full records are fetched once per *unique* identifier, concurrently,
   since a single advisory is often referenced by many packages.

Usage from synchronous code::

    from depradar.osv import scan_packages_sync
    report = scan_packages_sync(packages)
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Sequence
from typing import Any
from urllib.parse import quote

import aiohttp

from .config import OsvConfig
from .cvss import parse_cvss_score, score_to_severity
from .errors import UpstreamError
from .models import (
    PackageInput,
    PackageResult,
    ScanReport,
    Severity,
    VulnerabilityEntry,
    highest_severity,
)

logger = logging.getLogger(__name__)

_DECIMAL_RE = re.compile(r"(\d+\.\d+)")


def _client_headers(config: OsvConfig) -> dict[str, str]:
    """Build HTTP headers sent with every OSV request."""
    return {
        "User-Agent": config.user_agent,
        "Accept": "application/json",
    }


# ─── Record mapping ──────────────────────────────────────────────────────────


def _vendor_block(record: dict[str, Any]) -> dict[str, Any]:
    block = record.get("database_specific")
    return block if isinstance(block, dict) else {}


def _vendor_cvss_score(value: Any) -> float | None:
    """Parse ``database_specific.cvss``, which may be a number, a vector,
    or free text such as ``"7.5 (HIGH)"``."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str) or not value.strip():
        return None
    if value.strip().upper().startswith("CVSS:"):
        return parse_cvss_score(value.strip())
    m = _DECIMAL_RE.search(value)
    return float(m.group(1)) if m else None


def best_cvss_score(record: dict[str, Any]) -> float | None:
    """Return the highest positive CVSS score found in a record.

    Considers every ``severity[].score`` entry and the vendor-specific
    ``database_specific.cvss`` field.

    Returns:
        Highest score, or None when no source yields a positive score.
    """
    scores: list[float] = []
    for entry in record.get("severity") or []:
        if isinstance(entry, dict) and isinstance(entry.get("score"), str):
            scores.append(parse_cvss_score(entry["score"]))
    vendor = _vendor_cvss_score(_vendor_block(record).get("cvss"))
    if vendor is not None:
        scores.append(vendor)
    positive = [s for s in scores if s > 0]
    return max(positive) if positive else None


def derive_severity(record: dict[str, Any]) -> Severity:
    """Derive a severity tier for an OSV record.

    Precedence, first match wins:

    1. ``database_specific.severity`` naming one of the five tiers.
    2. The highest CVSS score across ``severity[]`` and
       ``database_specific.cvss``.
    3. A tier name given directly as a ``severity[].score``.
    4. ``UNKNOWN``.
    """
    named = Severity.parse(_vendor_block(record).get("severity"))
    if named is not None:
        return named

    score = best_cvss_score(record)
    if score is not None:
        return score_to_severity(score)

    for entry in record.get("severity") or []:
        if isinstance(entry, dict):
            named = Severity.parse(entry.get("score"))
            if named is not None:
                return named
    return Severity.UNKNOWN


def extract_fixed_version(record: dict[str, Any]) -> str | None:
    """Return the first ``fixed`` event across all affected ranges."""
    for affected in record.get("affected") or []:
        if not isinstance(affected, dict):
            continue
        for rng in affected.get("ranges") or []:
            if not isinstance(rng, dict):
                continue
            for event in rng.get("events") or []:
                if isinstance(event, dict) and event.get("fixed"):
                    return str(event["fixed"])
    return None


def https_references(record: dict[str, Any]) -> list[dict[str, str]]:
    """Keep only references with an ``https://`` URL."""
    out: list[dict[str, str]] = []
    for ref in record.get("references") or []:
        if not isinstance(ref, dict):
            continue
        url = ref.get("url")
        if isinstance(url, str) and url.startswith("https://"):
            out.append({"type": str(ref.get("type") or "WEB"), "url": url})
    return out


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if isinstance(v, str)]


def to_vulnerability_entry(record: dict[str, Any]) -> VulnerabilityEntry:
    """Map a full OSV record to a ``VulnerabilityEntry``."""
    score = best_cvss_score(record)
    return VulnerabilityEntry(
        id=str(record.get("id") or ""),
        aliases=_str_list(record.get("aliases")),
        summary=record.get("summary") or "No summary available",
        details=record.get("details") or "",
        severity=derive_severity(record),
        cvss_score=f"{score:.1f}" if score is not None else None,
        cwe_ids=_str_list(_vendor_block(record).get("cwe_ids")),
        fixed_in=extract_fixed_version(record),
        references=https_references(record),
        published_at=record.get("published") or None,
    )


# ─── Network phases ──────────────────────────────────────────────────────────


def _chunks(items: Sequence[Any], size: int) -> list[Sequence[Any]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


async def _request_batch(
    session: aiohttp.ClientSession,
    config: OsvConfig,
    queries: Sequence[dict[str, Any]],
) -> Any:
    async with session.post(
        config.batch_url, json={"queries": list(queries)}, headers=_client_headers(config)
    ) as resp:
        if resp.status < 200 or resp.status >= 300:
            raise UpstreamError(f"OSV batch API returned {resp.status}", status=resp.status)
        return await resp.json(content_type=None)


async def _post_batch(
    session: aiohttp.ClientSession,
    config: OsvConfig,
    queries: Sequence[dict[str, Any]],
) -> list[list[dict[str, Any]]]:
    """Submit one batch request and return the reference list per query."""
    try:
        data = await asyncio.wait_for(_request_batch(session, config, queries), timeout=config.request_timeout)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
        raise UpstreamError(f"OSV batch request failed: {e}") from e

    results = data.get("results") if isinstance(data, dict) else None
    if not isinstance(results, list):
        raise UpstreamError("OSV batch response is missing a results list")
    if len(results) != len(queries):
        raise UpstreamError(f"OSV batch response has {len(results)} results for {len(queries)} queries")

    out: list[list[dict[str, Any]]] = []
    for result in results:
        vulns = result.get("vulns") if isinstance(result, dict) else None
        if vulns is not None and not isinstance(vulns, list):
            raise UpstreamError(f"OSV batch result has malformed vulns: {type(vulns).__name__}")
        refs = [v for v in vulns or [] if isinstance(v, dict) and isinstance(v.get("id"), str)]
        out.append(refs)
    return out


async def query_vulnerability_ids(
    session: aiohttp.ClientSession,
    packages: Sequence[PackageInput],
    config: OsvConfig,
) -> list[list[dict[str, Any]]]:
    """Phase 1: resolve each package to its ``{id, modified}`` references.

    The returned list is aligned index-for-index with ``packages``.

    Raises:
        UpstreamError: on any failed or misaligned batch.
    """
    queries = [
        {"package": {"name": p.name, "ecosystem": config.ecosystem}, "version": p.version}
        for p in packages
    ]
    id_results: list[list[dict[str, Any]]] = []
    for chunk in _chunks(queries, config.chunk_size):
        id_results.extend(await _post_batch(session, config, chunk))
    return id_results


async def _fetch_record(session: aiohttp.ClientSession, config: OsvConfig, vuln_id: str) -> dict[str, Any] | None:
    url = f"{config.vuln_url}/{quote(vuln_id, safe='')}"
    async with session.get(url, headers=_client_headers(config)) as resp:
        if resp.status < 200 or resp.status >= 300:
            logger.debug("OSV detail %s returned %s", vuln_id, resp.status)
            return None
        data = await resp.json(content_type=None)
    return data if isinstance(data, dict) else None


async def fetch_vulnerability_details(
    session: aiohttp.ClientSession,
    vuln_ids: Sequence[str],
    config: OsvConfig,
) -> dict[str, dict[str, Any]]:
    """Phase 2: fetch full records, at most ``detail_concurrency`` at once.

    Individual failures and timeouts are dropped from the result; they
    never fail the scan.
    """
    sem = asyncio.Semaphore(config.detail_concurrency)

    async def fetch_one(vuln_id: str) -> tuple[str, dict[str, Any] | None]:
        async with sem:
            try:
                record = await asyncio.wait_for(
                    _fetch_record(session, config, vuln_id), timeout=config.request_timeout
                )
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                logger.debug("OSV detail %s failed: %s", vuln_id, e)
                record = None
        return vuln_id, record

    results = await asyncio.gather(*(fetch_one(v) for v in vuln_ids))
    return {vuln_id: record for vuln_id, record in results if record is not None}


def unique_ids(id_results: Sequence[Sequence[dict[str, Any]]]) -> list[str]:
    """Collect identifiers across all packages, first-seen order."""
    return list(dict.fromkeys(ref["id"] for refs in id_results for ref in refs))


def assemble_report(
    packages: Sequence[PackageInput],
    id_results: Sequence[Sequence[dict[str, Any]]],
    records: dict[str, dict[str, Any]],
) -> ScanReport:
    """Phase 3: join references with fetched records and aggregate.

    Each record is mapped once and the entry shared between packages.
    References whose record failed to resolve are dropped.
    """
    entries = {vuln_id: to_vulnerability_entry(rec) for vuln_id, rec in records.items()}

    results: list[PackageResult] = []
    for i, pkg in enumerate(packages):
        refs = id_results[i] if i < len(id_results) else []
        vulns = [entries[ref["id"]] for ref in refs if ref["id"] in entries]
        results.append(
            PackageResult(
                name=pkg.name,
                version=pkg.version,
                is_dev=pkg.is_dev,
                vulnerabilities=vulns,
                highest_severity=highest_severity([v.severity for v in vulns]),
            )
        )
    return ScanReport.from_results(results)


# ─── Orchestrator ────────────────────────────────────────────────────────────


async def _scan(
    session: aiohttp.ClientSession,
    packages: Sequence[PackageInput],
    config: OsvConfig,
) -> ScanReport:
    id_results = await query_vulnerability_ids(session, packages, config)
    ids = unique_ids(id_results)
    records = await fetch_vulnerability_details(session, ids, config) if ids else {}
    if len(records) < len(ids):
        logger.info("Resolved %d of %d OSV records", len(records), len(ids))
    report = assemble_report(packages, id_results, records)
    logger.info(
        "Scanned %d packages: %d affected, %d unique advisories",
        report.total_packages,
        report.affected_count,
        len(records),
    )
    return report


async def scan_packages(
    packages: Sequence[PackageInput],
    config: OsvConfig | None = None,
    session: aiohttp.ClientSession | None = None,
) -> ScanReport:
    """Scan packages against OSV and build a ``ScanReport``.

    Args:
        packages: Validated, deduplicated packages.
        config: OSV endpoints and limits. Defaults to the public service.
        session: Optional session to reuse; one is created (and closed)
            per scan otherwise.

    Returns:
        The aggregated report. An empty input returns an empty report
        without touching the network.

    Raises:
        UpstreamError: if a batch request fails or its response does not
            line up with the submitted queries.
    """
    if not packages:
        return ScanReport()

    config = config or OsvConfig()
    if session is not None:
        return await _scan(session, packages, config)

    timeout = aiohttp.ClientTimeout(total=config.request_timeout)
    async with aiohttp.ClientSession(headers=_client_headers(config), timeout=timeout) as own_session:
        return await _scan(own_session, packages, config)


def scan_packages_sync(
    packages: Sequence[PackageInput],
    config: OsvConfig | None = None,
) -> ScanReport:
    """Synchronous wrapper around ``scan_packages`` via ``asyncio.run``."""
    return asyncio.run(scan_packages(packages, config))
