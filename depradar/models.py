"""Data models for scan inputs, findings, and reports.

All models are plain dataclasses. ``to_dict()`` produces the wire shape
consumed by clients, which uses camelCase keys.
"""

import datetime as dt
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Severity(str, Enum):
    """Severity tier of a finding, ordered ``CRITICAL`` down to ``UNKNOWN``."""

    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    UNKNOWN = "UNKNOWN"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @property
    def bucket(self) -> str:
        """Key used in ``ScanReport.counts``."""
        return self.value.lower()

    @classmethod
    def parse(cls, value: Any) -> "Severity | None":
        """Return the tier named by ``value`` (case-insensitive), else None."""
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().upper())
        except ValueError:
            return None


_SEVERITY_RANK = {
    Severity.CRITICAL: 5,
    Severity.HIGH: 4,
    Severity.MEDIUM: 3,
    Severity.LOW: 2,
    Severity.UNKNOWN: 1,
}


def highest_severity(severities: list[Severity]) -> Severity:
    """Return the most severe tier in ``severities``, or ``UNKNOWN`` if empty."""
    best = Severity.UNKNOWN
    for sev in severities:
        if sev.rank > best.rank:
            best = sev
    return best


def now_utc_iso() -> str:
    """Return the current UTC time as an ISO 8601 string."""
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat()


@dataclass(frozen=True)
class PackageInput:
    """A single (name, version) pair to scan.

    Attributes:
        name: npm package name, optionally scoped (``@scope/name``).
        version: Exact version string used for the OSV lookup.
        is_dev: Whether the dependency is development-only.
    """

    name: str
    version: str
    is_dev: bool = False

    @property
    def key(self) -> str:
        return f"{self.name}@{self.version}"

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "version": self.version, "isDev": self.is_dev}


@dataclass(frozen=True)
class VulnerabilityEntry:
    """A resolved vulnerability record.

    Built once per OSV identifier and shared by every package that
    references it.

    Attributes:
        id: OSV identifier (e.g. ``GHSA-xxxx-xxxx-xxxx``).
        aliases: Other identifiers for the same issue (CVE IDs etc.).
        summary: One-line summary.
        details: Long-form description (may be Markdown).
        severity: Derived severity tier.
        cvss_score: Highest computable CVSS score as a one-decimal string.
        cwe_ids: CWE identifiers from the vendor-specific block.
        fixed_in: First fixed version found in the affected ranges.
        references: ``{"type", "url"}`` dicts, ``https://`` only.
        published_at: Publication timestamp from the database.
    """

    id: str
    summary: str = "No summary available"
    details: str = ""
    severity: Severity = Severity.UNKNOWN
    cvss_score: str | None = None
    aliases: list[str] = field(default_factory=list)
    cwe_ids: list[str] = field(default_factory=list)
    fixed_in: str | None = None
    references: list[dict[str, str]] = field(default_factory=list)
    published_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "aliases": list(self.aliases),
            "summary": self.summary,
            "details": self.details,
            "severity": self.severity.value,
            "cvssScore": self.cvss_score,
            "cweIds": list(self.cwe_ids),
            "fixedIn": self.fixed_in,
            "references": [dict(r) for r in self.references],
            "publishedAt": self.published_at,
        }


@dataclass
class PackageResult:
    """Scan outcome for one input package."""

    name: str
    version: str
    is_dev: bool
    vulnerabilities: list[VulnerabilityEntry] = field(default_factory=list)
    highest_severity: Severity = Severity.UNKNOWN

    @property
    def affected(self) -> bool:
        return bool(self.vulnerabilities)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "isDev": self.is_dev,
            "vulnerabilities": [v.to_dict() for v in self.vulnerabilities],
            "highestSeverity": self.highest_severity.value,
        }


def empty_counts() -> dict[str, int]:
    return {sev.bucket: 0 for sev in Severity}


@dataclass
class ScanReport:
    """Aggregated result of a scan.

    Attributes:
        scanned_at: ISO 8601 UTC timestamp of the scan.
        total_packages: Number of packages submitted.
        affected_count: Packages with at least one finding.
        counts: Finding occurrences per severity bucket. A package with
            three findings contributes three.
        packages: Per-package results in input order.
    """

    scanned_at: str = field(default_factory=now_utc_iso)
    total_packages: int = 0
    affected_count: int = 0
    counts: dict[str, int] = field(default_factory=empty_counts)
    packages: list[PackageResult] = field(default_factory=list)

    @classmethod
    def from_results(cls, results: list[PackageResult]) -> "ScanReport":
        """Aggregate per-package results into a report."""
        counts = empty_counts()
        for pkg in results:
            for vuln in pkg.vulnerabilities:
                counts[vuln.severity.bucket] += 1
        return cls(
            total_packages=len(results),
            affected_count=sum(1 for p in results if p.affected),
            counts=counts,
            packages=results,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "scannedAt": self.scanned_at,
            "totalPackages": self.total_packages,
            "affectedCount": self.affected_count,
            "counts": dict(self.counts),
            "packages": [p.to_dict() for p in self.packages],
        }
