"""Command-line entry point.

Usage::

    depradar scan package-lock.json --json out/report.json --markdown out/report.md
    depradar scan package.json --fail-on high
    depradar score "CVSS:3.1/AV:N/AC:L/PR:N/UI:N/S:U/C:H/I:H/A:H"
"""

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Sequence

from .config import ScannerConfig, load_settings
from .cvss import parse_cvss_score, score_to_severity
from .errors import UpstreamError, ValidationError
from .manifest import extract
from .models import ScanReport, Severity
from .osv import scan_packages_sync
from .report import write_json_report, write_markdown_report

EXIT_OK = 0
EXIT_FINDINGS = 1
EXIT_INVALID = 2
EXIT_UPSTREAM = 3

FAIL_ON_CHOICES = ("critical", "high", "medium", "low")


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="depradar", description="Scan npm dependencies against OSV.")
    p.add_argument("-c", "--config", type=Path, default=None, help="Path to depradar.yaml")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = p.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Scan a package.json or package-lock.json")
    scan.add_argument("path", type=Path, help="Manifest or lock file to scan")
    scan.add_argument("--json", dest="json_out", type=Path, default=None, help="Write the JSON report here")
    scan.add_argument("--markdown", dest="md_out", type=Path, default=None, help="Write a Markdown report here")
    scan.add_argument(
        "--fail-on",
        choices=FAIL_ON_CHOICES,
        default=None,
        help="Exit 1 if any finding is at or above this severity",
    )

    score = sub.add_parser("score", help="Compute a CVSS v3.x base score")
    score.add_argument("vector", help="CVSS vector string or numeric score")
    return p


def _load_document(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _print_summary(report: ScanReport) -> None:
    c = report.counts
    print(f"Scanned {report.total_packages} packages, {report.affected_count} affected")
    print(
        f"  critical={c['critical']} high={c['high']} medium={c['medium']} "
        f"low={c['low']} unknown={c['unknown']}"
    )
    for pkg in report.packages:
        if not pkg.affected:
            continue
        ids = ", ".join(v.id for v in pkg.vulnerabilities)
        print(f"  [{pkg.highest_severity.value}] {pkg.name}@{pkg.version}: {ids}")


def has_findings_at_or_above(report: ScanReport, threshold: Severity) -> bool:
    """Whether any finding in ``report`` is at least ``threshold``."""
    return any(v.severity.rank >= threshold.rank for p in report.packages for v in p.vulnerabilities)


def _cmd_scan(args: argparse.Namespace, config: ScannerConfig) -> int:
    try:
        doc = _load_document(args.path)
    except (OSError, ValueError) as e:
        print(f"Could not read {args.path}: {e}")
        return EXIT_INVALID

    try:
        extraction = extract(doc, config.max_packages)
    except ValidationError as e:
        print(f"Invalid manifest: {e}")
        return EXIT_INVALID

    print(f"Detected {extraction.kind.value} with {len(extraction.packages)} packages")
    if extraction.skipped:
        print(f"  Skipped {len(extraction.skipped)} invalid entries")
    if extraction.truncated:
        print(f"  Truncated to the first {config.max_packages} packages")

    try:
        report = scan_packages_sync(extraction.packages, config.osv)
    except UpstreamError as e:
        print(f"Vulnerability database unavailable: {e}")
        return EXIT_UPSTREAM

    _print_summary(report)
    if args.json_out:
        write_json_report(args.json_out, report)
        print(f"Wrote {args.json_out}")
    if args.md_out:
        write_markdown_report(args.md_out, report)
        print(f"Wrote {args.md_out}")

    if args.fail_on and has_findings_at_or_above(report, Severity(args.fail_on.upper())):
        return EXIT_FINDINGS
    return EXIT_OK


def _cmd_score(args: argparse.Namespace) -> int:
    score = parse_cvss_score(args.vector)
    print(f"{score:.1f} {score_to_severity(score).value}")
    return EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    """Run the CLI and return a process exit code."""
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if args.command == "score":
        return _cmd_score(args)

    try:
        config = load_settings(args.config)
    except FileNotFoundError as e:
        print(f"Config file not found: {e.filename}")
        return EXIT_INVALID

    return _cmd_scan(args, config)


if __name__ == "__main__":
    raise SystemExit(main())
