"""Report generation: JSON dump and a Jinja2 Markdown summary.

The default template lives at ``depradar/templates/report.md.j2``.
"""

import json
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

from .models import PackageResult, ScanReport, Severity

_TEMPLATES_DIR = Path(__file__).parent / "templates"

SEVERITY_BADGES = {
    Severity.CRITICAL: "🔴",
    Severity.HIGH: "🟠",
    Severity.MEDIUM: "🟡",
    Severity.LOW: "🔵",
    Severity.UNKNOWN: "⚪",
}


def package_sort_key(pkg: PackageResult) -> tuple[int, int, str]:
    """Most severe first, then most findings, then by name."""
    return (-pkg.highest_severity.rank, -len(pkg.vulnerabilities), pkg.name)


def _atomic_write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as f:
        f.write(text)
    tmp.replace(path)


def write_json_report(path: Path, report: ScanReport) -> None:
    """Write the report's wire form to a JSON file atomically.

    Args:
        path: Output file path.
        report: Report to serialize.
    """
    _atomic_write(path, json.dumps(report.to_dict(), indent=2, ensure_ascii=False) + "\n")


def render_markdown_report(report: ScanReport, max_packages: int = 200) -> str:
    """Render a GitHub-renderable Markdown summary of a scan.

    Args:
        report: Report to render.
        max_packages: Cap on affected packages listed in detail.

    Returns:
        Rendered Markdown.
    """
    affected = sorted((p for p in report.packages if p.affected), key=package_sort_key)

    env = Environment(
        loader=FileSystemLoader(str(_TEMPLATES_DIR)),
        autoescape=select_autoescape(default_for_string=False, default=False),
        keep_trailing_newline=True,
        trim_blocks=True,
        lstrip_blocks=True,
    )
    template = env.get_template("report.md.j2")
    return template.render(
        report=report,
        severities=list(Severity),
        badges=SEVERITY_BADGES,
        affected=affected[:max_packages],
        hidden=max(0, len(affected) - max_packages),
        clean_count=report.total_packages - report.affected_count,
    )


def write_markdown_report(path: Path, report: ScanReport) -> None:
    """Write the Markdown summary to ``path`` atomically."""
    _atomic_write(path, render_markdown_report(report))
