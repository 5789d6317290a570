"""Unit tests for depradar.cli — subcommands and exit codes."""

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from depradar.cli import (
    EXIT_FINDINGS,
    EXIT_INVALID,
    EXIT_OK,
    EXIT_UPSTREAM,
    has_findings_at_or_above,
    main,
)
from depradar.errors import UpstreamError
from depradar.models import PackageResult, ScanReport, Severity, VulnerabilityEntry

# ── Helpers ──────────────────────────────────────────────────────────────────


def _write_manifest(tmp_path: Path, doc) -> Path:
    path = tmp_path / "package.json"
    path.write_text(json.dumps(doc), encoding="utf-8")
    return path


def _fake_scan(severity: Severity | None):
    """Return a scanner stub marking the first package with ``severity``."""

    def scan(packages, config=None):
        results = []
        for i, p in enumerate(packages):
            vulns = [VulnerabilityEntry(id="GHSA-test", severity=severity)] if severity and i == 0 else []
            results.append(
                PackageResult(
                    name=p.name,
                    version=p.version,
                    is_dev=p.is_dev,
                    vulnerabilities=vulns,
                    highest_severity=severity if vulns else Severity.UNKNOWN,
                )
            )
        return ScanReport.from_results(results)

    return scan


@pytest.fixture(autouse=True)
def _isolated_cwd(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("RATE_LIMIT_PER_MIN", raising=False)
    monkeypatch.delenv("DEPRADAR_OSV_TIMEOUT", raising=False)


# ── score ────────────────────────────────────────────────────────────────────


class TestScoreCommand:
    def test_vector(self, capsys):
        assert main(["score", "CVSS:3.1/AV:N/AC:L/PR:N/UI:N/S:U/C:H/I:H/A:H"]) == EXIT_OK
        assert capsys.readouterr().out.strip() == "9.8 CRITICAL"

    def test_unparseable(self, capsys):
        assert main(["score", "garbage"]) == EXIT_OK
        assert capsys.readouterr().out.strip() == "0.0 UNKNOWN"


# ── scan ─────────────────────────────────────────────────────────────────────


class TestScanCommand:
    def test_clean_scan(self, tmp_path: Path, capsys):
        path = _write_manifest(tmp_path, {"dependencies": {"ms": "^2.1.3"}})
        with patch("depradar.cli.scan_packages_sync", side_effect=_fake_scan(None)) as scan:
            assert main(["scan", str(path)]) == EXIT_OK
        packages = scan.call_args.args[0]
        assert [p.key for p in packages] == ["ms@2.1.3"]
        out = capsys.readouterr().out
        assert "Detected package.json with 1 packages" in out
        assert "Scanned 1 packages, 0 affected" in out

    def test_findings_listed(self, tmp_path: Path, capsys):
        path = _write_manifest(tmp_path, {"dependencies": {"lodash": "4.17.20"}})
        with patch("depradar.cli.scan_packages_sync", side_effect=_fake_scan(Severity.HIGH)):
            assert main(["scan", str(path)]) == EXIT_OK
        assert "[HIGH] lodash@4.17.20: GHSA-test" in capsys.readouterr().out

    @pytest.mark.parametrize(
        "severity,threshold,expected",
        [
            (Severity.HIGH, "high", EXIT_FINDINGS),
            (Severity.CRITICAL, "high", EXIT_FINDINGS),
            (Severity.MEDIUM, "high", EXIT_OK),
            (Severity.LOW, "low", EXIT_FINDINGS),
            (None, "low", EXIT_OK),
        ],
    )
    def test_fail_on(self, tmp_path: Path, severity, threshold, expected):
        path = _write_manifest(tmp_path, {"dependencies": {"a": "1.0.0"}})
        with patch("depradar.cli.scan_packages_sync", side_effect=_fake_scan(severity)):
            assert main(["scan", str(path), "--fail-on", threshold]) == expected

    def test_writes_outputs(self, tmp_path: Path):
        path = _write_manifest(tmp_path, {"dependencies": {"a": "1.0.0"}})
        json_out = tmp_path / "out" / "report.json"
        md_out = tmp_path / "out" / "report.md"
        with patch("depradar.cli.scan_packages_sync", side_effect=_fake_scan(Severity.LOW)):
            code = main(["scan", str(path), "--json", str(json_out), "--markdown", str(md_out)])
        assert code == EXIT_OK
        assert json.loads(json_out.read_text(encoding="utf-8"))["affectedCount"] == 1
        assert "GHSA-test" in md_out.read_text(encoding="utf-8")

    def test_config_cap_applied(self, tmp_path: Path):
        (tmp_path / "depradar.yaml").write_text("max_packages: 2\n")
        path = _write_manifest(tmp_path, {"dependencies": {f"p{i}": "1.0.0" for i in range(5)}})
        with patch("depradar.cli.scan_packages_sync", side_effect=_fake_scan(None)) as scan:
            main(["scan", str(path)])
        assert len(scan.call_args.args[0]) == 2

    def test_upstream_failure(self, tmp_path: Path, capsys):
        path = _write_manifest(tmp_path, {"dependencies": {"a": "1.0.0"}})
        with patch("depradar.cli.scan_packages_sync", side_effect=UpstreamError("OSV batch API returned 503")):
            assert main(["scan", str(path)]) == EXIT_UPSTREAM
        assert "503" in capsys.readouterr().out


class TestScanInvalidInput:
    def test_missing_file(self, tmp_path: Path):
        assert main(["scan", str(tmp_path / "nope.json")]) == EXIT_INVALID

    def test_not_json(self, tmp_path: Path):
        path = tmp_path / "package.json"
        path.write_text("{not json", encoding="utf-8")
        assert main(["scan", str(path)]) == EXIT_INVALID

    def test_not_utf8(self, tmp_path: Path, capsys):
        path = tmp_path / "package.json"
        path.write_bytes(b"\xff\xfe{}")
        assert main(["scan", str(path)]) == EXIT_INVALID
        assert "Could not read" in capsys.readouterr().out

    def test_no_dependencies(self, tmp_path: Path, capsys):
        path = _write_manifest(tmp_path, {"name": "app"})
        with patch("depradar.cli.scan_packages_sync") as scan:
            assert main(["scan", str(path)]) == EXIT_INVALID
        scan.assert_not_called()
        assert "No dependencies found" in capsys.readouterr().out

    def test_missing_config_file(self, tmp_path: Path):
        path = _write_manifest(tmp_path, {"dependencies": {"a": "1.0.0"}})
        assert main(["-c", str(tmp_path / "missing.yaml"), "scan", str(path)]) == EXIT_INVALID


class TestHasFindings:
    def test_threshold(self):
        vuln = VulnerabilityEntry(id="X", severity=Severity.MEDIUM)
        report = ScanReport.from_results(
            [PackageResult("a", "1.0.0", False, [vuln], Severity.MEDIUM)]
        )
        assert has_findings_at_or_above(report, Severity.MEDIUM)
        assert has_findings_at_or_above(report, Severity.LOW)
        assert not has_findings_at_or_above(report, Severity.HIGH)
