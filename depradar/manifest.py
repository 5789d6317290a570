"""Dependency extraction from npm manifests and lock files.

Pure functions, no I/O. Accepts an already-parsed JSON document and
turns it into a validated, deduplicated list of ``PackageInput``.
Three document shapes are recognized, tried in this order:

- ``package-lock.json`` v2/v3 (``lockfileVersion >= 2`` + ``packages``)
- ``package-lock.json`` v1 (``lockfileVersion == 1`` + ``dependencies``)
- ``package.json`` (any of the four dependency fields)
"""

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import ValidationError
from .models import PackageInput

logger = logging.getLogger(__name__)

MAX_PACKAGES = 500
MAX_NAME_LENGTH = 214
MAX_VERSION_LENGTH = 64
LOCK_V1_MAX_DEPTH = 20

_NODE_MODULES = "node_modules/"

# Scoped and unscoped npm package names.
_NAME_RE = re.compile(r"^(?:@[a-z0-9_-][a-z0-9_.-]*/)?[a-z0-9_-][a-z0-9_.-]*$", re.IGNORECASE)
# Control characters and shell metacharacters.
_BAD_VERSION_CHARS_RE = re.compile(r"[\x00-\x1f\x7f`$|;&><]")

_PROTOCOL_PREFIX_RE = re.compile(r"^[a-z]+:")
_RANGE_OPERATORS_RE = re.compile(r"^[\s^~>=<!*]+")

MANIFEST_FIELDS: tuple[tuple[str, bool], ...] = (
    ("dependencies", False),
    ("devDependencies", True),
    ("peerDependencies", False),
    ("optionalDependencies", False),
)

NOT_AN_OBJECT = "Expected a JSON object (package.json or package-lock.json)."
NO_DEPENDENCIES = (
    "No dependencies found. Make sure your package.json has a "
    "'dependencies' or 'devDependencies' field."
)


class ManifestKind(str, Enum):
    LOCK_V2 = "package-lock.json"
    LOCK_V1 = "package-lock.json v1"
    MANIFEST = "package.json"


@dataclass
class ExtractionResult:
    """Outcome of a successful extraction.

    Attributes:
        kind: Which document shape was recognized.
        packages: Validated packages, capped at ``MAX_PACKAGES``.
        skipped: Rejected entries, kept for diagnostics.
        truncated: Whether packages beyond the cap were dropped.
    """

    kind: ManifestKind
    packages: list[PackageInput] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    truncated: bool = False


def is_valid_package_name(name: Any) -> bool:
    """Check a name against the npm registry naming rules."""
    return (
        isinstance(name, str)
        and 0 < len(name) <= MAX_NAME_LENGTH
        and _NAME_RE.match(name.strip()) is not None
    )


def is_valid_version(version: Any) -> bool:
    """Check a version string is short, non-empty, and free of metacharacters."""
    if not isinstance(version, str):
        return False
    v = version.strip()
    if not v or len(v) > MAX_VERSION_LENGTH:
        return False
    return _BAD_VERSION_CHARS_RE.search(v) is None


def normalize_version(spec: str) -> str:
    """Reduce a ``package.json`` version range to a single version.

    Best effort, not a semver resolver: ``^1.2.3`` becomes ``1.2.3`` and
    ``>=1.0.0 <2.0.0`` keeps only ``1.0.0``.

    Args:
        spec: Raw range string from a dependency field.

    Returns:
        The first version-like token, or ``0.0.0`` when nothing remains.
    """
    clean = _PROTOCOL_PREFIX_RE.sub("", spec, count=1).strip()
    clean = _RANGE_OPERATORS_RE.sub("", clean, count=1).strip()
    parts = clean.split()
    clean = parts[0] if parts else ""
    return clean or "0.0.0"


def lock_entry_name(path: str) -> str:
    """Derive a package name from a v2/v3 ``packages`` key.

    ``node_modules/a/node_modules/@scope/b`` yields ``@scope/b``.
    """
    return path.rsplit(_NODE_MODULES, 1)[-1]


def _lockfile_version(doc: Mapping[str, Any]) -> int | float | None:
    ver = doc.get("lockfileVersion")
    if isinstance(ver, bool) or not isinstance(ver, (int, float)):
        return None
    return ver


def detect_manifest_kind(doc: Mapping[str, Any]) -> ManifestKind | None:
    """Pick the document shape from its discriminating fields."""
    lock_ver = _lockfile_version(doc)
    if lock_ver is not None and lock_ver >= 2 and isinstance(doc.get("packages"), Mapping):
        return ManifestKind.LOCK_V2
    if lock_ver == 1 and isinstance(doc.get("dependencies"), Mapping):
        return ManifestKind.LOCK_V1
    if any(isinstance(doc.get(name), Mapping) for name, _ in MANIFEST_FIELDS):
        return ManifestKind.MANIFEST
    return None


class _Collector:
    """Accumulates validated, deduplicated packages."""

    def __init__(self) -> None:
        self.packages: list[PackageInput] = []
        self.skipped: list[str] = []
        self._seen: set[str] = set()

    def add(self, name: str, version: str, is_dev: bool) -> None:
        key = f"{name}@{version}"
        if key in self._seen:
            return
        if not is_valid_package_name(name):
            self.skipped.append(name)
            return
        if not is_valid_version(version):
            self.skipped.append(key)
            return
        self._seen.add(key)
        self.packages.append(PackageInput(name=name.strip(), version=version.strip(), is_dev=is_dev))


def _collect_lock_v2(packages: Mapping[str, Any], out: _Collector) -> None:
    for path, entry in packages.items():
        if not isinstance(path, str) or not path.startswith(_NODE_MODULES):
            continue
        if not isinstance(entry, Mapping):
            continue
        version = entry.get("version")
        if isinstance(version, str) and version:
            out.add(lock_entry_name(path), version, entry.get("dev") is True)


def _collect_lock_v1(deps: Mapping[str, Any], out: _Collector, depth: int = 0) -> None:
    if depth > LOCK_V1_MAX_DEPTH:
        return
    for name, node in deps.items():
        if not isinstance(node, Mapping):
            continue
        version = node.get("version")
        if isinstance(version, str):
            out.add(name, version, node.get("dev") is True)
        nested = node.get("dependencies")
        if isinstance(nested, Mapping):
            _collect_lock_v1(nested, out, depth + 1)


def _collect_manifest(doc: Mapping[str, Any], out: _Collector) -> None:
    for field_name, is_dev in MANIFEST_FIELDS:
        group = doc.get(field_name)
        if not isinstance(group, Mapping):
            continue
        for name, spec in group.items():
            if not isinstance(spec, str):
                continue
            out.add(name, normalize_version(spec), is_dev)


def _empty_message(kind: ManifestKind, skipped: list[str]) -> str:
    if skipped:
        more = "…" if len(skipped) > 3 else ""
        return f"No valid packages found. Skipped invalid entries: {', '.join(skipped[:3])}{more}"
    if kind is ManifestKind.MANIFEST:
        return NO_DEPENDENCIES
    return f"No packages found in {kind.value}."


def extract(raw: Any, max_packages: int = MAX_PACKAGES) -> ExtractionResult:
    """Extract a package list from a parsed manifest or lock file.

    Invalid entries are skipped and recorded rather than aborting. The
    result is capped at ``max_packages``; extra entries are dropped.

    Args:
        raw: Parsed JSON document.
        max_packages: Cap on the returned list.

    Returns:
        ``ExtractionResult`` with at least one package.

    Raises:
        ValidationError: if the document is not an object, matches no
            known shape, or yields no valid packages.
    """
    if not isinstance(raw, Mapping):
        raise ValidationError(NOT_AN_OBJECT)

    kind = detect_manifest_kind(raw)
    if kind is None:
        raise ValidationError(NO_DEPENDENCIES)

    out = _Collector()
    if kind is ManifestKind.LOCK_V2:
        _collect_lock_v2(raw["packages"], out)
    elif kind is ManifestKind.LOCK_V1:
        _collect_lock_v1(raw["dependencies"], out)
    else:
        _collect_manifest(raw, out)

    if out.skipped:
        logger.debug("Skipped %d invalid %s entries: %s", len(out.skipped), kind.value, out.skipped[:10])

    if not out.packages:
        raise ValidationError(_empty_message(kind, out.skipped))

    truncated = len(out.packages) > max_packages
    return ExtractionResult(
        kind=kind,
        packages=out.packages[:max_packages],
        skipped=out.skipped,
        truncated=truncated,
    )


def extract_packages(raw: Any) -> list[PackageInput]:
    """Shorthand for ``extract(raw).packages``."""
    return extract(raw).packages


def extract_from_request(body: Any, max_packages: int = MAX_PACKAGES) -> ExtractionResult:
    """Validate a scan request body and extract its ``packageJson`` field.

    Raises:
        ValidationError: if the body is not an object, lacks
            ``packageJson``, or the manifest itself is invalid.
    """
    if not isinstance(body, Mapping):
        raise ValidationError("Request body must be a JSON object.")
    if "packageJson" not in body:
        raise ValidationError('Missing required field "packageJson".')
    return extract(body["packageJson"], max_packages)
