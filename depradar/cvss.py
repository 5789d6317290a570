"""CVSS v3.x base score calculator.

Pure functions, no I/O. Implements the base equations from the FIRST
CVSS v3.1 standard, including its ``Roundup`` rule, so
that reference vectors reproduce published scores exactly:

    CVSS:3.1/AV:N/AC:L/PR:N/UI:N/S:U/C:H/I:H/A:H  ->  9.8
    CVSS:3.1/AV:N/AC:L/PR:N/UI:N/S:C/C:H/I:H/A:H  -> 10.0
"""

import math
import re

from .models import Severity

_V3_RE = re.compile(r"^CVSS:3\.[01]/(.+)$", re.IGNORECASE)

ATTACK_VECTOR = {"N": 0.85, "A": 0.62, "L": 0.55, "P": 0.20}
ATTACK_COMPLEXITY = {"L": 0.77, "H": 0.44}
PRIVILEGES_CHANGED = {"N": 0.85, "L": 0.68, "H": 0.50}
PRIVILEGES_UNCHANGED = {"N": 0.85, "L": 0.62, "H": 0.27}
USER_INTERACTION = {"N": 0.85, "R": 0.62}
IMPACT = {"N": 0.0, "L": 0.22, "H": 0.56}


def roundup(x: float) -> float:
    """Round up to one decimal place as defined in CVSS v3.1 Appendix A.

    Works on an integer scaled by 100000 to avoid floating point
    artefacts such as ``4.000000000000001`` rounding to ``4.1``.
    """
    int_input = math.floor(x * 100000 + 0.5)
    if int_input % 10000 == 0:
        return int_input / 100000
    return (math.floor(int_input / 10000) + 1) / 10


def parse_vector(metrics: str) -> dict[str, str]:
    """Split ``AV:N/AC:L/...`` into a ``{"AV": "N", ...}`` mapping.

    Parts without a key before the colon are ignored.
    """
    out: dict[str, str] = {}
    for part in metrics.split("/"):
        colon = part.find(":")
        if colon > 0:
            out[part[:colon]] = part[colon + 1 :]
    return out


def base_score_v3(metrics: str) -> float:
    """Compute the v3.1 base score of a metrics string (prefix stripped).

    Unknown or missing metric values weigh 0.
    """
    m = parse_vector(metrics)

    scope_changed = m.get("S") == "C"
    av = ATTACK_VECTOR.get(m.get("AV", ""), 0.0)
    ac = ATTACK_COMPLEXITY.get(m.get("AC", ""), 0.0)
    pr_table = PRIVILEGES_CHANGED if scope_changed else PRIVILEGES_UNCHANGED
    pr = pr_table.get(m.get("PR", ""), 0.0)
    ui = USER_INTERACTION.get(m.get("UI", ""), 0.0)
    c = IMPACT.get(m.get("C", ""), 0.0)
    i = IMPACT.get(m.get("I", ""), 0.0)
    a = IMPACT.get(m.get("A", ""), 0.0)

    isc_base = 1 - (1 - c) * (1 - i) * (1 - a)
    if scope_changed:
        isc = 7.52 * (isc_base - 0.029) - 3.25 * math.pow(isc_base - 0.02, 15)
    else:
        isc = 6.42 * isc_base

    if isc <= 0:
        return 0.0

    exploitability = 8.22 * av * ac * pr * ui
    if scope_changed:
        raw = min(1.08 * (isc + exploitability), 10)
    else:
        raw = min(isc + exploitability, 10)
    return roundup(raw)


def _number_str(n: float) -> str:
    # Canonical short form: 10.0 -> "10", 9.8 -> "9.8"
    if n.is_integer():
        return str(int(n))
    return repr(n)


def _as_plain_number(value: str) -> float | None:
    text = value.strip()
    try:
        n = float(text)
    except ValueError:
        return None
    if not math.isfinite(n):
        return None
    return n if _number_str(n) == text else None


def parse_cvss_score(value: str) -> float:
    """Score a CVSS v3.x vector or pass through an embedded numeric score.

    Args:
        value: A vector such as ``CVSS:3.1/AV:N/...`` or a bare number
            string such as ``"7.5"``.

    Returns:
        The base score in ``[0, 10]`` for vectors, the number itself for
        bare numeric strings, or ``0.0`` when nothing can be computed.
    """
    if not value or not isinstance(value, str):
        return 0.0

    num = _as_plain_number(value)
    if num is not None:
        return num

    match = _V3_RE.match(value)
    if match and match.group(1):
        return base_score_v3(match.group(1))
    return 0.0


def score_to_severity(score: float | None) -> Severity:
    """Map a numeric score to a severity tier.

    ``None`` means no score source exists at all. Zero and negative
    scores are also ``UNKNOWN`` rather than a tier of their own.
    """
    if score is None:
        return Severity.UNKNOWN
    if score >= 9.0:
        return Severity.CRITICAL
    if score >= 7.0:
        return Severity.HIGH
    if score >= 4.0:
        return Severity.MEDIUM
    if score > 0:
        return Severity.LOW
    return Severity.UNKNOWN
