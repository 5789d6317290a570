"""Configuration models using Pydantic.

Settings are optional: every field has a default that matches the
public OSV service, so an absent config file yields a working scanner.
"""

import json
import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

OSV_BATCH_URL = "https://api.osv.dev/v1/querybatch"
OSV_VULN_URL = "https://api.osv.dev/v1/vulns"
USER_AGENT = "depradar/0.1"


class OsvConfig(BaseModel):
    """Vulnerability database endpoints and request limits.

    Attributes:
        batch_url: Batch query endpoint.
        vuln_url: Per-identifier detail endpoint (``/{id}`` is appended).
        ecosystem: OSV ecosystem name sent with every query.
        chunk_size: Queries per batch request. OSV accepts at most 1000,
            but results are paginated past 100.
        detail_concurrency: Maximum detail requests in flight.
        request_timeout: Seconds allowed for each individual request.
        user_agent: Client identifier sent with every request.
    """

    batch_url: str = OSV_BATCH_URL
    vuln_url: str = OSV_VULN_URL
    ecosystem: str = "npm"
    chunk_size: int = Field(default=100, ge=1, le=1000)
    detail_concurrency: int = Field(default=40, ge=1, le=200)
    request_timeout: float = Field(default=15.0, gt=0)
    user_agent: str = USER_AGENT


class RateLimitConfig(BaseModel):
    """Per-client request quota for the scan handler.

    Example YAML::

        rate_limit:
          per_minute: 10
          window_ms: 60000
    """

    enabled: bool = True
    per_minute: int = Field(default=10, ge=1)
    window_ms: int = Field(default=60_000, ge=1)
    sweep_interval_s: float = Field(default=300.0, gt=0)


class ScannerConfig(BaseModel):
    """Top-level configuration.

    Example YAML::

        osv:
          request_timeout: 10
          detail_concurrency: 20
        rate_limit:
          per_minute: 30
        max_body_bytes: 2000000
    """

    osv: OsvConfig = Field(default_factory=OsvConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    max_packages: int = Field(default=500, ge=1)
    max_body_bytes: int = Field(default=1_000_000, ge=1)


def load_config(path: Path) -> ScannerConfig:
    """Load configuration from a YAML or JSON file.

    Args:
        path: Path to the config file.

    Returns:
        Validated ``ScannerConfig`` instance.

    Raises:
        FileNotFoundError: if the file doesn't exist.
        pydantic.ValidationError: if content fails validation.
    """
    suffix = path.suffix.lower()
    content = path.read_text(encoding="utf-8")

    if suffix in (".yaml", ".yml"):
        raw = yaml.safe_load(content) or {}
    elif suffix == ".json":
        raw = json.loads(content) if content.strip() else {}
    else:
        try:
            raw = yaml.safe_load(content) or {}
        except yaml.YAMLError:
            raw = json.loads(content)

    return ScannerConfig.model_validate(raw)


def find_config() -> str:
    """Find the config file, preferring YAML over JSON.

    Returns:
        Filename of the first existing config file, or ``"depradar.yaml"``
        as a default.
    """
    for name in ("depradar.yaml", "depradar.yml", "depradar.json"):
        if Path(name).exists():
            return name
    return "depradar.yaml"


def apply_env_overrides(config: ScannerConfig) -> ScannerConfig:
    """Return a copy of ``config`` with environment overrides applied.

    Recognized variables:

    - ``RATE_LIMIT_PER_MIN``: positive integer request quota.
    - ``DEPRADAR_OSV_TIMEOUT``: positive per-request timeout in seconds.

    Unparseable or out-of-range values are ignored.
    """
    rate_limit = config.rate_limit
    osv = config.osv

    per_min = os.environ.get("RATE_LIMIT_PER_MIN")
    if per_min:
        try:
            value = int(per_min)
        except ValueError:
            value = 0
        if value >= 1:
            rate_limit = rate_limit.model_copy(update={"per_minute": value})
        else:
            logger.warning("Ignoring invalid RATE_LIMIT_PER_MIN=%r", per_min)

    timeout = os.environ.get("DEPRADAR_OSV_TIMEOUT")
    if timeout:
        try:
            seconds = float(timeout)
        except ValueError:
            seconds = 0.0
        if seconds > 0:
            osv = osv.model_copy(update={"request_timeout": seconds})
        else:
            logger.warning("Ignoring invalid DEPRADAR_OSV_TIMEOUT=%r", timeout)

    return config.model_copy(update={"rate_limit": rate_limit, "osv": osv})


def load_settings(path: Path | None = None) -> ScannerConfig:
    """Load config from ``path`` (or the default file, if present) plus env.

    A missing default file is not an error; an explicit ``path`` that
    does not exist is.
    """
    if path is None:
        default = Path(find_config())
        config = load_config(default) if default.exists() else ScannerConfig()
    else:
        config = load_config(path)
    return apply_env_overrides(config)
