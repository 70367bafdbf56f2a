"""
Client configuration and environment resolution.

Configuration can come from the environment (``ClientConfig.from_env``)
or from the ``tidepool`` section of a settings.yaml file:

```yaml
tidepool:
  environment: Staging
  db_path: ~/.tidepool/cache.db
  max_concurrent_requests: 4
  request_timeout: 30
  backfill_profiles: true
```
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigurationError


class Environment(Enum):
    """Named Tidepool deployments."""

    PRODUCTION = "Production"
    DEVELOPMENT = "Development"
    STAGING = "Staging"


@dataclass(frozen=True)
class EnvironmentURLs:
    """Base URLs of one deployment. Device data uploads go to a separate host."""

    api_base_url: str
    upload_base_url: str


_SERVERS: dict[Environment, EnvironmentURLs] = {
    Environment.PRODUCTION: EnvironmentURLs(
        api_base_url="https://api.tidepool.org",
        upload_base_url="https://uploads.tidepool.org",
    ),
    Environment.DEVELOPMENT: EnvironmentURLs(
        api_base_url="https://dev-api.tidepool.org",
        upload_base_url="https://dev-uploads.tidepool.org",
    ),
    Environment.STAGING: EnvironmentURLs(
        api_base_url="https://stg-api.tidepool.org",
        upload_base_url="https://stg-uploads.tidepool.org",
    ),
}


def parse_environment(name: str | Environment) -> Environment:
    """Match a deployment name case-insensitively.

    Raises:
        ConfigurationError: If the name is not a known deployment
    """
    if isinstance(name, Environment):
        return name
    for env in Environment:
        if isinstance(name, str) and name.strip().lower() == env.value.lower():
            return env
    raise ConfigurationError(f"No server called {name!r}", key="environment")


def resolve_environment(name: str | Environment) -> EnvironmentURLs:
    """Map a deployment name to its API and upload base URLs."""
    return _SERVERS[parse_environment(name)]


def _parse_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("1", "true", "yes", "on"):
        return True
    if isinstance(value, str) and value.strip().lower() in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"Invalid boolean for {key}: {value!r}", key=key)


def _parse_number(value: Any, key: str, kind: type) -> Any:
    try:
        number = kind(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for {key}: {value!r}", key=key) from e
    if number <= 0:
        raise ConfigurationError(f"{key} must be positive, got {value!r}", key=key)
    return number


@dataclass
class ClientConfig:
    """Configuration for TidepoolClient."""

    environment: Environment = Environment.PRODUCTION
    db_path: str | Path = ":memory:"
    max_concurrent_requests: int = 4
    request_timeout: float = 30.0  # seconds
    backfill_profiles: bool = True

    # Explicit overrides of the environment's base URLs (tests, proxies)
    api_base_url: str | None = None
    upload_base_url: str | None = None

    def urls(self) -> EnvironmentURLs:
        """Base URLs for the configured environment, with overrides applied."""
        resolved = resolve_environment(self.environment)
        return EnvironmentURLs(
            api_base_url=self.api_base_url or resolved.api_base_url,
            upload_base_url=self.upload_base_url or resolved.upload_base_url,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClientConfig:
        """Build a config from a plain mapping, validating each value."""
        config = cls()
        if "environment" in data:
            config.environment = parse_environment(data["environment"])
        if "db_path" in data:
            config.db_path = str(Path(str(data["db_path"])).expanduser())
        if "max_concurrent_requests" in data:
            config.max_concurrent_requests = _parse_number(
                data["max_concurrent_requests"], "max_concurrent_requests", int
            )
        if "request_timeout" in data:
            config.request_timeout = _parse_number(
                data["request_timeout"], "request_timeout", float
            )
        if "backfill_profiles" in data:
            config.backfill_profiles = _parse_bool(data["backfill_profiles"], "backfill_profiles")
        config.api_base_url = data.get("api_base_url") or None
        config.upload_base_url = data.get("upload_base_url") or None
        return config

    @classmethod
    def from_env(cls) -> ClientConfig:
        """Create config from TIDEPOOL_* environment variables."""
        mapping = {
            "TIDEPOOL_ENVIRONMENT": "environment",
            "TIDEPOOL_DB_PATH": "db_path",
            "TIDEPOOL_MAX_CONCURRENT_REQUESTS": "max_concurrent_requests",
            "TIDEPOOL_REQUEST_TIMEOUT": "request_timeout",
            "TIDEPOOL_BACKFILL_PROFILES": "backfill_profiles",
            "TIDEPOOL_API_BASE_URL": "api_base_url",
            "TIDEPOOL_UPLOAD_BASE_URL": "upload_base_url",
        }
        data = {key: os.environ[var] for var, key in mapping.items() if os.environ.get(var)}
        return cls.from_dict(data)

    @classmethod
    def from_yaml(cls, path: Path | str) -> ClientConfig:
        """Load the ``tidepool`` section of a YAML settings file.

        A missing file yields the defaults.
        """
        path = Path(path).expanduser()
        if not path.exists():
            return cls()
        try:
            content = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
        if not isinstance(content, dict):
            raise ConfigurationError(f"Expected a mapping in {path}")
        section = content.get("tidepool") or {}
        if not isinstance(section, dict):
            raise ConfigurationError("'tidepool' section must be a mapping", key="tidepool")
        return cls.from_dict(section)
