# vuln_pipeline/config.py
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

from .advisories import FileAdvisorySource, RateLimiter
from .exceptions import ConfigError
from .matcher import DEFAULT_MAX_WORKERS
from .models import PolicyConfig
from .osv_source import OSV_API_URL, OSV_TIMEOUT, OsvAdvisorySource
from .policy import make_policy
from .resolver import LAYER_SCOPES, SQUASHED
from .vulndb import LocalAdvisorySource

logger = logging.getLogger(__name__)

# --- Config File Handling ---
CONFIG_FILENAME = "vulngate.yaml"
API_TOKEN_ENV_VAR = "VULNGATE_API_TOKEN"
OSV_URL_ENV_VAR = "VULNGATE_OSV_URL"
LOG_LEVEL_ENV_VAR = "VULNGATE_LOG_LEVEL"

ADVISORY_SOURCES = ("osv", "local", "file")


def load_config(config_path: str | Path = CONFIG_FILENAME) -> dict:
    """Reads the YAML config file. A missing file yields an empty mapping."""
    path = Path(config_path)
    if not path.is_file():
        logger.info(f"Configuration file '{config_path}' not found. Using defaults/CLI args.")
        return {}
    try:
        with open(path, 'r', encoding='utf-8') as f:
            loaded_yaml = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Error parsing YAML configuration file '{path.resolve()}': {e}") from e
    if loaded_yaml is None:
        return {}
    if not isinstance(loaded_yaml, dict):
        raise ConfigError(f"Config file '{path.resolve()}' does not contain a valid dictionary structure.")
    logger.info(f"Loaded configuration from {path.resolve()}")
    return loaded_yaml


def _flag(config: dict, key: str, default: bool = False) -> bool:
    value = config.get(key)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "yes", "on", "1"):
        return True
    if text in ("false", "no", "off", "0"):
        return False
    raise ConfigError(f"'{key}' must be true or false, got {value!r}")


def _number(config: dict, key: str, kind, default):
    value = config.get(key)
    if value is None:
        return default
    try:
        number = kind(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"'{key}' must be a number, got {value!r}") from e
    if number <= 0:
        raise ConfigError(f"'{key}' must be positive, got {value!r}")
    return number


@dataclass
class Settings:
    advisory_source: str = "osv"
    advisory_feed: str | None = None
    osv_api_url: str = OSV_API_URL
    monitor_url: str | None = None
    api_token: str | None = None
    database_path: str | None = None
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    max_workers: int = DEFAULT_MAX_WORKERS
    timeout_seconds: float | None = None
    request_timeout: float = OSV_TIMEOUT
    requests_per_second: float | None = None
    project: str | None = None
    monitor: bool = False
    scope: str = SQUASHED

    @classmethod
    def from_mapping(cls, config: dict | None = None, environ=None, overrides: dict | None = None) -> "Settings":
        """
        Builds settings from a loaded config mapping. Precedence, lowest first:
        config file, environment variables, explicit overrides (CLI flags).
        """
        environ = os.environ if environ is None else environ
        config = dict(config or {})
        for key, env_var in (('api_token', API_TOKEN_ENV_VAR), ('osv_api_url', OSV_URL_ENV_VAR)):
            if environ.get(env_var):
                config[key] = environ[env_var]
        config.update({key: value for key, value in (overrides or {}).items() if value is not None})
        known = {f.name for f in fields(cls)} | {"fail_on", "ignore_vulnerabilities"}
        for key in sorted(set(config) - known):
            logger.warning(f"Ignoring unknown configuration key '{key}'")

        source = str(config.get("advisory_source") or "osv").lower()
        if source not in ADVISORY_SOURCES:
            raise ConfigError(f"Invalid advisory_source '{source}'. Expected one of {', '.join(ADVISORY_SOURCES)}.")
        scope = str(config.get("scope") or SQUASHED).lower()
        if scope not in LAYER_SCOPES:
            raise ConfigError(f"Invalid scope '{scope}'. Expected one of {', '.join(LAYER_SCOPES)}.")

        return cls(
            advisory_source=source,
            advisory_feed=config.get("advisory_feed"),
            osv_api_url=config.get("osv_api_url") or OSV_API_URL,
            monitor_url=config.get("monitor_url"),
            api_token=config.get("api_token"),
            database_path=config.get("database_path"),
            policy=make_policy(config.get("fail_on"), config.get("ignore_vulnerabilities")),
            max_workers=_number(config, "max_workers", int, DEFAULT_MAX_WORKERS),
            timeout_seconds=_number(config, "timeout_seconds", float, None),
            request_timeout=_number(config, "request_timeout", float, OSV_TIMEOUT),
            requests_per_second=_number(config, "requests_per_second", float, None),
            project=config.get("project"),
            monitor=_flag(config, "monitor"),
            scope=scope,
        )


def build_advisory_source(settings: Settings):
    """Creates the advisory source named by settings.advisory_source."""
    if settings.advisory_source == "file":
        if not settings.advisory_feed:
            raise ConfigError("advisory_source 'file' needs 'advisory_feed' (or --feed) to point at a feed file")
        return FileAdvisorySource.from_file(settings.advisory_feed)
    if settings.advisory_source == "local":
        return LocalAdvisorySource(settings.database_path)
    return OsvAdvisorySource(
        settings.osv_api_url,
        monitor_url=settings.monitor_url,
        api_token=settings.api_token,
        timeout=settings.request_timeout,
        rate_limiter=RateLimiter(settings.requests_per_second),
    )
