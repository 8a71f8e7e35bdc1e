"""
Process-wide settings for the acquisition engine.

Loaded once at start-up from ``config/settings.yaml`` (or the file named by
``WEBTOOLS_SETTINGS``), then ``.env``, then environment overrides. The result
is frozen; components receive it by reference and never mutate it.
"""
import os
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

from webtools.logging_utils import get_logger

logger = get_logger(__name__)

CONFIG_PATH_SETTINGS = "config/settings.yaml"

DEFAULT_REQUEST_TIMEOUT_MS = 30000
DEFAULT_MAX_RETRIES = 3
DEFAULT_PROBE_TIMEOUT_MS = 10000
DEFAULT_PROBE_MAX_RETRIES = 2
DEFAULT_NAVIGATION_TIMEOUT_MS = 45000
DEFAULT_SELECTOR_TIMEOUT_MS = 10000
DEFAULT_PROXY_URL = "http://localhost:8888"


class ProxyConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    url: str = DEFAULT_PROXY_URL
    timeout_ms: int = Field(default=DEFAULT_REQUEST_TIMEOUT_MS, gt=0)


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    request_timeout_ms: int = Field(default=DEFAULT_REQUEST_TIMEOUT_MS, gt=0)
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=1)
    probe_timeout_ms: int = Field(default=DEFAULT_PROBE_TIMEOUT_MS, gt=0)
    probe_max_retries: int = Field(default=DEFAULT_PROBE_MAX_RETRIES, ge=1)
    navigation_timeout_ms: int = Field(default=DEFAULT_NAVIGATION_TIMEOUT_MS, gt=0)
    selector_timeout_ms: int = Field(default=DEFAULT_SELECTOR_TIMEOUT_MS, gt=0)
    ignore_ssl_errors: bool = False
    log_level: str = "INFO"
    proxy: ProxyConfig = ProxyConfig()


def load_yaml_config(path: str, default: Dict = None) -> Dict:
    """Loads a YAML configuration file."""
    if default is None:
        default = {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or default
    except FileNotFoundError:
        logger.warning(f"Config file not found: {path}. Using defaults.", extra={"path": path, "event_type": "config_not_found"})
        return default
    except yaml.YAMLError as e:
        logger.error(f"Error parsing YAML file {path}: {e}. Using defaults.", extra={"path": path, "event_type": "config_parse_error"})
        return default


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _apply_env_overrides(raw: Dict[str, Any], environ) -> Dict[str, Any]:
    config = dict(raw)
    proxy = dict(config.get("proxy") or {})

    if environ.get("USE_PROXY") is not None:
        proxy["enabled"] = _env_bool(environ["USE_PROXY"])
    if environ.get("PROXY_URL"):
        proxy["url"] = environ["PROXY_URL"]
    if environ.get("PROXY_TIMEOUT"):
        try:
            proxy["timeout_ms"] = int(environ["PROXY_TIMEOUT"])
        except ValueError:
            logger.warning("Ignoring non-integer PROXY_TIMEOUT", extra={"value": environ["PROXY_TIMEOUT"], "event_type": "config_env_invalid"})
    if environ.get("IGNORE_SSL_ERRORS") is not None:
        config["ignore_ssl_errors"] = _env_bool(environ["IGNORE_SSL_ERRORS"])
    if environ.get("WEBTOOLS_LOG_LEVEL"):
        config["log_level"] = environ["WEBTOOLS_LOG_LEVEL"]

    config["proxy"] = proxy
    return config


def load_settings(path: Optional[str] = None, environ=None) -> Settings:
    """Builds the frozen Settings. Raises pydantic.ValidationError on bad values."""
    if environ is None:
        load_dotenv()
        environ = os.environ
    path = path or environ.get("WEBTOOLS_SETTINGS") or CONFIG_PATH_SETTINGS
    raw = load_yaml_config(path)
    settings = Settings.model_validate(_apply_env_overrides(raw, environ))
    logger.info(
        "Settings loaded",
        extra={
            "path": path,
            "proxy_enabled": settings.proxy.enabled,
            "proxy_url": settings.proxy.url,
            "event_type": "settings_loaded",
        },
    )
    return settings
