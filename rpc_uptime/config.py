import os
import sys
import logging
from typing import Optional

import yaml
from pythonjsonlogger import jsonlogger

from .errors import ConfigError

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# key -> (environment variable, default, type)
SETTINGS = {
    "network_id": ("NETWORK_ID", "celo", str),
    "node_url": ("NODE_URL", "http://localhost:8545", str),
    "external_node_url": ("EXTERNAL_NODE_URL", None, str),
    "database_url": ("DATABASE_URL", "sqlite:///rpc_uptime.db", str),
    "celocli_command": ("CELOCLI_COMMAND", "npx celocli", str),
    "rpc_timer_ms": ("RPC_TIMER_MS", 300000, int),
    "cli_timeout_ms": ("CLI_TIMEOUT_MS", 20000, int),
    "cli_max_retries": ("CLI_MAX_RETRIES", 3, int),
    "cli_base_delay_ms": ("CLI_BASE_DELAY_MS", 2000, int),
    "cli_max_delay_ms": ("CLI_MAX_DELAY_MS", 20000, int),
    "metadata_max_retries": ("METADATA_MAX_RETRIES", 1, int),
    "metadata_fetch_timeout_ms": ("METADATA_FETCH_TIMEOUT_MS", 15000, int),
    "json_rpc_timeout_ms": ("JSON_RPC_TIMEOUT_MS", 5000, int),
    "resolve_batch_size": ("RESOLVE_BATCH_SIZE", 10, int),
    "migration_block": ("MIGRATION_BLOCK", 0, int),
    "migration_poll_ms": ("MIGRATION_POLL_MS", 5000, int),
    "log_format": ("LOG_FORMAT", "json", str),
    "log_level": ("LOG_LEVEL", "INFO", str),
}


def setup_logging(log_format="json", log_level="INFO"):
    level = getattr(logging, log_level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    handler = logging.StreamHandler(sys.stdout)
    if log_format == "json":
        handler.setFormatter(jsonlogger.JsonFormatter(LOG_FORMAT))
    else:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
    # Remove all handlers associated with the root logger object.
    for h in root_logger.handlers[:]:
        root_logger.removeHandler(h)
    root_logger.addHandler(handler)


def load_config(path: Optional[str] = None, environ=None) -> dict:
    raw_config = {}
    if path:
        with open(path, "r") as f:
            raw_config = yaml.safe_load(f) or {}
    return normalize_config(raw_config, os.environ if environ is None else environ)


def normalize_config(config: dict, environ=None) -> dict:
    """
    Merge file settings, environment overrides and defaults.

    Precedence is environment, then the YAML file, then the defaults in
    SETTINGS. Unknown keys in the file are kept so callers can extend the
    config without touching this module.
    """
    environ = environ or {}
    normalized = dict(config)

    for key, (env_name, default, kind) in SETTINGS.items():
        value = environ.get(env_name)
        source = env_name
        if value in (None, ""):
            value = config.get(key)
            source = key
        if value in (None, ""):
            normalized[key] = default
            continue
        try:
            normalized[key] = kind(value)
        except (TypeError, ValueError):
            raise ConfigError(f"Invalid value for {source}: {value!r}")

    if str(environ.get("DEBUG", "")).lower() == "true":
        normalized["log_level"] = "DEBUG"

    if normalized["resolve_batch_size"] < 1:
        raise ConfigError("resolve_batch_size must be at least 1")
    if normalized["rpc_timer_ms"] < 1:
        raise ConfigError("rpc_timer_ms must be positive")

    return normalized


def node_urls(config: dict) -> list:
    """Primary node first, then the external fallback node."""
    urls = []
    for key in ("node_url", "external_node_url"):
        url = config.get(key)
        if url and url not in urls:
            urls.append(url)
    return urls
