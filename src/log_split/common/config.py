# src/log_split/common/config.py

import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from log_split.common.logging import logger

DEFAULT_ENV = "prod"

# Repository root, four levels above src/log_split/common/config.py
project_root = Path(__file__).resolve().parent.parent.parent.parent

_config_cache: Optional[Dict[str, Any]] = None


def load_config(config_dir: Optional[Path] = None) -> Dict[str, Any]:
    """
    Loads the extension configuration from a YAML file based on the APP_ENV
    environment variable.

    Purpose:
        To provide a centralized way of loading environment-specific settings.
        The environment (e.g., 'dev', 'prod') comes from `APP_ENV` and defaults
        to 'prod', since an extension inherits the function's environment and
        cannot expect it to be set. The file is `<config_dir>/<env>.yaml`, where
        the directory is taken from the argument, then `LOG_SPLIT_CONFIG_DIR`,
        then the project's own `config` directory. The loaded configuration is
        cached for the lifetime of the process.

    Args:
        config_dir (Optional[Path]): Directory holding the YAML files.

    Returns:
        Dict[str, Any]: A dictionary containing the configuration.

    Raises:
        FileNotFoundError: If the required configuration file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
    """
    global _config_cache
    if _config_cache:
        logger.debug("Returning cached configuration.")
        return _config_cache

    env = os.environ.get("APP_ENV", DEFAULT_ENV)
    logger.info(f"Loading configuration for environment: {env}")

    if config_dir is None:
        env_dir = os.environ.get("LOG_SPLIT_CONFIG_DIR")
        config_dir = Path(env_dir) if env_dir else project_root / "config"
    config_path = Path(config_dir) / f"{env}.yaml"

    if not config_path.is_file():
        logger.error(f"Configuration file not found at path: {config_path}")
        raise FileNotFoundError(f"Config file not found for env '{env}'")

    with open(config_path, "r") as f:
        try:
            config_data = yaml.safe_load(f) or {}
            _config_cache = config_data
            logger.info("Successfully loaded and cached configuration.")
            return config_data
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML file {config_path}: {e}")
            raise


@dataclass(frozen=True)
class ExtensionSettings:
    """Immutable runtime settings, merged from YAML config and the environment."""

    runtime_api: str
    extension_name: str
    log_level: str
    listener_host: str
    listener_port: int
    queue_size: int
    shutdown_grace_seconds: float
    telemetry_types: tuple
    buffering_max_items: int
    buffering_max_bytes: int
    buffering_timeout_ms: int
    directive_marker: str
    default_log_group: str
    sink_max_attempts: int
    sink_base_delay_seconds: float
    sink_max_delay_seconds: float
    memory_size_mb: int
    stream_suffix: str


def _default_log_group(
    configured: Optional[str], environ: Mapping[str, str]
) -> str:
    override = environ.get("LOG_SPLIT_DEFAULT_LOG_GROUP") or configured
    if override:
        return override
    function_name = environ.get("AWS_LAMBDA_FUNCTION_NAME")
    if function_name:
        return f"/aws/lambda/{function_name}"
    raise ValueError(
        "No default log group: set sink.default_log_group, "
        "LOG_SPLIT_DEFAULT_LOG_GROUP or AWS_LAMBDA_FUNCTION_NAME."
    )


def load_settings(
    environ: Optional[Mapping[str, str]] = None,
    config: Optional[Dict[str, Any]] = None,
) -> ExtensionSettings:
    """
    Builds the ExtensionSettings for this process.

    Args:
        environ (Optional[Mapping[str, str]]): Process environment. Defaults to os.environ.
        config (Optional[Dict[str, Any]]): Parsed YAML config. Defaults to load_config().

    Returns:
        ExtensionSettings: The merged settings.

    Raises:
        ValueError: If AWS_LAMBDA_RUNTIME_API is missing or no default log
                    group can be determined.
    """
    environ = os.environ if environ is None else environ
    config = load_config() if config is None else config

    runtime_api = environ.get("AWS_LAMBDA_RUNTIME_API")
    if not runtime_api:
        raise ValueError("AWS_LAMBDA_RUNTIME_API environment variable is not set.")

    logging_cfg = config.get("logging", {})
    extension_cfg = config.get("extension", {})
    listener_cfg = config.get("listener", {})
    telemetry_cfg = config.get("telemetry", {})
    buffering_cfg = telemetry_cfg.get("buffering", {})
    directive_cfg = config.get("directive", {})
    sink_cfg = config.get("sink", {})

    return ExtensionSettings(
        runtime_api=runtime_api,
        extension_name=extension_cfg.get("name", "log-split-extension"),
        log_level=logging_cfg.get("level", "INFO"),
        listener_host=listener_cfg.get("host", "sandbox"),
        listener_port=int(listener_cfg.get("port", 4323)),
        queue_size=int(listener_cfg.get("queue_size", 1000)),
        shutdown_grace_seconds=float(listener_cfg.get("shutdown_grace_seconds", 1.0)),
        telemetry_types=tuple(telemetry_cfg.get("types", ["platform", "function"])),
        buffering_max_items=int(buffering_cfg.get("max_items", 1000)),
        buffering_max_bytes=int(buffering_cfg.get("max_bytes", 262144)),
        buffering_timeout_ms=int(buffering_cfg.get("timeout_ms", 100)),
        directive_marker=environ.get("LOG_SPLIT_DIRECTIVE_MARKER")
        or directive_cfg.get("marker", "::sst::"),
        default_log_group=_default_log_group(sink_cfg.get("default_log_group"), environ),
        sink_max_attempts=int(sink_cfg.get("max_attempts", 3)),
        sink_base_delay_seconds=float(sink_cfg.get("base_delay_seconds", 0.2)),
        sink_max_delay_seconds=float(sink_cfg.get("max_delay_seconds", 2.0)),
        memory_size_mb=int(environ.get("AWS_LAMBDA_FUNCTION_MEMORY_SIZE", "0") or 0),
        stream_suffix=environ.get("LOG_SPLIT_STREAM_SUFFIX") or str(uuid.uuid4()),
    )
