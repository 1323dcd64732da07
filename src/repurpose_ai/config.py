import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import yaml
from pydantic import ValidationError as PydanticValidationError

from .errors import FatalConfigError
from .models import PipelineConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

ENV_PREFIX = "REPURPOSE_"

# env suffix -> (section, key, cast)
ENV_OVERRIDES: Dict[str, Tuple[str, str, Callable[[str], Any]]] = {
    "QUEUE_URL": ("queue", "url", str),
    "QUEUE_POOL_MIN": ("queue", "pool_min", int),
    "QUEUE_POOL_MAX": ("queue", "pool_max", int),
    "VISIBILITY_TIMEOUT_S": ("queue", "visibility_timeout_s", int),
    "STORAGE_URL": ("storage", "url", str),
    "STORAGE_POOL_MIN": ("storage", "pool_min", int),
    "STORAGE_POOL_MAX": ("storage", "pool_max", int),
    "MAX_ATTEMPTS": ("retry", "max_attempts", int),
    "BACKOFF_BASE_S": ("retry", "base_delay_s", float),
    "BACKOFF_MAX_S": ("retry", "max_delay_s", float),
    "WORKER_CONCURRENCY": ("worker", "concurrency", int),
    "CAPABILITY": ("capability", "target", str),
    "CAPABILITY_TIMEOUT_S": ("capability", "timeout_s", float),
    "LOG_LEVEL": ("logging", "level", str),
}

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

logger = logging.getLogger(__name__)


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise FatalConfigError(f"cannot parse {path}: {e}") from e


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Collect REPURPOSE_* variables into a nested override dict."""
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}

    for suffix, (section, key, cast) in ENV_OVERRIDES.items():
        name = ENV_PREFIX + suffix
        if name not in environ:
            continue
        raw = environ[name]
        try:
            value = cast(raw)
        except ValueError as e:
            raise FatalConfigError(f"{name}={raw!r} is not a valid {cast.__name__}") from e
        overrides.setdefault(section, {})[key] = value

    return overrides


def resolve_config(
    cli_args: Optional[Dict[str, Any]] = None,
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> PipelineConfig:
    """
    Resolve config: Defaults < default.yaml (or config_path) < local.yaml < env < CLI.

    Raises:
        FatalConfigError: Required value missing or any value out of bounds.
            The caller must refuse to start.
    """
    cli_args = cli_args or {}

    config_data = load_yaml(config_path or DEFAULT_CONFIG_PATH)
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))
    config_data = merge_dicts(config_data, env_overrides(environ))

    try:
        config = PipelineConfig.from_dict(config_data)
        return config.merge_cli_overrides(cli_args)
    except PydanticValidationError as e:
        raise FatalConfigError(f"invalid configuration: {e}") from e


def configure_logging(config: PipelineConfig) -> None:
    """Install root handlers once per process (CLI and API entry points)."""
    handlers = [logging.StreamHandler()]
    if config.logging.file:
        log_file = Path(config.logging.file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        level=getattr(logging, config.logging.level),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    logger.debug("Logging configured at %s", config.logging.level)
