import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .models import DocConvertConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

# Environment variable -> (section, key, caster)
ENV_OVERRIDES = {
    "DATABASE_PATH": ("queue", "db_path", str),
    "JOB_ATTEMPTS": ("queue", "max_attempts", int),
    "JOB_BACKOFF_MS": ("queue", "backoff_base_ms", int),
    "JOB_TIMEOUT": ("dispatch", "job_timeout_s", float),
    "WORKER_CONCURRENCY": ("workers", "concurrency", int),
    "UPLOADS_DIR": ("storage", "uploads_dir", str),
    "RESULTS_DIR": ("storage", "results_dir", str),
    "PORT": ("api", "port", int),
    "LOG_LEVEL": ("logging", "level", str),
}


def get_config_value(config: Union[DocConvertConfig, Dict], path: str, default=None):
    """
    Safely get a config value from either Pydantic model or dict.

    Args:
        config: DocConvertConfig model or dict
        path: Dot-separated path like "queue.max_attempts"
        default: Default value if not found

    Returns:
        The config value or default
    """
    if isinstance(config, DocConvertConfig):
        config = config.model_dump()

    keys = path.split(".")
    value = config
    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def env_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Collect config overrides from environment variables."""
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for var, (section, key, caster) in ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        try:
            value = caster(raw)
        except ValueError:
            raise ValueError(f"Invalid value for {var}: {raw!r}")
        overrides.setdefault(section, {})[key] = value
    return overrides


def resolve_config(
    cli_args: Dict[str, Any] = None,
    environ: Optional[Dict[str, str]] = None,
) -> DocConvertConfig:
    """
    Resolve config: Default < Local < Environment < CLI
    Returns validated Pydantic DocConvertConfig model.
    """
    cli_args = cli_args or {}

    config_data = load_yaml(DEFAULT_CONFIG_PATH)
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))
    config_data = merge_dicts(config_data, env_overrides(environ))

    config = DocConvertConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)
