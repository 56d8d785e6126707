import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .models import RenderServerConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

# env var -> dotted config path
ENV_OVERRIDES = {
    "RENDER_PORT": "server.port",
    "REELSMITH_RENDER_DIR": "paths.render_dir",
    "REELSMITH_FFMPEG": "toolchain.ffmpeg_path",
    "REELSMITH_FFPROBE": "toolchain.ffprobe_path",
}


def get_config_value(config, path: str, default=None):
    """
    Safely get a config value from either a RenderServerConfig or a dict.

    Args:
        config: RenderServerConfig model or dict
        path: Dot-separated path like "normalization.video.target_fps"
        default: Default value if not found
    """
    if isinstance(config, RenderServerConfig):
        config = config.model_dump()

    value = config
    for key in path.split("."):
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


def _set_dotted(data: Dict, path: str, value: Any) -> None:
    keys = path.split(".")
    node = data
    for key in keys[:-1]:
        node = node.setdefault(key, {})
    node[keys[-1]] = value


def env_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Collect config overrides from environment variables."""
    environ = os.environ if environ is None else environ
    data: Dict[str, Any] = {}
    for var, path in ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        value: Any = raw
        if path == "server.port":
            try:
                value = int(raw)
            except ValueError:
                # Non-numeric port keeps the configured default.
                continue
        _set_dotted(data, path, value)
    return data


def resolve_config(
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> RenderServerConfig:
    """
    Resolve config: Default YAML < Local YAML < environment < explicit overrides.

    ``overrides`` is a nested dict shaped like the YAML file, e.g.
    ``{"paths": {"render_dir": "/tmp/renders"}}``.
    """
    config_data = load_yaml(DEFAULT_CONFIG_PATH)
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))
    config_data = merge_dicts(config_data, env_overrides(environ))
    config_data = merge_dicts(config_data, overrides or {})
    return RenderServerConfig.from_dict(config_data)
