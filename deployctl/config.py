import os
from typing import Dict

QUEUE_DIR_ENV = "DEPLOYCTL_QUEUE_DIR"
DEFAULT_QUEUE_DIR = "/queue"
ENV_PREFIX = "DEPLOYCTL_"

DEFAULT_CONFIG = {
    "projects_dir": "/projects",
    "deploy_timeout_seconds": "1800",
    "hook_timeout_seconds": "300",
    "stale_processing_seconds": "3600",
    "deploy_command": "",          # empty = docker compose deployment
    "ssh_keys_dir": "/root/.ssh-keys",
    "min_free_disk_mb": "1024",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

INT_CONFIG_KEYS = {
    "deploy_timeout_seconds",
    "hook_timeout_seconds",
    "stale_processing_seconds",
    "min_free_disk_mb",
}


def env_overrides() -> Dict[str, str]:
    """DEPLOYCTL_<KEY> variables win over the stored config."""
    out = {}
    for key in ALLOWED_CONFIG_KEYS:
        value = os.environ.get(ENV_PREFIX + key.upper())
        if value is not None:
            out[key] = value
    return out


def validate_config_value(key: str, value: str) -> str:
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    value = str(value)
    if key in INT_CONFIG_KEYS:
        try:
            if int(value) <= 0:
                raise ValueError
        except ValueError:
            raise ValueError(f"{key} must be a positive integer.")
    return value


def config_int(cfg: Dict[str, str], key: str) -> int:
    try:
        return int(cfg.get(key, DEFAULT_CONFIG[key]))
    except ValueError:
        return int(DEFAULT_CONFIG[key])
