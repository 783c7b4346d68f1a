"""Machine file loading and validation."""

import logging
import os

import yaml

from vmforge.provisioning.cloud import BACKENDS
from vmforge.provisioning.errors import ConfigError

logger = logging.getLogger(__name__)

# Spec keys holding filesystem paths; expanded on load.
PATH_KEYS = {"image_path", "ssh_public_key_path", "src", "dst"}
SECTIONS = ("spec", "ssh", "timeouts")


def _expand_path(path: str) -> str:
    """Expand user home directory and environment variables in path."""
    return os.path.expanduser(os.path.expandvars(path))


def load_machine_config(config_path: str) -> dict:
    """Load and validate a machine file."""
    try:
        with open(config_path) as f:
            config = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"Machine file '{config_path}' not found.") from None
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing machine file '{config_path}': {e}") from e

    if not isinstance(config, dict):
        raise ConfigError(f"Machine file '{config_path}' must contain a mapping.")
    validate_machine_config(config)

    spec = config.get("spec") or {}
    for key in PATH_KEYS & set(spec):
        if isinstance(spec[key], str):
            spec[key] = _expand_path(spec[key])
    ssh = config.get("ssh") or {}
    if isinstance(ssh.get("private_key_path"), str):
        ssh["private_key_path"] = _expand_path(ssh["private_key_path"])
    return config


def validate_machine_config(config: dict) -> None:
    """Check the backend name and section shapes."""
    backend = config.get("backend")
    if not backend:
        raise ConfigError("Missing 'backend' in machine file.")
    if backend not in BACKENDS:
        raise ConfigError(f"Unknown backend '{backend}' (expected one of: {', '.join(sorted(BACKENDS))})")
    for section in SECTIONS:
        value = config.get(section)
        if value is not None and not isinstance(value, dict):
            raise ConfigError(f"'{section}' must be a mapping.")
    name = config.get("name")
    if name is not None and not isinstance(name, str):
        raise ConfigError("'name' must be a string.")
