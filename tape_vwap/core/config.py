"""
Configuration loading.

The engine is configured from a single YAML document. Each component
receives its own section as a plain dict and reads values with
``.get(key, DEFAULT)``; this module only loads the file and checks the
shape of the sections every deployment needs.
"""

from pathlib import Path
from typing import Any, Dict, Union

import yaml

from .constants import Environment
from .exceptions import InvalidConfigError, MissingConfigError


REQUIRED_SECTIONS = ('instruments', 'policy')

_NUMERIC_KEYS = {
    'gap': ('reorder_window',),
    'backfill': ('timeout_seconds', 'max_retries', 'backoff_base_seconds', 'backoff_max_seconds'),
    'aggregator': ('checkpoint_interval_seconds', 'log_grace_period_seconds', 'log_retry_seconds'),
    'snapshots': ('max_backups',),
    'publisher': ('throttle_seconds',),
    'heartbeat': ('interval_seconds', 'max_failures'),
}


def load_config(config_file: Union[str, Path]) -> Dict[str, Any]:
    """
    Load and validate the engine configuration.

    Args:
        config_file: Path to the YAML configuration file

    Returns:
        Configuration dictionary

    Raises:
        MissingConfigError: file or a required section is missing
        InvalidConfigError: a value has the wrong type or range
    """
    path = Path(config_file)
    if not path.exists():
        raise MissingConfigError("Configuration file not found", path=str(path))

    with open(path, 'r') as f:
        try:
            config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise InvalidConfigError(f"Configuration is not valid YAML: {e}", path=str(path))

    if not isinstance(config, dict):
        raise InvalidConfigError("Configuration root must be a mapping", path=str(path))

    validate_config(config)

    # Relative policy paths resolve against the config file's directory
    policy = config.get('policy')
    if isinstance(policy, str) and not Path(policy).is_absolute():
        candidate = path.parent / policy
        if candidate.exists():
            config['policy'] = str(candidate)

    return config


def validate_config(config: Dict[str, Any]) -> None:
    """Check required sections and numeric ranges; raise on the first problem."""
    for section in REQUIRED_SECTIONS:
        if section not in config:
            raise MissingConfigError(f"Missing required section: {section}", section=section)

    instruments = config['instruments']
    if not isinstance(instruments, list) or not all(isinstance(i, str) for i in instruments):
        raise InvalidConfigError("'instruments' must be a list of instrument ids")

    env = config.get('environment', Environment.DEV.value)
    try:
        Environment(env)
    except ValueError:
        raise InvalidConfigError(f"Unknown environment: {env}", environment=env)

    for section, keys in _NUMERIC_KEYS.items():
        values = config.get(section) or {}
        if not isinstance(values, dict):
            raise InvalidConfigError(f"Section '{section}' must be a mapping", section=section)
        for key in keys:
            if key not in values:
                continue
            value = values[key]
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InvalidConfigError(
                    f"{section}.{key} must be numeric",
                    section=section,
                    key=key,
                    value=value
                )
            if value < 0:
                raise InvalidConfigError(
                    f"{section}.{key} cannot be negative",
                    section=section,
                    key=key,
                    value=value
                )

    publisher_kind = (config.get('publisher') or {}).get('kind', 'memory')
    if publisher_kind not in ('memory', 'zmq'):
        raise InvalidConfigError(f"Unknown publisher kind: {publisher_kind}", kind=publisher_kind)
