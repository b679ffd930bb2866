"""Engine settings management.

Settings are layered, lowest priority first:
- Built-in defaults (Settings dataclass)
- stackctl.yaml in the working directory, or the file named by $STACKCTL_CONFIG
- STACKCTL_* environment variables
- The stack's own settings: block (applied by the caller)
- CLI flags (applied by the caller)
"""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Optional

import yaml

# Environment variable prefixes
ENV_PREFIX = 'STACKCTL_'
VAR_ENV_PREFIX = 'STACKCTL_VAR_'

# Settings file name looked up in the working directory
SETTINGS_FILE = 'stackctl.yaml'

VALID_ON_ERROR = ('stop', 'continue')


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class Settings:
    """Engine settings for plan and apply runs.

    Attributes:
        parallelism: Maximum provider operations running at once
        on_error: Failure strategy: 'stop' halts new work, 'continue' keeps
            independent branches going
        refresh: Read live resource attributes before diffing
        lock_timeout: Seconds to keep retrying a held state lock
        state_dir: Directory for local state files (relative to the stack)
    """
    parallelism: int = 10
    on_error: str = 'stop'
    refresh: bool = True
    lock_timeout: float = 0.0
    state_dir: str = '.stackctl'

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if self.parallelism < 1:
            raise ConfigError(f"parallelism must be >= 1, got {self.parallelism}")
        if self.on_error not in VALID_ON_ERROR:
            raise ConfigError(
                f"on_error must be one of {', '.join(VALID_ON_ERROR)}, got '{self.on_error}'"
            )
        if self.lock_timeout < 0:
            raise ConfigError(f"lock_timeout must be >= 0, got {self.lock_timeout}")

    def merge(self, overrides: Optional[dict]) -> 'Settings':
        """Return a copy with non-None overrides applied."""
        if not overrides:
            return Settings(**self.to_dict())
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigError(f"Unknown setting(s): {', '.join(sorted(unknown))}")
        data = self.to_dict()
        for key, value in overrides.items():
            if value is not None:
                data[key] = _coerce_setting(key, value)
        return Settings(**data)

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def _coerce_setting(key: str, value: Any) -> Any:
    """Coerce a raw (possibly string) value to the setting's type."""
    try:
        if key == 'parallelism':
            return int(value)
        if key == 'lock_timeout':
            return float(value)
        if key == 'refresh':
            if isinstance(value, str):
                return value.strip().lower() in ('1', 'true', 'yes', 'on')
            return bool(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid value for setting '{key}': {value!r}")
    return str(value)


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a YAML object (dict)")
    return data


def get_base_dir() -> Path:
    """Get the stackctl checkout directory."""
    return Path(__file__).parent.parent  # src/ -> stackctl/


def find_settings_file(cwd: Optional[Path] = None) -> Optional[Path]:
    """Discover the settings file.

    Resolution order:
    1. $STACKCTL_CONFIG environment variable (must exist)
    2. stackctl.yaml in the working directory
    """
    if env_path := os.environ.get(f'{ENV_PREFIX}CONFIG'):
        path = Path(env_path)
        if not path.exists():
            raise ConfigError(f"{ENV_PREFIX}CONFIG={env_path} does not exist")
        return path

    local = (cwd or Path.cwd()) / SETTINGS_FILE
    if local.exists():
        return local
    return None


def _env_overrides() -> dict[str, Any]:
    """Collect STACKCTL_<SETTING> overrides from the environment."""
    overrides: dict[str, Any] = {}
    for f in fields(Settings):
        if (value := os.environ.get(f'{ENV_PREFIX}{f.name.upper()}')) is not None:
            overrides[f.name] = value
    return overrides


def load_settings(cwd: Optional[Path] = None) -> Settings:
    """Load settings from file and environment.

    Returns:
        Settings with file then environment overrides applied

    Raises:
        ConfigError: If the settings file or an override is invalid
    """
    settings = Settings()
    path = find_settings_file(cwd)
    if path is not None:
        settings = settings.merge(_parse_yaml(path))
    return settings.merge(_env_overrides())


def env_variables() -> dict[str, str]:
    """Collect STACKCTL_VAR_<name> stack variable values from the environment."""
    return {
        key[len(VAR_ENV_PREFIX):]: value
        for key, value in os.environ.items()
        if key.startswith(VAR_ENV_PREFIX) and len(key) > len(VAR_ENV_PREFIX)
    }


def load_var_file(path: Path) -> dict[str, Any]:
    """Load variable values from a YAML var file."""
    if not path.exists():
        raise ConfigError(f"Variable file not found: {path}")
    return _parse_yaml(path)


def parse_var_flag(value: str) -> tuple[str, str]:
    """Parse a --var name=value flag.

    Raises:
        ConfigError: If the flag is not in name=value form
    """
    if '=' not in value:
        raise ConfigError(f"Invalid --var '{value}'. Expected NAME=VALUE")
    name, raw = value.split('=', 1)
    if not name:
        raise ConfigError(f"Invalid --var '{value}'. Variable name cannot be empty")
    return name, raw
