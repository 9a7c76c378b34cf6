"""Configuration Manager component."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from dotenv import load_dotenv

from .errors import ErrorKind, ScanError
from .recognizer import DEFAULT_MODEL

# Load .env file from current directory or parent directories
load_dotenv()

CREDENTIAL_ENV_VARS: tuple[str, ...] = ('GEMINI_API_KEY', 'GOOGLE_GENAI_API_KEY')
DUPLICATED_KEY_LENGTH: int = 78


@dataclass
class Config:
    """Application configuration."""
    db_path: Path = field(default_factory=lambda: Path.home() / ".textlens" / "scans.db")
    blob_dir: Path = field(default_factory=lambda: Path.home() / ".textlens" / "images")
    sync_interval: float = 1.0
    gemini_api_key: str = ""
    ai_model: str = DEFAULT_MODEL
    temperature: float = 0.1
    max_output_tokens: int = 2048
    history_limit: int = 50

    @property
    def has_credential(self) -> bool:
        return bool(self.gemini_api_key)


DEFAULT_CONFIG_PATH = Path.home() / ".textlens" / "config.yaml"


class ConfigError(ScanError):
    """Exception raised for configuration errors."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorKind.CONFIG_INVALID, message)


def clean_api_key(key: str | None) -> str:
    """Normalize a credential string.

    A key pasted twice in a row is reduced to a single copy.

    Args:
        key: Raw credential value.

    Returns:
        Cleaned key, or "" if none was given.
    """
    if not key:
        return ""
    key = key.strip()
    if len(key) == DUPLICATED_KEY_LENGTH:
        half = len(key) // 2
        if key[:half] == key[half:]:
            return key[:half]
    return key


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from file and environment.

    Writes the default configuration if the file doesn't exist yet.

    Args:
        config_path: Path to config file. Uses default if None.

    Returns:
        Config object with loaded settings.

    Raises:
        ConfigError: If the config file is malformed.
    """
    path = config_path or DEFAULT_CONFIG_PATH
    config = Config()

    if path.exists():
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Store configuration is invalid: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError("Store configuration is invalid: expected a mapping")

        _apply(config, data)
    else:
        save_config(config, path)

    # Credential is optional here; extraction reports it missing
    for var in CREDENTIAL_ENV_VARS:
        api_key = clean_api_key(os.environ.get(var))
        if api_key:
            config.gemini_api_key = api_key
            break

    return config


def _apply(config: Config, data: dict) -> None:
    store = _section(data, 'store')
    try:
        if 'db_path' in store:
            config.db_path = Path(store['db_path']).expanduser()
        if 'blob_dir' in store:
            config.blob_dir = Path(store['blob_dir']).expanduser()
        if 'sync_interval' in store:
            config.sync_interval = float(store['sync_interval'])

        # AI settings
        ai_settings = _section(data, 'ai')
        if 'model' in ai_settings:
            config.ai_model = str(ai_settings['model'])
        if 'temperature' in ai_settings:
            config.temperature = float(ai_settings['temperature'])
        if 'max_output_tokens' in ai_settings:
            config.max_output_tokens = int(ai_settings['max_output_tokens'])

        history = _section(data, 'history')
        if 'limit' in history:
            config.history_limit = int(history['limit'])
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Store configuration is invalid: {e}") from e


def _section(data: dict, name: str) -> dict:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"Store configuration is invalid: '{name}' must be a mapping")
    return section


def save_config(config: Config, config_path: Path | None = None) -> None:
    """Save configuration to file.

    The credential is never written.

    Args:
        config: Config object to save.
        config_path: Path to save config. Uses default if None.
    """
    path = config_path or DEFAULT_CONFIG_PATH

    # Ensure parent directory exists
    path.parent.mkdir(parents=True, exist_ok=True)

    data = {
        'store': {
            'db_path': str(config.db_path),
            'blob_dir': str(config.blob_dir),
            'sync_interval': config.sync_interval,
        },
        'ai': {
            'model': config.ai_model,
            'temperature': config.temperature,
            'max_output_tokens': config.max_output_tokens,
        },
        'history': {
            'limit': config.history_limit,
        },
    }

    with open(path, 'w') as f:
        yaml.dump(data, f, default_flow_style=False)
