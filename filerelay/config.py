"""
Configuration Management

Handles loading configuration from environment variables and config files.
"""

import os
import json
from pathlib import Path
from dataclasses import dataclass, field, fields
from typing import Optional

from dotenv import load_dotenv

from .constants import (
    DEFAULT_HOST, DEFAULT_BIND_HOST, DEFAULT_PORT, CONNECT_TIMEOUT,
    ACCEPT_GRACE_PERIOD, UPLOAD_DIR, DOWNLOAD_DIR
)

ENV_PREFIX = 'FILERELAY_'


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    value = os.getenv(ENV_PREFIX + name)
    if value is None or value == '':
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {value!r}") from None


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    value = os.getenv(ENV_PREFIX + name)
    if value is None or value == '':
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {value!r}") from None


@dataclass
class Config:
    """
    File transfer configuration.

    Configuration priority (highest to lowest):
    1. Environment variables (FILERELAY_*)
    2. Config file (config.json)
    3. Default values
    """
    # Network
    host: str = DEFAULT_HOST            # server the client connects to
    bind_host: str = DEFAULT_BIND_HOST  # interface the server listens on
    port: int = DEFAULT_PORT

    # Storage
    storage_dir: Path = field(default_factory=lambda: Path(UPLOAD_DIR))
    download_dir: Path = field(default_factory=lambda: Path(DOWNLOAD_DIR))

    # Server
    max_workers: Optional[int] = None  # None: grow to demand
    accept_grace_period: float = ACCEPT_GRACE_PERIOD

    # Client
    connect_timeout: float = CONNECT_TIMEOUT

    # Logging
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        load_dotenv()

        config = cls()

        # Network
        config.host = os.getenv(ENV_PREFIX + 'HOST', config.host)
        config.bind_host = os.getenv(ENV_PREFIX + 'BIND_HOST', config.bind_host)
        config.port = _env_int('PORT', config.port)

        # Storage
        storage_dir = os.getenv(ENV_PREFIX + 'STORAGE_DIR')
        if storage_dir:
            config.storage_dir = Path(storage_dir)
        download_dir = os.getenv(ENV_PREFIX + 'DOWNLOAD_DIR')
        if download_dir:
            config.download_dir = Path(download_dir)

        # Server
        config.max_workers = _env_int('MAX_WORKERS', config.max_workers)
        config.accept_grace_period = _env_float(
            'ACCEPT_GRACE_PERIOD', config.accept_grace_period
        )

        # Client
        config.connect_timeout = _env_float('CONNECT_TIMEOUT', config.connect_timeout)

        # Logging
        config.log_level = os.getenv(ENV_PREFIX + 'LOG_LEVEL', config.log_level)

        return config

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON file."""
        path = Path(path)
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        config = cls()

        config.host = data.get('host', config.host)
        config.bind_host = data.get('bind_host', config.bind_host)
        config.port = data.get('port', config.port)

        if 'storage_dir' in data:
            config.storage_dir = Path(data['storage_dir'])
        if 'download_dir' in data:
            config.download_dir = Path(data['download_dir'])

        config.max_workers = data.get('max_workers', config.max_workers)
        config.accept_grace_period = data.get(
            'accept_grace_period', config.accept_grace_period
        )
        config.connect_timeout = data.get('connect_timeout', config.connect_timeout)
        config.log_level = data.get('log_level', config.log_level)

        return config

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'host': self.host,
            'bind_host': self.bind_host,
            'port': self.port,
            'storage_dir': str(self.storage_dir),
            'download_dir': str(self.download_dir),
            'max_workers': self.max_workers,
            'accept_grace_period': self.accept_grace_period,
            'connect_timeout': self.connect_timeout,
            'log_level': self.log_level,
        }

    def save(self, path: Path):
        """Save configuration to a JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from file and environment.

    Environment variables override file settings.
    """
    config = Config()

    if config_path and Path(config_path).exists():
        config = Config.from_file(config_path)

    env_config = Config.from_env()

    # Every field is FILERELAY_<FIELD NAME>; a set variable wins over the file
    for f in fields(Config):
        if os.getenv(ENV_PREFIX + f.name.upper()):
            setattr(config, f.name, getattr(env_config, f.name))

    return config
