"""Configuration management for bandsync."""

import logging
import os
import socket
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml


logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = "~/.bandsync"


@dataclass
class ConfigModel:
    """Device-level configuration for bandsync."""

    # File paths
    data_dir: str = ""
    cloud_folder: str = ""
    database_file: str = "bandsync.db"

    # Device identity, generated once and then persisted
    device_id: str = ""
    device_name: str = ""

    def __post_init__(self):
        """Post-initialization setup."""
        if not self.data_dir:
            self.data_dir = os.environ.get("BANDSYNC_HOME", DEFAULT_DATA_DIR)
        self.data_dir = os.path.expanduser(self.data_dir)
        if not self.cloud_folder:
            self.cloud_folder = str(Path(self.data_dir) / "cloud")
        self.cloud_folder = os.path.expanduser(self.cloud_folder)

        if not self.device_id:
            self.device_id = str(uuid.uuid4())
        if not self.device_name:
            self.device_name = socket.gethostname() or "Unknown device"

        Path(self.data_dir).mkdir(parents=True, exist_ok=True)

    def to_yaml(self) -> str:
        """Serialize config to YAML."""
        data = {
            "data_dir": self.data_dir,
            "cloud_folder": self.cloud_folder,
            "database_file": self.database_file,
            "device_id": self.device_id,
            "device_name": self.device_name,
        }
        return yaml.dump(data, default_flow_style=False)

    @classmethod
    def from_yaml(cls, yaml_str: str) -> "ConfigModel":
        """Deserialize config from YAML."""
        data = yaml.safe_load(yaml_str) or {}
        known = {key: value for key, value in data.items() if key in cls.__dataclass_fields__}
        return cls(**known)

    @property
    def database_path(self) -> Path:
        return Path(self.data_dir) / self.database_file

    def get_config_path(self) -> Path:
        """Get the config file path."""
        return Path(self.data_dir) / "config.yaml"


class Config:
    """Configuration manager for bandsync."""

    _instance: Optional[ConfigModel] = None

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> ConfigModel:
        """Load configuration from file or create default.

        A freshly created config is written back immediately so the generated
        device id stays stable across runs.
        """
        if cls._instance is not None:
            return cls._instance

        if config_path is None:
            config_path = Path(os.path.expanduser(os.environ.get("BANDSYNC_HOME", DEFAULT_DATA_DIR))) / "config.yaml"

        if config_path.exists():
            try:
                with open(config_path, 'r') as f:
                    yaml_content = f.read()
                config = ConfigModel.from_yaml(yaml_content)
                logger.debug(f"Loaded configuration from {config_path}")
            except (OSError, yaml.YAMLError, TypeError) as e:
                logger.warning(f"Failed to load config from {config_path}: {e}; using defaults")
                config = ConfigModel(data_dir=str(config_path.parent))
        else:
            config = ConfigModel(data_dir=str(config_path.parent))
            cls.save(config, config_path)
            logger.info(f"Created default configuration at {config_path}")

        cls._instance = config
        return config

    @classmethod
    def save(cls, config: ConfigModel, config_path: Optional[Path] = None) -> None:
        """Save configuration to file."""
        if config_path is None:
            config_path = config.get_config_path()

        config_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            with open(config_path, 'w') as f:
                f.write(config.to_yaml())
            logger.debug(f"Configuration saved to {config_path}")
        except OSError as e:
            logger.error(f"Failed to save config to {config_path}: {e}")
            raise

    @classmethod
    def get(cls) -> ConfigModel:
        """Get the current configuration instance."""
        if cls._instance is None:
            cls._instance = cls.load()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Forget the cached configuration."""
        cls._instance = None


def get_config() -> ConfigModel:
    """Get the current configuration."""
    return Config.get()


def load_config(config_path: Optional[Path] = None) -> ConfigModel:
    """Load configuration from file."""
    return Config.load(config_path)


def save_config(config: ConfigModel, config_path: Optional[Path] = None) -> None:
    """Save configuration to file."""
    Config.save(config, config_path)


def get_config_dir() -> Path:
    """Get the configuration directory path.

    Returns:
        Path to the configuration directory
    """
    config = get_config()
    return Path(config.data_dir)
