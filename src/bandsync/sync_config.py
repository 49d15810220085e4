"""Sync settings with validation and YAML persistence."""

import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .config import get_config_dir
from .utils.datetime import now_utc


logger = logging.getLogger(__name__)


class SyncSettings(BaseModel):
    """Device-side sync preferences."""

    auto_sync: bool = False
    sync_interval_seconds: int = 30
    auto_resolve_conflicts: bool = True

    # Reliability
    max_retry_attempts: int = 3
    initial_retry_delay_seconds: float = 1.0
    max_manifest_retries: int = 5

    # Housekeeping
    change_log_retention_days: int = 30
    share_code_ttl_hours: Optional[int] = Field(default=168)

    @field_validator('sync_interval_seconds')
    @classmethod
    def validate_sync_interval(cls, v):
        if v < 5:
            raise ValueError('Sync interval must be at least 5 seconds')
        return v

    @field_validator('max_retry_attempts', 'max_manifest_retries')
    @classmethod
    def validate_retry_budget(cls, v):
        if v < 1 or v > 20:
            raise ValueError('Retry budgets must be between 1 and 20')
        return v

    @field_validator('initial_retry_delay_seconds')
    @classmethod
    def validate_retry_delay(cls, v):
        if v < 0:
            raise ValueError('Retry delay cannot be negative')
        return v

    @field_validator('share_code_ttl_hours')
    @classmethod
    def validate_share_code_ttl(cls, v):
        if v is not None and v <= 0:
            raise ValueError('Share code TTL must be positive (or null for no expiry)')
        return v


class SyncConfigManager:
    """Manages sync settings with file-based persistence."""

    CONFIG_FILE = "sync.yaml"

    def __init__(self, config_dir: Optional[Path] = None):
        """Initialize config manager.

        Args:
            config_dir: Optional config directory path
        """
        self.config_dir = Path(config_dir) if config_dir else get_config_dir()
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.config_file = self.config_dir / self.CONFIG_FILE

        self.settings = SyncSettings()
        self.logger = logging.getLogger(__name__)

        self.load()

    def load(self):
        """Load settings from file, keeping defaults when it is absent or invalid."""
        if not self.config_file.exists():
            self.logger.debug("No sync config file found, using defaults")
            return

        try:
            with open(self.config_file, 'r') as f:
                data = yaml.safe_load(f)

            if not data:
                return

            data.pop('_metadata', None)
            self.settings = SyncSettings(**data)
            self.logger.debug(f"Loaded sync config from {self.config_file}")

        except (OSError, yaml.YAMLError, ValidationError) as e:
            self.logger.error(f"Failed to load sync config: {e}")

    def save(self):
        """Save settings to file."""
        data = self.settings.model_dump()
        data['_metadata'] = {
            'version': '1.0',
            'updated_at': now_utc().isoformat(),
            'generated_by': 'bandsync',
        }

        self.config_file.parent.mkdir(parents=True, exist_ok=True)

        # Write with atomic operation
        temp_file = self.config_file.with_suffix('.tmp')
        with open(temp_file, 'w') as f:
            yaml.dump(data, f, default_flow_style=False, indent=2, sort_keys=True)

        temp_file.replace(self.config_file)
        self.logger.debug(f"Saved sync config to {self.config_file}")

    def update(self, **changes) -> SyncSettings:
        """Validate and apply setting changes, then persist them."""
        merged = self.settings.model_dump()
        merged.update(changes)
        self.settings = SyncSettings(**merged)
        self.save()
        return self.settings
