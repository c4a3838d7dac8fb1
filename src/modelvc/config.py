"""Configuration management for modelvc."""

import json
import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)


class WatchConfig(BaseModel):
    """Configuration for the external change monitor."""

    enabled: bool = Field(
        default=True, description="Start the change monitor when a file is opened"
    )
    debounce_seconds: float = Field(
        default=0.5,
        description="Quiet period collapsing a burst of writes into one change",
    )

    @field_validator("debounce_seconds")
    @classmethod
    def validate_debounce(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("debounce_seconds must be positive")
        return v


class StorageConfig(BaseModel):
    """Configuration for the local snapshot store layout."""

    folder_name: str = Field(
        default="0studio",
        description="Sibling folder holding one storage root per tracked file",
    )
    commit_prefix: str = Field(
        default="commit-", description="File name prefix of commit snapshot blobs"
    )
    tree_file_name: str = Field(
        default="tree.json", description="File name of the persisted tree record"
    )


class RetrySettings(BaseModel):
    """Bounded exponential backoff for remote calls."""

    max_retries: int = Field(default=3, description="Retries after the initial attempt")
    initial_delay: float = Field(
        default=1.0, description="Initial delay between retries in seconds"
    )
    max_delay: float = Field(default=30.0, description="Upper bound for one delay")
    backoff_multiplier: float = Field(
        default=2.0, description="Multiplier applied to the delay after each retry"
    )
    jitter_enabled: bool = Field(
        default=True, description="Randomize delays to avoid synchronized retries"
    )

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_retries must be at least 1")
        return v


class TimeoutSettings(BaseModel):
    """HTTP timeouts in seconds."""

    connect: float = Field(default=10.0, description="Connect timeout")
    read: float = Field(default=30.0, description="Read timeout")
    write: float = Field(default=10.0, description="Write timeout")
    pool: float = Field(default=5.0, description="Connection pool timeout")


class RemoteConfig(BaseModel):
    """Configuration for cloud synchronization."""

    backend_url: Optional[str] = Field(
        default=None, description="Base URL of the sync backend issuing transfer URLs"
    )
    project_id: Optional[str] = Field(
        default=None, description="Cloud project the tracked file is linked to"
    )
    retry: RetrySettings = Field(default_factory=RetrySettings)
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)

    @field_validator("backend_url")
    @classmethod
    def validate_backend_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError("backend_url must start with http:// or https://")
        return v

    @property
    def is_configured(self) -> bool:
        return bool(self.backend_url and self.project_id)


class Config(BaseModel):
    """Main configuration model."""

    watch: WatchConfig = Field(default_factory=WatchConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    main_branch_color: str = Field(
        default="#3b82f6", description="Color assigned to the main branch"
    )
    initial_commit_message: str = Field(
        default="Initial model import",
        description="Message of the commit created when a file is first tracked",
    )


class ConfigManager:
    """Manages configuration loading, saving, and environment overrides."""

    DEFAULT_CONFIG_PATH = Path.home() / ".modelvc" / "config.json"

    ENV_BACKEND_URL = "MODELVC_BACKEND_URL"
    ENV_PROJECT_ID = "MODELVC_PROJECT_ID"

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = config_path or self.DEFAULT_CONFIG_PATH
        self._config: Optional[Config] = None

    def load(self) -> Config:
        """Load configuration from file or create default, then apply env overrides."""
        if self.config_path.exists():
            try:
                with open(self.config_path, "r") as f:
                    data = json.load(f)
                self._config = Config(**data)
            except Exception as e:
                raise ValueError(f"Failed to load config from {self.config_path}: {e}")
        else:
            self._config = Config()

        self._apply_environment(self._config)
        return self._config

    def _apply_environment(self, config: Config) -> None:
        backend_url = os.environ.get(self.ENV_BACKEND_URL)
        if backend_url:
            remote_data = config.remote.model_dump()
            remote_data["backend_url"] = backend_url
            config.remote = RemoteConfig(**remote_data)
            logger.debug(f"Backend URL overridden from {self.ENV_BACKEND_URL}")

        project_id = os.environ.get(self.ENV_PROJECT_ID)
        if project_id:
            config.remote.project_id = project_id
            logger.debug(f"Project id overridden from {self.ENV_PROJECT_ID}")

    def save(self, config: Optional[Config] = None) -> None:
        """Save configuration to file."""
        if config is None:
            config = self._config

        if config is None:
            raise ValueError("No configuration to save")

        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self.config_path, "w") as f:
            json.dump(config.model_dump(), f, indent=2)

    def get_config(self) -> Config:
        """Get current configuration, loading if necessary."""
        if self._config is None:
            self._config = self.load()
        return self._config
