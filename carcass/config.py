"""
Configuration management for carcass.

This module handles loading and validating configuration from various sources
including YAML files, environment variables and command-line arguments. The
resulting Config object is passed explicitly to every component.
"""

import os
import re
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, validator

from .exceptions import ConfigurationError

DEFAULT_DATA_DIR = "~/.local/share/carcass"

_FORBIDDEN_CHARS = re.compile(r"[^-.0-9A-Za-z]")


class HypervisorConfig(BaseModel):
    """Hypervisor connection configuration."""

    uri: str = Field(default="qemu:///system", description="Hypervisor connection URI")
    readonly: bool = Field(default=False, description="Use read-only connection")


class StorageConfig(BaseModel):
    """Storage pool and local data configuration."""

    pool: str = Field(default="default", description="Storage pool holding OS images")
    data_dir: str = Field(default=DEFAULT_DATA_DIR, description="Local data directory")
    chunk_size: int = Field(
        default=262144, ge=1, le=67108864, description="Upload chunk size in bytes"
    )
    http_timeout: int = Field(default=60, ge=1, le=3600, description="HTTP timeout in seconds")


class ControlConfig(BaseModel):
    """Machine control configuration."""

    force_stop: bool = Field(
        default=False, description="Send shutdown requests even to inactive domains"
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", description="Log level")
    file: Optional[str] = Field(default=None, description="Log file path")
    rotation: str = Field(default="10 MB", description="Log file rotation size")
    retention: str = Field(default="30 days", description="Log file retention")

    @validator('level')
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()


class Config(BaseModel):
    """Main configuration class."""

    hypervisor: HypervisorConfig = Field(default_factory=HypervisorConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    control: ControlConfig = Field(default_factory=ControlConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def data_dir(self) -> Path:
        """The data directory with ~ expanded."""
        return expand_data_dir(self.storage.data_dir)

    @classmethod
    def from_yaml_file(cls, file_path: str) -> "Config":
        """Load configuration from YAML file."""
        path = Path(file_path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {file_path}")

        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)

        return cls(**(data or {}))

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        return cls(**cls._env_overrides())

    @staticmethod
    def _env_overrides() -> dict:
        """Sections and fields set by CARCASS_* environment variables."""
        config_data = {}

        if uri := os.getenv("CARCASS_URI"):
            config_data.setdefault("hypervisor", {})["uri"] = uri
        if readonly := os.getenv("CARCASS_READONLY"):
            config_data.setdefault("hypervisor", {})["readonly"] = readonly.lower() == "true"

        if pool := os.getenv("CARCASS_POOL"):
            config_data.setdefault("storage", {})["pool"] = pool
        if data_dir := os.getenv("CARCASS_DATA_DIR"):
            config_data.setdefault("storage", {})["data_dir"] = data_dir

        if log_level := os.getenv("CARCASS_LOG_LEVEL"):
            config_data.setdefault("logging", {})["level"] = log_level
        if log_file := os.getenv("CARCASS_LOG_FILE"):
            config_data.setdefault("logging", {})["file"] = log_file

        return config_data

    @classmethod
    def load(cls, config_file: Optional[str] = None) -> "Config":
        """
        Load configuration from multiple sources with precedence:
        1. Environment variables
        2. YAML file (if provided)
        3. Default values
        """
        config = cls()

        if config_file:
            try:
                config = cls.from_yaml_file(config_file)
            except FileNotFoundError:
                pass

        # Only fields set in the environment override the file
        merged = config.model_dump()
        for section, values in cls._env_overrides().items():
            merged[section].update(values)

        return cls(**merged)

    def to_yaml_file(self, file_path: str) -> None:
        """Save configuration to YAML file."""
        path = Path(file_path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, 'w', encoding='utf-8') as f:
            yaml.dump(self.model_dump(), f, default_flow_style=False, indent=2)


def expand_data_dir(path: str) -> Path:
    """
    Expand a leading ``~`` or ``~user`` and normalize the path.

    An empty path is the current directory.
    """
    if not path:
        return Path(".")

    expanded = os.path.expanduser(path)
    if expanded.startswith("~"):
        raise ConfigurationError(f"could not expand {path.split('/', 1)[0]}")

    return Path(os.path.normpath(expanded))


def has_forbidden_chars(name: str) -> bool:
    """Tell if name contains characters outside of [-.0-9A-Za-z]."""
    return _FORBIDDEN_CHARS.search(name) is not None


def validate_name(name: str, kind: str = "name") -> str:
    """Return name if usable as an environment, machine or image name."""
    if not name or has_forbidden_chars(name):
        raise ConfigurationError(f"invalid {kind}: {name!r}", {"name": name})
    return name
