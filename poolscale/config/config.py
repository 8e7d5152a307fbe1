"""
Configuration module for the autoscaling control system.
Loads pools, triggers, node classes and backend settings from YAML or JSON.
"""
import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


class Config:
    """Configuration class for the autoscaler."""

    def __init__(self, config_path: Optional[str] = None, config_data: Optional[Dict[str, Any]] = None):
        """Initialize configuration.

        Args:
            config_path: Path to configuration file. If None, start empty.
            config_data: Already-parsed configuration. Ignored if config_path is given.
        """
        self.config_path = config_path
        self.logs_dir = Path("logs")

        self.config_data: Dict[str, Any] = {}
        if config_path:
            self.load_config(config_path)
        elif config_data:
            self.config_data = dict(config_data)
            self._apply_paths()

    def load_config(self, config_path: str) -> None:
        """Load configuration from a YAML or JSON file.

        Args:
            config_path: Path to configuration file.
        """
        with open(config_path, "r") as f:
            if str(config_path).endswith(".json"):
                self.config_data = json.load(f)
            else:
                self.config_data = yaml.safe_load(f) or {}

        self.config_path = config_path
        self._apply_paths()

    def _apply_paths(self) -> None:
        paths = self.config_data.get("paths", {})
        if "logs_dir" in paths:
            self.logs_dir = Path(paths["logs_dir"])

    def ensure_dirs(self) -> None:
        """Create directories the process writes into."""
        os.makedirs(self.logs_dir, exist_ok=True)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value.

        Args:
            key: Configuration key.
            default: Default value if key not found.

        Returns:
            Configuration value.
        """
        return self.config_data.get(key, default)

    def section(self, key: str) -> Dict[str, Any]:
        """Get a configuration block, empty if absent or null."""
        return self.config_data.get(key) or {}

    def __getitem__(self, key: str) -> Any:
        """Get a configuration value using dictionary-like access.

        Raises:
            KeyError: If key not found.
        """
        return self.config_data[key]

    def __contains__(self, key: str) -> bool:
        return key in self.config_data

    def save_config(self, config_path: str) -> None:
        """Save current configuration to a YAML file.

        Args:
            config_path: Path to save configuration file.
        """
        with open(config_path, "w") as f:
            yaml.dump(self.config_data, f, default_flow_style=False)

    @classmethod
    def from_yaml(cls, yaml_path: str) -> "Config":
        """Create a Config instance from a YAML file."""
        return cls(yaml_path)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        return cls(config_data=data)
