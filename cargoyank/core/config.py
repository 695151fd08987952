"""Manages configuration for cargoyank.

This module is responsible for loading and managing the application's
configuration settings. It aggregates settings from default values, TOML
files, and environment variables, providing a unified interface for
accessing them.
"""

import copy
import os
import sys
from pathlib import Path
from typing import Dict, Any, Optional

try:
    import tomllib  # Available in Python 3.11+
except ImportError:
    import tomli as tomllib  # Fallback for Python versions < 3.11

# The default path for the user-specific global configuration file.
USER_CONFIG_PATH = Path.home() / ".config" / "cargoyank" / "config.toml"


class Config:
    """Handles the configuration for the cargoyank application.

    This class loads configuration from multiple sources with a defined
    precedence:
    1.  Default values (lowest precedence).
    2.  Project-specific `cargoyank.toml` file.
    3.  User-level `~/.config/cargoyank/config.toml` file.
    4.  A custom configuration file specified at runtime.
    5.  Environment variables (highest precedence).

    Attributes:
        DEFAULT_CONFIG (Dict[str, Any]): A dictionary containing the default
            configuration values.
    """

    DEFAULT_CONFIG = {
        "timeout": 30,  # Seconds for a single HTTP request or git call.
        "lock_timeout": 60,  # Seconds to wait for the index lock; 0 fails at once.
        "request_timeout": 10,  # Seconds per crate in a batch, retries included.
        "max_workers": 32,
        "colors": True,
        "verbose": False,
        "cargo_home": None,  # Defaults to $CARGO_HOME or ~/.cargo.
        "index": {
            "protocol": None,  # "git" or "sparse"; discovered when unset.
            "path": None,  # Overrides the local index directory.
            "sparse_url": "https://index.crates.io/",
            "git_url": "https://github.com/rust-lang/crates.io-index",
        },
    }

    def __init__(self, config_path: Optional[Path] = None) -> None:
        """Initializes the configuration manager.

        Args:
            config_path (Optional[Path]): An optional path to a specific
                configuration file to load. If provided, it takes precedence
                over default file locations.
        """
        self.config = copy.deepcopy(self.DEFAULT_CONFIG)
        self._load_config(config_path)

    def _load_config(self, config_path: Optional[Path] = None) -> None:
        """Loads configuration from files and environment variables."""
        if config_path:
            self._load_file_config(Path(config_path))
        else:
            self._load_default_configs()

        self._load_env_config()

    def _load_default_configs(self) -> None:
        """Loads configs from standard locations if they exist."""
        project_config = Path.cwd() / "cargoyank.toml"
        if project_config.exists():
            self._load_file_config(project_config)

        if USER_CONFIG_PATH.exists():
            self._load_file_config(USER_CONFIG_PATH)

    def _merge_configs(self, base: Dict[str, Any], new: Dict[str, Any]) -> None:
        """Recursively merges a new config dict into a base dict."""
        for key, value in new.items():
            if isinstance(value, dict) and key in base and isinstance(base[key], dict):
                self._merge_configs(base[key], value)
            else:
                base[key] = value

    def _load_file_config(self, config_path: Path) -> None:
        """Loads and merges configuration from a TOML file.

        Args:
            config_path (Path): The path to the TOML configuration file.
        """
        try:
            with open(config_path, "rb") as f:
                file_config = tomllib.load(f)
                self._merge_configs(self.config, file_config)
        except (OSError, tomllib.TOMLDecodeError) as e:
            print(f"Warning: Could not load config from {config_path}: {e}", file=sys.stderr)

    def _load_env_config(self) -> None:
        """Loads and merges configuration from environment variables."""
        env_mapping = {
            "CARGOYANK_TIMEOUT": "timeout",
            "CARGOYANK_LOCK_TIMEOUT": "lock_timeout",
            "CARGOYANK_REQUEST_TIMEOUT": "request_timeout",
            "CARGOYANK_MAX_WORKERS": "max_workers",
            "CARGOYANK_COLORS": "colors",
            "CARGOYANK_VERBOSE": "verbose",
            "CARGOYANK_CARGO_HOME": "cargo_home",
            "CARGOYANK_INDEX_PROTOCOL": "index.protocol",
            "CARGOYANK_INDEX_PATH": "index.path",
            "CARGOYANK_SPARSE_URL": "index.sparse_url",
            "CARGOYANK_GIT_URL": "index.git_url",
        }

        for env_var, config_key in env_mapping.items():
            value = os.getenv(env_var)
            if value is not None:
                self._set_nested_key(config_key, value)

    def _set_nested_key(self, key_path: str, value: str) -> None:
        """Sets a value in the config dict using a dot-separated path.

        Values coming from environment variables are always strings, so they
        are cast according to the key they are assigned to.

        Args:
            key_path (str): The dot-separated key (e.g., "index.protocol").
            value (str): The string value from the environment variable.
        """
        keys = key_path.split('.')
        target_config = self.config
        for key in keys[:-1]:
            if key not in target_config or not isinstance(target_config[key], dict):
                target_config[key] = {}
            target_config = target_config[key]

        leaf_key = keys[-1]

        if leaf_key in ["colors", "verbose"]:
            target_config[leaf_key] = value.lower() in ("true", "1", "yes", "on")
        elif leaf_key in ["timeout", "lock_timeout", "request_timeout"]:
            try:
                target_config[leaf_key] = float(value)
            except ValueError:
                print(f"Warning: Invalid number for {leaf_key}: {value}", file=sys.stderr)
        elif leaf_key == "max_workers":
            try:
                target_config[leaf_key] = int(value)
            except ValueError:
                print(f"Warning: Invalid integer value for {leaf_key}: {value}", file=sys.stderr)
        else:
            target_config[leaf_key] = value

    def get(self, key: str, default: Any = None) -> Any:
        """Retrieves a configuration value using a dot-separated key.

        Args:
            key (str): The dot-separated key (e.g., "index.sparse_url").
            default (Any): The default value to return if the key is not found.

        Returns:
            Any: The configuration value or the default.
        """
        keys = key.split('.')
        value = self.config
        try:
            for k in keys:
                value = value[k]
            return value
        except (KeyError, TypeError):
            return default

    def set(self, key: str, value: Any) -> None:
        """Sets a configuration value in memory."""
        keys = key.split('.')
        target_config = self.config
        for k in keys[:-1]:
            target_config = target_config.setdefault(k, {})
        target_config[keys[-1]] = value

    def cargo_home(self) -> Path:
        """Returns cargo's home directory.

        The `cargo_home` setting wins, then `$CARGO_HOME`, then `~/.cargo`.
        """
        configured = self.get("cargo_home") or os.getenv("CARGO_HOME")
        if configured:
            return Path(configured).expanduser()
        return Path.home() / ".cargo"

    def __str__(self) -> str:
        return f"Config({self.config})"
