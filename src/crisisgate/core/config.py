"""
Configuration Management System for CrisisGate

Handles loading configuration from environment variables, config files,
and provides validation and runtime updates.
"""

import os
import json
import math
import yaml
import logging
from typing import Any, Dict, List, Optional, Callable
from pathlib import Path
from dataclasses import dataclass


UNBOUNDED_RADIUS_VALUES = (None, 'unbounded', 'inf', 'infinity')
AUTO_ASSIGN_STRATEGIES = ('none', 'nearest_available')


@dataclass
class ConfigSource:
    """Configuration source definition"""
    name: str
    priority: int
    loader: Callable
    path: Optional[str] = None


class ConfigurationError(Exception):
    """Configuration-related errors"""
    pass


def parse_radius(value: Any) -> float:
    """Parse a configured search radius; unbounded values map to infinity"""
    if isinstance(value, str):
        value = value.strip().lower()
    if value in UNBOUNDED_RADIUS_VALUES:
        return math.inf
    return float(value)


class ConfigurationManager:
    """
    Manages system configuration with support for multiple sources,
    validation, and runtime updates.
    """

    def __init__(self, config_dir: str = "config"):
        self.config_dir = Path(config_dir)
        self.config: Dict[str, Any] = {}
        self.watchers: Dict[str, List[Callable]] = {}
        self.sources: List[ConfigSource] = []
        self.logger = logging.getLogger(__name__)

        # Default configuration values
        self.defaults = {
            "app": {
                "name": "CrisisGate",
                "version": "1.0.0",
                "debug": False,
                "log_level": "INFO"
            },
            "database": {
                "path": "data/crisisgate.db",
                "max_connections": 10
            },
            "dispatch": {
                "max_retries": 3,
                "search_radii_meters": [1000, 5000, 20000, "unbounded"],
                "auto_assign": "none",
                "nearby_default_radius_meters": 5000,
                "default_page_size": 10,
                "max_page_size": 100
            },
            "geo_index": {
                "cell_size_degrees": 1.0
            },
            "broadcaster": {
                "max_queue_size": 0
            },
            "logging": {
                "level": "INFO",
                "file": "logs/crisisgate.log",
                "max_size": "10MB",
                "backup_count": 5
            }
        }

        self._setup_sources()

    def _setup_sources(self):
        """Set up configuration sources in priority order"""
        # Environment variables (highest priority)
        self.sources.append(ConfigSource(
            name="environment",
            priority=4,
            loader=self._load_from_env
        ))

        local_config_path = str(self.config_dir / "config.yaml")
        self.sources.append(ConfigSource(
            name="local_config",
            priority=3,
            loader=lambda: self._load_from_file(local_config_path),
            path=local_config_path
        ))

        default_config_path = str(self.config_dir / "default.yaml")
        self.sources.append(ConfigSource(
            name="default_config",
            priority=2,
            loader=lambda: self._load_from_file(default_config_path),
            path=default_config_path
        ))

        # Built-in defaults (lowest priority)
        self.sources.append(ConfigSource(
            name="defaults",
            priority=1,
            loader=lambda: self.defaults
        ))

    def load_config(self) -> None:
        """Load configuration from all sources"""
        self.logger.info("Loading configuration from all sources")

        merged_config = {}

        # Lowest priority first so later sources override
        for source in sorted(self.sources, key=lambda x: x.priority):
            try:
                source_config = source.loader()
                if source_config:
                    merged_config = self._deep_merge(merged_config, source_config)
                    self.logger.debug(f"Loaded configuration from {source.name}")
            except (OSError, ValueError, yaml.YAMLError) as e:
                self.logger.warning(f"Failed to load config from {source.name}: {e}")

        self.config = merged_config
        self._validate_config()
        self.logger.info("Configuration loaded successfully")

    def _load_from_env(self) -> Dict[str, Any]:
        """Load configuration from environment variables"""
        config = {}

        env_mappings = {
            "CRISISGATE_DEBUG": "app.debug",
            "CRISISGATE_LOG_LEVEL": "app.log_level",
            "CRISISGATE_DB_PATH": "database.path",
            "CRISISGATE_MAX_RETRIES": "dispatch.max_retries",
            "CRISISGATE_SEARCH_RADII": "dispatch.search_radii_meters",
            "CRISISGATE_AUTO_ASSIGN": "dispatch.auto_assign"
        }

        for env_var, config_key in env_mappings.items():
            value = os.getenv(env_var)
            if value is not None:
                if value.lower() in ('true', 'false'):
                    value = value.lower() == 'true'
                elif value.isdigit():
                    value = int(value)
                elif config_key == "dispatch.search_radii_meters":
                    # Comma separated list, e.g. "1000,5000,unbounded"
                    value = [part.strip() for part in value.split(',') if part.strip()]

                self._set_nested_value(config, config_key, value)

        return config

    def _load_from_file(self, file_path: str) -> Dict[str, Any]:
        """Load configuration from YAML or JSON file"""
        path = Path(file_path)

        if not path.exists():
            return {}

        with open(path, 'r') as f:
            if path.suffix.lower() in ['.yaml', '.yml']:
                return yaml.safe_load(f) or {}
            elif path.suffix.lower() == '.json':
                return json.load(f)
            else:
                self.logger.warning(f"Unsupported config file format: {path}")
                return {}

    def _deep_merge(self, base: Dict, override: Dict) -> Dict:
        """Deep merge two dictionaries"""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def _set_nested_value(self, config: Dict, key_path: str, value: Any) -> None:
        """Set a nested configuration value using dot notation"""
        keys = key_path.split('.')
        current = config

        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def _validate_config(self) -> None:
        """Validate configuration values"""
        errors = []

        required_sections = ['app', 'database', 'dispatch']
        for section in required_sections:
            if section not in self.config:
                errors.append(f"Missing required configuration section: {section}")

        db_path = self.get('database.path')
        if db_path and db_path != ':memory:':
            db_dir = Path(db_path).parent
            if not db_dir.exists():
                try:
                    db_dir.mkdir(parents=True, exist_ok=True)
                except OSError as e:
                    errors.append(f"Cannot create database directory {db_dir}: {e}")

        max_retries = self.get('dispatch.max_retries', 3)
        if not isinstance(max_retries, int) or max_retries < 1:
            errors.append(f"Invalid dispatch.max_retries: {max_retries}")

        try:
            radii = self.get_search_radii()
            if not radii:
                errors.append("dispatch.search_radii_meters must not be empty")
            elif any(r <= 0 for r in radii):
                errors.append(f"Search radii must be positive: {radii}")
            elif any(b <= a for a, b in zip(radii, radii[1:])):
                errors.append(f"Search radii must be strictly increasing: {radii}")
        except (TypeError, ValueError) as e:
            errors.append(f"Invalid dispatch.search_radii_meters: {e}")

        strategy = self.get('dispatch.auto_assign', 'none')
        if strategy not in AUTO_ASSIGN_STRATEGIES:
            errors.append(f"Invalid dispatch.auto_assign strategy: {strategy}")

        cell_size = self.get('geo_index.cell_size_degrees', 1.0)
        if not isinstance(cell_size, (int, float)) or cell_size <= 0:
            errors.append(f"Invalid geo_index.cell_size_degrees: {cell_size}")

        log_level = self.get('app.log_level', 'INFO')
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if str(log_level).upper() not in valid_levels:
            errors.append(f"Invalid log level: {log_level}")

        if errors:
            raise ConfigurationError(f"Configuration validation failed: {'; '.join(errors)}")

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value using dot notation"""
        keys = key.split('.')
        current = self.config

        try:
            for k in keys:
                current = current[k]
            return current
        except (KeyError, TypeError):
            return default

    def set(self, key: str, value: Any) -> None:
        """Set configuration value using dot notation"""
        self._set_nested_value(self.config, key, value)

        if key in self.watchers:
            for callback in self.watchers[key]:
                try:
                    callback(key, value)
                except Exception as e:
                    self.logger.error(f"Error in config watcher for {key}: {e}")

    def watch(self, key: str, callback: Callable[[str, Any], None]) -> None:
        """Watch for configuration changes"""
        if key not in self.watchers:
            self.watchers[key] = []
        self.watchers[key].append(callback)

    def get_search_radii(self) -> List[float]:
        """Get the expanding search radius sequence in meters"""
        return [parse_radius(r) for r in self.get('dispatch.search_radii_meters', [])]

    def get_max_retries(self) -> int:
        """Get the bounded retry count for optimistic-concurrency conflicts"""
        return self.get('dispatch.max_retries', 3)

    def get_auto_assign_strategy(self) -> str:
        """Get the configured auto-assignment strategy name"""
        return self.get('dispatch.auto_assign', 'none')

    def export_config(self, file_path: str) -> None:
        """Export current configuration to file"""
        path = Path(file_path)

        try:
            with open(path, 'w') as f:
                if path.suffix.lower() in ['.yaml', '.yml']:
                    yaml.dump(self.config, f, default_flow_style=False, indent=2)
                elif path.suffix.lower() == '.json':
                    json.dump(self.config, f, indent=2)
                else:
                    raise ValueError(f"Unsupported file format: {path.suffix}")

            self.logger.info(f"Configuration exported to {path}")
        except (OSError, ValueError) as e:
            self.logger.error(f"Failed to export configuration: {e}")
            raise ConfigurationError(f"Export failed: {e}")
