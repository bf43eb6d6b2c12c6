"""
Configuration loader for devserver-manager.

This module provides configuration management with:
- Multiple configuration sources (files, env vars, dicts)
- Schema validation
- Type coercion
- Configuration merging
- Defaults management
"""

import os
import json
import yaml
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple, Union
import toml
from pydantic import BaseModel, Field, field_validator, model_validator, ValidationError, ConfigDict
import asyncio

from .logging import get_logger
from .errors import ConfigurationError


logger = get_logger("devserver-manager.config")

DEFAULT_HOME = Path.home() / ".devserver-manager"
ENV_PREFIX = "DEVSERVER_"
ENV_NESTING = "__"


def _default_web_ports() -> List[int]:
    ports: List[int] = []
    for base in (3000, 8000, 5000, 8080, 9000):
        ports.extend(range(base, base + 6))
    return ports


class ConfigSource(BaseModel):
    """Configuration source definition."""
    path: Optional[Path] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    source_type: str = "dict"

    model_config = ConfigDict(arbitrary_types_allowed=True)


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    format: str = "json"
    directory: Path = Field(default_factory=lambda: DEFAULT_HOME / "logs")
    max_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 10

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()


class DetectionConfig(BaseModel):
    """Detection orchestrator and classifier configuration."""
    cache_duration: float = 3.0  # seconds
    web_ports: List[int] = Field(default_factory=_default_web_ports)
    web_port_ranges: List[Tuple[int, int]] = Field(
        default_factory=lambda: [(3000, 3010), (8000, 8010), (5000, 5010), (9000, 9010)]
    )
    dev_port_range: Tuple[int, int] = (1024, 9999)
    command_timeout: float = 10.0

    @field_validator('cache_duration')
    @classmethod
    def validate_cache_duration(cls, v):
        """Cache duration cannot be negative."""
        if v < 0:
            raise ValueError("cache_duration must be >= 0")
        return v

    @field_validator('web_ports', mode='before')
    @classmethod
    def parse_web_ports(cls, v):
        """Accept comma separated strings from env vars."""
        if isinstance(v, str):
            return [int(p.strip()) for p in v.split(",") if p.strip()]
        if isinstance(v, int):
            return [v]
        return v

    @field_validator('web_ports')
    @classmethod
    def validate_web_ports(cls, v):
        """Every web port must be a valid TCP port."""
        for port in v:
            if not 1 <= port <= 65535:
                raise ValueError(f"Invalid port: {port}")
        return v

    def is_web_port(self, port: int) -> bool:
        """Check whether a port looks like a web/dev server port."""
        if port in self.web_ports:
            return True
        return any(low <= port <= high for low, high in self.web_port_ranges)

    def is_dev_port(self, port: int) -> bool:
        """Check whether a port falls in the unprivileged development range."""
        low, high = self.dev_port_range
        return low <= port <= high


class TerminationConfig(BaseModel):
    """Termination engine configuration (delays in seconds)."""
    graceful_delay: float = 1.5
    force_delay: float = 2.0
    tool_specific_delay: float = 2.0
    restart_delay: float = 2.0
    command_timeout: float = 10.0

    @model_validator(mode='after')
    def validate_delays(self):
        """Delays cannot be negative."""
        for name in ("graceful_delay", "force_delay", "tool_specific_delay", "restart_delay"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        return self


class LogStoreConfig(BaseModel):
    """Per-PID log store configuration."""
    directory: Path = Field(default_factory=lambda: DEFAULT_HOME / "server-logs")
    max_file_size: int = 10 * 1024 * 1024  # 10MB
    max_entries: int = 1000
    retention_days: int = 30

    @field_validator('directory')
    @classmethod
    def validate_directory(cls, v):
        """Ensure path is absolute."""
        return Path(v).expanduser().absolute()

    @field_validator('max_file_size', 'max_entries')
    @classmethod
    def validate_positive(cls, v):
        """Limits must be positive."""
        if v <= 0:
            raise ValueError("must be > 0")
        return v


class AgentConfig(BaseModel):
    """Main devserver-manager configuration."""
    app_name: str = "devserver-manager"
    version: str = "0.1.0"
    debug: bool = False

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    termination: TerminationConfig = Field(default_factory=TerminationConfig)
    log_store: LogStoreConfig = Field(default_factory=LogStoreConfig)

    config_paths: List[Path] = Field(default_factory=list)

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        validate_assignment=True
    )


class ConfigLoader:
    """Configuration loader with multiple source support."""

    def __init__(self, env_prefix: str = ENV_PREFIX):
        """Initialize configuration loader."""
        self.env_prefix = env_prefix
        self._sources: List[ConfigSource] = []
        self._config: Optional[AgentConfig] = None
        self._lock = asyncio.Lock()

    def add_source(
        self,
        source: Union[str, Path, Dict[str, Any]],
        priority: int = 0,
        source_type: Optional[str] = None
    ) -> None:
        """
        Add configuration source.

        Args:
            source: Configuration source (file path or dict)
            priority: Source priority (higher wins)
            source_type: Source type (auto-detected if None)
        """
        if isinstance(source, (str, Path)):
            path = Path(source).expanduser()
            if not source_type:
                source_type = self._detect_source_type(path)

            self._sources.append(ConfigSource(
                path=path,
                priority=priority,
                source_type=source_type
            ))
        else:
            self._sources.append(ConfigSource(
                data=source,
                priority=priority,
                source_type="dict"
            ))

        # Lowest priority first so later merges override it
        self._sources.sort(key=lambda s: s.priority)

    def _detect_source_type(self, path: Path) -> str:
        """Detect configuration file type."""
        suffix = path.suffix.lower()
        if suffix == ".json":
            return "json"
        elif suffix in (".yaml", ".yml"):
            return "yaml"
        elif suffix == ".toml":
            return "toml"
        elif suffix == ".env":
            return "env"
        else:
            raise ConfigurationError(f"Unknown config file type: {suffix}")

    async def load(self) -> AgentConfig:
        """
        Load configuration from all sources.

        Returns:
            Merged configuration
        """
        async with self._lock:
            merged_data: Dict[str, Any] = {}

            for source in self._sources:
                try:
                    data = self._load_source(source)
                except (OSError, ValueError, yaml.YAMLError, toml.TomlDecodeError) as e:
                    raise ConfigurationError(
                        f"Failed to load {source.path or 'dict source'}: {e}",
                        cause=e
                    ) from e
                merged_data = self._deep_merge(merged_data, data)

            env_data = self._load_env_vars()
            merged_data = self._deep_merge(merged_data, env_data)

            try:
                self._config = AgentConfig(**merged_data)
            except ValidationError as e:
                errors = []
                for error in e.errors():
                    field = ".".join(str(x) for x in error["loc"])
                    errors.append(f"{field}: {error['msg']}")

                raise ConfigurationError(
                    f"Configuration validation failed: {'; '.join(errors)}"
                ) from e

            logger.info("configuration_loaded", sources=len(self._sources))
            return self._config

    def _load_source(self, source: ConfigSource) -> Dict[str, Any]:
        """Load data from a configuration source."""
        if source.path is None:
            return source.data

        if not source.path.exists():
            logger.warning("config_file_not_found", path=str(source.path))
            return {}

        content = source.path.read_text()

        if source.source_type == "json":
            return json.loads(content)
        elif source.source_type == "yaml":
            return yaml.safe_load(content) or {}
        elif source.source_type == "toml":
            return toml.loads(content)
        elif source.source_type == "env":
            return self._parse_env_lines(
                line.split("=", 1) for line in content.splitlines()
                if "=" in line and not line.strip().startswith("#")
            )
        else:
            raise ConfigurationError(f"Unknown source type: {source.source_type}")

    def _load_env_vars(self) -> Dict[str, Any]:
        """Load configuration from environment variables."""
        return self._parse_env_lines(
            (key[len(self.env_prefix):], value)
            for key, value in os.environ.items()
            if key.startswith(self.env_prefix)
        )

    def _parse_env_lines(self, pairs) -> Dict[str, Any]:
        """Turn KEY__SUBKEY=value pairs into a nested dictionary."""
        result: Dict[str, Any] = {}

        for key, value in pairs:
            key = key.strip()
            if key.upper().startswith(self.env_prefix):
                key = key[len(self.env_prefix):]
            parts = [p for p in key.lower().split(ENV_NESTING) if p]
            if not parts:
                continue

            current = result
            for part in parts[:-1]:
                current = current.setdefault(part, {})

            current[parts[-1]] = self._convert_value(value.strip().strip('"').strip("'"))

        return result

    def _convert_value(self, value: str) -> Any:
        """Convert string value to appropriate type."""
        if value.lower() in ("true", "yes", "on"):
            return True
        elif value.lower() in ("false", "no", "off"):
            return False

        try:
            if "." in value:
                return float(value)
            else:
                return int(value)
        except ValueError:
            pass

        if "," in value:
            return [v.strip() for v in value.split(",")]

        if value.startswith("/") or value.startswith("~"):
            return Path(value).expanduser()

        return value

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()

        for key, value in update.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def get_config(self) -> AgentConfig:
        """Get current configuration."""
        if self._config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._config


_config_loader: Optional[ConfigLoader] = None


def get_config_loader() -> ConfigLoader:
    """Get global configuration loader."""
    global _config_loader
    if _config_loader is None:
        _config_loader = ConfigLoader()
    return _config_loader


async def load_config(
    config_paths: Optional[List[Union[str, Path]]] = None,
    extra_config: Optional[Dict[str, Any]] = None
) -> AgentConfig:
    """
    Load configuration from standard locations.

    Args:
        config_paths: Additional configuration paths
        extra_config: Extra configuration to merge

    Returns:
        Loaded configuration
    """
    loader = get_config_loader()

    default_paths = [
        DEFAULT_HOME / "config.yaml",
        DEFAULT_HOME / "config.json",
        DEFAULT_HOME / "config.toml",
        Path("./devserver-manager.yaml"),
    ]

    for path in default_paths:
        if path.exists():
            loader.add_source(path, priority=10)

    if config_paths:
        for i, path in enumerate(config_paths):
            loader.add_source(path, priority=20 + i)

    if extra_config:
        loader.add_source(extra_config, priority=100)

    return await loader.load()


def get_config() -> AgentConfig:
    """Get current configuration."""
    return get_config_loader().get_config()


__all__ = [
    'AgentConfig',
    'LoggingConfig',
    'DetectionConfig',
    'TerminationConfig',
    'LogStoreConfig',
    'ConfigLoader',
    'get_config_loader',
    'load_config',
    'get_config',
]
