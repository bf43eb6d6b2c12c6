"""
Tests for configuration loading and validation.
"""

import json
import os

import pytest
import yaml

from devserver_manager.utils.config import (
    AgentConfig,
    ConfigLoader,
    DetectionConfig,
    LogStoreConfig,
    TerminationConfig,
)
from devserver_manager.utils.errors import ConfigurationError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep DEVSERVER_* variables from the host out of the loader."""
    for key in list(os.environ):
        if key.startswith("DEVSERVER_"):
            monkeypatch.delenv(key)


class TestConfigModels:
    """Test configuration model defaults and validators."""

    def test_defaults(self):
        config = AgentConfig()

        assert config.detection.cache_duration == 3.0
        assert config.termination.graceful_delay == 1.5
        assert config.log_store.max_entries == 1000
        assert config.log_store.directory.is_absolute()

    def test_web_ports_from_string(self):
        config = DetectionConfig(web_ports="3000, 4000")

        assert config.web_ports == [3000, 4000]

    def test_invalid_web_port(self):
        with pytest.raises(ValueError):
            DetectionConfig(web_ports=[0])

    def test_port_classification(self):
        config = DetectionConfig()

        assert config.is_web_port(3000)
        assert config.is_web_port(3007)
        assert not config.is_web_port(7000)
        assert config.is_dev_port(7000)
        assert not config.is_dev_port(80)

    def test_negative_delay_rejected(self):
        with pytest.raises(ValueError):
            TerminationConfig(force_delay=-1)

    def test_log_level_normalized(self):
        config = AgentConfig(logging={"level": "debug"})

        assert config.logging.level == "DEBUG"

    def test_log_store_directory_expanded(self):
        config = LogStoreConfig(directory="~/server-logs")

        assert "~" not in str(config.directory)


class TestConfigLoader:
    """Test merging configuration sources."""

    @pytest.mark.asyncio
    async def test_higher_priority_wins(self):
        loader = ConfigLoader()
        loader.add_source({"detection": {"cache_duration": 7}}, priority=10)
        loader.add_source({"detection": {"cache_duration": 5, "command_timeout": 4}}, priority=1)

        config = await loader.load()

        assert config.detection.cache_duration == 7
        assert config.detection.command_timeout == 4

    @pytest.mark.asyncio
    async def test_yaml_and_json_files(self, temp_dir):
        yaml_path = temp_dir / "config.yaml"
        yaml_path.write_text(yaml.safe_dump({"termination": {"graceful_delay": 0.5}}))
        json_path = temp_dir / "config.json"
        json_path.write_text(json.dumps({"log_store": {"max_entries": 50}}))

        loader = ConfigLoader()
        loader.add_source(yaml_path)
        loader.add_source(json_path)
        config = await loader.load()

        assert config.termination.graceful_delay == 0.5
        assert config.log_store.max_entries == 50

    @pytest.mark.asyncio
    async def test_toml_file(self, temp_dir):
        path = temp_dir / "config.toml"
        path.write_text('[detection]\ncache_duration = 1.0\n')

        loader = ConfigLoader()
        loader.add_source(path)
        config = await loader.load()

        assert config.detection.cache_duration == 1.0

    @pytest.mark.asyncio
    async def test_missing_file_ignored(self, temp_dir):
        loader = ConfigLoader()
        loader.add_source(temp_dir / "absent.yaml")

        config = await loader.load()

        assert config.detection.cache_duration == 3.0

    @pytest.mark.asyncio
    async def test_env_override(self, monkeypatch):
        monkeypatch.setenv("DEVSERVER_DETECTION__CACHE_DURATION", "9.5")
        monkeypatch.setenv("DEVSERVER_DEBUG", "true")
        loader = ConfigLoader()
        loader.add_source({"detection": {"cache_duration": 2}}, priority=100)

        config = await loader.load()

        assert config.detection.cache_duration == 9.5
        assert config.debug is True

    @pytest.mark.asyncio
    async def test_invalid_values(self):
        loader = ConfigLoader()
        loader.add_source({"detection": {"cache_duration": -1}})

        with pytest.raises(ConfigurationError) as exc_info:
            await loader.load()

        assert "cache_duration" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_malformed_file(self, temp_dir):
        path = temp_dir / "config.json"
        path.write_text("{not json")
        loader = ConfigLoader()
        loader.add_source(path)

        with pytest.raises(ConfigurationError):
            await loader.load()

    def test_unknown_file_type(self, temp_dir):
        with pytest.raises(ConfigurationError):
            ConfigLoader().add_source(temp_dir / "config.ini")

    def test_get_config_before_load(self):
        with pytest.raises(ConfigurationError):
            ConfigLoader().get_config()
