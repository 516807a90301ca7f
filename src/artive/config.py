"""Configuration management with lazy validation."""

import os
from functools import cached_property
from pathlib import Path
from typing import Optional

from artive.models.config import Config, FetcherConfig, LLMConfig, ServerConfig, StorageConfig
from artive.utils.logging import get_logger


logger = get_logger(__name__)

CONFIG_ENV_VAR = "ARTIVE_CONFIG"


def default_config_path() -> Path:
    """~/.config/artive/config.yaml, or the path named by ARTIVE_CONFIG."""
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "artive" / "config.yaml"


class ConfigManager:
    """
    Configuration manager with lazy validation.

    Loads the config file once and hands out its sections on first access,
    so a command only reports errors for the sections it uses.

    Example:
        >>> config_mgr = ConfigManager.load_default()
        >>> llm_config = config_mgr.llm
        >>> engine = config_mgr.build_engine()
    """

    def __init__(self, config: Config):
        """
        Initialize config manager with loaded config.

        Args:
            config: Loaded and validated Config instance
        """
        self._config = config

    @property
    def config(self) -> Config:
        return self._config

    @classmethod
    def load_default(cls) -> "ConfigManager":
        """
        Load configuration from the default path.

        Raises:
            FileNotFoundError: If config file doesn't exist
            PermissionError: If config file has wrong permissions
            ValueError: If config is invalid
        """
        return cls.load_from_path(default_config_path())

    @classmethod
    def load_from_path(cls, path: Path) -> "ConfigManager":
        """
        Load configuration from specific path.

        Args:
            path: Path to config.yaml file

        Returns:
            ConfigManager instance with loaded config

        Raises:
            FileNotFoundError: If config file doesn't exist
            PermissionError: If config file has wrong permissions
            ValueError: If config is invalid
        """
        logger.info("config_loading", path=str(path))

        try:
            config = Config.load(path)
            logger.info("config_loaded", path=str(path))
            return cls(config)

        except FileNotFoundError as e:
            logger.error("config_not_found", path=str(path), error=str(e))
            raise

        except PermissionError as e:
            logger.error("config_permission_error", path=str(path), error=str(e))
            raise

        except Exception as e:
            logger.error("config_validation_error", path=str(path), error=str(e))
            raise ValueError(f"Configuration validation failed: {e}") from e

    @cached_property
    def llm(self) -> LLMConfig:
        return self._config.llm

    @cached_property
    def fetcher(self) -> FetcherConfig:
        return self._config.fetcher

    @cached_property
    def storage(self) -> StorageConfig:
        return self._config.storage

    @cached_property
    def server(self) -> ServerConfig:
        return self._config.server

    def build_engine(self, database_path: Optional[str] = None):
        """
        Create a RewriteEngine wired to this configuration.

        Args:
            database_path: Override for storage.database_path

        Returns:
            RewriteEngine sharing one TaskStore with its resolver
        """
        from artive.services.task_engine import RewriteEngine

        config = self._config
        if database_path is not None:
            config = config.model_copy(update={"storage": StorageConfig(database_path=database_path)})
        return RewriteEngine.from_config(config)
