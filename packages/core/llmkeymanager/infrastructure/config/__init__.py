"""Configuration infrastructure module."""

from llmkeymanager.infrastructure.config.file_loader import (
    ConfigurationError,
    ConfigurationFileLoader,
)
from llmkeymanager.infrastructure.config.manager import ConfigurationManager
from llmkeymanager.infrastructure.config.settings import ManagerSettings

__all__ = [
    "ManagerSettings",
    "ConfigurationFileLoader",
    "ConfigurationError",
    "ConfigurationManager",
]
