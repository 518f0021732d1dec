from .config import ConfigError, Settings
from .logger import configure_logging, logger

__all__ = ["ConfigError", "Settings", "configure_logging", "logger"]
