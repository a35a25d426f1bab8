"""Configuration module for threadline."""

from threadline.config.loader import get_config_path, load_config
from threadline.config.schema import Config

__all__ = ["Config", "load_config", "get_config_path"]
