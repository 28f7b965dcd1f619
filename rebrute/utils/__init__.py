"""Utility modules for rebrute."""

from .config import Config, load_config, save_config, ensure_directories

__all__ = ["Config", "load_config", "save_config", "ensure_directories"]
