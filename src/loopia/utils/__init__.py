"""Utility modules for Loopia."""

from .logging import LogConfig, configure_logging, get_logger, set_level
from .model_store import ModelEntry, ModelStore

__all__ = [
    "LogConfig",
    "configure_logging",
    "get_logger",
    "set_level",
    "ModelEntry",
    "ModelStore",
]
