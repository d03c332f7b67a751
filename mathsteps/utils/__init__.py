"""Utility helpers for MathSteps."""

from .config_loader import ConfigError, ModelsConfig, load_models_config
from .logger import configure_logging, get_logger

__all__ = [
    "ConfigError",
    "ModelsConfig",
    "load_models_config",
    "configure_logging",
    "get_logger",
]
