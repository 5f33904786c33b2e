"""Configuration loading and validation."""

from .models import (
    SystemConfig,
    PathsConfig,
    LimitsConfig,
    ZipSecurityConfig,
    ImportSettingsConfig,
    ExportConfig,
    OptimizationConfig,
)
from .loader import ConfigLoader, ConfigLoadError, ConfigValidationError

__all__ = [
    "SystemConfig",
    "PathsConfig",
    "LimitsConfig",
    "ZipSecurityConfig",
    "ImportSettingsConfig",
    "ExportConfig",
    "OptimizationConfig",
    "ConfigLoader",
    "ConfigLoadError",
    "ConfigValidationError",
]
