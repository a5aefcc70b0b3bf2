"""Stack-set configuration."""

from .models import (
    CapacityGroupSpec,
    ElbHealthCheck,
    ExportSpec,
    ProjectConfig,
    ResourceSpec,
    RollingUpdatePolicy,
    SettingsConfig,
    StackSetConfig,
    StackSpec,
    parse_duration,
)
from .parser import Config, ConfigValidationError

__all__ = [
    "CapacityGroupSpec",
    "ElbHealthCheck",
    "ExportSpec",
    "ProjectConfig",
    "ResourceSpec",
    "RollingUpdatePolicy",
    "SettingsConfig",
    "StackSetConfig",
    "StackSpec",
    "parse_duration",
    "Config",
    "ConfigValidationError",
]
