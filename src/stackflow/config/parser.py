"""YAML stack-set parser."""

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from stackflow.config.models import SettingsConfig, StackSetConfig, StackSpec
from stackflow.utils.errors import ConfigurationError


class ConfigValidationError(ConfigurationError):
    """Exception raised when the stack-set file is invalid."""

    def __init__(self, message: str, errors: Optional[List[Dict]] = None):
        self.errors = errors or []
        super().__init__(message)

    def __str__(self) -> str:
        """Format validation errors for display."""
        if not self.errors:
            return self.message

        error_lines = [self.message, ""]
        for error in self.errors:
            location = " -> ".join(str(loc) for loc in error.get("loc", []))
            msg = error.get("msg", "Unknown error")
            error_lines.append(f"  • {location}: {msg}")

        return "\n".join(error_lines)

    def to_user_message(self) -> str:
        return f"{self.severity.value.upper()}: {self}"


class Config:
    """Stack-set file loader."""

    def __init__(self, config_path: str):
        """Initialize configuration manager.

        Args:
            config_path: Path to the stack-set YAML file
        """
        self.config_path = Path(config_path)
        self.data: Dict[str, Any] = {}
        self.stack_set: Optional[StackSetConfig] = None

    def load(self) -> "Config":
        """Load and validate the stack-set file.

        Returns:
            Self for method chaining

        Raises:
            ConfigValidationError: If the file is missing, unparsable or invalid
        """
        if not self.config_path.exists():
            raise ConfigValidationError(f"Stack-set file not found: {self.config_path}")

        try:
            with open(self.config_path, "r") as f:
                self.data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Failed to parse YAML: {e}")

        if not isinstance(self.data, dict):
            raise ConfigValidationError("Stack-set file must contain a mapping at the top level")

        try:
            self.stack_set = StackSetConfig.model_validate(self.data)
        except ValidationError as e:
            errors = [{"loc": list(error["loc"]), "msg": error["msg"]} for error in e.errors()]
            raise ConfigValidationError(
                f"Configuration validation failed with {len(errors)} error(s)",
                errors,
            )

        self._resolve_templates()
        return self

    def _resolve_templates(self) -> None:
        """Template paths are relative to the stack-set file."""
        base = self.config_path.parent
        for stack in self.stack_set.stacks:
            if stack.template and not Path(stack.template).is_absolute():
                stack.template = str((base / stack.template).resolve())

    @property
    def project_name(self) -> str:
        return self.stack_set.project.name

    @property
    def settings(self) -> SettingsConfig:
        return self.stack_set.settings

    @property
    def stacks(self) -> List[StackSpec]:
        return self.stack_set.stacks

    def get_stack(self, name: str) -> Optional[StackSpec]:
        """Get a stack by name."""
        return self.stack_set.get_stack(name)

    @property
    def state_path(self) -> Path:
        """State file location; a relative ``state_dir`` is relative to the stack-set file."""
        state_dir = Path(self.settings.state_dir)
        if not state_dir.is_absolute():
            state_dir = self.config_path.parent / state_dir
        return state_dir / f"{self.project_name}.state.json"

    @property
    def log_dir(self) -> Path:
        return self.state_path.parent / "logs"
