"""Utility modules for logging, error handling, retries and timing."""

from stackflow.utils.clock import Clock
from stackflow.utils.retry import ThrottleRetry, retried
from stackflow.utils.errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    ExitCode,
    DeploymentError,
    ConfigurationError,
    PolicyError,
    CredentialError,
    StateError,
    InvalidTransitionError,
    DependencyError,
    CycleError,
    UnresolvedImportError,
    DuplicateExportError,
    UnknownExportError,
    ExportInUseError,
    ReviewRejectedError,
    ApplyRejectedError,
    RollingUpdateError,
    RollingUpdateCancelled,
    ErrorHandler,
    error_handler
)
from stackflow.utils.logging import get_logger, setup_logging

__all__ = [
    'Clock',
    
    # Retry
    'ThrottleRetry',
    'retried',
    
    # Errors
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'ExitCode',
    'DeploymentError',
    'ConfigurationError',
    'PolicyError',
    'CredentialError',
    'StateError',
    'InvalidTransitionError',
    'DependencyError',
    'CycleError',
    'UnresolvedImportError',
    'DuplicateExportError',
    'UnknownExportError',
    'ExportInUseError',
    'ReviewRejectedError',
    'ApplyRejectedError',
    'RollingUpdateError',
    'RollingUpdateCancelled',
    'ErrorHandler',
    'error_handler',
    
    # Logging
    'get_logger',
    'setup_logging',
]
