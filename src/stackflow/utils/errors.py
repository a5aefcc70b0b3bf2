"""Error handling framework for orchestration operations."""

from typing import Optional, Dict, Any, List, Sequence
from enum import Enum
from dataclasses import dataclass
from botocore.exceptions import ClientError, NoCredentialsError, PartialCredentialsError
from stackflow.utils.logging import get_logger

logger = get_logger(__name__)


class ErrorCategory(Enum):
    """Categories of errors that can occur during a run."""
    CONFIGURATION = "configuration"
    DEPENDENCY = "dependency"
    REGISTRY = "registry"
    REVIEW = "review"
    APPLY = "apply"
    ROLLING_UPDATE = "rolling_update"
    STATE = "state"
    CREDENTIAL = "credential"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    CRITICAL = "critical"  # Run cannot continue
    ERROR = "error"  # Stack failed, run stops after the current wave
    WARNING = "warning"  # Non-fatal issue
    INFO = "info"  # Informational message


class ExitCode:
    """Process exit codes per failure class."""
    SUCCESS = 0
    GENERAL = 1
    DEPENDENCY = 2
    REVIEW_REJECTED = 3
    APPLY_REJECTED = 4
    ROLLING_UPDATE = 5
    CONFIGURATION = 6
    EXPORT_IN_USE = 7


@dataclass
class ErrorContext:
    """Context information for an error."""
    stack_id: Optional[str] = None
    resource_id: Optional[str] = None
    batch: Optional[int] = None
    unit_ids: Optional[List[str]] = None
    decision_point: Optional[str] = None
    aws_service: Optional[str] = None
    aws_operation: Optional[str] = None
    request_id: Optional[str] = None
    additional_info: Optional[Dict[str, Any]] = None


class DeploymentError(Exception):
    """Base exception for orchestration errors."""

    exit_code = ExitCode.GENERAL

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None
    ):
        """Initialize deployment error.

        Args:
            message: Human-readable error message
            category: Error category
            severity: Error severity
            context: Additional context about the error
            cause: Original exception that caused this error
            suggestions: List of suggested fixes
        """
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()
        self.cause = cause
        self.suggestions = suggestions or []

    def to_user_message(self) -> str:
        """Convert error to user-friendly message.

        Returns:
            Formatted error message for display to user
        """
        lines = []

        lines.append(f"{self.severity.value.upper()}: {self.message}")

        if self.context.stack_id:
            lines.append(f"   Stack: {self.context.stack_id}")
        if self.context.decision_point:
            lines.append(f"   Decision point: {self.context.decision_point}")
        if self.context.batch is not None:
            lines.append(f"   Batch: {self.context.batch}")
        if self.context.unit_ids:
            lines.append(f"   Units: {', '.join(self.context.unit_ids)}")
        if self.context.resource_id:
            lines.append(f"   Resource: {self.context.resource_id}")

        if self.cause:
            lines.append(f"   Cause: {str(self.cause)}")

        if self.suggestions:
            lines.append("\nSuggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization.

        Returns:
            Dictionary representation of the error
        """
        return {
            'type': type(self).__name__,
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'exit_code': self.exit_code,
            'context': {
                'stack_id': self.context.stack_id,
                'resource_id': self.context.resource_id,
                'batch': self.context.batch,
                'unit_ids': self.context.unit_ids,
                'decision_point': self.context.decision_point,
                'aws_service': self.context.aws_service,
                'aws_operation': self.context.aws_operation,
                'request_id': self.context.request_id,
                'additional_info': self.context.additional_info
            },
            'cause': str(self.cause) if self.cause else None,
            'suggestions': self.suggestions
        }


class ConfigurationError(DeploymentError):
    """Error in the stack-set file or settings."""

    exit_code = ExitCode.CONFIGURATION

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class PolicyError(ConfigurationError):
    """Rolling update policy cannot be executed safely against a group."""


class CredentialError(DeploymentError):
    """Error related to AWS credentials."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CREDENTIAL,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class StateError(DeploymentError):
    """Error related to persisted state."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.STATE,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class InvalidTransitionError(StateError):
    """A stack lifecycle transition that the state machine does not allow."""


class DependencyError(DeploymentError):
    """Error in the declared import/export graph."""

    exit_code = ExitCode.DEPENDENCY

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.CRITICAL)
        super().__init__(
            message,
            category=ErrorCategory.DEPENDENCY,
            **kwargs
        )


class CycleError(DependencyError):
    """Stack imports form a cycle."""

    def __init__(self, cycle: Sequence[str], **kwargs):
        self.cycle = list(cycle)
        super().__init__(
            f"Circular import detected: {' -> '.join(self.cycle)}",
            context=ErrorContext(
                stack_id=self.cycle[0] if self.cycle else None,
                decision_point="dependency ordering"
            ),
            suggestions=['Move the shared value into a stack that both sides can import'],
            **kwargs
        )


class UnresolvedImportError(DependencyError):
    """A stack imports a name no declared stack exports."""

    def __init__(self, stack_id: str, import_name: str, **kwargs):
        self.stack_id = stack_id
        self.import_name = import_name
        super().__init__(
            f"Stack '{stack_id}' imports '{import_name}' which no declared stack exports",
            context=ErrorContext(stack_id=stack_id, decision_point="dependency ordering"),
            suggestions=[
                f"Declare '{import_name}' under the exports of the producing stack",
                'Check the import name for typos'
            ],
            **kwargs
        )


class DuplicateExportError(DependencyError):
    """Two stacks declare the same export name."""

    def __init__(self, name: str, owners: Sequence[str], **kwargs):
        self.name = name
        self.owners = sorted(owners)
        super().__init__(
            f"Export '{name}' is declared by more than one stack: {', '.join(self.owners)}",
            context=ErrorContext(decision_point="dependency ordering"),
            **kwargs
        )


class UnknownExportError(DeploymentError):
    """An export name is not present in the registry."""

    exit_code = ExitCode.DEPENDENCY

    def __init__(self, name: str, **kwargs):
        self.name = name
        kwargs.setdefault('context', ErrorContext(decision_point="export resolution"))
        super().__init__(
            f"Export '{name}' has not been published",
            category=ErrorCategory.REGISTRY,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class ExportInUseError(DeploymentError):
    """An export cannot be removed while other stacks import it."""

    exit_code = ExitCode.EXPORT_IN_USE

    def __init__(self, message: str, blocking: Dict[str, List[str]], **kwargs):
        self.blocking = {name: sorted(consumers) for name, consumers in blocking.items()}
        super().__init__(
            message,
            category=ErrorCategory.REGISTRY,
            severity=ErrorSeverity.CRITICAL,
            suggestions=[
                f"Tear down or update '{consumer}' first"
                for consumer in sorted({c for cs in self.blocking.values() for c in cs})
            ],
            **kwargs
        )

    def to_user_message(self) -> str:
        lines = [super().to_user_message(), "\nBlocking consumers:"]
        for name, consumers in sorted(self.blocking.items()):
            lines.append(f"   {name}: {', '.join(consumers)}")
        return "\n".join(lines)


class ReviewRejectedError(DeploymentError):
    """Governance declined (or did not approve in time) a risky change set."""

    exit_code = ExitCode.REVIEW_REJECTED

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.REVIEW,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class ApplyRejectedError(DeploymentError):
    """The provisioning backend refused the change."""

    exit_code = ExitCode.APPLY_REJECTED

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.APPLY,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class RollingUpdateError(DeploymentError):
    """A rolling update batch could not be completed."""

    exit_code = ExitCode.ROLLING_UPDATE

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.ROLLING_UPDATE,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class RollingUpdateCancelled(RollingUpdateError):
    """A rolling update was aborted externally between batches or while polling."""


class ErrorHandler:
    """Converts provisioning backend errors into orchestration errors."""

    # Mapping of AWS error codes to messages and suggestions
    AWS_ERROR_MAPPING = {
        'ValidationError': {
            'message': 'Template or parameters rejected',
            'suggestions': [
                'Check the stack template for invalid properties',
                'Verify imported values match the expected parameter types'
            ]
        },
        'InsufficientCapabilitiesException': {
            'message': 'Stack requires additional capabilities',
            'suggestions': ['Add CAPABILITY_IAM or CAPABILITY_NAMED_IAM to the stack capabilities']
        },
        'AccessDenied': {
            'message': 'Access denied - insufficient permissions',
            'suggestions': [
                'Check IAM policies attached to your user/role',
                'Verify you have the required permissions for this operation'
            ]
        },
        'LimitExceededException': {
            'message': 'AWS service limit exceeded',
            'suggestions': [
                'Request a service limit increase through AWS Support',
                'Review and clean up unused resources'
            ]
        },
        'AlreadyExistsException': {
            'message': 'Stack already exists',
            'suggestions': ['Import the existing stack into state or choose another name']
        },
        'InvalidParameterValue': {
            'message': 'Invalid parameter value',
            'suggestions': ['Check parameter format and constraints']
        },
    }

    def __init__(self):
        """Initialize error handler."""
        self.logger = get_logger(__name__)

    def handle_exception(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None
    ) -> DeploymentError:
        """Handle an exception raised by a backend call.

        Args:
            error: The exception to handle
            context: Additional context about where the error occurred

        Returns:
            DeploymentError with categorization and suggestions
        """
        context = context or ErrorContext()

        if isinstance(error, DeploymentError):
            return error

        if isinstance(error, ClientError):
            return self._handle_aws_error(error, context)

        if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
            return CredentialError(
                message='AWS credentials are missing or incomplete',
                context=context,
                cause=error,
                suggestions=[
                    'Configure AWS credentials using: aws configure',
                    'Specify a profile with --profile flag'
                ]
            )

        return ApplyRejectedError(
            message=f"Provisioning failed: {error}",
            context=context,
            cause=error,
            suggestions=['Check logs for more details']
        )

    def _handle_aws_error(
        self,
        error: ClientError,
        context: ErrorContext
    ) -> DeploymentError:
        """Handle AWS ClientError.

        Args:
            error: The ClientError
            context: Error context

        Returns:
            ApplyRejectedError carrying the AWS request details
        """
        error_code = error.response.get('Error', {}).get('Code', 'Unknown')
        error_message = error.response.get('Error', {}).get('Message', str(error))
        context.request_id = error.response.get('ResponseMetadata', {}).get('RequestId')

        error_info = self.AWS_ERROR_MAPPING.get(error_code)
        if error_info:
            return ApplyRejectedError(
                message=f"{error_info['message']}: {error_message}",
                context=context,
                cause=error,
                suggestions=error_info['suggestions']
            )

        return ApplyRejectedError(
            message=f"AWS Error ({error_code}): {error_message}",
            context=context,
            cause=error,
            suggestions=[
                'Check AWS documentation for this error code',
                f'AWS Request ID: {context.request_id}',
            ]
        )

    def log_error(self, error: DeploymentError):
        """Log an error with appropriate level.

        Args:
            error: The error to log
        """
        log_message = error.to_user_message()

        if error.severity in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR):
            self.logger.error(log_message)
        elif error.severity == ErrorSeverity.WARNING:
            self.logger.warning(log_message)
        else:
            self.logger.info(log_message)

        self.logger.debug(f"Error details: {error.to_dict()}")


# Global error handler instance
error_handler = ErrorHandler()
