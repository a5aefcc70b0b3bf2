"""CloudFormation provisioner."""

from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import boto3
from botocore.exceptions import ClientError, WaiterError

from stackflow.config.models import StackSpec
from stackflow.provisioners.base import BaseProvisioner
from stackflow.utils.errors import ApplyRejectedError, ConfigurationError, ErrorContext
from stackflow.utils.logging import get_logger
from stackflow.utils.retry import retried

if TYPE_CHECKING:
    from stackflow.orchestrator.changeset import ChangeSet

logger = get_logger(__name__)

# Statuses from which an update cannot start; the stack must be deleted first
_DEAD_STATUSES = {'ROLLBACK_COMPLETE', 'ROLLBACK_FAILED', 'CREATE_FAILED', 'DELETE_FAILED'}


class CloudFormationProvisioner(BaseProvisioner):
    """Creates, updates and deletes CloudFormation stacks."""

    def __init__(
        self,
        boto_session: boto3.Session,
        name_prefix: str = "",
        tags: Optional[Dict[str, str]] = None,
        waiter_delay: int = 15,
        waiter_max_attempts: int = 240
    ):
        """Initialize CloudFormation provisioner.

        Args:
            boto_session: Configured boto3 session for AWS API calls
            name_prefix: Prefix for physical stack names (usually the project name)
            tags: Tags applied to every stack
            waiter_delay: Seconds between waiter polls
            waiter_max_attempts: Waiter polls before giving up
        """
        self.session = boto_session
        self.cfn_client = boto_session.client('cloudformation')
        self.name_prefix = name_prefix
        self.tags = dict(tags or {})
        self.waiter_config = {'Delay': waiter_delay, 'MaxAttempts': waiter_max_attempts}

    def physical_name(self, stack_id: str) -> str:
        return f"{self.name_prefix}-{stack_id}" if self.name_prefix else stack_id

    def apply(self, stack: StackSpec, changeset: Optional["ChangeSet"], parameters: Dict[str, Any]) -> Dict[str, Any]:
        name = self.physical_name(stack.name)
        params = {
            'StackName': name,
            'TemplateBody': self._read_template(stack),
            'Parameters': [
                {'ParameterKey': key, 'ParameterValue': self._parameter_value(value)}
                for key, value in sorted(parameters.items())
            ],
            'Capabilities': list(stack.capabilities),
            'Tags': [{'Key': k, 'Value': v} for k, v in sorted(self.tags.items())],
        }

        status = self._stack_status(name)
        if status in _DEAD_STATUSES:
            logger.warning(f"Stack {name} is {status}; deleting before re-creating", extra={'stack_id': stack.name})
            self.destroy(stack.name)
            status = None

        if status is None:
            logger.info(f"Creating stack {name}", extra={'stack_id': stack.name, 'operation': 'create'})
            self.cfn_client.create_stack(**params)
            self._wait('stack_create_complete', name, stack.name)
        else:
            logger.info(f"Updating stack {name}", extra={'stack_id': stack.name, 'operation': 'update'})
            try:
                self.cfn_client.update_stack(**params)
            except ClientError as e:
                if 'No updates are to be performed' not in e.response.get('Error', {}).get('Message', ''):
                    raise
                logger.info(f"Stack {name} is already up to date", extra={'stack_id': stack.name})
            else:
                self._wait('stack_update_complete', name, stack.name)

        return self.get_outputs(stack.name) or {}

    def destroy(self, stack_id: str) -> None:
        name = self.physical_name(stack_id)
        if self._stack_status(name) is None:
            return
        logger.info(f"Deleting stack {name}", extra={'stack_id': stack_id, 'operation': 'delete'})
        self.cfn_client.delete_stack(StackName=name)
        self._wait('stack_delete_complete', name, stack_id)

    def get_outputs(self, stack_id: str) -> Optional[Dict[str, Any]]:
        stack = self._describe(self.physical_name(stack_id))
        if stack is None:
            return None
        return {o['OutputKey']: o['OutputValue'] for o in stack.get('Outputs', [])}

    @retried('cloudformation')
    def _describe(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            stacks = self.cfn_client.describe_stacks(StackName=name)['Stacks']
        except ClientError as e:
            if 'does not exist' in e.response.get('Error', {}).get('Message', ''):
                return None
            raise
        return stacks[0] if stacks else None

    def _stack_status(self, name: str) -> Optional[str]:
        stack = self._describe(name)
        return stack['StackStatus'] if stack else None

    def _wait(self, waiter_name: str, name: str, stack_id: str) -> None:
        try:
            self.cfn_client.get_waiter(waiter_name).wait(StackName=name, WaiterConfig=self.waiter_config)
        except WaiterError as e:
            stack = self._describe(name) or {}
            raise ApplyRejectedError(
                f"Stack {name} ended in {stack.get('StackStatus', 'unknown state')}: "
                f"{stack.get('StackStatusReason') or self._first_failure(name) or e}",
                context=ErrorContext(
                    stack_id=stack_id,
                    aws_service='cloudformation',
                    aws_operation=waiter_name,
                    decision_point="apply"
                ),
                cause=e,
                suggestions=['Inspect the stack events in the CloudFormation console']
            )

    def _first_failure(self, name: str) -> Optional[str]:
        """Reason of the earliest failed resource event, which is usually the root cause."""
        try:
            events: List[Dict[str, Any]] = self.cfn_client.describe_stack_events(StackName=name)['StackEvents']
        except ClientError:
            return None
        failures = [e for e in reversed(events) if e.get('ResourceStatus', '').endswith('_FAILED')]
        if not failures:
            return None
        return f"{failures[0]['LogicalResourceId']}: {failures[0].get('ResourceStatusReason', '')}"

    @staticmethod
    def _read_template(stack: StackSpec) -> str:
        if not stack.template:
            raise ConfigurationError(
                f"Stack '{stack.name}' has no template",
                context=ErrorContext(stack_id=stack.name, decision_point="apply")
            )
        try:
            return Path(stack.template).read_text()
        except OSError as e:
            raise ConfigurationError(
                f"Cannot read template {stack.template}: {e}",
                context=ErrorContext(stack_id=stack.name, decision_point="apply"),
                cause=e
            )

    @staticmethod
    def _parameter_value(value: Any) -> str:
        if isinstance(value, (list, tuple)):
            return ",".join(str(v) for v in value)
        if isinstance(value, bool):
            return str(value).lower()
        return str(value)
