"""EC2 / ELBv2 fleet driver."""

from typing import List, Optional

import boto3

from stackflow.capacity.fleet import BaseFleet
from stackflow.capacity.models import (
    CapacityGroup,
    InstanceUnit,
    LifecycleHealth,
    Probe,
    UnitState,
)
from stackflow.utils.clock import Clock
from stackflow.utils.errors import ConfigurationError, ErrorContext
from stackflow.utils.logging import get_logger
from stackflow.utils.retry import retried

logger = get_logger(__name__)

# Instances tag themselves with this key once bootstrapping finishes
SIGNAL_TAG = 'stackflow:signal'

_INSTANCE_STATES = {
    'pending': LifecycleHealth.PENDING,
    'running': LifecycleHealth.RUNNING,
    'stopping': LifecycleHealth.STOPPED,
    'stopped': LifecycleHealth.STOPPED,
    'shutting-down': LifecycleHealth.TERMINATED,
    'terminated': LifecycleHealth.TERMINATED,
}


class AwsFleet(BaseFleet):
    """Launches units from an EC2 launch template and tracks them in a target group."""

    def __init__(self, boto_session: boto3.Session, clock: Optional[Clock] = None):
        """Initialize AWS fleet driver.

        Args:
            boto_session: Configured boto3 session for AWS API calls
            clock: Time source used to stamp load balancer probes
        """
        self.session = boto_session
        self.clock = clock or Clock()
        self.ec2 = boto_session.client('ec2')
        self.elbv2 = boto_session.client('elbv2')

    @retried('ec2')
    def launch(self, group: CapacityGroup, version: str, count: int) -> List[InstanceUnit]:
        if not group.launch_template_id:
            raise ConfigurationError(
                f"Capacity group '{group.name}' needs LaunchTemplateId for the aws backend",
                context=ErrorContext(stack_id=group.stack_id, decision_point="launch")
            )

        params = {
            'LaunchTemplate': {'LaunchTemplateId': group.launch_template_id, 'Version': version},
            'MinCount': count,
            'MaxCount': count,
            'TagSpecifications': [{
                'ResourceType': 'instance',
                'Tags': [
                    {'Key': 'stackflow:stack', 'Value': group.stack_id or ''},
                    {'Key': 'stackflow:group', 'Value': group.name},
                    {'Key': 'stackflow:version', 'Value': version},
                ]
            }]
        }
        if group.subnet_ids:
            params['SubnetId'] = group.subnet_ids[len(group.live_units()) % len(group.subnet_ids)]

        # A single call so a launch is either fully tracked or did not happen
        response = self.ec2.run_instances(**params)
        now = self.clock.now()
        units = [
            InstanceUnit(unit_id=instance['InstanceId'], version=version, state=UnitState.PENDING, launched_at=now)
            for instance in response['Instances']
        ]

        if group.target_group_arn:
            self.elbv2.register_targets(
                TargetGroupArn=group.target_group_arn,
                Targets=[{'Id': unit.unit_id} for unit in units]
            )

        logger.info(
            f"Launched {len(units)} instance(s) from {group.launch_template_id}:{version}",
            extra={'stack_id': group.stack_id}
        )
        return units

    @retried('ec2', 'elbv2')
    def observe(self, unit: InstanceUnit, group: CapacityGroup) -> None:
        statuses = self.ec2.describe_instance_status(
            InstanceIds=[unit.unit_id], IncludeAllInstances=True
        ).get('InstanceStatuses', [])
        if statuses:
            status = statuses[0]
            lifecycle = _INSTANCE_STATES.get(status['InstanceState']['Name'], LifecycleHealth.PENDING)
            if lifecycle == LifecycleHealth.RUNNING and status.get('InstanceStatus', {}).get('Status') == 'impaired':
                lifecycle = LifecycleHealth.IMPAIRED
            unit.lifecycle = lifecycle

        if group.target_group_arn and group.elb_health_check is not None:
            now = self.clock.now()
            last = unit.elb.last_probe_at
            if last is None or now - last >= group.elb_health_check.interval:
                descriptions = self.elbv2.describe_target_health(
                    TargetGroupArn=group.target_group_arn,
                    Targets=[{'Id': unit.unit_id}]
                ).get('TargetHealthDescriptions', [])
                state = descriptions[0]['TargetHealth']['State'] if descriptions else 'unused'
                # 'initial' means the load balancer has not finished its first checks
                if state in ('healthy', 'unhealthy'):
                    unit.elb.record(Probe(at=now, passed=state == 'healthy'))

        if not unit.signaled:
            tags = self.ec2.describe_tags(Filters=[
                {'Name': 'resource-id', 'Values': [unit.unit_id]},
                {'Name': 'key', 'Values': [SIGNAL_TAG]},
            ]).get('Tags', [])
            unit.signaled = any(tag.get('Value') == 'SUCCESS' for tag in tags)

    @retried('elbv2')
    def drain(self, unit: InstanceUnit, group: CapacityGroup) -> None:
        if group.target_group_arn:
            self.elbv2.deregister_targets(
                TargetGroupArn=group.target_group_arn,
                Targets=[{'Id': unit.unit_id}]
            )

    @retried('ec2')
    def terminate(self, unit: InstanceUnit, group: CapacityGroup) -> None:
        self.ec2.terminate_instances(InstanceIds=[unit.unit_id])
        unit.lifecycle = LifecycleHealth.TERMINATED
