"""Pydantic models for the stack-set configuration schema."""

import re
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from stackflow.capacity.models import HealthCheckType


_ISO_DURATION = re.compile(
    r"^P(?:(?P<days>\d+)D)?(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+(?:\.\d+)?)S)?)?$"
)


def parse_duration(value: Any) -> Any:
    """Accept seconds as a number or an ISO-8601 duration such as ``PT5M30S``."""
    if isinstance(value, str):
        text = value.strip()
        match = _ISO_DURATION.match(text)
        if match and text not in ("P", "PT"):
            parts = {k: float(v) for k, v in match.groupdict().items() if v}
            return (
                parts.get("days", 0) * 86400
                + parts.get("hours", 0) * 3600
                + parts.get("minutes", 0) * 60
                + parts.get("seconds", 0)
            )
        try:
            return float(text)
        except ValueError:
            raise ValueError(f"Invalid duration: {value!r} (use seconds or ISO-8601, e.g. PT5M)")
    return value


# Parameter value form that is substituted with an imported export
IMPORT_VALUE_KEY = "ImportValue"

# Attributes whose change cannot be applied in place, keyed by resource type
DEFAULT_IMMUTABLE_PROPERTIES: Dict[str, List[str]] = {
    "AWS::EC2::VPC": ["CidrBlock", "InstanceTenancy"],
    "AWS::EC2::Subnet": ["VpcId", "CidrBlock", "AvailabilityZone"],
    "AWS::EC2::SecurityGroup": ["GroupName", "GroupDescription", "VpcId"],
    "AWS::EC2::Instance": ["SubnetId", "AvailabilityZone", "ImageId"],
    "AWS::IAM::Role": ["RoleName", "Path"],
    "AWS::IAM::InstanceProfile": ["InstanceProfileName", "Path"],
    "AWS::ElasticLoadBalancingV2::LoadBalancer": ["Name", "Scheme", "Type"],
    "AWS::ElasticLoadBalancingV2::TargetGroup": ["Name", "Port", "Protocol", "VpcId", "TargetType"],
    "AWS::RDS::DBInstance": ["DBInstanceIdentifier", "Engine", "DBSubnetGroupName"],
    "AWS::AutoScaling::AutoScalingGroup": ["AutoScalingGroupName"],
}


class _AliasedModel(BaseModel):
    """Accepts both CloudFormation-style aliases and snake_case field names."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class ElbHealthCheck(_AliasedModel):
    """Target group health check settings as the load balancer applies them."""

    interval: float = Field(..., gt=0, alias="Interval")
    timeout: float = Field(..., gt=0, alias="Timeout")
    healthy_threshold: int = Field(..., ge=1, alias="HealthyThreshold")
    unhealthy_threshold: int = Field(..., ge=1, alias="UnhealthyThreshold")

    @field_validator("interval", "timeout", mode="before")
    @classmethod
    def parse_durations(cls, v: Any) -> Any:
        """Durations accept seconds or ISO-8601 strings."""
        return parse_duration(v)

    @model_validator(mode="after")
    def validate_timeout(self):
        """The load balancer requires each probe to time out before the next one starts."""
        if self.timeout >= self.interval:
            raise ValueError("Timeout must be less than Interval")
        return self

    @property
    def staleness_limit(self) -> float:
        """Age beyond which a Healthy probe streak may hide a later failure."""
        return self.interval * self.unhealthy_threshold


class RollingUpdatePolicy(_AliasedModel):
    """Batch replacement policy for a capacity group."""

    min_in_service: int = Field(..., ge=0, alias="MinInstancesInService")
    max_batch_size: int = Field(..., ge=1, alias="MaxBatchSize")
    pause_time: float = Field(..., ge=0, alias="PauseTime")
    wait_on_signals: bool = Field(False, alias="WaitOnResourceSignals")
    poll_interval: float = Field(..., gt=0, alias="PollInterval")
    max_unknown_polls: int = Field(..., ge=1, alias="MaxUnknownPolls")
    max_batch_wait: float = Field(..., gt=0, alias="MaxBatchWait")
    signal_timeout: Optional[float] = Field(None, gt=0, alias="SignalTimeout")
    max_health_flaps: int = Field(0, ge=0, alias="MaxHealthFlaps")

    @field_validator("pause_time", "poll_interval", "max_batch_wait", "signal_timeout", mode="before")
    @classmethod
    def parse_durations(cls, v: Any) -> Any:
        """Durations accept seconds or ISO-8601 strings."""
        return parse_duration(v)

    @model_validator(mode="after")
    def validate_signals(self):
        """Signal waits need their own ceiling."""
        if self.wait_on_signals and self.signal_timeout is None:
            raise ValueError("SignalTimeout is required when WaitOnResourceSignals is enabled")
        return self


class CapacityGroupSpec(_AliasedModel):
    """Declared compute capacity owned by a stack."""

    name: str = Field("CapacityGroup", min_length=1, alias="Name")
    min_size: int = Field(..., ge=0, alias="MinSize")
    max_size: int = Field(..., ge=1, alias="MaxSize")
    desired_capacity: int = Field(..., ge=1, alias="DesiredCapacity")
    launch_version: str = Field(..., min_length=1, alias="LaunchTemplateVersion")
    launch_template_id: Optional[str] = Field(None, alias="LaunchTemplateId")
    target_group_arn: Optional[str] = Field(None, alias="TargetGroupArn")
    subnet_ids: List[str] = Field(default_factory=list, alias="VPCZoneIdentifier")
    health_check_type: HealthCheckType = Field(..., alias="HealthCheckType")
    health_check_grace_period: float = Field(..., ge=0, alias="HealthCheckGracePeriod")
    elb_health_check: Optional[ElbHealthCheck] = Field(None, alias="LoadBalancerHealthCheck")
    update_policy: RollingUpdatePolicy = Field(..., alias="UpdatePolicy")

    @field_validator("health_check_grace_period", mode="before")
    @classmethod
    def parse_durations(cls, v: Any) -> Any:
        """Durations accept seconds or ISO-8601 strings."""
        return parse_duration(v)

    @model_validator(mode="after")
    def validate_capacity(self):
        """Validate sizes and the update policy against them."""
        if not self.min_size <= self.desired_capacity <= self.max_size:
            raise ValueError("Capacity must satisfy MinSize <= DesiredCapacity <= MaxSize")
        if self.health_check_type == HealthCheckType.LOAD_BALANCER and self.elb_health_check is None:
            raise ValueError("LoadBalancerHealthCheck is required when HealthCheckType is LoadBalancer")
        if self.update_policy.min_in_service >= self.desired_capacity:
            raise ValueError(
                "MinInstancesInService must be less than DesiredCapacity, "
                "otherwise no instance can be replaced"
            )
        return self


class ResourceSpec(_AliasedModel):
    """A declared resource inside a stack template."""

    type: str = Field(..., min_length=1, alias="Type")
    properties: Dict[str, Any] = Field(default_factory=dict, alias="Properties")
    immutable: List[str] = Field(default_factory=list, alias="Immutable")


class ExportSpec(_AliasedModel):
    """Where an exported value comes from once the stack is applied."""

    output: Optional[str] = Field(None, alias="Output")
    resource: Optional[str] = Field(None, alias="Resource")
    value: Optional[Any] = Field(None, alias="Value")

    @model_validator(mode="before")
    @classmethod
    def expand_shorthand(cls, data: Any) -> Any:
        """``ExportName: OutputKey`` is shorthand for ``{output: OutputKey}``."""
        if isinstance(data, str):
            return {"output": data}
        return data


class StackSpec(_AliasedModel):
    """Declared stack: opaque template plus the metadata the orchestrator reasons about."""

    name: str = Field(..., min_length=1, max_length=128, pattern="^[A-Za-z][A-Za-z0-9-]*$")
    template: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    capabilities: List[str] = Field(default_factory=list)
    imports: List[str] = Field(default_factory=list)
    exports: Dict[str, ExportSpec] = Field(default_factory=dict)
    resources: Dict[str, ResourceSpec] = Field(default_factory=dict)
    capacity: Optional[CapacityGroupSpec] = None

    @field_validator("imports")
    @classmethod
    def validate_imports(cls, v: List[str]) -> List[str]:
        """Import names must be unique."""
        seen = set()
        for name in v:
            if name in seen:
                raise ValueError(f"Duplicate import: {name}")
            seen.add(name)
        return v

    @model_validator(mode="after")
    def validate_references(self):
        """Exports may only point at resources declared in this stack."""
        known = set(self.resources)
        if self.capacity:
            if self.capacity.name in known:
                raise ValueError(f"Capacity group name '{self.capacity.name}' collides with a resource")
            known.add(self.capacity.name)
        for export_name, export in self.exports.items():
            if export.resource and export.resource not in known:
                raise ValueError(
                    f"Export '{export_name}' references unknown resource '{export.resource}'"
                )
        overlap = set(self.imports) & set(self.exports)
        if overlap:
            raise ValueError(f"Stack imports its own exports: {', '.join(sorted(overlap))}")
        for param, import_name in self.import_references().items():
            if import_name not in self.imports:
                raise ValueError(
                    f"Parameter '{param}' uses ImportValue '{import_name}' which is not listed under imports"
                )
        return self

    def import_references(self) -> Dict[str, str]:
        """Parameters written as ``{ImportValue: name}``, mapped to the import name."""
        return {
            key: value[IMPORT_VALUE_KEY]
            for key, value in self.parameters.items()
            if isinstance(value, dict) and set(value) == {IMPORT_VALUE_KEY}
        }

    def snapshot(self) -> Dict[str, Any]:
        """JSON-safe copy used as the last-applied spec."""
        return self.model_dump(mode="json")


class ProjectConfig(BaseModel):
    """Project-level configuration."""

    name: str = Field(..., min_length=1, max_length=64, pattern="^[a-z0-9-]+$")
    tags: Dict[str, str] = Field(default_factory=dict)


class SettingsConfig(BaseModel):
    """Run-wide settings."""

    backend: Literal["simulated", "aws"] = "simulated"
    region: Optional[str] = None
    profile: Optional[str] = None
    state_dir: str = ".stackflow"
    max_workers: int = Field(4, ge=1, le=64)
    approval_timeout: float = Field(0, ge=0)
    approval_poll_interval: float = Field(5, gt=0)
    immutable_properties: Dict[str, List[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_IMMUTABLE_PROPERTIES.items()}
    )

    @field_validator("approval_timeout", "approval_poll_interval", mode="before")
    @classmethod
    def parse_durations(cls, v: Any) -> Any:
        """Durations accept seconds or ISO-8601 strings."""
        return parse_duration(v)


class StackSetConfig(BaseModel):
    """Complete stack-set file."""

    project: ProjectConfig
    settings: SettingsConfig = Field(default_factory=SettingsConfig)
    stacks: List[StackSpec] = Field(..., min_length=1)

    @field_validator("stacks")
    @classmethod
    def validate_unique_names(cls, v: List[StackSpec]) -> List[StackSpec]:
        """Stack names must be unique within a set."""
        seen = set()
        for stack in v:
            if stack.name in seen:
                raise ValueError(f"Duplicate stack name: {stack.name}")
            seen.add(stack.name)
        return v

    def get_stack(self, name: str) -> Optional[StackSpec]:
        """Get a stack by name."""
        for stack in self.stacks:
            if stack.name == name:
                return stack
        return None
