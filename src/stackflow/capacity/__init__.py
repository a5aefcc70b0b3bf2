"""Capacity groups, health reconciliation and rolling updates."""

from stackflow.capacity.models import (
    CapacityGroup,
    ElbHealth,
    HealthCheckType,
    HealthVerdict,
    InstanceUnit,
    LifecycleHealth,
    Probe,
    UnitState,
)
from stackflow.capacity.health import HealthReconciler, HealthReport, consecutive_streaks
from stackflow.capacity.fleet import BaseFleet, SimulatedFleet, UnitSignals, healthy_after

__all__ = [
    # Model
    'CapacityGroup',
    'ElbHealth',
    'HealthCheckType',
    'HealthVerdict',
    'InstanceUnit',
    'LifecycleHealth',
    'Probe',
    'UnitState',
    
    # Health
    'HealthReconciler',
    'HealthReport',
    'consecutive_streaks',
    
    # Fleet drivers
    'BaseFleet',
    'SimulatedFleet',
    'UnitSignals',
    'healthy_after',
]
