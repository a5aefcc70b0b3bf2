"""Provisioners that hand stack templates to a backend."""

from .base import BaseProvisioner
from .simulated import SimulatedProvisioner
from .cloudformation import CloudFormationProvisioner

__all__ = [
    'BaseProvisioner',
    'SimulatedProvisioner',
    'CloudFormationProvisioner',
]
