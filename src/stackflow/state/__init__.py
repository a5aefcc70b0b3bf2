"""Persisted state management."""

from .models import ApprovalRecord, ExportRecord, StackRecord, State
from .manager import StateLockError, StateManager, StateNotFoundError

__all__ = [
    'ApprovalRecord',
    'ExportRecord',
    'StackRecord',
    'State',
    'StateLockError',
    'StateManager',
    'StateNotFoundError',
]
