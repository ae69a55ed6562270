"""
Cluster-level status aggregation and change-event routing.
"""

from .events import EventRouter, container_selectors
from .status import (
    ProgramConditionType,
    ProgramStatus,
    ProgramStatusAggregator,
    aggregate_condition,
    deletion_condition,
    record_succeeded,
)

__all__ = [
    'EventRouter',
    'container_selectors',
    'ProgramConditionType',
    'ProgramStatus',
    'ProgramStatusAggregator',
    'aggregate_condition',
    'deletion_condition',
    'record_succeeded',
]
