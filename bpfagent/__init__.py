"""
BPF Link Agent - Core Components

Keeps the eBPF programs and attachment points on every node consistent
with the desired programs held in the cluster store.
"""

__version__ = "0.1.0"

# Must be first so package loggers are AgentLogger instances
from . import logging_config

from .constants import Timeouts, Retry, ObjectKinds, Labels, MetadataKeys, Finalizers, Limits

from .model import DesiredProgram, PerNodeRecord, ProgramKind
from .store import InMemoryStore, Store
from .rpc import BpfmanClient
from .agent import ProgramAgent
from .cluster import EventRouter, ProgramStatusAggregator
from .config import AgentConfig, load_config
from .workqueue import Controller, WorkQueue

__all__ = [
    '__version__',
    'Timeouts',
    'Retry',
    'ObjectKinds',
    'Labels',
    'MetadataKeys',
    'Finalizers',
    'Limits',
    'DesiredProgram',
    'PerNodeRecord',
    'ProgramKind',
    'InMemoryStore',
    'Store',
    'BpfmanClient',
    'ProgramAgent',
    'EventRouter',
    'ProgramStatusAggregator',
    'AgentConfig',
    'load_config',
    'Controller',
    'WorkQueue',
]
