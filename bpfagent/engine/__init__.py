"""
Reconciliation engine: identity, expansion, link convergence, lifecycle.
"""

from .adapters import KindAdapter, ProgramUnit, get_adapter
from .application import decompose, finalizer_for
from .expansion import ExpansionContext
from .identity import app_program_id, find_link, identity_equals, identity_key, sanitize
from .lifecycle import LifecycleEngine, ReconcileOutcome, record_labels, record_name
from .links import (
    LinkReconcileResult,
    LinkReconciler,
    mark_expected,
    program_link_status,
    reconcile_links,
)

__all__ = [
    'KindAdapter',
    'ProgramUnit',
    'get_adapter',
    'decompose',
    'finalizer_for',
    'ExpansionContext',
    'app_program_id',
    'find_link',
    'identity_equals',
    'identity_key',
    'sanitize',
    'LifecycleEngine',
    'ReconcileOutcome',
    'record_labels',
    'record_name',
    'LinkReconcileResult',
    'LinkReconciler',
    'mark_expected',
    'program_link_status',
    'reconcile_links',
]
