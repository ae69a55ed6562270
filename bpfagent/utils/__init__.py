"""
Utility modules for the BPF Link Agent.

Provides the error taxonomy and error reporting helpers.
"""

from .error_handling import (
    AgentError,
    RpcError,
    RpcTimeoutError,
    StoreError,
    NotFoundError,
    AlreadyExistsError,
    ConflictError,
    ConfigurationError,
    InvariantViolation,
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    ErrorAggregator,
    categorize_error,
    get_error_aggregator,
    handle_error,
)

__all__ = [
    # Exceptions
    'AgentError',
    'RpcError',
    'RpcTimeoutError',
    'StoreError',
    'NotFoundError',
    'AlreadyExistsError',
    'ConflictError',
    'ConfigurationError',
    'InvariantViolation',

    # Error handling
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'ErrorAggregator',
    'categorize_error',
    'get_error_aggregator',
    'handle_error',
]
