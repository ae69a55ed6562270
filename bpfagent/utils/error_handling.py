"""
Error Handling Utilities for the BPF Link Agent

Provides the agent's error taxonomy and consistent error reporting:
1. Exception hierarchy separating transient, per-attachment, configuration
   and invariant errors
2. Error categorization and severity levels
3. Detailed error logging with context
4. Error aggregation with de-duplication, used to report per-key failures

No error handled here is fatal to the process; every reconcile failure is
recorded and the key is retried later.

USAGE:
    from bpfagent.utils.error_handling import (
        handle_error,
        ErrorCategory,
        RpcError,
    )

    try:
        client.attach(request, timeout=timeout)
    except RpcError as e:
        handle_error(e, "attach", ErrorCategory.TRANSIENT)
"""

import logging
import threading
import time
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class AgentError(Exception):
    """Base class for all errors raised by the agent."""


class RpcError(AgentError):
    """A load/attach/detach/unload/list/get call failed. Always retried."""

    def __init__(self, operation: str, message: str):
        super().__init__(f"failed to {operation} via bpfman: {message}")
        self.operation = operation


class RpcTimeoutError(RpcError):
    """An RPC call exceeded its caller-supplied timeout."""


class StoreError(AgentError):
    """Object store operation failed."""


class NotFoundError(StoreError):
    """Requested object does not exist."""

    def __init__(self, kind: str, name: str):
        super().__init__(f"{kind} {name!r} not found")
        self.kind = kind
        self.name = name


class AlreadyExistsError(StoreError):
    """Object with the same name already exists."""


class ConflictError(StoreError):
    """Update was based on a stale read of the object."""


class ConfigurationError(AgentError):
    """Unsupported selector combination or missing required field."""


class InvariantViolation(AgentError):
    """A lifecycle invariant does not hold, e.g. a missing owner reference."""


# =============================================================================
# CATEGORIES AND SEVERITY
# =============================================================================

class ErrorCategory(Enum):
    """Categories of errors for handling and reporting."""
    # RPC unreachable or timed out, stale object read
    TRANSIENT = "transient"

    # A single attach or detach failed
    ATTACHMENT = "attachment"

    # Unsupported selector combination, missing field
    CONFIG = "configuration"

    # Lifecycle invariant violated
    INVARIANT = "invariant"

    # Unknown/uncategorized
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


def categorize_error(error: Exception) -> ErrorCategory:
    """Map an exception onto the agent's error taxonomy."""
    if isinstance(error, (RpcError, StoreError, TimeoutError, ConnectionError)):
        return ErrorCategory.TRANSIENT
    if isinstance(error, ConfigurationError):
        return ErrorCategory.CONFIG
    if isinstance(error, InvariantViolation):
        return ErrorCategory.INVARIANT
    return ErrorCategory.UNKNOWN


def determine_severity(error: Exception, category: ErrorCategory) -> ErrorSeverity:
    """Determine the severity level for an error based on type and category."""
    if category == ErrorCategory.INVARIANT:
        return ErrorSeverity.CRITICAL
    if isinstance(error, ConflictError):
        return ErrorSeverity.INFO
    if category in (ErrorCategory.TRANSIENT, ErrorCategory.CONFIG):
        return ErrorSeverity.WARNING
    return ErrorSeverity.ERROR


# =============================================================================
# ERROR CONTEXT AND AGGREGATION
# =============================================================================

@dataclass
class ErrorContext:
    """Detailed context information for an error."""
    error: Exception
    category: ErrorCategory
    severity: ErrorSeverity
    operation: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    thread_name: str = field(default_factory=lambda: threading.current_thread().name)
    stack_trace: str = ""
    additional_context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.stack_trace and self.error.__traceback__ is not None:
            self.stack_trace = "".join(traceback.format_exception(
                type(self.error), self.error, self.error.__traceback__
            ))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            'error_type': type(self.error).__name__,
            'error_message': str(self.error),
            'category': self.category.value,
            'severity': self.severity.value,
            'operation': self.operation,
            'timestamp': self.timestamp,
            'thread_name': self.thread_name,
            'additional_context': self.additional_context,
        }

    def format_log_message(self) -> str:
        """Format a detailed log message."""
        lines = [
            f"ERROR [{self.severity.value.upper()}] in {self.operation}",
            f"  Category: {self.category.value}",
            f"  Type: {type(self.error).__name__}",
            f"  Message: {self.error}",
            f"  Thread: {self.thread_name}",
        ]

        if self.additional_context:
            lines.append("  Context:")
            for key, value in self.additional_context.items():
                lines.append(f"    {key}: {value}")

        if self.stack_trace and self.category in (ErrorCategory.INVARIANT, ErrorCategory.UNKNOWN):
            lines.append("  Stack Trace:")
            for line in self.stack_trace.split('\n'):
                if line.strip():
                    lines.append(f"    {line}")

        return '\n'.join(lines)


class ErrorAggregator:
    """
    Aggregates and tracks errors for reporting.

    Thread-safe error collection with de-duplication, so a record that keeps
    failing on every retry is logged in full once per window.
    """

    def __init__(self, max_errors: int = 1000, dedup_window_seconds: int = 60):
        self._errors: List[ErrorContext] = []
        self._lock = threading.Lock()
        self._max_errors = max_errors
        self._dedup_window = dedup_window_seconds
        self._error_counts: Dict[str, int] = {}
        self._last_error_times: Dict[str, float] = {}

    def add_error(self, context: ErrorContext) -> bool:
        """
        Add an error to the aggregator.

        Returns True if error was added, False if deduplicated.
        """
        error_key = f"{context.category.value}:{type(context.error).__name__}:{context.operation}"
        current_time = time.time()

        with self._lock:
            last_time = self._last_error_times.get(error_key, 0)
            if current_time - last_time < self._dedup_window:
                self._error_counts[error_key] = self._error_counts.get(error_key, 0) + 1
                return False

            self._errors.append(context)
            self._last_error_times[error_key] = current_time
            self._error_counts[error_key] = 1

            if len(self._errors) > self._max_errors:
                self._errors = self._errors[-self._max_errors:]

            return True

    def get_error_summary(self) -> Dict[str, Any]:
        """Get a summary of aggregated errors."""
        with self._lock:
            by_category: Dict[str, int] = {}
            for ctx in self._errors:
                cat = ctx.category.value
                by_category[cat] = by_category.get(cat, 0) + 1

            return {
                'total_errors': len(self._errors),
                'by_category': by_category,
                'deduplicated_counts': dict(self._error_counts),
            }

    def get_recent_errors(self, count: int = 10) -> List[Dict[str, Any]]:
        """Get the most recent errors."""
        with self._lock:
            return [e.to_dict() for e in self._errors[-count:]]

    def clear(self):
        """Clear all aggregated errors."""
        with self._lock:
            self._errors.clear()
            self._error_counts.clear()
            self._last_error_times.clear()


_global_aggregator = ErrorAggregator()


def get_error_aggregator() -> ErrorAggregator:
    """Get the global error aggregator instance."""
    return _global_aggregator


def handle_error(
    error: Exception,
    operation: str,
    category: Optional[ErrorCategory] = None,
    severity: Optional[ErrorSeverity] = None,
    additional_context: Optional[Dict[str, Any]] = None,
) -> ErrorContext:
    """
    Handle an error with logging and tracking.

    Args:
        error: The exception that occurred
        operation: Name of the operation that failed
        category: Category of the error (derived from the exception if not provided)
        severity: Severity level (auto-determined if not provided)
        additional_context: Additional context information

    Returns:
        ErrorContext with full error details
    """
    if category is None:
        category = categorize_error(error)
    if severity is None:
        severity = determine_severity(error, category)

    context = ErrorContext(
        error=error,
        category=category,
        severity=severity,
        operation=operation,
        additional_context=additional_context or {},
    )

    was_added = _global_aggregator.add_error(context)

    log_level = {
        ErrorSeverity.INFO: logging.INFO,
        ErrorSeverity.WARNING: logging.WARNING,
        ErrorSeverity.ERROR: logging.ERROR,
        ErrorSeverity.CRITICAL: logging.CRITICAL,
    }.get(severity, logging.ERROR)

    if was_added:
        logger.log(log_level, context.format_log_message())
    else:
        logger.log(log_level, f"[DEDUPLICATED] {operation}: {type(error).__name__}: {error}")

    return context
