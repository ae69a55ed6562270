"""
Logging Configuration for the BPF Link Agent.

Provides centralized logging configuration with verbose mode toggle,
per-feature logging, and structured log formatting.

Usage:
    from bpfagent.logging_config import setup_logging, get_logger

    # Setup at agent startup
    setup_logging(verbose=True)

    # Structured extra fields are rendered by the formatter
    logger = get_logger('bpfagent.engine.links')
    logger.info("Attached link", extra={'extra_data': {'uuid': uuid}})
"""

import os
import sys
import json
import logging
import threading
from datetime import datetime
from enum import Enum, auto
from pathlib import Path
from typing import Optional, Dict, Any, Set
from dataclasses import dataclass, field


# =============================================================================
# LOGGING LEVELS AND FEATURES
# =============================================================================

TRACE = 5
VERBOSE = 15


class FeatureArea(Enum):
    """Feature areas for targeted logging."""
    CORE = auto()           # Agent wiring
    EXPANSION = auto()      # Expected attachment computation
    LINKS = auto()          # Link diff/converge
    LIFECYCLE = auto()      # Per-node record state machine
    RPC = auto()            # Load/attach/detach calls
    STORE = auto()          # Object store access
    CLUSTER = auto()        # Status aggregation, event routing
    WORKQUEUE = auto()      # Scheduling and retries
    CONFIG = auto()         # Configuration loading


logging.addLevelName(TRACE, 'TRACE')
logging.addLevelName(VERBOSE, 'VERBOSE')


@dataclass
class LoggingState:
    """Thread-safe logging configuration state."""
    verbose: bool = False
    trace: bool = False
    log_file: Optional[str] = None
    console_enabled: bool = True
    json_format: bool = False
    enabled_features: Set[FeatureArea] = field(default_factory=lambda: set(FeatureArea))
    initialized: bool = False
    _lock: threading.RLock = field(default_factory=threading.RLock)


_state = LoggingState()


# =============================================================================
# CUSTOM FORMATTER
# =============================================================================

class AgentFormatter(logging.Formatter):
    """Formatter with color support and structured output."""

    COLORS = {
        'TRACE': '\033[90m',      # Gray
        'DEBUG': '\033[36m',      # Cyan
        'VERBOSE': '\033[94m',    # Light blue
        'INFO': '\033[32m',       # Green
        'WARNING': '\033[33;1m',  # Bold yellow
        'ERROR': '\033[31m',      # Red
        'CRITICAL': '\033[31;1m', # Bold red
        'RESET': '\033[0m',
    }

    def __init__(self, use_colors: bool = True, json_format: bool = False):
        self.use_colors = use_colors and sys.stdout.isatty()
        self.json_format = json_format
        super().__init__()

    def format(self, record: logging.LogRecord) -> str:
        if self.json_format:
            return self._format_json(record)
        return self._format_text(record)

    def _format_text(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
        level_name = record.levelname

        if self.use_colors:
            color = self.COLORS.get(level_name, '')
            reset = self.COLORS['RESET']
            level_str = f"{color}{level_name:8}{reset}"
        else:
            level_str = f"{level_name:8}"

        feature = self._extract_feature(record.name)
        feature_str = f"[{feature}]" if feature else ""

        msg = record.getMessage()

        extra_str = ""
        if hasattr(record, 'extra_data') and record.extra_data:
            extra_items = [f"{k}={v}" for k, v in record.extra_data.items()]
            extra_str = f" | {', '.join(extra_items)}"

        text = f"{timestamp} {level_str} {feature_str:12} {msg}{extra_str}"
        if record.exc_info:
            text = f"{text}\n{self.formatException(record.exc_info)}"
        return text

    def _format_json(self, record: logging.LogRecord) -> str:
        data = {
            'timestamp': datetime.now().isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'feature': self._extract_feature(record.name),
        }

        if hasattr(record, 'extra_data') and record.extra_data:
            data['extra'] = record.extra_data

        if record.exc_info:
            data['exception'] = self.formatException(record.exc_info)

        return json.dumps(data, default=str)

    def _extract_feature(self, logger_name: str) -> str:
        """Extract feature area from logger name."""
        parts = logger_name.split('.')
        if len(parts) >= 2 and parts[0] == 'bpfagent':
            # bpfagent.engine.links -> links
            return parts[-1]
        return parts[0] if parts else 'core'


# =============================================================================
# CUSTOM LOGGER CLASS
# =============================================================================

class AgentLogger(logging.Logger):
    """Extended logger with additional methods and feature tracking."""

    FEATURE_MAP = {
        'expansion': FeatureArea.EXPANSION,
        'interfaces': FeatureArea.EXPANSION,
        'containers': FeatureArea.EXPANSION,
        'links': FeatureArea.LINKS,
        'identity': FeatureArea.LINKS,
        'lifecycle': FeatureArea.LIFECYCLE,
        'application': FeatureArea.LIFECYCLE,
        'rpc': FeatureArea.RPC,
        'store': FeatureArea.STORE,
        'cluster': FeatureArea.CLUSTER,
        'workqueue': FeatureArea.WORKQUEUE,
        'config': FeatureArea.CONFIG,
    }

    def __init__(self, name: str, level: int = logging.NOTSET):
        super().__init__(name, level)
        self.feature: FeatureArea = self.detect_feature(name)

    @classmethod
    def detect_feature(cls, name: str) -> FeatureArea:
        """Detect feature area from logger name."""
        name_lower = name.lower()
        for key, feature in cls.FEATURE_MAP.items():
            if key in name_lower:
                return feature
        return FeatureArea.CORE

    def trace(self, msg: str, *args, **kwargs):
        """Log at TRACE level (ultra-verbose)."""
        if self.isEnabledFor(TRACE):
            self._log(TRACE, msg, args, **kwargs)

    def verbose(self, msg: str, *args, **kwargs):
        """Log at VERBOSE level."""
        if self.isEnabledFor(VERBOSE):
            self._log(VERBOSE, msg, args, **kwargs)

    def log_with_data(self, level: int, msg: str, data: Dict[str, Any], **kwargs):
        """Log with structured extra data."""
        extra = kwargs.get('extra', {})
        extra['extra_data'] = data
        kwargs['extra'] = extra
        self._log(level, msg, (), **kwargs)


logging.setLoggerClass(AgentLogger)


class FeatureFilter(logging.Filter):
    """Drops below-WARNING records from disabled feature areas."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True
        feature = AgentLogger.detect_feature(record.name)
        return feature in _state.enabled_features


# =============================================================================
# SETUP AND CONFIGURATION
# =============================================================================

def setup_logging(
    verbose: bool = False,
    trace: bool = False,
    log_file: Optional[str] = None,
    console: bool = True,
    json_format: bool = False,
    features: Optional[Set[FeatureArea]] = None,
) -> None:
    """
    Initialize the logging system.

    Args:
        verbose: Enable verbose logging (VERBOSE level)
        trace: Enable trace logging (TRACE level, implies verbose)
        log_file: Optional file path for log output
        console: Enable console output
        json_format: Use JSON format for logs
        features: Set of features to enable (all by default)
    """
    with _state._lock:
        _state.verbose = verbose or trace
        _state.trace = trace
        _state.log_file = log_file
        _state.console_enabled = console
        _state.json_format = json_format
        _state.enabled_features = set(features) if features is not None else set(FeatureArea)

        if trace:
            base_level = TRACE
        elif verbose:
            base_level = VERBOSE
        else:
            base_level = logging.INFO

        root = logging.getLogger()
        root.setLevel(base_level)

        for handler in root.handlers[:]:
            root.removeHandler(handler)

        feature_filter = FeatureFilter()

        if console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(base_level)
            console_handler.setFormatter(AgentFormatter(use_colors=True, json_format=json_format))
            console_handler.addFilter(feature_filter)
            root.addHandler(console_handler)

        if log_file:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(base_level)
            file_handler.setFormatter(AgentFormatter(use_colors=False, json_format=json_format))
            file_handler.addFilter(feature_filter)
            root.addHandler(file_handler)

        _state.initialized = True


def get_logger(name: str) -> AgentLogger:
    """
    Get a feature-aware logger.

    Args:
        name: Logger name (e.g., 'bpfagent.engine.links')

    Returns:
        AgentLogger instance
    """
    # bpfagent/__init__ imports this module first, so package loggers are
    # created after setLoggerClass() and are AgentLogger instances.
    return logging.getLogger(name)


def set_verbose(enabled: bool) -> None:
    """Toggle verbose mode at runtime."""
    with _state._lock:
        _state.verbose = enabled
        level = VERBOSE if enabled else logging.INFO

        root = logging.getLogger()
        root.setLevel(level)
        for handler in root.handlers:
            handler.setLevel(level)


def disable_feature(feature: FeatureArea) -> None:
    """Suppress below-WARNING logging for a feature."""
    with _state._lock:
        _state.enabled_features.discard(feature)


def enable_feature(feature: FeatureArea) -> None:
    """Re-enable logging for a feature."""
    with _state._lock:
        _state.enabled_features.add(feature)


def get_logging_state() -> Dict[str, Any]:
    """Get current logging configuration state."""
    with _state._lock:
        return {
            'verbose': _state.verbose,
            'trace': _state.trace,
            'log_file': _state.log_file,
            'console_enabled': _state.console_enabled,
            'json_format': _state.json_format,
            'enabled_features': sorted(f.name for f in _state.enabled_features),
            'initialized': _state.initialized,
        }


def configure_from_environment() -> None:
    """Configure logging from BPFAGENT_* environment variables."""
    verbose = os.environ.get('BPFAGENT_VERBOSE', '').lower() in ('1', 'true', 'yes')
    trace = os.environ.get('BPFAGENT_TRACE', '').lower() in ('1', 'true', 'yes')
    log_file = os.environ.get('BPFAGENT_LOG_FILE')
    json_format = os.environ.get('BPFAGENT_LOG_JSON', '').lower() in ('1', 'true', 'yes')

    enabled_features = set(FeatureArea)
    disabled = os.environ.get('BPFAGENT_LOG_DISABLE_FEATURES', '')
    for feature_name in filter(None, (name.strip() for name in disabled.split(','))):
        try:
            enabled_features.discard(FeatureArea[feature_name.upper()])
        except KeyError:
            logging.getLogger(__name__).warning(f"Unknown log feature {feature_name!r} ignored")

    setup_logging(
        verbose=verbose,
        trace=trace,
        log_file=log_file,
        json_format=json_format,
        features=enabled_features,
    )


__all__ = [
    'TRACE',
    'VERBOSE',
    'FeatureArea',
    'setup_logging',
    'configure_from_environment',
    'get_logger',
    'set_verbose',
    'enable_feature',
    'disable_feature',
    'get_logging_state',
    'AgentLogger',
    'AgentFormatter',
]
