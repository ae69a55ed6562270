"""
Centralized Constants Module for the BPF Link Agent.

Consolidates label keys, finalizer names, metadata keys, timeouts and retry
intervals used across the agent so that the node agent and the cluster
status aggregator agree on them.

Usage:
    from bpfagent.constants import Timeouts, Labels, Finalizers

    client.attach(request, timeout=Timeouts.RPC_DEFAULT)
"""

import os
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

ENV_PREFIX = "BPFAGENT_"


# =============================================================================
# ENVIRONMENT VARIABLE OVERRIDE UTILITIES
# =============================================================================

T = TypeVar('T')


def _env_override(
    env_var: str,
    default: T,
    converter: Callable[[str], T] = str,
    validator: Optional[Callable[[T], bool]] = None,
    min_value: Optional[T] = None,
    max_value: Optional[T] = None,
) -> T:
    """Get a configuration value with environment variable override.

    Args:
        env_var: Environment variable name (will be prefixed with BPFAGENT_)
        default: Default value if env var not set
        converter: Function to convert string to target type
        validator: Optional validation function
        min_value: Optional minimum allowed value
        max_value: Optional maximum allowed value

    Returns:
        Configured value (from env var if valid, otherwise default)
    """
    full_env_var = f"{ENV_PREFIX}{env_var}"
    env_value = os.environ.get(full_env_var)

    if env_value is None:
        return default

    try:
        converted = converter(env_value)

        if min_value is not None and converted < min_value:
            logger.warning(f"{full_env_var}={env_value} below minimum {min_value}, using default")
            return default
        if max_value is not None and converted > max_value:
            logger.warning(f"{full_env_var}={env_value} above maximum {max_value}, using default")
            return default

        if validator is not None and not validator(converted):
            logger.warning(f"{full_env_var}={env_value} failed validation, using default")
            return default

        logger.info(f"Using {full_env_var}={converted} (override)")
        return converted

    except (ValueError, TypeError) as e:
        logger.warning(f"Invalid value for {full_env_var}: {e}, using default")
        return default


def _env_override_list(
    env_var: str,
    default: Tuple[str, ...],
    separator: str = ",",
) -> Tuple[str, ...]:
    """Get a list configuration value with environment variable override."""
    full_env_var = f"{ENV_PREFIX}{env_var}"
    env_value = os.environ.get(full_env_var)

    if env_value is None:
        return default

    items = tuple(item.strip() for item in env_value.split(separator) if item.strip())
    if not items:
        logger.warning(f"Empty list for {full_env_var}, using default")
        return default

    logger.info(f"Using {full_env_var}={items} (override)")
    return items


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


# =============================================================================
# TIMEOUT AND RETRY CONSTANTS
# =============================================================================

@dataclass(frozen=True)
class Timeouts:
    """Timeout values in seconds."""
    # Bound on every load/attach/detach/unload/list/get call
    RPC_DEFAULT: float = 10.0

    # Worker thread shutdown
    THREAD_JOIN_DEFAULT: float = 5.0

    # Idle wait inside the work queue
    QUEUE_POLL: float = 0.5


@dataclass(frozen=True)
class Retry:
    """Fixed retry and resync intervals in seconds."""
    # Delay before a failed per-node reconcile is retried
    AGENT_RETRY_DELAY: float = 5.0

    # Delay before a failed program-level status update is retried
    OPERATOR_RETRY_DELAY: float = 5.0

    # Forced resync of every known key, heals drift
    RESYNC_INTERVAL: float = 60.0

    # Never retry faster than this, whatever the configuration says
    MIN_RETRY_DELAY: float = 1.0


# =============================================================================
# OBJECT KINDS
# =============================================================================

@dataclass(frozen=True)
class ObjectKinds:
    """Kinds held in the cluster object store."""
    DESIRED_PROGRAM: str = "DesiredProgram"
    PER_NODE_RECORD: str = "PerNodeRecord"
    NODE: str = "Node"
    POD: str = "Pod"


# =============================================================================
# LABELS, ANNOTATIONS, METADATA KEYS
# =============================================================================

@dataclass(frozen=True)
class Labels:
    """Label keys placed on per-node records."""
    PROGRAM_OWNER: str = "bpfman.io/ownedByProgram"
    HOSTNAME: str = "kubernetes.io/hostname"
    APP_PROGRAM_ID: str = "bpfman.io/appProgramId"


@dataclass(frozen=True)
class MetadataKeys:
    """Keys attached to load and attach requests."""
    # Correlates runtime objects with records: record UID on load, link UUID on attach
    UUID: str = "bpfman.io/uuid"
    PROGRAM_NAME: str = "bpfman.io/ProgramName"


@dataclass(frozen=True)
class Annotations:
    """Annotation keys used on per-node records."""
    NO_CONTAINERS_ON_NODE: str = "bpfman.io/noContainersOnNode"


class Finalizers:
    """Finalizer names gating deletion."""
    OPERATOR = "bpfman.io.operator/finalizer"
    APPLICATION = "bpfman.io.bpfapplicationcontroller/finalizer"

    @staticmethod
    def for_kind(kind_value: str) -> str:
        """Agent finalizer for a single-kind program, e.g. 'XDP'."""
        return f"bpfman.io.{kind_value.lower()}programcontroller/finalizer"


# =============================================================================
# PROGRAM LIMITS
# =============================================================================

@dataclass(frozen=True)
class Limits:
    """Range checks applied to desired programs."""
    PRIORITY_MIN: int = 0
    PRIORITY_MAX: int = 1000
    PRIORITY_DEFAULT: int = 1000

    # Keeps record names short enough for the object store
    MAX_NAME_LENGTH: int = 253


# Interfaces skipped by auto-discovery unless explicitly allowed
DEFAULT_EXCLUDED_INTERFACES: Tuple[str, ...] = _env_override_list(
    "EXCLUDED_INTERFACES", ("lo",)
)

