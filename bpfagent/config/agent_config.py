"""
Agent Configuration

Loaded from a YAML file, then overridden by BPFAGENT_* environment
variables. Every field has a default, so an agent can start without a
file.

Configuration Structure:
    node_name: worker-1
    rpc_timeout: 10
    agent_retry_delay: 5
    operator_retry_delay: 5
    resync_interval: 60
    workers: 2
    manifests_path: /etc/bpfagent/programs
    excluded_interfaces:
      - lo
      - veth*
    logging:
      verbose: false
      json: false
      file: /var/log/bpfagent.log

Usage:
    from bpfagent.config import load_config

    config = load_config("/etc/bpfagent/agent.yaml")
    for problem in config.validate():
        logger.warning(problem)
"""

import logging
import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from ..constants import (
    DEFAULT_EXCLUDED_INTERFACES,
    Retry,
    Timeouts,
    _env_override,
    _env_override_list,
    _parse_bool,
)
from ..utils.error_handling import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class LoggingOptions:
    verbose: bool = False
    trace: bool = False
    json: bool = False
    file: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'LoggingOptions':
        data = data or {}
        return cls(
            verbose=bool(data.get('verbose', False)),
            trace=bool(data.get('trace', False)),
            json=bool(data.get('json', False)),
            file=data.get('file'),
        )


@dataclass
class AgentConfig:
    """Settings of one node agent and the status aggregator."""
    node_name: str = field(default_factory=lambda: os.environ.get("NODE_NAME") or socket.gethostname())
    rpc_timeout: float = Timeouts.RPC_DEFAULT
    agent_retry_delay: float = Retry.AGENT_RETRY_DELAY
    operator_retry_delay: float = Retry.OPERATOR_RETRY_DELAY
    resync_interval: float = Retry.RESYNC_INTERVAL
    workers: int = 2
    manifests_path: Optional[str] = None
    excluded_interfaces: List[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDED_INTERFACES))
    logging: LoggingOptions = field(default_factory=LoggingOptions)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AgentConfig':
        defaults = cls()
        try:
            return cls(
                node_name=str(data.get('node_name', defaults.node_name)),
                rpc_timeout=float(data.get('rpc_timeout', defaults.rpc_timeout)),
                agent_retry_delay=float(data.get('agent_retry_delay', defaults.agent_retry_delay)),
                operator_retry_delay=float(data.get('operator_retry_delay',
                                                    defaults.operator_retry_delay)),
                resync_interval=float(data.get('resync_interval', defaults.resync_interval)),
                workers=int(data.get('workers', defaults.workers)),
                manifests_path=data.get('manifests_path'),
                excluded_interfaces=list(data.get('excluded_interfaces',
                                                  defaults.excluded_interfaces) or []),
                logging=LoggingOptions.from_dict(data.get('logging')),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"invalid agent configuration: {e}") from e

    def apply_environment(self) -> 'AgentConfig':
        """Override fields from BPFAGENT_* environment variables."""
        self.node_name = _env_override("NODE_NAME", self.node_name)
        self.rpc_timeout = _env_override("RPC_TIMEOUT", self.rpc_timeout, float, min_value=0.1)
        self.agent_retry_delay = _env_override(
            "AGENT_RETRY_DELAY", self.agent_retry_delay, float, min_value=Retry.MIN_RETRY_DELAY)
        self.operator_retry_delay = _env_override(
            "OPERATOR_RETRY_DELAY", self.operator_retry_delay, float,
            min_value=Retry.MIN_RETRY_DELAY)
        self.resync_interval = _env_override(
            "RESYNC_INTERVAL", self.resync_interval, float, min_value=Retry.MIN_RETRY_DELAY)
        self.workers = _env_override("WORKERS", self.workers, int, min_value=1, max_value=64)
        self.manifests_path = _env_override("MANIFESTS_PATH", self.manifests_path)
        self.excluded_interfaces = list(
            _env_override_list("EXCLUDED_INTERFACES", tuple(self.excluded_interfaces)))
        self.logging.verbose = _env_override("VERBOSE", self.logging.verbose, _parse_bool)
        self.logging.json = _env_override("LOG_JSON", self.logging.json, _parse_bool)
        self.logging.file = _env_override("LOG_FILE", self.logging.file)
        return self

    @property
    def retry_delay(self) -> float:
        """Delay before a failed reconcile is retried, never below the floor."""
        return max(self.agent_retry_delay, Retry.MIN_RETRY_DELAY)

    def validate(self) -> List[str]:
        """Return a list of configuration problems; empty when valid."""
        problems = []
        if not self.node_name:
            problems.append("node_name is empty")
        if self.rpc_timeout <= 0:
            problems.append(f"rpc_timeout must be positive, got {self.rpc_timeout}")
        if self.agent_retry_delay < Retry.MIN_RETRY_DELAY:
            problems.append(
                f"agent_retry_delay {self.agent_retry_delay} is below the "
                f"{Retry.MIN_RETRY_DELAY}s minimum and will be raised"
            )
        if self.resync_interval < self.agent_retry_delay:
            problems.append("resync_interval is shorter than agent_retry_delay")
        if self.workers < 1:
            problems.append(f"workers must be at least 1, got {self.workers}")
        if self.manifests_path and not Path(self.manifests_path).exists():
            problems.append(f"manifests_path {self.manifests_path} does not exist")
        return problems


def load_config(path: Optional[Union[str, Path]] = None, use_environment: bool = True) -> AgentConfig:
    """
    Load the agent configuration.

    A missing or empty file yields the defaults. A file that is not valid
    YAML, or holds values of the wrong type, raises ConfigurationError.
    """
    data: Dict[str, Any] = {}
    if path is not None:
        path = Path(path)
        if not path.exists():
            logger.warning(f"Config file not found: {path}, using defaults")
        else:
            try:
                with open(path, 'r') as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"failed to parse {path}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigurationError(f"{path} must hold a mapping")
            logger.info(f"Loaded agent configuration from {path}")

    config = AgentConfig.from_dict(data)
    if use_environment:
        config.apply_environment()
    return config
