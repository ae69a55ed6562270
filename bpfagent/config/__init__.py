"""
Agent configuration.
"""

from .agent_config import AgentConfig, LoggingOptions, load_config

__all__ = [
    'AgentConfig',
    'LoggingOptions',
    'load_config',
]
