"""
Node Interface Resolution

Resolves an interface selector into concrete interface names on this node:
- an explicit list of names
- the primary node interface, i.e. the one holding one of the node's addresses
- auto-discovery of every interface that is up, filtered by allow/exclude
  patterns (shell-style, e.g. ``eth*``)

Discovered interfaces may live inside other network namespaces; for those,
expansion produces one attach record per namespace.
"""

import fnmatch
import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Sequence

import psutil

from ..constants import DEFAULT_EXCLUDED_INTERFACES
from ..model.meta import Node
from ..model.program import InterfaceSelector
from ..utils.error_handling import ConfigurationError

logger = logging.getLogger(__name__)


class InterfaceDiscovery(ABC):
    """Source of the interfaces present on this node."""

    @abstractmethod
    def interfaces(self) -> Dict[str, List[str]]:
        """
        Interfaces that are up, mapped to the network namespace paths they
        were found in. An interface found only in the host namespace maps to
        an empty list.
        """
        pass

    @abstractmethod
    def addresses(self) -> Dict[str, List[str]]:
        """Interface name to the IP addresses assigned to it."""
        pass


class HostInterfaceDiscovery(InterfaceDiscovery):
    """Discovers host-namespace interfaces with psutil."""

    def interfaces(self) -> Dict[str, List[str]]:
        try:
            stats = psutil.net_if_stats()
        except OSError as e:
            logger.error(f"Error listing network interfaces: {e}")
            return {}
        return {name: [] for name, stat in sorted(stats.items()) if stat.isup}

    def addresses(self) -> Dict[str, List[str]]:
        try:
            if_addrs = psutil.net_if_addrs()
        except OSError as e:
            logger.error(f"Error listing interface addresses: {e}")
            return {}
        return {
            name: [addr.address.split('%', 1)[0] for addr in addrs if addr.address]
            for name, addrs in if_addrs.items()
        }


class StaticInterfaceDiscovery(InterfaceDiscovery):
    """Fixed interface inventory, for tests and for nodes configured by hand."""

    def __init__(self, interfaces: Optional[Dict[str, List[str]]] = None,
                 addresses: Optional[Dict[str, List[str]]] = None):
        self._interfaces = dict(interfaces or {})
        self._addresses = dict(addresses or {})

    def interfaces(self) -> Dict[str, List[str]]:
        return {name: list(ns) for name, ns in self._interfaces.items()}

    def addresses(self) -> Dict[str, List[str]]:
        return {name: list(addrs) for name, addrs in self._addresses.items()}


def _matches_any(name: str, patterns: Iterable[str]) -> bool:
    return any(fnmatch.fnmatchcase(name, pattern) for pattern in patterns)


def primary_node_interface(node: Node, discovery: InterfaceDiscovery) -> str:
    """Name of the interface holding one of the node's addresses."""
    wanted = set(node.addresses)
    for name, addrs in sorted(discovery.addresses().items()):
        if wanted.intersection(addrs):
            return name
    raise ConfigurationError(
        f"no interface on node {node.name} holds any of its addresses {node.addresses}"
    )


def resolve_interfaces(
    selector: InterfaceSelector,
    node: Node,
    discovery: InterfaceDiscovery,
    default_excluded: Optional[Sequence[str]] = None,
) -> List[str]:
    """Resolve an interface selector into interface names, in a stable order."""
    selector.validate()

    if selector.interfaces:
        seen = []
        for name in selector.interfaces:
            if name not in seen:
                seen.append(name)
        return seen

    if selector.primary_node_interface:
        return [primary_node_interface(node, discovery)]

    config = selector.discovery
    if default_excluded is None:
        default_excluded = DEFAULT_EXCLUDED_INTERFACES
    excluded = list(config.excluded_interfaces) or list(default_excluded)
    names = []
    for name in sorted(discovery.interfaces()):
        if config.allowed_interfaces and not _matches_any(name, config.allowed_interfaces):
            continue
        if _matches_any(name, excluded):
            continue
        names.append(name)

    logger.debug(f"Discovered interfaces on {node.name}: {names}")
    return names


def get_interface_netns_list(
    selector: InterfaceSelector,
    iface: str,
    discovery: InterfaceDiscovery,
) -> List[str]:
    """
    Network namespaces an auto-discovered interface lives in.

    Empty for explicitly listed interfaces and for host-namespace interfaces,
    which are attached without a namespace path.
    """
    if selector.discovery is None or not selector.discovery.interface_auto_discovery:
        return []
    return list(discovery.interfaces().get(iface, []))
