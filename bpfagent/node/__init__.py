"""
Node-local collaborators: interface inventory and container enumeration.
"""

from .containers import (
    ContainerGetter,
    ContainerInfo,
    PodContainerGetter,
    get_one_container_per_pod,
    netns_path_from_pid,
)
from .interfaces import (
    HostInterfaceDiscovery,
    InterfaceDiscovery,
    StaticInterfaceDiscovery,
    get_interface_netns_list,
    primary_node_interface,
    resolve_interfaces,
)

__all__ = [
    'ContainerGetter',
    'ContainerInfo',
    'PodContainerGetter',
    'get_one_container_per_pod',
    'netns_path_from_pid',
    'HostInterfaceDiscovery',
    'InterfaceDiscovery',
    'StaticInterfaceDiscovery',
    'get_interface_netns_list',
    'primary_node_interface',
    'resolve_interfaces',
]
