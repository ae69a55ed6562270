"""
Expansion - desired attach specs to the expected attach records on this node

Every record produced here is brand new: should_attach True, no link id,
NotAttached and a fresh UUID. The UUID is provisional; the link engine
keeps the UUID of an identity-equal record it already has.

A container selector that matches nothing on this node yields exactly one
record flagged ``no_containers_on_node`` instead of no records, so the
per-node state stays visible. Such records are never attached.
"""

import logging
from dataclasses import dataclass
from typing import List, Sequence

from ..constants import DEFAULT_EXCLUDED_INTERFACES
from ..model.meta import Node
from ..model.program import (
    ContainerSelector,
    FentryInfo,
    InterfaceAttachSpec,
    InterfaceHookInfo,
    KprobeInfo,
    TracepointInfo,
    UprobeInfo,
)
from ..model.records import (
    FentryLink,
    InterfaceLink,
    KprobeLink,
    TracepointLink,
    UprobeLink,
)
from ..node.containers import (
    ContainerGetter,
    ContainerInfo,
    get_one_container_per_pod,
    netns_path_from_pid,
)
from ..node.interfaces import InterfaceDiscovery, get_interface_netns_list, resolve_interfaces

logger = logging.getLogger(__name__)


@dataclass
class ExpansionContext:
    """Node-local collaborators expansion reads from."""
    node: Node
    interfaces: InterfaceDiscovery
    containers: ContainerGetter
    excluded_interfaces: Sequence[str] = DEFAULT_EXCLUDED_INTERFACES


def _select_containers(selector: ContainerSelector, ctx: ExpansionContext) -> List[ContainerInfo]:
    return ctx.containers.get_containers(
        selector.namespace, selector.pods, selector.container_names,
    )


# =============================================================================
# INTERFACE HOOKS (XDP, TC, TCX)
# =============================================================================

def _interface_link(spec: InterfaceAttachSpec, iface: str, netns_path=None,
                    sentinel: bool = False) -> InterfaceLink:
    return InterfaceLink(
        interface_name=iface,
        netns_path=netns_path,
        priority=spec.priority,
        proceed_on=list(spec.proceed_on),
        direction=spec.direction.value if spec.direction else None,
        no_containers_on_node=sentinel,
    )


def expand_interface_spec(spec: InterfaceAttachSpec, ctx: ExpansionContext) -> List[InterfaceLink]:
    """Expected links for one interface attach spec."""
    interfaces = resolve_interfaces(spec.interface_selector, ctx.node, ctx.interfaces,
                                    ctx.excluded_interfaces)
    links: List[InterfaceLink] = []

    if spec.network_namespaces is not None:
        containers = _select_containers(spec.network_namespaces, ctx)
        if not containers:
            logger.info(f"No containers on {ctx.node.name} match the network namespace selector")
            return [_interface_link(spec, "", sentinel=True)]

        # Containers of one pod share its network namespace
        for container in get_one_container_per_pod(containers):
            netns_path = netns_path_from_pid(container.pid)
            for iface in interfaces:
                links.append(_interface_link(spec, iface, netns_path))
        return links

    for iface in interfaces:
        netns_list = get_interface_netns_list(spec.interface_selector, iface, ctx.interfaces)
        if not netns_list:
            links.append(_interface_link(spec, iface))
        else:
            for netns_path in netns_list:
                links.append(_interface_link(spec, iface, netns_path))
    return links


def expand_interface_hook(info: InterfaceHookInfo, ctx: ExpansionContext) -> List[InterfaceLink]:
    links: List[InterfaceLink] = []
    for spec in info.links:
        links.extend(expand_interface_spec(spec, ctx))
    return links


# =============================================================================
# PROBES AND TRACEPOINTS
# =============================================================================

def expand_kprobe(info: KprobeInfo, ctx: ExpansionContext) -> List[KprobeLink]:
    return [KprobeLink(function_name=spec.function_name, offset=spec.offset) for spec in info.links]


def expand_uprobe(info: UprobeInfo, ctx: ExpansionContext) -> List[UprobeLink]:
    links: List[UprobeLink] = []
    for spec in info.links:
        base = dict(target=spec.target, function_name=spec.function_name, offset=spec.offset)

        if spec.containers is None:
            links.append(UprobeLink(**base))
            continue

        containers = _select_containers(spec.containers, ctx)
        if not containers:
            logger.info(f"No containers on {ctx.node.name} match uprobe target {spec.target}")
            links.append(UprobeLink(no_containers_on_node=True, **base))
            continue

        for container in containers:
            links.append(UprobeLink(container_pid=container.pid, **base))
    return links


def expand_fentry(info: FentryInfo, ctx: ExpansionContext) -> List[FentryLink]:
    if not info.attach:
        return []
    return [FentryLink(function_name=info.function_name)]


def expand_tracepoint(info: TracepointInfo, ctx: ExpansionContext) -> List[TracepointLink]:
    return [TracepointLink(name=spec.name) for spec in info.links]
