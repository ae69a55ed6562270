"""
Desired Program Manifests

Parses desired programs from their manifest form (camelCase mappings, as
written in YAML) and loads them from files or directories.

Example:
    name: xdp-pass-all
    kind: XDP
    bpfFunctionName: pass
    bytecode:
      image:
        url: quay.io/bpfman-bytecode/xdp_pass:latest
    nodeSelector: {}
    links:
      - interfaceSelector:
          interfaces: [eth0]
        priority: 50
"""

import base64
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from ..utils.error_handling import ConfigurationError
from .meta import ObjectMeta
from .program import (
    ApplicationInfo,
    ApplicationProgram,
    BytecodeImage,
    BytecodeSelector,
    ContainerSelector,
    DesiredProgram,
    Direction,
    FentryInfo,
    InterfaceAttachSpec,
    InterfaceDiscoveryConfig,
    InterfaceHookInfo,
    InterfaceSelector,
    KindInfo,
    KprobeAttachSpec,
    KprobeInfo,
    ProgramKind,
    PullPolicy,
    TracepointAttachSpec,
    TracepointInfo,
    UprobeAttachSpec,
    UprobeInfo,
)
from .selectors import LabelSelector
from ..constants import Limits

logger = logging.getLogger(__name__)


def _parse_kind(value: Any) -> ProgramKind:
    for kind in ProgramKind:
        if str(value).lower() in (kind.value.lower(), kind.name.lower()):
            return kind
    raise ConfigurationError(f"unsupported program kind {value!r}")


def _parse_enum(enum_cls, value: Any, field_name: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise ConfigurationError(f"invalid {field_name}: {value!r}") from None


def _parse_bytecode(data: Optional[Dict[str, Any]]) -> BytecodeSelector:
    data = data or {}
    image = None
    if data.get('image'):
        img = data['image']
        if not img.get('url'):
            raise ConfigurationError("bytecode image requires a url")
        secret = img.get('imagePullSecret')
        image = BytecodeImage(
            url=img['url'],
            pull_policy=_parse_enum(PullPolicy, img.get('imagePullPolicy', 'IfNotPresent'),
                                    'imagePullPolicy'),
            pull_secret=secret.get('name') if isinstance(secret, dict) else secret,
        )
    return BytecodeSelector(image=image, path=data.get('path'))


def _parse_global_data(data: Optional[Dict[str, Any]]) -> Dict[str, bytes]:
    out: Dict[str, bytes] = {}
    for key, value in (data or {}).items():
        if isinstance(value, (bytes, bytearray)):
            out[key] = bytes(value)
        elif isinstance(value, list):
            out[key] = bytes(value)
        elif isinstance(value, str):
            try:
                out[key] = base64.b64decode(value, validate=True)
            except ValueError:
                raise ConfigurationError(f"globalData {key!r} is not valid base64") from None
        else:
            raise ConfigurationError(f"globalData {key!r} has unsupported type {type(value).__name__}")
    return out


def _parse_container_selector(data: Optional[Dict[str, Any]]) -> Optional[ContainerSelector]:
    if data is None:
        return None
    names = data.get('containerNames')
    return ContainerSelector(
        namespace=data.get('namespace', ''),
        pods=LabelSelector.from_dict(data.get('pods')),
        container_names=list(names) if names else None,
    )


def _parse_interface_selector(data: Optional[Dict[str, Any]]) -> InterfaceSelector:
    data = data or {}
    discovery = None
    if data.get('interfacesDiscoveryConfig') is not None:
        cfg = data['interfacesDiscoveryConfig']
        discovery = InterfaceDiscoveryConfig(
            interface_auto_discovery=bool(cfg.get('interfaceAutoDiscovery', False)),
            allowed_interfaces=list(cfg.get('allowedInterfaces', []) or []),
            excluded_interfaces=list(cfg.get('excludeInterfaces', []) or []),
        )
    return InterfaceSelector(
        interfaces=list(data.get('interfaces', []) or []),
        primary_node_interface=bool(data.get('primaryNodeInterface', False)),
        discovery=discovery,
    )


def _parse_info(kind: ProgramKind, data: Dict[str, Any]) -> KindInfo:
    links = data.get('links', []) or []

    if kind.is_interface_hook:
        specs = []
        for link in links:
            direction = link.get('direction')
            specs.append(InterfaceAttachSpec(
                interface_selector=_parse_interface_selector(link.get('interfaceSelector')),
                priority=int(link.get('priority', Limits.PRIORITY_DEFAULT)),
                proceed_on=list(link.get('proceedOn', []) or []),
                direction=_parse_enum(Direction, direction, 'direction') if direction else None,
                network_namespaces=_parse_container_selector(link.get('networkNamespaces')),
            ))
        return InterfaceHookInfo(links=specs)

    if kind == ProgramKind.KPROBE:
        return KprobeInfo(
            links=[KprobeAttachSpec(function_name=l.get('function', ''), offset=int(l.get('offset', 0)))
                   for l in links],
            retprobe=bool(data.get('retprobe', False)),
        )

    if kind == ProgramKind.UPROBE:
        return UprobeInfo(
            links=[UprobeAttachSpec(
                target=l.get('target', ''),
                function_name=l.get('function'),
                offset=int(l.get('offset', 0)),
                containers=_parse_container_selector(l.get('containers')),
            ) for l in links],
            retprobe=bool(data.get('retprobe', False)),
        )

    if kind in (ProgramKind.FENTRY, ProgramKind.FEXIT):
        return FentryInfo(
            function_name=data.get('functionName', ''),
            attach=bool(data.get('attach', True)),
        )

    if kind == ProgramKind.TRACEPOINT:
        return TracepointInfo(links=[TracepointAttachSpec(name=l.get('name', '')) for l in links])

    raise ConfigurationError(f"no info parser for kind {kind.value}")


def program_from_dict(data: Dict[str, Any]) -> DesiredProgram:
    """Build and validate a DesiredProgram from its manifest mapping."""
    if not data.get('name'):
        raise ConfigurationError("program manifest requires a name")

    kind = _parse_kind(data.get('kind'))

    if kind == ProgramKind.APPLICATION:
        programs = []
        for sub in data.get('programs', []) or []:
            sub_kind = _parse_kind(sub.get('type'))
            programs.append(ApplicationProgram(
                kind=sub_kind,
                bpf_function_name=sub.get('bpfFunctionName', ''),
                info=_parse_info(sub_kind, sub),
            ))
        info: Union[KindInfo, ApplicationInfo] = ApplicationInfo(programs=programs)
    else:
        info = _parse_info(kind, data)

    program = DesiredProgram(
        meta=ObjectMeta(name=data['name'], labels=dict(data.get('labels', {}) or {})),
        kind=kind,
        info=info,
        bytecode=_parse_bytecode(data.get('bytecode')),
        bpf_function_name=data.get('bpfFunctionName', ''),
        global_data=_parse_global_data(data.get('globalData')),
        node_selector=LabelSelector.from_dict(data.get('nodeSelector')),
    )
    program.validate()
    return program


def load_manifests(path: Union[str, Path]) -> List[DesiredProgram]:
    """
    Load desired programs from a YAML file or a directory of YAML files.

    Files may hold several documents. A document that fails to parse is
    logged and skipped; the remaining programs are returned.
    """
    path = Path(path)
    if path.is_dir():
        files = sorted(list(path.glob("*.yaml")) + list(path.glob("*.yml")))
    else:
        files = [path]

    programs: List[DesiredProgram] = []
    for manifest_file in files:
        with open(manifest_file, 'r') as f:
            documents = list(yaml.safe_load_all(f))

        for index, document in enumerate(documents):
            if not document:
                continue
            try:
                programs.append(program_from_dict(document))
            except (ConfigurationError, KeyError, TypeError, ValueError) as e:
                logger.error(f"Skipping program {index} in {manifest_file}: {e}")

        logger.info(f"Loaded {len(programs)} programs so far from {manifest_file}")

    return programs
