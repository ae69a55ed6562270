"""
Link Reconciliation Engine

Diffs the stored attach records of one per-node record against a freshly
expanded expected set and converges kernel state through attach/detach
calls:

1. every stored record is pessimistically marked should_attach=False
2. each expected record either re-marks its identity-equal stored record or
   is appended as new
3. records that should be attached and are not get attached
4. records that should not be attached and are get detached
5. records that are neither wanted nor attached are dropped
6. the last error is returned with the updated records; every other record
   is still processed and the partial progress must be persisted
7. the aggregate program link status is recomputed

Before any call is made, the program's live links are read back through
Get so that stale link ids are cleared and attaches whose result was never
persisted are adopted instead of repeated.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from ..constants import Timeouts
from ..model.records import AttachRecord, LinkStatus, ProgramLinkStatus
from ..rpc.client import BpfmanClient, ProgramInfo, attach_program, detach_link, get_program
from ..utils.error_handling import ErrorCategory, RpcError, handle_error
from .adapters import KindAdapter, ProgramUnit
from .identity import find_link

logger = logging.getLogger(__name__)


@dataclass
class LinkReconcileResult:
    links: List[AttachRecord]
    program_link_status: ProgramLinkStatus
    error: Optional[Exception] = None
    attached: int = 0
    detached: int = 0
    removed: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.attached or self.detached or self.removed)


def mark_expected(existing: List[AttachRecord], expected: List[AttachRecord]) -> List[AttachRecord]:
    """Steps 1-2: flag stored records still expected and append new ones."""
    links = list(existing)
    for link in links:
        link.should_attach = False

    for candidate in expected:
        index = find_link(links, candidate)
        if index is not None:
            links[index].should_attach = True
        else:
            links.append(candidate)
    return links


def is_converged(link: AttachRecord) -> bool:
    if link.no_containers_on_node:
        return link.link_id is None
    return link.should_attach == (link.link_id is not None)


def program_link_status(links: List[AttachRecord]) -> ProgramLinkStatus:
    """Success iff every record's should_attach agrees with its link id."""
    if all(is_converged(link) for link in links):
        return ProgramLinkStatus.SUCCESS
    return ProgramLinkStatus.ERROR


def _read_live_links(client: BpfmanClient, program_id: int, timeout: float) -> Optional[ProgramInfo]:
    try:
        return get_program(client, program_id, timeout=timeout)
    except RpcError as e:
        logger.warning(f"Could not read live links of program {program_id}, "
                       f"using stored state: {e}")
        return None


def _heal(link: AttachRecord, live: ProgramInfo) -> None:
    if link.link_id is not None and link.link_id not in live.link_ids():
        logger.warning(f"Link {link.link_id} of {link.describe()} no longer exists, clearing it")
        link.link_id = None
        link.link_status = LinkStatus.NOT_ATTACHED

    if link.link_id is None:
        adopted = live.link_for_uuid(link.uuid)
        if adopted is not None:
            logger.info(f"Adopting live link {adopted} for {link.describe()}")
            link.link_id = adopted
            link.link_status = LinkStatus.ATTACH_SUCCESS
            link.error = ""


class LinkReconciler:
    """Runs link reconciliation for one program unit on this node."""

    def __init__(
        self,
        client: BpfmanClient,
        adapter: KindAdapter,
        unit: Optional[ProgramUnit],
        timeout: float = Timeouts.RPC_DEFAULT,
        verify_live_links: bool = True,
        name: Optional[str] = None,
    ):
        self.client = client
        self.adapter = adapter
        self.unit = unit
        self.timeout = timeout
        self.verify_live_links = verify_live_links
        self.name = name or (unit.name if unit is not None else "unknown")

    def reconcile(
        self,
        program_id: Optional[int],
        existing: List[AttachRecord],
        expected: List[AttachRecord],
    ) -> LinkReconcileResult:
        links = mark_expected(existing, expected)

        live = None
        if self.verify_live_links and program_id is not None and links:
            live = _read_live_links(self.client, program_id, self.timeout)

        result = LinkReconcileResult(links=[], program_link_status=ProgramLinkStatus.SUCCESS)
        for link in links:
            if live is not None:
                _heal(link, live)
            try:
                keep = self._process(program_id, link, result)
            except RpcError as e:
                # Errors never stop the remaining records
                link.link_status = LinkStatus.ATTACH_ERROR
                link.error = str(e)
                result.error = e
                handle_error(e, f"{e.operation} for {self.name}", ErrorCategory.ATTACHMENT,
                             additional_context={'link': link.describe()})
                keep = True

            if keep:
                result.links.append(link)
            else:
                result.removed += 1

        result.program_link_status = program_link_status(result.links)
        if result.changed:
            logger.info(
                f"Links of {self.name}: {result.attached} attached, "
                f"{result.detached} detached, {len(result.links)} kept "
                f"({result.program_link_status.value})"
            )
        return result

    def _process(self, program_id: Optional[int], link: AttachRecord,
                 result: LinkReconcileResult) -> bool:
        """Converge one record; returns False when it should be dropped."""
        attached = self.adapter.is_attached(link)

        if link.should_attach and not attached:
            if link.no_containers_on_node:
                return True
            if program_id is None:
                raise RpcError("attach bpfProgram", f"{self.name} is not loaded")

            request = self.adapter.build_attach_request(program_id, link, self.unit)
            if request is None:
                return True
            link.link_id = attach_program(self.client, request, timeout=self.timeout)
            link.link_status = LinkStatus.ATTACH_SUCCESS
            link.error = ""
            result.attached += 1
            logger.debug(f"Attached {link.describe()} as link {link.link_id}")
            return True

        if not link.should_attach and attached:
            detach_link(self.client, link.link_id, timeout=self.timeout)
            logger.debug(f"Detached link {link.link_id} ({link.describe()})")
            link.link_id = None
            link.link_status = LinkStatus.DETACHED
            result.detached += 1
            return False

        if not link.should_attach:
            return False

        return True


def reconcile_links(
    client: BpfmanClient,
    adapter: KindAdapter,
    unit: ProgramUnit,
    program_id: Optional[int],
    existing: List[AttachRecord],
    expected: List[AttachRecord],
    timeout: float = Timeouts.RPC_DEFAULT,
) -> LinkReconcileResult:
    """Convenience wrapper around LinkReconciler.reconcile()."""
    return LinkReconciler(client, adapter, unit, timeout).reconcile(program_id, existing, expected)
