"""
Application Decomposition

An application program is reconciled as one per-node record per declared
sub-program. Sub-records are tracked by a stable app program id derived
from the sub-program's kind and targets, so records of sub-programs that
disappear from the application can be found and deleted.
"""

import logging
from typing import List, Set

from ..constants import Finalizers
from ..model.program import DesiredProgram, ProgramKind
from ..utils.error_handling import ConfigurationError
from .adapters import ProgramUnit
from .identity import app_program_id

logger = logging.getLogger(__name__)


def finalizer_for(program: DesiredProgram) -> str:
    """Finalizer the agent places on records of ``program``."""
    if program.kind == ProgramKind.APPLICATION:
        return Finalizers.APPLICATION
    return Finalizers.for_kind(program.kind.value)


def decompose(program: DesiredProgram) -> List[ProgramUnit]:
    """
    Split a program into the units reconciled on a node.

    Single-kind programs are one unit. A sub-program whose id repeats an
    earlier one is skipped and logged; the first declaration wins.
    """
    if program.kind != ProgramKind.APPLICATION:
        return [ProgramUnit.from_program(program)]

    units: List[ProgramUnit] = []
    seen: Set[str] = set()
    for sub in program.info.programs:
        sub_id = app_program_id(sub)
        if sub_id in seen:
            error = ConfigurationError(
                f"application {program.name!r} declares {sub_id!r} more than once"
            )
            logger.error(f"Skipping duplicate sub-program: {error}")
            continue
        seen.add(sub_id)
        units.append(ProgramUnit(
            owner=program,
            kind=sub.kind,
            bpf_function_name=sub.bpf_function_name,
            info=sub.info,
            app_program_id=sub_id,
        ))
    return units
