"""
Attach Point Identity

Two attach records describe the same attachment point when they are of the
same kind and every field in the kind's IDENTITY_FIELDS matches. The UUID,
link id, link status, error and should_attach are volatile and never
compared. A missing value (None) and an empty value ("" or []) compare
equal.
"""

import re
from enum import Enum
from typing import Any, List, Optional, Sequence, Tuple

from ..model.program import ApplicationProgram, FentryInfo, ProgramKind
from ..model.records import AttachRecord


def _normalize(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return tuple(value) if value else None
    if value == "":
        return None
    return value


def identity_key(record: AttachRecord) -> Tuple:
    """Hashable identity of an attach record."""
    return (type(record).__name__,) + tuple(
        _normalize(getattr(record, name)) for name in record.IDENTITY_FIELDS
    )


def identity_equals(a: AttachRecord, b: AttachRecord) -> bool:
    """True iff ``a`` and ``b`` name the same attachment point."""
    if type(a) is not type(b):
        return False
    return identity_key(a) == identity_key(b)


def find_link(records: Sequence[AttachRecord], candidate: AttachRecord) -> Optional[int]:
    """Index of the first record identity-equal to ``candidate``, or None."""
    for index, record in enumerate(records):
        if identity_equals(record, candidate):
            return index
    return None


# =============================================================================
# SUB-PROGRAM IDENTITY
# =============================================================================

_UNSAFE = re.compile(r'[^a-z0-9.-]+')


def sanitize(name: str) -> str:
    """Lower-case a name and replace characters not allowed in object names."""
    return _UNSAFE.sub('-', name.lower()).strip('-')


def app_program_id(sub: ApplicationProgram) -> str:
    """
    Stable identity of an application sub-program.

    Derived from the sub-program's kind, its load-time target (fentry/fexit)
    and its bpf function name, never from an object name, so reordering the
    application's program list does not change it.
    """
    parts: List[str] = [sub.kind.value.lower()]
    if sub.kind in (ProgramKind.FENTRY, ProgramKind.FEXIT) and isinstance(sub.info, FentryInfo):
        parts.append(sanitize(sub.info.function_name))
    parts.append(sub.bpf_function_name)
    return '-'.join(parts)
