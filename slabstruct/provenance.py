"""
slabstruct/provenance.py
════════════════════════

Leak / check provenance ledger.

External data-flow passes discover where data stored in a struct field is
copied out to (or in from) an untrusted boundary and which comparisons
guard the transfer.  They record their findings here; the reporting layer
reads them back.  This module performs no analysis of its own.

Shape
─────
::

    LeakInfo
      └─ length-field offset (int)
           └─ leaking / accepting value (e.g. the copy_to_user call)
                └─ SiteInfo
                     ├─ leak_type, from_st / from_value, len_st / len_value
                     └─ leak_check_map : CheckMap
                          └─ field-offset tag (str)
                               └─ comparison instruction → CheckSrc

Sites are write-once per ``(offset, value)``; a second insertion is a
caller bug and raises :class:`~slabstruct.errors.DuplicateSiteError`.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from slabstruct.errors import DuplicateSiteError
from slabstruct.ir import Instruction, StructType, Value


class LeakType(enum.IntEnum):
    """Where the leaked bytes live."""
    STACK = 0
    HEAP_SAME_OBJ = 1
    HEAP_DIFF_OBJ = 2
    UNKNOWN = 3

    @property
    def description(self) -> str:
        return _LEAK_DESCRIPTIONS[self]


_LEAK_DESCRIPTIONS = {
    LeakType.STACK: "Leaking from STACK",
    LeakType.HEAP_SAME_OBJ: "Leaking from the same object in the HEAP",
    LeakType.HEAP_DIFF_OBJ: "Leaking from the different object in the HEAP",
    LeakType.UNKNOWN: "Unknown object",
}


class BranchTaken(enum.IntEnum):
    """Which outcome of a guarding comparison reaches the leak."""
    TRUE = 0
    FALSE = 1
    BOTH = 2

    def merge(self, other: "BranchTaken") -> "BranchTaken":
        if self == other:
            return self
        return BranchTaken.BOTH


CmpSrc = List[Value]


@dataclass
class CheckSrc:
    """Operand provenance of one guarding comparison."""
    src1: CmpSrc = field(default_factory=list)
    src2: CmpSrc = field(default_factory=list)
    branch_taken: BranchTaken = BranchTaken.TRUE


CheckInfo = Dict[Instruction, CheckSrc]
CheckMap = Dict[str, CheckInfo]


def record_check(
    check_map: CheckMap,
    tag: str,
    inst: Instruction,
    src1: Sequence[Value],
    src2: Sequence[Value],
    branch: BranchTaken,
) -> CheckSrc:
    """
    Add a guarding comparison to ``check_map`` under ``tag``.

    Recording an already-known comparison only widens what was seen: new
    operand sources are appended and observing the opposite branch turns
    the outcome into ``BOTH``.  Nothing is ever removed.
    """
    info = check_map.setdefault(tag, {})
    existing = info.get(inst)
    if existing is None:
        existing = CheckSrc(list(src1), list(src2), branch)
        info[inst] = existing
        return existing
    for v in src1:
        if v not in existing.src1:
            existing.src1.append(v)
    for v in src2:
        if v not in existing.src2:
            existing.src2.append(v)
    existing.branch_taken = existing.branch_taken.merge(branch)
    return existing


@dataclass
class SiteInfo:
    """
    One leaking (or accepting) site.

    ``from_value`` is the load or GEP the copied bytes come from and
    ``len_value`` the instruction that retrieved the length; the matching
    ``*_st`` fields name the struct those values were read from.
    """
    leak_type: LeakType = LeakType.UNKNOWN
    from_st: Optional[StructType] = None
    from_value: Optional[Value] = None
    len_st: Optional[StructType] = None
    len_value: Optional[Value] = None
    leak_check_map: CheckMap = field(default_factory=dict)


LeakSourceInfo = Dict[Value, SiteInfo]


class LeakInfo:
    """Length-field offset → leaking value → :class:`SiteInfo`."""

    def __init__(self) -> None:
        self._by_offset: Dict[int, LeakSourceInfo] = {}

    def add_site(self, offset: int, value: Value, site: SiteInfo) -> None:
        sources = self._by_offset.setdefault(offset, {})
        if value in sources:
            raise DuplicateSiteError(offset, value)
        sources[value] = site

    def get_site(self, offset: int, value: Value) -> Optional[SiteInfo]:
        sources = self._by_offset.get(offset)
        if sources is None:
            return None
        return sources.get(value)

    def sources(self, offset: int) -> LeakSourceInfo:
        return dict(self._by_offset.get(offset, {}))

    def offsets(self) -> List[int]:
        return list(self._by_offset)

    def items(self) -> Iterator[Tuple[int, LeakSourceInfo]]:
        return iter(self._by_offset.items())

    def sites(self) -> Iterator[Tuple[int, Value, SiteInfo]]:
        for offset, sources in self._by_offset.items():
            for value, site in sources.items():
                yield offset, value, site

    def __contains__(self, key: object) -> bool:
        if isinstance(key, tuple) and len(key) == 2:
            offset, value = key
            return value in self._by_offset.get(offset, {})
        return key in self._by_offset

    def __len__(self) -> int:
        return len(self._by_offset)

    def __bool__(self) -> bool:
        return bool(self._by_offset)
