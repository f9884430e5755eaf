"""
slabstruct/struct_info.py
═════════════════════════

The per-type descriptor produced by flattening.

Every struct type ``T`` is mapped to an *expanded* field table in which each
embedded aggregate has been spliced in place.  If entry ``i`` of the table
begins an embedded struct, ``field_size(i)`` is the number of entries that
struct contributed; otherwise it is 1.  A field with index ``j`` in the
original declaration has index ``get_offset(j)`` in the expanded table.

Example, for ``struct outer { long a; int b; struct inner { int x, y, z; } c; }``::

    original  : a        b        c
    offset map: 0        1        2
    expanded  : a(1,@0)  b(1,@8)  c.x(3,@12)  c.y(1,@16)  c.z(1,@20)

The field table is frozen once the descriptor is finalized.  Allocation
sites, leak sites, guarding checks, containers and security annotations keep
growing afterwards, but only by addition.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import (
    TYPE_CHECKING,
    Dict,
    FrozenSet,
    List,
    Optional,
    Set,
    Tuple,
)

from slabstruct.errors import FieldIndexError, FinalizedDescriptorError, OpaqueTypeError
from slabstruct.ir import CallInst, Instruction, Module, StructType, Type, Value, scope_name
from slabstruct.provenance import CheckMap, LeakInfo, SiteInfo

if TYPE_CHECKING:
    from slabstruct.config import AnalyzerConfig
    from slabstruct.datalayout import DataLayout


@dataclass(frozen=True)
class FieldEntry:
    """One slot of the expanded field table."""
    size: int
    offset: int
    real_size: int
    is_array: bool = False
    is_pointer: bool = False
    is_union: bool = False
    is_func_ptr: bool = False


# the sole entry of a struct with no declared fields
EMPTY_ENTRY = FieldEntry(size=0, offset=0, real_size=0)


class StructInfo:
    """Flattened layout plus allocation, leak and security metadata of one type."""

    def __init__(
        self,
        st: StructType,
        module: Module,
        layout: "DataLayout",
        config: Optional["AnalyzerConfig"] = None,
    ) -> None:
        self._real_type = st
        self._module = module
        self._data_layout = layout
        self._config = config
        self.name = scope_name(st, module)

        self._fields: List[FieldEntry] = []
        self._offset_map: List[int] = []
        self._element_types: Dict[int, Set[Type]] = {}
        self._containers: Set[Tuple[StructType, int]] = set()
        self._finalized = False

        # ── flexible structural object ───────────────────────────────
        self.flexible_struct_flag = False
        self.len_offset_by_flexible: List[int] = []
        self.len_offset_by_leakable: List[int] = []

        # ── function pointers ────────────────────────────────────────
        self.has_func_ptr = False
        self.is_func_table = False
        self.func_ptr_offset: Set[int] = set()

        # ── leakable / controllable ──────────────────────────────────
        self.leakable = False
        self.leakable_offset: Set[int] = set()
        self._copyout_inst: Dict[Instruction, None] = {}
        self.controllable = False
        self.controllable_offset: Set[int] = set()
        self._copyin_inst: Dict[Instruction, None] = {}

        # ── boundary / refcount ──────────────────────────────────────
        self.has_boundary = False
        self.boundary_offset: Set[int] = set()
        self.has_refcount = False
        self.refcount_offset: Set[int] = set()

        # ── credentials ──────────────────────────────────────────────
        self.is_cred_obj = False
        self.cred_analyzed = False
        self.cred_offset: Set[int] = set()
        self.cred_free_offset: Set[int] = set()
        self._cred_free_site: Dict[CallInst, None] = {}

        # ── allocation ───────────────────────────────────────────────
        self.alloc_size = 0
        self._alloc_site: Dict[CallInst, None] = {}
        self._alloc_inst: Dict[Instruction, None] = {}
        self._leak_inst: Dict[Instruction, None] = {}

        # ── leak / check provenance ──────────────────────────────────
        self.alloc_check: CheckMap = {}
        self.other_check: CheckMap = {}
        self.leak_info = LeakInfo()

    # ─────────────────────────────────────────────────────────────────
    #  Construction (driven by StructAnalyzer)
    # ─────────────────────────────────────────────────────────────────

    def _check_open(self) -> None:
        if self._finalized:
            raise FinalizedDescriptorError(f"field table of {self.name} is finalized")

    def _add_field(self, entry: FieldEntry) -> None:
        self._check_open()
        self._fields.append(entry)

    def _add_offset_map(self, index: int) -> None:
        self._check_open()
        self._offset_map.append(index)

    def _add_element_type(self, index: int, ty: Type) -> None:
        self._check_open()
        self._element_types.setdefault(index, set()).add(ty)

    def _append_fields(
        self,
        other: "StructInfo",
        base_offset: int,
        is_array: bool = False,
        is_union: bool = False,
    ) -> None:
        """Splice ``other``'s expanded table, re-based at ``base_offset``."""
        self._check_open()
        base_index = len(self._fields)
        count = len(other._fields)
        for k, entry in enumerate(other._fields):
            self._fields.append(replace(
                entry,
                size=count if k == 0 else entry.size,
                offset=entry.offset + base_offset,
                is_array=entry.is_array or (k == 0 and is_array),
                is_union=entry.is_union or is_union,
            ))
        for index, types in other._element_types.items():
            self._element_types.setdefault(index + base_index, set()).update(types)

    def _add_container(self, st: StructType, offset: int) -> None:
        # containers keep growing after finalization
        self._containers.add((st, offset))

    def _finalize(self) -> None:
        if not self._fields:
            self._fields.append(EMPTY_ENTRY)
        func_ptrs = [e for e in self._fields if e.is_func_ptr]
        self.func_ptr_offset.update(e.offset for e in func_ptrs)
        self.has_func_ptr = bool(func_ptrs)
        self.is_func_table = not self.is_empty() and len(func_ptrs) == len(self._fields)
        self.has_refcount = bool(self.refcount_offset)
        self.is_cred_obj = bool(self.cred_offset)
        self.cred_analyzed = True
        if not self.alloc_size and not self._real_type.is_opaque:
            self.alloc_size = self._data_layout.type_alloc_size(self._real_type)
        self._finalized = True

    def is_finalized(self) -> bool:
        return self._finalized

    # ─────────────────────────────────────────────────────────────────
    #  Query surface
    # ─────────────────────────────────────────────────────────────────

    def _entry(self, field: int, what: str = "field") -> FieldEntry:
        if not 0 <= field < len(self._fields):
            raise FieldIndexError(what, field, len(self._fields))
        return self._fields[field]

    def get_size(self) -> int:
        """Number of fields in the original declaration."""
        return len(self._offset_map)

    def get_expanded_size(self) -> int:
        return len(self._fields)

    def is_empty(self) -> bool:
        return self._fields[0].size == 0

    def is_field_array(self, field: int) -> bool:
        return self._entry(field).is_array

    def is_field_pointer(self, field: int) -> bool:
        return self._entry(field).is_pointer

    def is_field_union(self, field: int) -> bool:
        return self._entry(field).is_union

    def is_field_func_ptr(self, field: int) -> bool:
        return self._entry(field).is_func_ptr

    def get_field_size(self, field: int) -> int:
        return self._entry(field).size

    def get_field_offset(self, field: int) -> int:
        return self._entry(field).offset

    def get_field_real_size(self, field: int) -> int:
        return self._entry(field).real_size

    def get_offset(self, field: int) -> int:
        """Expanded index of original field ``field``."""
        if not 0 <= field < len(self._offset_map):
            raise FieldIndexError("original field", field, len(self._offset_map))
        return self._offset_map[field]

    def get_element_type(self, field: int) -> FrozenSet[Type]:
        return frozenset(self._element_types.get(field, ()))

    @property
    def fields(self) -> Tuple[FieldEntry, ...]:
        return tuple(self._fields)

    @property
    def offset_map(self) -> Tuple[int, ...]:
        return tuple(self._offset_map)

    @property
    def containers(self) -> FrozenSet[Tuple[StructType, int]]:
        return frozenset(self._containers)

    def get_container(self, st: StructType, offset: int) -> Optional[StructType]:
        """``st`` if this type is embedded in ``st`` at byte ``offset``."""
        if st.is_opaque:
            raise OpaqueTypeError(st.name or str(st), "query containers of")
        if (st, offset) in self._containers:
            return st
        return None

    @property
    def module(self) -> Module:
        return self._module

    @property
    def data_layout(self) -> "DataLayout":
        return self._data_layout

    @property
    def real_type(self) -> StructType:
        return self._real_type

    # ─────────────────────────────────────────────────────────────────
    #  Allocation metadata
    # ─────────────────────────────────────────────────────────────────

    def get_alloc_size(self) -> int:
        return self.alloc_size

    def set_alloc_size(self, size: int) -> None:
        self.alloc_size = size

    def add_alloc_site(self, call: CallInst) -> None:
        self._alloc_site[call] = None

    def add_alloc_inst(self, inst: Instruction) -> None:
        self._alloc_inst[inst] = None

    @property
    def alloc_site(self) -> List[CallInst]:
        return list(self._alloc_site)

    @property
    def alloc_inst(self) -> List[Instruction]:
        return list(self._alloc_inst)

    def get_alloc_cache(self) -> str:
        """Name of the slab cache backing this type, or ``""`` if unknown."""
        from slabstruct.alloc_cache import AllocCacheClassifier

        return AllocCacheClassifier(self._config).classify(self.alloc_site, self.alloc_size)

    # ─────────────────────────────────────────────────────────────────
    #  Security annotations recorded by external passes
    # ─────────────────────────────────────────────────────────────────

    def mark_leakable(self, offset: int, inst: Optional[Instruction] = None) -> None:
        self.leakable = True
        self.leakable_offset.add(offset)
        if inst is not None:
            self._copyout_inst[inst] = None

    def mark_controllable(self, offset: int, inst: Optional[Instruction] = None) -> None:
        self.controllable = True
        self.controllable_offset.add(offset)
        if inst is not None:
            self._copyin_inst[inst] = None

    def mark_boundary(self, offset: int) -> None:
        self.has_boundary = True
        self.boundary_offset.add(offset)

    def mark_refcount(self, offset: int) -> None:
        self.has_refcount = True
        self.refcount_offset.add(offset)

    def add_cred_free_site(self, call: CallInst, offset: int) -> None:
        self._cred_free_site[call] = None
        self.cred_free_offset.add(offset)

    @property
    def copyout_inst(self) -> List[Instruction]:
        return list(self._copyout_inst)

    @property
    def copyin_inst(self) -> List[Instruction]:
        return list(self._copyin_inst)

    @property
    def cred_free_site(self) -> List[CallInst]:
        return list(self._cred_free_site)

    # ─────────────────────────────────────────────────────────────────
    #  Leak provenance
    # ─────────────────────────────────────────────────────────────────

    def add_leak_inst(self, inst: Instruction) -> None:
        self._leak_inst[inst] = None

    @property
    def leak_inst(self) -> List[Instruction]:
        return list(self._leak_inst)

    def add_leak_source_info(self, offset: int, value: Value, site: SiteInfo) -> None:
        self.leak_info.add_site(offset, value, site)
        if offset not in self.len_offset_by_leakable:
            self.len_offset_by_leakable.append(offset)

    def get_site_info(self, offset: int, value: Value) -> Optional[SiteInfo]:
        return self.leak_info.get_site(offset, value)

    def __repr__(self) -> str:
        return (
            f"StructInfo({self.name}, {self.get_size()} fields, "
            f"{self.get_expanded_size()} expanded)"
        )
