"""
slabstruct/analyzer.py
══════════════════════

Type registry and flattening engine.

:class:`StructAnalyzer` owns one :class:`StructInfo` per (struct type,
defining module).  Descriptors live in an arena and are addressed by stable
integer handles; ``get_struct_info`` hands out the same instance on every
call.

Flattening
──────────
For a struct ``T`` with layout ``L`` each declared field is visited in
order:

  • scalar / pointer / scalar array → one entry, ``field_size = 1``;
  • struct, array of struct, union  → the nested descriptor's expanded table
    is spliced in, every offset re-based by the field's byte offset, and the
    nested type records ``(T, offset)`` as a container (transitively, for
    everything it embeds in turn);
  • union                           → flattened as its largest member.

Nested descriptors are built first by an explicit post-order work list.
Pointers are never followed, so self-reference through a pointer ends at the
pointer; a struct that embeds itself by value is malformed IR and raises.

The largest aggregate seen is tracked by a :class:`MaxStructTracker` owned by
the analyser (or injected), so independent runs do not interfere.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterator, List, Optional, Set, Tuple

from slabstruct.config import AnalyzerConfig
from slabstruct.datalayout import DataLayout
from slabstruct.errors import ContractViolation, OpaqueTypeError
from slabstruct.ir import (
    ArrayType,
    Module,
    PointerType,
    StructType,
    Type,
    is_function_pointer,
    scope_name,
    strip_arrays,
    underlying_struct,
)
from slabstruct.struct_info import FieldEntry, StructInfo

logger = logging.getLogger(__name__)


class MaxStructTracker:
    """Running maximum of (type, expanded size); replaced only when strictly larger."""

    def __init__(self) -> None:
        self._type: Optional[StructType] = None
        self._size = 0

    def update(self, st: StructType, size: int) -> bool:
        if size > self._size:
            self._type, self._size = st, size
            return True
        return False

    @property
    def largest(self) -> Tuple[Optional[StructType], int]:
        return self._type, self._size


class StructAnalyzer:
    """Builds and memoises flattened descriptors of aggregate types."""

    def __init__(
        self,
        config: Optional[AnalyzerConfig] = None,
        tracker: Optional[MaxStructTracker] = None,
    ) -> None:
        self.config = config or AnalyzerConfig()
        self.max_struct_tracker = tracker or MaxStructTracker()
        self._arena: List[StructInfo] = []
        self._index: Dict[Tuple[StructType, str], int] = {}
        self._struct_map: Dict[str, StructType] = {}
        self._alias_map: Dict[str, StructType] = {}
        self._owners: Dict[StructType, Module] = {}

    # ─────────────────────────────────────────────────────────────────
    #  Registry
    # ─────────────────────────────────────────────────────────────────

    @staticmethod
    def _key(st: StructType, module: Module) -> Tuple[StructType, str]:
        return st, module.name

    def get_struct_info(
        self,
        st: StructType,
        module: Module,
        layout: Optional[DataLayout] = None,
    ) -> StructInfo:
        """Descriptor of ``st`` as defined in ``module``, built on first use."""
        return self._arena[self.handle_of(st, module, layout)]

    def handle_of(
        self,
        st: StructType,
        module: Module,
        layout: Optional[DataLayout] = None,
    ) -> int:
        if st.is_opaque:
            raise OpaqueTypeError(st.name or str(st), "flatten")
        handle = self._index.get(self._key(st, module))
        if handle is None:
            handle = self._compute(st, module, layout or module.data_layout)
        return handle

    def info_at(self, handle: int) -> StructInfo:
        return self._arena[handle]

    def get_struct_type(self, name: str) -> Optional[StructType]:
        """Type called ``name``, else the first type whose suffix-stripped name it is."""
        st = self._struct_map.get(name)
        if st is None:
            st = self._alias_map.get(name)
        return st

    def _register_name(self, st: StructType, module: Module) -> None:
        if st.is_literal:
            return
        self._struct_map.setdefault(st.name, st)
        self._alias_map.setdefault(st.base_name, st)
        if _defines(module, st):
            self._owners.setdefault(st, module)

    def defining_module(self, st: StructType, module: Optional[Module] = None) -> Optional[Module]:
        """``module`` if it defines ``st``, else the first registered module that does."""
        if module is not None and _defines(module, st):
            return module
        return self._owners.get(st)

    def run(self, module: Module, layout: Optional[DataLayout] = None) -> int:
        """Flatten every non-opaque struct type defined in ``module``."""
        layout = layout or module.data_layout
        before = len(self._arena)
        for st in module.identified_struct_types():
            self._register_name(st, module)
            if st.is_opaque:
                logger.debug("skipping opaque type %s", st.name)
                continue
            self.handle_of(st, module, layout)
        built = len(self._arena) - before
        logger.info("module %s: %d struct types flattened", module.name, built)
        return built

    def get_container(self, name: str, module: Module) -> Set[str]:
        """Names of every type that embeds the type called ``name``."""
        st = self.get_struct_type(name)
        if st is None:
            return set()
        if st.is_opaque:
            raise OpaqueTypeError(name, "query containers of")
        home = self.defining_module(st, module)
        if home is None:
            raise ContractViolation(f"type {name} is not defined by any analysed module")
        info = self.get_struct_info(st, home)
        return {scope_name(container, home) for container, _ in info.containers}

    def max_struct(self) -> Tuple[Optional[StructType], int]:
        return self.max_struct_tracker.largest

    def items(self) -> Iterator[Tuple[StructType, StructInfo]]:
        for info in self._arena:
            yield info.real_type, info

    def struct_infos(self) -> List[StructInfo]:
        return list(self._arena)

    def __len__(self) -> int:
        return len(self._arena)

    def __iter__(self) -> Iterator[StructInfo]:
        return iter(list(self._arena))

    # ─────────────────────────────────────────────────────────────────
    #  Work list
    # ─────────────────────────────────────────────────────────────────

    def _compute(self, root: StructType, module: Module, layout: DataLayout) -> int:
        stack: List[Tuple[StructType, bool]] = [(root, False)]
        in_progress: Set[StructType] = set()
        while stack:
            st, children_done = stack.pop()
            if self._key(st, module) in self._index:
                continue
            if children_done:
                in_progress.discard(st)
                self._build(st, module, layout)
                continue
            if st in in_progress:
                raise ContractViolation(f"type {st} embeds itself by value")
            if st.is_opaque:
                raise OpaqueTypeError(st.name or str(st), "flatten")
            in_progress.add(st)
            stack.append((st, True))
            for nested in reversed(_embedded_structs(st)):
                stack.append((nested, False))
        return self._index[self._key(root, module)]

    def _built(self, st: StructType, module: Module) -> StructInfo:
        return self._arena[self._index[self._key(st, module)]]

    # ─────────────────────────────────────────────────────────────────
    #  Flattening
    # ─────────────────────────────────────────────────────────────────

    def _build(self, st: StructType, module: Module, layout: DataLayout) -> None:
        info = StructInfo(st, module, layout, self.config)
        struct_layout = layout.struct_layout(st)
        info._add_element_type(0, st)

        if st.is_union:
            self._flatten_union(info, st, module, layout)
        else:
            last = st.num_elements - 1
            for idx, elem in enumerate(st.elements):
                info._add_offset_map(len(info._fields))
                self._flatten_field(
                    info, st, elem, struct_layout.element_offset(idx),
                    module, layout, is_last=idx == last,
                )

        info._finalize()
        self._index[self._key(st, module)] = len(self._arena)
        self._arena.append(info)
        self._register_name(st, module)
        self.max_struct_tracker.update(st, info.get_expanded_size())
        logger.debug(
            "flattened %s: %d fields, %d expanded",
            info.name, info.get_size(), info.get_expanded_size(),
        )

    def _flatten_field(
        self,
        info: StructInfo,
        owner: StructType,
        elem: Type,
        offset: int,
        module: Module,
        layout: DataLayout,
        is_last: bool = False,
        in_union: bool = False,
    ) -> None:
        start = len(info._fields)
        base = strip_arrays(elem)
        is_array = isinstance(elem, ArrayType)
        info._add_element_type(start, base)

        if is_last and is_array and elem.count == 0:
            info.flexible_struct_flag = True

        if isinstance(base, StructType):
            nested = self._built(base, module)
            info._append_fields(nested, offset, is_array=is_array, is_union=in_union or base.is_union)
            self._record_container(owner, nested, offset, module)
            info.refcount_offset.update(o + offset for o in nested.refcount_offset)
            info.cred_offset.update(o + offset for o in nested.cred_offset)
            if base.base_name in self.config.refcount_types:
                info.refcount_offset.add(offset)
            if is_last and nested.flexible_struct_flag:
                info.flexible_struct_flag = True
            return

        info._add_field(FieldEntry(
            size=1,
            offset=offset,
            real_size=layout.type_alloc_size(elem),
            is_array=is_array,
            is_pointer=isinstance(elem, PointerType),
            is_union=in_union,
            is_func_ptr=is_function_pointer(elem),
        ))
        if isinstance(elem, PointerType):
            target = underlying_struct(elem)
            if target is not None and target.base_name == self.config.cred_type:
                info.cred_offset.add(offset)

    def _flatten_union(
        self,
        info: StructInfo,
        st: StructType,
        module: Module,
        layout: DataLayout,
    ) -> None:
        largest: Optional[Type] = None
        largest_size = -1
        for elem in st.elements:
            info._add_offset_map(0)
            info._add_element_type(0, strip_arrays(elem))
            size = layout.type_alloc_size(elem)
            if size > largest_size:
                largest, largest_size = elem, size

        for elem in st.elements:
            base = strip_arrays(elem)
            if elem is not largest and isinstance(base, StructType):
                self._record_container(st, self._built(base, module), 0, module)

        if largest is not None:
            self._flatten_field(info, st, largest, 0, module, layout, in_union=True)

    def _record_container(
        self,
        container: StructType,
        containee: StructInfo,
        offset: int,
        module: Module,
    ) -> None:
        containee._add_container(container, offset)
        inner_layout = containee.data_layout.struct_layout(containee.real_type)
        for idx, elem in enumerate(containee.real_type.elements):
            base = strip_arrays(elem)
            if isinstance(base, StructType):
                self._record_container(
                    container,
                    self._built(base, module),
                    offset + inner_layout.element_offset(idx),
                    module,
                )


def _defines(module: Module, st: StructType) -> bool:
    return module.get_type_by_name(st.name) is st


def _embedded_structs(st: StructType) -> List[StructType]:
    """Struct types held by value in ``st`` (arrays stripped, pointers not followed)."""
    found: List[StructType] = []
    for elem in st.elements:
        base = strip_arrays(elem)
        if isinstance(base, StructType) and base not in found:
            found.append(base)
    return found
