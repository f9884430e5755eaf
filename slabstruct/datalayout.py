"""
slabstruct/datalayout.py
════════════════════════

Target data layout: byte sizes, ABI alignments and struct field offsets.

Only the part of the LLVM data-layout string that influences aggregate
layout is understood::

    e / E                 endianness
    p[n]:<size>:<abi>     pointer size and alignment (bits)
    i<N>:<abi>            integer alignment (bits)
    a:<abi>               aggregate alignment (bits)

Every other layout token is accepted and ignored.

Layout rule: each element is placed at the next multiple of its ABI
alignment (1 for packed structs); the struct size is rounded up to the
struct's alignment, which is the largest element alignment.  Union members
all start at offset 0 and the union is as large as its largest member.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from slabstruct.errors import ContractViolation, OpaqueTypeError
from slabstruct.ir import (
    ArrayType,
    IntegerType,
    PointerType,
    StructType,
    Type,
)

logger = logging.getLogger(__name__)

# x86_64 defaults, in bytes
_DEFAULT_INT_ALIGN: Dict[int, int] = {1: 1, 8: 1, 16: 2, 32: 4, 64: 8, 128: 16}


@dataclass(frozen=True)
class StructLayout:
    """Byte offsets of each element, plus total size and alignment."""
    offsets: Tuple[int, ...]
    size: int
    alignment: int

    def element_offset(self, idx: int) -> int:
        return self.offsets[idx]


def _align_to(value: int, align: int) -> int:
    return (value + align - 1) // align * align


class DataLayout:
    """Answers size and offset questions for one target."""

    def __init__(
        self,
        pointer_size: int = 8,
        pointer_align: int = 8,
        little_endian: bool = True,
        int_aligns: Optional[Dict[int, int]] = None,
        aggregate_align: int = 1,
        spec: str = "",
    ) -> None:
        self.pointer_size = pointer_size
        self.pointer_align = pointer_align
        self.little_endian = little_endian
        self.int_aligns: Dict[int, int] = dict(_DEFAULT_INT_ALIGN)
        if int_aligns:
            self.int_aligns.update(int_aligns)
        self.aggregate_align = aggregate_align
        self.spec = spec
        self._layouts: Dict[StructType, StructLayout] = {}

    @classmethod
    def parse(cls, spec: str) -> "DataLayout":
        """Build a layout from an LLVM data-layout string."""
        kwargs: Dict[str, object] = {}
        int_aligns: Dict[int, int] = {}
        for token in filter(None, spec.split("-")):
            head, _, rest = token.partition(":")
            fields = rest.split(":") if rest else []
            if token == "e":
                kwargs["little_endian"] = True
            elif token == "E":
                kwargs["little_endian"] = False
            elif head.startswith("p") and len(fields) >= 2:
                # only the default address space shapes struct layout
                if head in ("p", "p0"):
                    kwargs["pointer_size"] = int(fields[0]) // 8
                    kwargs["pointer_align"] = int(fields[1]) // 8
            elif head.startswith("i") and head[1:].isdigit() and fields:
                int_aligns[int(head[1:])] = max(1, int(fields[0]) // 8)
            elif head == "a" and fields and fields[0]:
                kwargs["aggregate_align"] = max(1, int(fields[0]) // 8)
            else:
                logger.debug("ignoring data-layout token %r", token)
        return cls(int_aligns=int_aligns, spec=spec, **kwargs)  # type: ignore[arg-type]

    # ── scalar queries ───────────────────────────────────────────────

    def _int_align(self, bits: int) -> int:
        if bits in self.int_aligns:
            return self.int_aligns[bits]
        wider = sorted(b for b in self.int_aligns if b >= bits)
        if wider:
            return self.int_aligns[wider[0]]
        return self.int_aligns[max(self.int_aligns)]

    def type_abi_alignment(self, ty: Type) -> int:
        if isinstance(ty, IntegerType):
            return self._int_align(ty.bits)
        if isinstance(ty, PointerType):
            return self.pointer_align
        if isinstance(ty, ArrayType):
            return self.type_abi_alignment(ty.element)
        if isinstance(ty, StructType):
            return self.struct_layout(ty).alignment
        raise ContractViolation(f"type {ty} has no alignment")

    def type_store_size(self, ty: Type) -> int:
        if isinstance(ty, IntegerType):
            return (ty.bits + 7) // 8
        if isinstance(ty, PointerType):
            return self.pointer_size
        return self.type_alloc_size(ty)

    def type_alloc_size(self, ty: Type) -> int:
        """Bytes between consecutive objects of ``ty`` in an array."""
        if isinstance(ty, ArrayType):
            return ty.count * self.type_alloc_size(ty.element)
        if isinstance(ty, StructType):
            return self.struct_layout(ty).size
        if not ty.is_sized():
            raise ContractViolation(f"type {ty} is not sized")
        return _align_to(self.type_store_size(ty), self.type_abi_alignment(ty))

    # ── aggregates ───────────────────────────────────────────────────

    def struct_layout(self, st: StructType) -> StructLayout:
        cached = self._layouts.get(st)
        if cached is not None:
            return cached
        if st.is_opaque:
            raise OpaqueTypeError(st.name or str(st), "lay out")

        offsets = []
        size = 0
        align = 1
        for elem in st.elements:
            elem_align = 1 if st.packed else self.type_abi_alignment(elem)
            elem_size = self.type_alloc_size(elem)
            align = max(align, elem_align)
            if st.is_union:
                offsets.append(0)
                size = max(size, elem_size)
            else:
                size = _align_to(size, elem_align)
                offsets.append(size)
                size += elem_size
        if not st.packed:
            align = max(align, self.aggregate_align)
        layout = StructLayout(tuple(offsets), _align_to(size, align), align)
        self._layouts[st] = layout
        return layout

    def __repr__(self) -> str:
        return f"DataLayout({self.spec or 'default'})"
