"""
slabstruct/ir.py
════════════════

In-memory object model of the typed, SSA-style IR that the analyser reads.

The front-end that lowers object files into this model lives outside the
package; everything here is what the core *consumes*:

  • Types: void, iN, pointers, arrays, functions, identified and literal
    structs (unions are structs named ``union.*``).
  • Constants: integers, null, character arrays, constant expressions.
  • Globals: global variables and functions.
  • Code: basic blocks and the handful of instructions the analyser
    inspects (call, load, store, gep, icmp, bitcast, alloca).

Every value keeps a use list.  Constructing an instruction or a constant
expression registers it as a user of each operand, so ``global.users`` is
always complete for a well-formed module.

Struct types compare by identity, exactly like the IR they mirror: two
distinct ``%struct.foo`` definitions from two modules are two types.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
    from slabstruct.datalayout import DataLayout


# ═════════════════════════════════════════════════════════════════════════
#  PART 1 — TYPES
# ═════════════════════════════════════════════════════════════════════════

class Type:
    """Base class of every IR type."""

    def is_sized(self) -> bool:
        return True


@dataclass(frozen=True)
class VoidType(Type):
    def is_sized(self) -> bool:
        return False

    def __str__(self) -> str:
        return "void"


@dataclass(frozen=True)
class IntegerType(Type):
    bits: int

    def __str__(self) -> str:
        return f"i{self.bits}"


@dataclass(frozen=True)
class PointerType(Type):
    """Pointer to ``pointee``; ``pointee=None`` models an opaque ``ptr``."""
    pointee: Optional[Type] = None
    address_space: int = 0

    def __str__(self) -> str:
        if self.pointee is None:
            return "ptr"
        return f"{self.pointee}*"


@dataclass(frozen=True)
class ArrayType(Type):
    element: Type
    count: int

    def __str__(self) -> str:
        return f"[{self.count} x {self.element}]"


@dataclass(frozen=True)
class FunctionType(Type):
    ret: Type
    params: Tuple[Type, ...] = ()
    vararg: bool = False

    def is_sized(self) -> bool:
        return False

    def __str__(self) -> str:
        params = [str(p) for p in self.params]
        if self.vararg:
            params.append("...")
        return f"{self.ret} ({', '.join(params)})"


class StructType(Type):
    """
    An aggregate type.

    A struct created without a body (``elements=None``) is opaque until
    :meth:`set_body` is called.  Struct types hash and compare by identity.
    """

    _SUFFIX = re.compile(r"\.\d+$")

    def __init__(
        self,
        name: str = "",
        elements: Optional[Sequence[Type]] = None,
        packed: bool = False,
        union: Optional[bool] = None,
    ) -> None:
        self.name = name
        self.packed = packed
        self._elements: Optional[Tuple[Type, ...]] = (
            None if elements is None else tuple(elements)
        )
        self._union = union

    def set_body(self, elements: Sequence[Type], packed: bool = False) -> None:
        self._elements = tuple(elements)
        self.packed = packed

    @property
    def elements(self) -> Tuple[Type, ...]:
        return self._elements or ()

    @property
    def num_elements(self) -> int:
        return len(self.elements)

    @property
    def is_opaque(self) -> bool:
        return self._elements is None

    @property
    def is_literal(self) -> bool:
        return not self.name

    @property
    def is_union(self) -> bool:
        if self._union is not None:
            return self._union
        return self.name.startswith("union.")

    @property
    def base_name(self) -> str:
        """Name with the ``.NNN`` suffix the linker adds to duplicates removed."""
        return self._SUFFIX.sub("", self.name)

    def __str__(self) -> str:
        if self.name:
            return f"%{self.name}"
        body = ", ".join(str(e) for e in self.elements)
        return f"<{{ {body} }}>" if self.packed else f"{{ {body} }}"

    def __repr__(self) -> str:
        state = "opaque" if self.is_opaque else f"{self.num_elements} fields"
        return f"StructType({self.name or '<literal>'}, {state})"


VOID = VoidType()
I1 = IntegerType(1)
I8 = IntegerType(8)
I16 = IntegerType(16)
I32 = IntegerType(32)
I64 = IntegerType(64)


def pointer_to(ty: Optional[Type]) -> PointerType:
    return PointerType(ty)


def underlying_struct(ty: Optional[Type]) -> Optional[StructType]:
    """Strip pointers and arrays until a struct (or nothing) remains."""
    while ty is not None:
        if isinstance(ty, StructType):
            return ty
        if isinstance(ty, PointerType):
            ty = ty.pointee
        elif isinstance(ty, ArrayType):
            ty = ty.element
        else:
            return None
    return None


def strip_arrays(ty: Type) -> Type:
    while isinstance(ty, ArrayType):
        ty = ty.element
    return ty


def is_function_pointer(ty: Type) -> bool:
    return isinstance(ty, PointerType) and isinstance(ty.pointee, FunctionType)


def scope_name(st: StructType, module: Optional["Module"] = None) -> str:
    """
    Program-wide name of a struct.

    Identified structs lose the numeric suffix the IR linker appends to
    duplicate definitions; literal structs are qualified by their module.
    """
    if not st.is_literal:
        return st.base_name
    where = module.name if module is not None else "?"
    return f"{where}:{st}"


# ═════════════════════════════════════════════════════════════════════════
#  PART 2 — VALUES AND CONSTANTS
# ═════════════════════════════════════════════════════════════════════════

class Value:
    """Anything that can be an operand.  Keeps its own use list."""

    def __init__(self, type: Optional[Type] = None, name: str = "") -> None:
        self.type = type
        self.name = name
        self.users: List["Value"] = []

    def _add_user(self, user: "Value") -> None:
        self.users.append(user)

    def ref(self) -> str:
        """Short operand form, e.g. ``%3`` or ``@cachep``."""
        return f"%{self.name}" if self.name else "%<unnamed>"

    def __str__(self) -> str:
        return self.ref()


def _register_operands(user: Value, operands: Iterable[Value]) -> None:
    for op in operands:
        if isinstance(op, Value):
            op._add_user(user)


class Constant(Value):
    pass


class ConstantInt(Constant):
    def __init__(self, value: int, type: IntegerType = I64) -> None:
        super().__init__(type)
        self.value = value

    def ref(self) -> str:
        return str(self.value)

    def __str__(self) -> str:
        return f"{self.type} {self.value}"


class ConstantPointerNull(Constant):
    def __init__(self, type: Optional[PointerType] = None) -> None:
        super().__init__(type or PointerType())

    def ref(self) -> str:
        return "null"

    def __str__(self) -> str:
        return f"{self.type} null"


class ConstantDataArray(Constant):
    """A constant array of integers; character strings in practice."""

    def __init__(self, data: bytes, element: IntegerType = I8) -> None:
        super().__init__(ArrayType(element, len(data)))
        self.data = bytes(data)

    @classmethod
    def from_string(cls, text: str, null_terminate: bool = True) -> "ConstantDataArray":
        raw = text.encode("utf-8")
        if null_terminate:
            raw += b"\x00"
        return cls(raw)

    @property
    def is_string(self) -> bool:
        return isinstance(self.type, ArrayType) and self.type.element == I8

    def as_cstring(self) -> str:
        """Contents up to the first NUL; undecodable bytes survive as surrogates."""
        raw = self.data.split(b"\x00", 1)[0]
        return raw.decode("utf-8", errors="surrogateescape")

    def ref(self) -> str:
        return 'c"' + self.data.decode("utf-8", errors="replace").replace("\x00", "\\00") + '"'

    def __str__(self) -> str:
        return f"{self.type} {self.ref()}"


class ConstantExpr(Constant):
    """
    A constant expression.

    Only ``getelementptr`` and ``bitcast`` matter to the analyser.
    ``no_overindexing`` marks a GEP whose indices stay inside the bounds of
    the types they index (in-bounds, no notional over-indexing).
    """

    def __init__(
        self,
        opcode: str,
        operands: Sequence[Value],
        type: Optional[Type] = None,
        no_overindexing: bool = False,
    ) -> None:
        super().__init__(type)
        self.opcode = opcode
        self.operands: List[Value] = list(operands)
        self.no_overindexing = no_overindexing
        _register_operands(self, self.operands)

    @classmethod
    def gep(cls, base: Value, *indices: int, no_overindexing: bool = True) -> "ConstantExpr":
        """``getelementptr`` on ``base`` with constant 64-bit indices."""
        ops: List[Value] = [base] + [ConstantInt(i) for i in indices]
        return cls("getelementptr", ops, PointerType(I8), no_overindexing)

    @classmethod
    def bitcast(cls, value: Value, dest: Type) -> "ConstantExpr":
        return cls("bitcast", [value], dest)

    def operand(self, idx: int) -> Value:
        return self.operands[idx]

    @property
    def is_gep(self) -> bool:
        return self.opcode == "getelementptr"

    def is_gep_with_no_overindexing(self) -> bool:
        return self.is_gep and self.no_overindexing

    def ref(self) -> str:
        return f"{self.opcode} ({', '.join(op.ref() for op in self.operands)})"


# ═════════════════════════════════════════════════════════════════════════
#  PART 3 — GLOBALS, FUNCTIONS, ARGUMENTS
# ═════════════════════════════════════════════════════════════════════════

class GlobalVariable(Constant):
    def __init__(
        self,
        name: str,
        value_type: Type,
        initializer: Optional[Constant] = None,
        constant: bool = False,
    ) -> None:
        super().__init__(PointerType(value_type), name)
        self.value_type = value_type
        self.initializer = initializer
        self.is_constant = constant
        self.module: Optional[Module] = None

    def ref(self) -> str:
        return f"@{self.name}"

    def __str__(self) -> str:
        kind = "constant" if self.is_constant else "global"
        init = f" {self.initializer.ref()}" if self.initializer is not None else ""
        return f"@{self.name} = {kind} {self.value_type}{init}"


class Argument(Value):
    def __init__(self, type: Type, name: str, parent: "Function", index: int) -> None:
        super().__init__(type, name)
        self.parent = parent
        self.index = index

    def __str__(self) -> str:
        return f"{self.type} %{self.name}"


class Function(Constant):
    def __init__(
        self,
        name: str,
        function_type: FunctionType,
        arg_names: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(PointerType(function_type), name)
        self.function_type = function_type
        names = list(arg_names or [])
        names += [str(i) for i in range(len(names), len(function_type.params))]
        self.arguments: List[Argument] = [
            Argument(ty, nm, self, i)
            for i, (ty, nm) in enumerate(zip(function_type.params, names))
        ]
        self.basic_blocks: List[BasicBlock] = []
        self.module: Optional[Module] = None

    @property
    def is_declaration(self) -> bool:
        return not self.basic_blocks

    @property
    def is_intrinsic(self) -> bool:
        return self.name.startswith("llvm.")

    def arg(self, idx: int) -> Argument:
        return self.arguments[idx]

    def add_block(self, name: str = "") -> "BasicBlock":
        bb = BasicBlock(name or f"bb{len(self.basic_blocks)}", self)
        self.basic_blocks.append(bb)
        return bb

    def instructions(self) -> Iterator["Instruction"]:
        for bb in self.basic_blocks:
            yield from bb.instructions

    def ref(self) -> str:
        return f"@{self.name}"

    def __str__(self) -> str:
        kind = "declare" if self.is_declaration else "define"
        return f"{kind} {self.function_type.ret} @{self.name}"


# ═════════════════════════════════════════════════════════════════════════
#  PART 4 — BASIC BLOCKS AND INSTRUCTIONS
# ═════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DebugLoc:
    file: str
    line: int
    column: int = 0

    def __str__(self) -> str:
        if self.column:
            return f"{self.file}:{self.line}:{self.column}"
        return f"{self.file}:{self.line}"


class BasicBlock(Value):
    def __init__(self, name: str, parent: Optional[Function] = None) -> None:
        super().__init__(None, name)
        self.parent = parent
        self.instructions: List[Instruction] = []

    def append(self, inst: "Instruction") -> "Instruction":
        inst.parent = self
        self.instructions.append(inst)
        return inst

    @property
    def module(self) -> Optional["Module"]:
        return self.parent.module if self.parent is not None else None

    def __iter__(self) -> Iterator["Instruction"]:
        return iter(self.instructions)


class ICmpPredicate(enum.Enum):
    EQ = "eq"
    NE = "ne"
    UGT = "ugt"
    UGE = "uge"
    ULT = "ult"
    ULE = "ule"
    SGT = "sgt"
    SGE = "sge"
    SLT = "slt"
    SLE = "sle"


class Instruction(Value):
    opcode = "instruction"

    def __init__(
        self,
        type: Optional[Type],
        operands: Sequence[Value],
        name: str = "",
        debug_loc: Optional[DebugLoc] = None,
    ) -> None:
        super().__init__(type, name)
        self.operands: List[Value] = list(operands)
        self.debug_loc = debug_loc
        self.parent: Optional[BasicBlock] = None
        _register_operands(self, self.operands)

    def operand(self, idx: int) -> Value:
        return self.operands[idx]

    @property
    def function(self) -> Optional[Function]:
        return self.parent.parent if self.parent is not None else None

    @property
    def module(self) -> Optional["Module"]:
        return self.parent.module if self.parent is not None else None

    def _body(self) -> str:
        return f"{self.opcode} " + ", ".join(op.ref() for op in self.operands)

    def __str__(self) -> str:
        if self.name and not isinstance(self.type, VoidType):
            return f"%{self.name} = {self._body()}"
        return self._body()


class CallInst(Instruction):
    opcode = "call"

    def __init__(
        self,
        callee: Value,
        args: Sequence[Value] = (),
        name: str = "",
        debug_loc: Optional[DebugLoc] = None,
        type: Optional[Type] = None,
    ) -> None:
        if type is None:
            type = callee.function_type.ret if isinstance(callee, Function) else VOID
        # callee goes last, matching the IR operand order
        super().__init__(type, list(args) + [callee], name, debug_loc)

    @property
    def callee(self) -> Value:
        return self.operands[-1]

    @property
    def args(self) -> List[Value]:
        return self.operands[:-1]

    def arg_operand(self, idx: int) -> Value:
        return self.args[idx]

    @property
    def called_function(self) -> Optional[Function]:
        callee = self.callee
        return callee if isinstance(callee, Function) else None

    @property
    def is_intrinsic(self) -> bool:
        fn = self.called_function
        return fn is not None and fn.is_intrinsic

    def _body(self) -> str:
        args = ", ".join(a.ref() for a in self.args)
        return f"call {self.type} {self.callee.ref()}({args})"


class LoadInst(Instruction):
    opcode = "load"

    def __init__(
        self,
        ptr: Value,
        name: str = "",
        debug_loc: Optional[DebugLoc] = None,
        type: Optional[Type] = None,
    ) -> None:
        if type is None and isinstance(ptr.type, PointerType):
            type = ptr.type.pointee
        super().__init__(type, [ptr], name, debug_loc)

    @property
    def pointer_operand(self) -> Value:
        return self.operands[0]

    def _body(self) -> str:
        return f"load {self.type}, {self.pointer_operand.ref()}"


class StoreInst(Instruction):
    opcode = "store"

    def __init__(self, value: Value, ptr: Value, debug_loc: Optional[DebugLoc] = None) -> None:
        super().__init__(VOID, [value, ptr], "", debug_loc)

    @property
    def value_operand(self) -> Value:
        return self.operands[0]

    @property
    def pointer_operand(self) -> Value:
        return self.operands[1]


class GetElementPtrInst(Instruction):
    opcode = "getelementptr"

    def __init__(
        self,
        source_type: Type,
        ptr: Value,
        indices: Sequence[Value],
        name: str = "",
        debug_loc: Optional[DebugLoc] = None,
        type: Optional[Type] = None,
    ) -> None:
        self.source_element_type = source_type
        if type is None:
            type = PointerType(_indexed_type(source_type, indices[1:]))
        super().__init__(type, [ptr] + list(indices), name, debug_loc)

    @property
    def pointer_operand(self) -> Value:
        return self.operands[0]

    @property
    def pointer_operand_type(self) -> Optional[Type]:
        return self.pointer_operand.type

    @property
    def indices(self) -> List[Value]:
        return self.operands[1:]


def _indexed_type(ty: Type, indices: Sequence[Value]) -> Optional[Type]:
    for idx in indices:
        if isinstance(ty, StructType) and isinstance(idx, ConstantInt):
            if not 0 <= idx.value < ty.num_elements:
                return None
            ty = ty.elements[idx.value]
        elif isinstance(ty, ArrayType):
            ty = ty.element
        else:
            return None
    return ty


class ICmpInst(Instruction):
    opcode = "icmp"

    def __init__(
        self,
        predicate: ICmpPredicate,
        lhs: Value,
        rhs: Value,
        name: str = "",
        debug_loc: Optional[DebugLoc] = None,
    ) -> None:
        super().__init__(I1, [lhs, rhs], name, debug_loc)
        self.predicate = predicate

    def _body(self) -> str:
        return f"icmp {self.predicate.value} {self.operands[0].ref()}, {self.operands[1].ref()}"


class BitCastInst(Instruction):
    opcode = "bitcast"

    def __init__(
        self,
        value: Value,
        dest_type: Type,
        name: str = "",
        debug_loc: Optional[DebugLoc] = None,
    ) -> None:
        super().__init__(dest_type, [value], name, debug_loc)

    def _body(self) -> str:
        return f"bitcast {self.operands[0].ref()} to {self.type}"


class AllocaInst(Instruction):
    opcode = "alloca"

    def __init__(
        self,
        allocated_type: Type,
        name: str = "",
        debug_loc: Optional[DebugLoc] = None,
    ) -> None:
        super().__init__(PointerType(allocated_type), [], name, debug_loc)
        self.allocated_type = allocated_type

    def _body(self) -> str:
        return f"alloca {self.allocated_type}"


# ═════════════════════════════════════════════════════════════════════════
#  PART 5 — MODULE
# ═════════════════════════════════════════════════════════════════════════

class Module:
    """A translation unit: its struct types, globals, functions and layout."""

    def __init__(
        self,
        name: str,
        data_layout: Optional["DataLayout"] = None,
        source_file: str = "",
    ) -> None:
        if data_layout is None:
            from slabstruct.datalayout import DataLayout
            data_layout = DataLayout()
        self.name = name
        self.data_layout = data_layout
        self.source_file = source_file or name
        self.structs: Dict[str, StructType] = {}
        self.globals: Dict[str, GlobalVariable] = {}
        self.functions: Dict[str, Function] = {}

    # ── types ────────────────────────────────────────────────────────

    def add_struct(self, st: StructType) -> StructType:
        self.structs[st.name] = st
        return st

    def create_struct(
        self,
        name: str,
        elements: Optional[Sequence[Type]] = None,
        packed: bool = False,
    ) -> StructType:
        """Define (or forward-declare, with ``elements=None``) a named struct."""
        return self.add_struct(StructType(name, elements, packed))

    def get_type_by_name(self, name: str) -> Optional[StructType]:
        return self.structs.get(name)

    def identified_struct_types(self) -> List[StructType]:
        return list(self.structs.values())

    # ── globals and functions ────────────────────────────────────────

    def add_global(self, gv: GlobalVariable) -> GlobalVariable:
        gv.module = self
        self.globals[gv.name] = gv
        return gv

    def get_global(self, name: str) -> Optional[GlobalVariable]:
        return self.globals.get(name)

    def add_function(self, fn: Function) -> Function:
        fn.module = self
        self.functions[fn.name] = fn
        return fn

    def get_or_insert_function(self, name: str, function_type: FunctionType) -> Function:
        fn = self.functions.get(name)
        if fn is None:
            fn = self.add_function(Function(name, function_type))
        return fn

    def get_function(self, name: str) -> Optional[Function]:
        return self.functions.get(name)

    def __repr__(self) -> str:
        return (
            f"Module({self.name}, {len(self.structs)} structs, "
            f"{len(self.functions)} functions)"
        )
