# tests/conftest.py
"""
Shared fixtures: small kernel-flavoured IR modules built by hand.
"""

import pytest

from slabstruct.analyzer import StructAnalyzer
from slabstruct.ir import (
    I8,
    I32,
    I64,
    CallInst,
    ConstantDataArray,
    ConstantExpr,
    ConstantInt,
    ConstantPointerNull,
    DebugLoc,
    Function,
    FunctionType,
    GlobalVariable,
    Instruction,
    LoadInst,
    Module,
    PointerType,
    StoreInst,
    Value,
)


class KernelModuleBuilder:
    """Builds one module with a single function body to append into."""

    def __init__(self, name="drivers/foo.ll", source="drivers/foo.c"):
        self.module = Module(name, source_file=source)
        self.source = source
        self.kmem_cache = self.module.create_struct("struct.kmem_cache")
        self.cache_ptr = PointerType(self.kmem_cache)
        self.function = self.module.add_function(Function("foo_init", FunctionType(I32)))
        self.block = self.function.add_block("entry")
        self._line = 100

    def loc(self):
        self._line += 1
        return DebugLoc(self.source, self._line)

    def emit(self, inst: Instruction) -> Instruction:
        if inst.debug_loc is None:
            inst.debug_loc = self.loc()
        return self.block.append(inst)

    def declare(self, name, ret=PointerType(I8), params=()):
        return self.module.get_or_insert_function(name, FunctionType(ret, tuple(params)))

    # ── generic allocations ──────────────────────────────────────────

    def kmalloc(self, size, allocator="kmalloc", name="obj.raw"):
        fn = self.declare(allocator, params=(I64, I32))
        return self.emit(CallInst(fn, [ConstantInt(size), ConstantInt(0xCC0, I32)], name=name))

    # ── dedicated caches ─────────────────────────────────────────────

    def cache_global(self, name):
        return self.module.add_global(
            GlobalVariable(name, self.cache_ptr, ConstantPointerNull(self.cache_ptr))
        )

    def string_global(self, text, name=".str", constant=True):
        data = ConstantDataArray.from_string(text)
        return self.module.add_global(GlobalVariable(name, data.type, data, constant=constant))

    def create_cache(self, cachep, name_arg: Value, create="kmem_cache_create"):
        fn = self.declare(create, ret=self.cache_ptr, params=(PointerType(I8), I32))
        call = self.emit(CallInst(fn, [name_arg, ConstantInt(64, I32)], name="cache"))
        self.emit(StoreInst(call, cachep))
        return call

    def create_named_cache(self, cachep, cache_name, str_name=".str"):
        text = self.string_global(cache_name, str_name)
        return self.create_cache(cachep, ConstantExpr.gep(text, 0, 0))

    def cache_alloc(self, cachep: Value, allocator="kmem_cache_alloc", name="obj.raw"):
        fn = self.declare(allocator, params=(self.cache_ptr, I32))
        handle = cachep
        if isinstance(cachep, GlobalVariable):
            handle = self.emit(LoadInst(cachep, name="cachep"))
        return self.emit(CallInst(fn, [handle, ConstantInt(0xCC0, I32)], name=name))


@pytest.fixture
def builder():
    return KernelModuleBuilder()


@pytest.fixture
def module(builder):
    return builder.module


@pytest.fixture
def analyzer():
    return StructAnalyzer()


@pytest.fixture
def nested_module():
    """
    ``struct.inner { i32, i32, i64 }`` embedded as field 2 of
    ``struct.outer { i64, i32, struct.inner, i8* }``.
    """
    m = Module("net/nested.ll")
    inner = m.create_struct("struct.inner", [I32, I32, I64])
    outer = m.create_struct("struct.outer", [I64, I32, inner, PointerType(I8)])
    return m, outer, inner
