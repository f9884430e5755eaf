"""
slabstruct/alloc_cache.py
═════════════════════════

Best-effort classification of the slab cache that backs a type.

Two sources of evidence, in priority order:

  1. **Dedicated caches.**  A call such as ``kmem_cache_alloc(foo_cachep, …)``
     names its cache through a module global.  Somewhere in the module that
     global is assigned the result of ``kmem_cache_create("foo_cache", …)``,
     and the name argument is a constant GEP into a constant ``[N x i8]``
     global.  Following that chain recovers ``"foo_cache"``.

  2. **Generic size classes.**  ``kmalloc`` and friends serve objects from
     power-of-two caches; the object size picks the bucket.

Chain walking is a small state machine::

    HANDLE ──► GLOBAL ══(each store)══► CREATE_CALL ──► NAME_EXPR
                                                          │
                        DONE ◄── CHAR_ARRAY ◄── NAME_GLOBAL

Each step accepts exactly one node kind and raises
:class:`~slabstruct.errors.CacheResolutionError` on anything else.  The
error never escapes :meth:`AllocCacheClassifier.classify`; a broken chain
only drops that one call site.

Both heuristics can under- and over-report.  They never invent a name that
is not backed by literal constant data or by the size-class table.
"""

from __future__ import annotations

import enum
import logging
from typing import Callable, Dict, Iterable, Iterator, Optional, Tuple, Union, cast

from slabstruct.config import AnalyzerConfig
from slabstruct.errors import CacheResolutionError
from slabstruct.ir import (
    CallInst,
    ConstantDataArray,
    ConstantExpr,
    GlobalVariable,
    LoadInst,
    PointerType,
    StoreInst,
    Value,
    underlying_struct,
)

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════
#  GENERIC SIZE CLASSES
# ═════════════════════════════════════════════════════════════════════════

# (lower bound inclusive, upper bound exclusive, cache name)
SIZE_CLASS_BUCKETS: Tuple[Tuple[int, int, str], ...] = (
    (4096, 8192, "kmalloc-8k"),
    (2048, 4096, "kmalloc-4k"),
    (1024, 2048, "kmalloc-2k"),
    (512, 1024, "kmalloc-1k"),
)


def size_class_name(size: int, min_shift: int = 3) -> str:
    """Generic cache name for an object of ``size`` bytes."""
    shift = min_shift
    while (1 << shift) < size:
        shift += 1
    bucket = 1 << shift
    for low, high, name in SIZE_CLASS_BUCKETS:
        if low <= bucket < high:
            return name
    return f"kmalloc-{bucket}"


# ═════════════════════════════════════════════════════════════════════════
#  CACHE-NAME STATE MACHINE
# ═════════════════════════════════════════════════════════════════════════

class ResolveState(enum.Enum):
    HANDLE = "handle"            # allocator call → cache handle global
    GLOBAL = "global"            # handle global → creation calls storing to it
    CREATE_CALL = "create_call"  # creation call → its name argument
    NAME_EXPR = "name_expr"      # name argument → constant string global
    NAME_GLOBAL = "name_global"  # string global → its initializer
    CHAR_ARRAY = "char_array"    # initializer → literal text
    DONE = "done"


Step = Tuple[ResolveState, Union[Value, str]]


class CacheNameResolver:
    """Recovers the literal name of the cache used by one allocation call."""

    def __init__(self, config: Optional[AnalyzerConfig] = None) -> None:
        self.config = config or AnalyzerConfig()
        self._steps: Dict[ResolveState, Callable[..., Step]] = {
            ResolveState.HANDLE: self._handle,
            ResolveState.CREATE_CALL: self._create_call,
            ResolveState.NAME_EXPR: self._name_expr,
            ResolveState.NAME_GLOBAL: self._name_global,
            ResolveState.CHAR_ARRAY: self._char_array,
        }

    def resolve(self, call: CallInst) -> str:
        # the HANDLE step only ever hands a global on to GLOBAL
        handle = cast(GlobalVariable, self._run(ResolveState.HANDLE, call, until=ResolveState.GLOBAL))

        failure = CacheResolutionError(
            ResolveState.GLOBAL.value,
            f"no store of a {self.config.cache_create_function} result",
            handle,
        )
        for create_call in self.creation_calls(handle):
            try:
                name = cast(str, self._run(ResolveState.CREATE_CALL, create_call, until=ResolveState.DONE))
            except CacheResolutionError as exc:
                failure = exc
                continue
            return name
        raise failure

    def _run(self, state: ResolveState, node: Union[Value, str], until: ResolveState) -> Union[Value, str]:
        while state is not until:
            state, node = self._steps[state](node)
        return node

    # ── steps ────────────────────────────────────────────────────────

    def _handle(self, call: CallInst) -> Step:
        if not call.args:
            raise CacheResolutionError("handle", "allocation call has no arguments", call)
        arg = call.arg_operand(0)
        if isinstance(arg, LoadInst):
            arg = arg.pointer_operand
        if isinstance(arg, ConstantExpr) and arg.opcode == "bitcast":
            arg = arg.operand(0)
        if not isinstance(arg, GlobalVariable):
            raise CacheResolutionError("handle", "cache handle is not a module global", arg)

        # opaque pointers carry no pointee; only a known wrong type rejects
        handle_type = arg.value_type
        if isinstance(handle_type, PointerType) and handle_type.pointee is None:
            return ResolveState.GLOBAL, arg
        st = underlying_struct(handle_type)
        if st is None or st.base_name != self.config.cache_struct_name:
            raise CacheResolutionError(
                "handle", f"global {arg.ref()} is not a {self.config.cache_struct_name} handle", arg
            )
        return ResolveState.GLOBAL, arg

    def creation_calls(self, handle: GlobalVariable) -> Iterator[CallInst]:
        """Creation calls whose result is stored into ``handle``."""
        for user in handle.users:
            if not isinstance(user, StoreInst) or user.pointer_operand is not handle:
                continue
            value = user.value_operand
            if not isinstance(value, CallInst):
                continue
            fn = value.called_function
            if fn is not None and self.config.cache_create_function in fn.name:
                yield value

    def _create_call(self, call: CallInst) -> Step:
        if not call.args:
            raise CacheResolutionError("create_call", "creation call has no arguments", call)
        return ResolveState.NAME_EXPR, call.arg_operand(0)

    def _name_expr(self, value: Value) -> Step:
        if isinstance(value, GlobalVariable):
            return ResolveState.NAME_GLOBAL, value
        if not isinstance(value, ConstantExpr):
            raise CacheResolutionError("name_expr", "name is not a constant expression", value)
        if not value.is_gep_with_no_overindexing():
            raise CacheResolutionError("name_expr", "name is not an in-bounds constant GEP", value)
        return ResolveState.NAME_GLOBAL, value.operand(0)

    def _name_global(self, value: Value) -> Step:
        if not isinstance(value, GlobalVariable):
            raise CacheResolutionError("name_global", "GEP base is not a global", value)
        if not value.is_constant or value.initializer is None:
            raise CacheResolutionError("name_global", f"{value.ref()} is not a constant global", value)
        return ResolveState.CHAR_ARRAY, value.initializer

    def _char_array(self, value: Value) -> Step:
        if not isinstance(value, ConstantDataArray) or not value.is_string:
            raise CacheResolutionError("char_array", "initializer is not a character array", value)
        return ResolveState.DONE, value.as_cstring()


# ═════════════════════════════════════════════════════════════════════════
#  CLASSIFIER
# ═════════════════════════════════════════════════════════════════════════

class AllocCacheClassifier:
    """Maps a set of allocation call sites plus an object size to a cache name."""

    def __init__(self, config: Optional[AnalyzerConfig] = None) -> None:
        self.config = config or AnalyzerConfig()
        self.resolver = CacheNameResolver(self.config)

    def classify(self, sites: Iterable[CallInst], alloc_size: int) -> str:
        """Cache name, or ``""`` when nothing can be justified."""
        found_generic = False
        for call in sites:
            fn = call.called_function
            if fn is None:
                logger.debug("skipping indirect allocation call %s", call)
                continue
            if self.config.is_generic_allocator(fn.name):
                found_generic = True
            if self.config.is_cache_allocator(fn.name):
                try:
                    return self.resolver.resolve(call)
                except CacheResolutionError as exc:
                    logger.debug("cache name of '%s' unresolved: %s", call, exc)
        if found_generic:
            return size_class_name(alloc_size, self.config.min_size_class_shift)
        return ""
