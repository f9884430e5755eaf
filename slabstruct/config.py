"""
slabstruct/config.py
════════════════════

Configuration for the struct analyser and the allocation-cache classifier.

The defaults describe the Linux slab allocator API.  Additional allocator
wrappers (vendor kernels love them) can be registered programmatically::

    cfg = AnalyzerConfig().add_generic_allocator("my_kmalloc")

or through the environment::

    SLABSTRUCT_GENERIC_ALLOCATORS=my_kmalloc,my_kzalloc
    SLABSTRUCT_CACHE_ALLOCATORS=my_cache_alloc
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import FrozenSet, Mapping, Optional, Set

logger = logging.getLogger(__name__)


GENERIC_ALLOCATORS: FrozenSet[str] = frozenset({
    "kmalloc",
    "kzalloc",
    "__kmalloc",
    "__kmalloc_node",
    "kmalloc_node",
    "kzalloc_node",
    "kcalloc_node",
    "kcalloc",
    "kvzalloc",
    "kvzalloc_node",
})

CACHE_ALLOCATORS: FrozenSet[str] = frozenset({
    "kmem_cache_alloc",
    "kmem_cache_alloc_node",
    "kmem_cache_zalloc",
})

ENV_GENERIC_ALLOCATORS = "SLABSTRUCT_GENERIC_ALLOCATORS"
ENV_CACHE_ALLOCATORS = "SLABSTRUCT_CACHE_ALLOCATORS"


@dataclass
class AnalyzerConfig:
    """
    Knobs shared by the flattening engine and the cache classifier.

    Attributes:
        generic_allocators: Size-class allocator family (kmalloc and friends)
        cache_allocators: Allocators whose first argument is a cache handle
        cache_create_function: Substring identifying cache-creation calls
        cache_struct_name: Struct type of a cache handle
        min_size_class_shift: Exponent of the smallest generic size class
        refcount_types: Struct types that count as reference counters
        cred_type: Struct type of credential objects
    """
    generic_allocators: Set[str] = field(default_factory=lambda: set(GENERIC_ALLOCATORS))
    cache_allocators: Set[str] = field(default_factory=lambda: set(CACHE_ALLOCATORS))
    cache_create_function: str = "kmem_cache_create"
    cache_struct_name: str = "struct.kmem_cache"
    min_size_class_shift: int = 3
    refcount_types: Set[str] = field(default_factory=lambda: {
        "struct.refcount_struct",
        "struct.kref",
        "struct.atomic_t",
    })
    cred_type: str = "struct.cred"

    def add_generic_allocator(self, name: str) -> "AnalyzerConfig":
        """Register a size-class allocator.  Returns self for chaining."""
        self.generic_allocators.add(name)
        return self

    def add_cache_allocator(self, name: str) -> "AnalyzerConfig":
        """Register a cache-typed allocator.  Returns self for chaining."""
        self.cache_allocators.add(name)
        return self

    def is_generic_allocator(self, name: Optional[str]) -> bool:
        return name is not None and name in self.generic_allocators

    def is_cache_allocator(self, name: Optional[str]) -> bool:
        return name is not None and name in self.cache_allocators

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "AnalyzerConfig":
        """Build the default configuration extended by environment variables."""
        env = os.environ if environ is None else environ
        cfg = cls()
        for name in _split_names(env.get(ENV_GENERIC_ALLOCATORS, "")):
            cfg.add_generic_allocator(name)
        for name in _split_names(env.get(ENV_CACHE_ALLOCATORS, "")):
            cfg.add_cache_allocator(name)
        logger.debug(
            "allocator families: %d generic, %d cache-typed",
            len(cfg.generic_allocators), len(cfg.cache_allocators),
        )
        return cfg


def _split_names(raw: str) -> Set[str]:
    return {part.strip() for part in raw.split(",") if part.strip()}
