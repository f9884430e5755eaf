"""
slabstruct — Struct Layout and Slab Cache Analysis for Kernel IR
================================================================

Builds a flattened model of every aggregate type in a kernel module's IR,
classifies the slab cache behind each type's allocation sites, and keeps the
ledger of per-field copy-out / copy-in sites and their guarding checks.

Core modules
------------
ir
    Object model of the IR the analyser reads (types, values, modules).
datalayout
    Target sizes, alignments and struct field offsets.
analyzer
    ``StructAnalyzer``: type registry and flattening engine.
struct_info
    ``StructInfo``: the per-type descriptor and its query surface.
alloc_cache
    Slab cache classification of allocation sites.
provenance
    Leak / check provenance ledger.
report
    Text and CSV-like reports.

Quick start
-----------
>>> from slabstruct import StructAnalyzer, Module, I32
>>> m = Module("demo.ll")
>>> st = m.create_struct("struct.point", [I32, I32])
>>> info = StructAnalyzer().get_struct_info(st, m)
>>> info.get_expanded_size(), info.get_field_offset(1)
(2, 4)
"""

from __future__ import annotations

import logging
from typing import List

from slabstruct.alloc_cache import AllocCacheClassifier, CacheNameResolver, size_class_name
from slabstruct.analyzer import MaxStructTracker, StructAnalyzer
from slabstruct.config import AnalyzerConfig
from slabstruct.datalayout import DataLayout, StructLayout
from slabstruct.errors import (
    CacheResolutionError,
    ContractViolation,
    DuplicateSiteError,
    FieldIndexError,
    FinalizedDescriptorError,
    OpaqueTypeError,
    SlabStructError,
)
from slabstruct.ir import (
    I1,
    I8,
    I16,
    I32,
    I64,
    VOID,
    ArrayType,
    FunctionType,
    IntegerType,
    Module,
    PointerType,
    StructType,
)
from slabstruct.provenance import BranchTaken, CheckSrc, LeakInfo, LeakType, SiteInfo, record_check
from slabstruct.report import StructReporter, write_alloc_caches, write_report
from slabstruct.struct_info import FieldEntry, StructInfo

__version__ = "0.2.0"
__license__ = "MIT"

__all__: List[str] = [
    "AllocCacheClassifier",
    "AnalyzerConfig",
    "ArrayType",
    "BranchTaken",
    "CacheNameResolver",
    "CacheResolutionError",
    "CheckSrc",
    "ContractViolation",
    "DataLayout",
    "DuplicateSiteError",
    "FieldEntry",
    "FieldIndexError",
    "FinalizedDescriptorError",
    "FunctionType",
    "I1",
    "I8",
    "I16",
    "I32",
    "I64",
    "IntegerType",
    "LeakInfo",
    "LeakType",
    "MaxStructTracker",
    "Module",
    "OpaqueTypeError",
    "PointerType",
    "SiteInfo",
    "SlabStructError",
    "StructAnalyzer",
    "StructInfo",
    "StructLayout",
    "StructReporter",
    "StructType",
    "VOID",
    "record_check",
    "size_class_name",
    "write_alloc_caches",
    "write_report",
]

logging.getLogger(__name__).addHandler(logging.NullHandler())
