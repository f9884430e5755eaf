"""
slabstruct/errors.py
════════════════════

Error taxonomy for the struct-layout analyser.

Hierarchy
─────────
::

    SlabStructError
    ├── ContractViolation          (also an AssertionError; caller bug, fatal)
    │   ├── OpaqueTypeError        flatten / container query on an opaque type
    │   ├── FieldIndexError        out-of-range field query (also IndexError)
    │   ├── DuplicateSiteError     second site under the same (offset, value)
    │   └── FinalizedDescriptorError
    └── CacheResolutionError       non-fatal; one call site could not be resolved

Contract violations are never caught inside the package.  A
``CacheResolutionError`` only ever travels as far as the per-call-site loop
of the allocation-cache classifier, which logs it and moves on.
"""

from __future__ import annotations

from typing import Any, Optional


class SlabStructError(Exception):
    """Base class for every error raised by slabstruct."""


class ContractViolation(SlabStructError, AssertionError):
    """A caller broke an API contract.  Not an analysable input condition."""


class OpaqueTypeError(ContractViolation):
    """An opaque (bodyless) struct was flattened or queried for containers."""

    def __init__(self, type_name: str, action: str = "flatten") -> None:
        self.type_name = type_name
        self.action = action
        super().__init__(f"cannot {action} opaque type '{type_name}'")


class FieldIndexError(ContractViolation, IndexError):
    """A per-field query used an index outside the descriptor's table."""

    def __init__(self, what: str, index: int, size: int) -> None:
        self.what = what
        self.index = index
        self.size = size
        super().__init__(f"{what} index {index} out of range [0, {size})")


class DuplicateSiteError(ContractViolation):
    """A leak site was inserted twice under the same key."""

    def __init__(self, offset: int, value: Any) -> None:
        self.offset = offset
        self.value = value
        super().__init__(
            f"site already recorded at offset {offset} for {value!s}; "
            f"sites are write-once"
        )


class FinalizedDescriptorError(ContractViolation):
    """The field table of a finalized descriptor was modified."""


class CacheResolutionError(SlabStructError):
    """The cache-name chain of one allocation site broke.

    Carries the state in which resolution stopped so the classifier can log
    where the chain broke.
    """

    def __init__(self, state: str, reason: str, node: Optional[Any] = None) -> None:
        self.state = state
        self.reason = reason
        self.node = node
        super().__init__(f"[{state}] {reason}")
