"""
slabstruct/report.py
════════════════════

Human-readable and CSV-like reports over the analyser's stores.

Per-type dumps (``StructReporter``)
───────────────────────────────────
::

    [+] struct.foo
    AllocInst:
    %3 = call i8* @kmalloc(300, 3264)  drivers/foo.c:120
    LeakInst:
    call void @copy_to_user(...)  drivers/foo.c:300 Leaking from STACK at offset : 8

Check chains render every guarding comparison as a predicate between two
operand descriptions::

    | <struct.foo, 2> | [<] | <C, 64> |

``[<]*`` means both outcomes of the comparison were seen reaching the leak.

Program-wide outputs
────────────────────
  • :func:`write_report`       text report for every allocated type
  • :func:`write_alloc_caches` ``type_name,cache_name`` lines
  • ``print_*``                listings of types carrying one property
"""

from __future__ import annotations

import logging
import sys
from typing import Callable, Dict, Iterable, Optional, TextIO, Tuple

from termcolor import colored

from slabstruct.analyzer import StructAnalyzer
from slabstruct.errors import ContractViolation
from slabstruct.ir import (
    Argument,
    BitCastInst,
    CallInst,
    ConstantInt,
    ConstantPointerNull,
    GetElementPtrInst,
    ICmpInst,
    ICmpPredicate,
    Instruction,
    StructType,
    Value,
    scope_name,
)
from slabstruct.provenance import BranchTaken, CheckMap, SiteInfo
from slabstruct.struct_info import StructInfo

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════
#  VALUE AND PREDICATE RENDERING
# ═════════════════════════════════════════════════════════════════════════

def format_inst(value: Value) -> str:
    """Instruction text followed by its source location, when known."""
    text = str(value)
    if isinstance(value, Instruction) and value.debug_loc is not None:
        return f"{text}  {value.debug_loc}"
    return text


def describe_cmp_src(value: Value) -> str:
    """``<kind, detail>`` description of one comparison operand."""
    if isinstance(value, GetElementPtrInst):
        st = value.source_element_type
        if not isinstance(st, StructType):
            raise ContractViolation(f"comparison source {value} does not index a struct")
        if len(value.operands) < 3 or not isinstance(value.operand(2), ConstantInt):
            raise ContractViolation(f"GEP index of {value} is not constant")
        return f"<{scope_name(st, value.module)}, {value.operand(2).value}>"
    if isinstance(value, ConstantInt):
        return f"<C, {value.value}>"
    if isinstance(value, ConstantPointerNull):
        return "<C, null>"
    if isinstance(value, CallInst):
        fn = value.called_function
        if value.is_intrinsic:
            return f"<Intrinsic, {fn.name}>"
        if fn is None or not fn.name:
            return f"<CallInst, {value}>"
        return f"<CallInst, {fn.name}>"
    if isinstance(value, Argument):
        return f"<Arg, {value}>"
    if isinstance(value, BitCastInst):
        return f"<BitCast, {value}>"
    return f"<Unknown, {value}>"


def render_cmp_src(value: Value) -> str:
    return f"| {describe_cmp_src(value)} |"


# predicate → (symbol when true, symbol when false)
PREDICATE_SYMBOLS: Dict[ICmpPredicate, Tuple[str, str]] = {
    ICmpPredicate.SLT: ("<", ">="),
    ICmpPredicate.ULT: ("<", ">="),
    ICmpPredicate.SGT: (">", "<="),
    ICmpPredicate.UGT: (">", "<="),
    ICmpPredicate.SLE: ("<=", ">"),
    ICmpPredicate.ULE: ("<=", ">"),
    ICmpPredicate.SGE: (">=", "<"),
    ICmpPredicate.UGE: (">=", "<"),
    ICmpPredicate.EQ: ("==", "!="),
    ICmpPredicate.NE: ("!=", "=="),
}


def render_pred(predicate: ICmpPredicate, branch: BranchTaken) -> str:
    symbols = PREDICATE_SYMBOLS.get(predicate)
    if symbols is None:
        return ""
    on_true, on_false = symbols
    if branch == BranchTaken.TRUE:
        return f" [{on_true}] "
    if branch == BranchTaken.FALSE:
        return f" [{on_false}] "
    return f" [{on_true}]* "


# ═════════════════════════════════════════════════════════════════════════
#  PER-TYPE DUMPS
# ═════════════════════════════════════════════════════════════════════════

class StructReporter:
    """Writes dumps of individual descriptors to a results stream."""

    def __init__(self, stream: Optional[TextIO] = None, color: bool = False) -> None:
        self.stream = stream if stream is not None else sys.stdout
        self.color = color

    def _write(self, text: str) -> None:
        self.stream.write(text)

    def _header(self, info: StructInfo) -> None:
        line = f"[+] {info.name}"
        if self.color:
            line = colored(line, "green", attrs=["bold"])
        self._write(line + "\n")

    def _banner(self, text: str) -> None:
        if self.color:
            text = colored(text, "cyan")
        self._write(text + "\n")

    def dump_alloc_inst(self, info: StructInfo) -> None:
        for inst in info.alloc_inst:
            self._write(format_inst(inst) + "\n")

    def dump_leak_inst(self, info: StructInfo) -> None:
        for inst in info.leak_inst:
            self._write(f"{inst}\n")

    def dump_site_info(self, site: SiteInfo) -> None:
        if site.len_value is not None and site.len_st is not None:
            self._write(f"len Value {format_inst(site.len_value)}\n")
            self._write(f"StructType : {site.len_st.name}\n")
        if site.from_value is not None:
            self._write(f"from Value {format_inst(site.from_value)}")
            if not isinstance(site.from_value, Instruction):
                for user in site.from_value.users:
                    if isinstance(user, Instruction) and user.module is not None:
                        self._write(f" in {user.module.name}")
                        break
            self._write("\n")
        if site.from_st is not None:
            self._write(f"StructType : {site.from_st.name}\n")
        self._write("\n")

    def dump_leak_info(self, info: StructInfo, allocable_only: bool) -> None:
        if allocable_only and not info.alloc_inst:
            return
        self._header(info)
        self._write("AllocInst:\n")
        self.dump_alloc_inst(info)
        self._write("LeakInst:\n")
        for offset, value, site in info.leak_info.sites():
            self._write(f"{format_inst(value)} {site.leak_type.description} at offset : {offset}\n")
            self.dump_site_info(site)

    def dump(self, info: StructInfo) -> None:
        if not info.leak_info:
            return
        self.dump_leak_info(info, True)
        self._write("\n\n")

    def dump_all(self, info: StructInfo) -> None:
        self.dump_leak_info(info, False)

    def dump_leak_checks(self, info: StructInfo) -> None:
        if not info.alloc_inst:
            return
        self._header(info)
        self.dump_check_chains(info)

    def dump_check_chains(self, info: StructInfo) -> None:
        for offset, sources in info.leak_info.items():
            self._banner(f"<<<<<<<<<<<<<<<<< Length offset: {offset} >>>>>>>>>>>>>>>>")
            for leak_site, site in sources.items():
                if not isinstance(leak_site, Instruction):
                    continue
                if not isinstance(site.len_value, Instruction):
                    continue
                self._banner("=================== Retrieve Site =================")
                self._write(format_inst(site.len_value) + "\n")
                self._banner("=================== Leak Site =================")
                self._write(format_inst(leak_site) + "\n")
                self._banner("=================== Checks ===================")
                self.dump_check_map(site.leak_check_map)

    def dump_check_map(self, check_map: CheckMap) -> None:
        for tag, checks in check_map.items():
            self._write(f"--------------- field offset: {tag}-------------\n")
            for inst, src in checks.items():
                self._write(format_inst(inst) + "\n")
                if isinstance(inst, ICmpInst):
                    parts = [render_cmp_src(v) for v in src.src1]
                    parts.append(render_pred(inst.predicate, src.branch_taken))
                    parts.extend(render_cmp_src(v) for v in src.src2)
                    self._write("".join(parts))
                self._write("\n------------------------------------------\n")

    def dump_simplified(self, info: StructInfo) -> None:
        if not info.alloc_inst:
            return
        for offset in info.leak_info.offsets():
            self._write(f"{info.name} {offset}\n")


# ═════════════════════════════════════════════════════════════════════════
#  PROGRAM-WIDE REPORTS
# ═════════════════════════════════════════════════════════════════════════

def write_report(
    analyzer: StructAnalyzer,
    stream: TextIO,
    checks: bool = False,
    color: bool = False,
) -> int:
    """Text report of every type with at least one allocation instruction."""
    reporter = StructReporter(stream, color)
    reported = 0
    for info in analyzer:
        if not info.alloc_inst:
            continue
        reporter.dump_leak_info(info, allocable_only=True)
        if checks:
            reporter.dump_check_chains(info)
        reported += 1
    logger.info("reported %d allocated types", reported)
    return reported


def write_alloc_caches(analyzer: StructAnalyzer, stream: TextIO) -> int:
    """One ``type_name,cache_name`` line per type with a resolved cache."""
    written = 0
    for info in analyzer:
        cache = info.get_alloc_cache()
        if not cache:
            continue
        stream.write(f"{info.name},{cache}\n")
        written += 1
    logger.info("resolved caches for %d of %d types", written, len(analyzer))
    return written


def _print_flagged(
    analyzer: StructAnalyzer,
    stream: TextIO,
    predicate: Callable[[StructInfo], bool],
    offsets: Callable[[StructInfo], Iterable[int]] = lambda info: (),
) -> int:
    count = 0
    for info in analyzer:
        if not predicate(info):
            continue
        listed = sorted(offsets(info))
        if listed:
            stream.write(f"{info.name} {' '.join(str(o) for o in listed)}\n")
        else:
            stream.write(f"{info.name}\n")
        count += 1
    return count


def print_struct_info(analyzer: StructAnalyzer, stream: TextIO) -> None:
    """Full expanded table of every descriptor, then the largest aggregate."""
    for info in analyzer:
        stream.write(
            f"{info.name}: {info.get_size()} fields, "
            f"{info.get_expanded_size()} expanded, alloc size {info.get_alloc_size()}\n"
        )
        for idx, entry in enumerate(info.fields):
            flags = "".join(
                mark for mark, on in (
                    ("A", entry.is_array), ("P", entry.is_pointer),
                    ("U", entry.is_union), ("F", entry.is_func_ptr),
                ) if on
            )
            line = f"  [{idx}] offset {entry.offset} size {entry.size} real {entry.real_size}"
            if flags:
                line += f" {flags}"
            stream.write(line + "\n")
    st, size = analyzer.max_struct()
    if st is not None:
        name = next((info.name for info in analyzer if info.real_type is st), scope_name(st))
        stream.write(f"largest aggregate: {name} ({size} expanded fields)\n")


def print_flexible_st(analyzer: StructAnalyzer, stream: TextIO) -> int:
    return _print_flagged(
        analyzer, stream,
        lambda info: info.flexible_struct_flag,
        lambda info: info.len_offset_by_flexible,
    )


def print_func_ptr_st(analyzer: StructAnalyzer, stream: TextIO) -> int:
    return _print_flagged(analyzer, stream, lambda info: info.has_func_ptr,
                          lambda info: info.func_ptr_offset)


def print_func_table_st(analyzer: StructAnalyzer, stream: TextIO) -> int:
    return _print_flagged(analyzer, stream, lambda info: info.is_func_table)


def print_refcnt_st(analyzer: StructAnalyzer, stream: TextIO) -> int:
    return _print_flagged(analyzer, stream, lambda info: info.has_refcount,
                          lambda info: info.refcount_offset)


def print_copyin_st(analyzer: StructAnalyzer, stream: TextIO) -> int:
    return _print_flagged(analyzer, stream, lambda info: info.controllable,
                          lambda info: info.controllable_offset)


def print_copyout_st(analyzer: StructAnalyzer, stream: TextIO) -> int:
    return _print_flagged(analyzer, stream, lambda info: info.leakable,
                          lambda info: info.leakable_offset)


def print_boundary_st(analyzer: StructAnalyzer, stream: TextIO) -> int:
    return _print_flagged(analyzer, stream, lambda info: info.has_boundary,
                          lambda info: info.boundary_offset)


def print_cred_st(analyzer: StructAnalyzer, stream: TextIO) -> int:
    return _print_flagged(analyzer, stream, lambda info: info.is_cred_obj)


def print_cred_st_info(analyzer: StructAnalyzer, stream: TextIO) -> int:
    """Credential offsets from the definition and from observed free sites."""
    count = 0
    for info in analyzer:
        if not info.is_cred_obj and not info.cred_free_offset:
            continue
        stream.write(f"[+] {info.name}\n")
        stream.write(f"cred offsets: {sorted(info.cred_offset)}\n")
        stream.write(f"cred free offsets: {sorted(info.cred_free_offset)}\n")
        for call in info.cred_free_site:
            stream.write(format_inst(call) + "\n")
        count += 1
    return count
