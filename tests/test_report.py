# tests/test_report.py
"""
Tests for the reporting surface: operand descriptions, predicate rendering,
per-type dumps and the program-wide listings.
"""

import io

import pytest

from slabstruct.errors import ContractViolation
from slabstruct.ir import (
    I8,
    I32,
    I64,
    ArrayType,
    BitCastInst,
    CallInst,
    ConstantInt,
    ConstantPointerNull,
    Function,
    FunctionType,
    GetElementPtrInst,
    GlobalVariable,
    ICmpInst,
    ICmpPredicate,
    LoadInst,
    Module,
    PointerType,
    StructType,
    Value,
)
from slabstruct.provenance import BranchTaken, LeakType, SiteInfo, record_check
from slabstruct.report import (
    StructReporter,
    describe_cmp_src,
    format_inst,
    print_boundary_st,
    print_cred_st,
    print_func_ptr_st,
    print_func_table_st,
    print_refcnt_st,
    print_struct_info,
    render_pred,
    write_alloc_caches,
    write_report,
)


class LeakScenario:
    """``struct.foo`` allocated by kmalloc and copied out under a length check."""

    def __init__(self, builder, analyzer):
        self.builder = builder
        m = builder.module
        self.st = m.create_struct("struct.foo", [I64, I32, ArrayType(I8, 64)])
        self.info = analyzer.get_struct_info(self.st, m)

        self.alloc = builder.kmalloc(80)
        obj = builder.emit(LoadInst(builder.module.add_global(
            GlobalVariable("foo_obj", PointerType(self.st))), name="obj"))
        self.len_gep = builder.emit(GetElementPtrInst(
            self.st, obj, [ConstantInt(0, I32), ConstantInt(1, I32)], name="len.addr"))
        self.length = builder.emit(LoadInst(self.len_gep, name="len"))
        self.cmp = builder.emit(ICmpInst(ICmpPredicate.ULT, self.length, ConstantInt(64), name="cmp"))
        copy = builder.declare("copy_to_user", ret=I64, params=(PointerType(I8), PointerType(I8), I64))
        self.leak = builder.emit(CallInst(copy, [ConstantInt(0), ConstantInt(0), self.length], name="ret"))

        self.info.add_alloc_site(self.alloc)
        self.info.add_alloc_inst(self.alloc)
        self.info.add_leak_inst(self.leak)
        self.site = SiteInfo(
            leak_type=LeakType.HEAP_SAME_OBJ,
            from_st=self.st,
            from_value=obj,
            len_st=self.st,
            len_value=self.length,
        )
        record_check(self.site.leak_check_map, "8", self.cmp,
                     [self.len_gep], [ConstantInt(64)], BranchTaken.TRUE)
        self.info.add_leak_source_info(8, self.leak, self.site)


@pytest.fixture
def scenario(builder, analyzer):
    return LeakScenario(builder, analyzer)


class TestOperandDescriptions:

    def test_struct_field(self, scenario):
        assert describe_cmp_src(scenario.len_gep) == "<struct.foo, 1>"

    def test_constants(self):
        assert describe_cmp_src(ConstantInt(64)) == "<C, 64>"
        assert describe_cmp_src(ConstantPointerNull()) == "<C, null>"

    def test_calls(self, builder):
        strlen = builder.declare("strlen", ret=I64, params=(PointerType(I8),))
        call = builder.emit(CallInst(strlen, [ConstantPointerNull()], name="n"))
        assert describe_cmp_src(call) == "<CallInst, strlen>"

    def test_intrinsic(self, builder):
        objsize = builder.declare("llvm.objectsize.i64", ret=I64, params=(PointerType(I8),))
        call = builder.emit(CallInst(objsize, [ConstantPointerNull()], name="sz"))
        assert describe_cmp_src(call) == "<Intrinsic, llvm.objectsize.i64>"

    def test_indirect_call(self, builder):
        call = builder.emit(CallInst(Value(PointerType(), "fp"), [], name="r", type=I64))
        assert describe_cmp_src(call).startswith("<CallInst, %r = call i64 %fp(")

    def test_argument_and_bitcast(self, builder):
        fn = Function("ioctl", FunctionType(I64, (I64,)), ["arg"])
        assert describe_cmp_src(fn.arg(0)) == "<Arg, i64 %arg>"
        cast = BitCastInst(fn.arg(0), PointerType(I8), name="p")
        assert describe_cmp_src(cast).startswith("<BitCast, %p = bitcast %arg to ")

    def test_anything_else(self, scenario):
        assert describe_cmp_src(scenario.length).startswith("<Unknown, %len = load")

    def test_gep_over_non_struct_rejected(self, builder):
        arr = Value(PointerType(I8), "buf")
        gep = builder.emit(GetElementPtrInst(I8, arr, [ConstantInt(4)], name="p"))
        with pytest.raises(ContractViolation):
            describe_cmp_src(gep)


class TestPredicates:

    @pytest.mark.parametrize("pred,branch,expected", [
        (ICmpPredicate.ULT, BranchTaken.TRUE, " [<] "),
        (ICmpPredicate.ULT, BranchTaken.FALSE, " [>=] "),
        (ICmpPredicate.ULT, BranchTaken.BOTH, " [<]* "),
        (ICmpPredicate.SGT, BranchTaken.FALSE, " [<=] "),
        (ICmpPredicate.EQ, BranchTaken.FALSE, " [!=] "),
        (ICmpPredicate.UGE, BranchTaken.TRUE, " [>=] "),
    ])
    def test_render(self, pred, branch, expected):
        assert render_pred(pred, branch) == expected


class TestDumps:

    def test_format_inst_appends_location(self, scenario):
        text = format_inst(scenario.alloc)
        assert text.startswith("%obj.raw = call i8* @kmalloc(80, 3264)")
        assert text.endswith("  drivers/foo.c:101")

    def test_dump_leak_info(self, scenario):
        out = io.StringIO()
        StructReporter(out).dump_leak_info(scenario.info, allocable_only=True)
        lines = out.getvalue().splitlines()
        assert lines[0] == "[+] struct.foo"
        assert lines[1] == "AllocInst:"
        assert lines[2] == format_inst(scenario.alloc)
        assert lines[3] == "LeakInst:"
        assert lines[4].endswith("Leaking from the same object in the HEAP at offset : 8")
        assert "len Value %len = load" in out.getvalue()
        assert "StructType : struct.foo" in out.getvalue()

    def test_allocable_only_skips_unallocated(self, analyzer, module):
        st = module.create_struct("struct.bar", [I64])
        out = io.StringIO()
        StructReporter(out).dump_leak_info(analyzer.get_struct_info(st, module), allocable_only=True)
        assert out.getvalue() == ""

    def test_dump_without_leaks_is_silent(self, analyzer, module):
        st = module.create_struct("struct.bar", [I64])
        out = io.StringIO()
        StructReporter(out).dump(analyzer.get_struct_info(st, module))
        assert out.getvalue() == ""

    def test_dump_leak_inst(self, scenario):
        out = io.StringIO()
        reporter = StructReporter(out)
        reporter.dump_leak_inst(scenario.info)
        assert out.getvalue() == f"{scenario.leak}\n"

    def test_check_chain(self, scenario):
        out = io.StringIO()
        StructReporter(out).dump_leak_checks(scenario.info)
        text = out.getvalue()
        assert "<<<<<<<<<<<<<<<<< Length offset: 8 >>>>>>>>>>>>>>>>" in text
        assert "=================== Retrieve Site =================" in text
        assert "--------------- field offset: 8-------------" in text
        assert "| <struct.foo, 1> | [<] | <C, 64> |" in text.splitlines()

    def test_simplified(self, scenario):
        out = io.StringIO()
        StructReporter(out).dump_simplified(scenario.info)
        assert out.getvalue() == "struct.foo 8\n"

    def test_color_keeps_text(self, scenario):
        out = io.StringIO()
        StructReporter(out, color=True).dump_leak_info(scenario.info, allocable_only=False)
        assert "[+] struct.foo" in out.getvalue()


class TestProgramReports:

    def test_write_report(self, scenario, analyzer, module):
        module.create_struct("struct.quiet", [I32])
        analyzer.run(module)
        out = io.StringIO()
        assert write_report(analyzer, out, checks=True) == 1
        text = out.getvalue()
        assert "[+] struct.foo" in text
        assert "struct.quiet" not in text
        assert "| <struct.foo, 1> | [<] | <C, 64> |" in text

    def test_write_alloc_caches(self, scenario, analyzer, builder):
        cachep = builder.cache_global("bar_cachep")
        builder.create_named_cache(cachep, "bar_cache")
        bar = builder.module.create_struct("struct.bar", [I64])
        bar_info = analyzer.get_struct_info(bar, builder.module)
        bar_info.add_alloc_site(builder.cache_alloc(cachep))
        out = io.StringIO()
        assert write_alloc_caches(analyzer, out) == 2
        assert out.getvalue().splitlines() == [
            "struct.foo,kmalloc-128",
            "struct.bar,bar_cache",
        ]

    def test_print_struct_info(self, nested_module, analyzer):
        m, _, _ = nested_module
        analyzer.run(m)
        out = io.StringIO()
        print_struct_info(analyzer, out)
        text = out.getvalue()
        assert "struct.outer: 4 fields, 6 expanded, alloc size 40" in text
        assert "  [5] offset 32 size 1 real 8 P" in text
        assert text.splitlines()[-1] == "largest aggregate: struct.outer (6 expanded fields)"

    def test_literal_largest_aggregate_names_its_module(self, analyzer):
        m = Module("net/lit.ll")
        literal = StructType("", [I32, I64, I8])
        analyzer.get_struct_info(literal, m)
        out = io.StringIO()
        print_struct_info(analyzer, out)
        assert out.getvalue().splitlines()[-1] == (
            "largest aggregate: net/lit.ll:{ i32, i64, i8 } (3 expanded fields)"
        )

    def test_flag_listings(self, analyzer, module):
        ops = module.create_struct("struct.ops", [PointerType(FunctionType(I64))])
        atomic = module.create_struct("struct.atomic_t", [I32])
        obj = module.create_struct("struct.obj", [I64, atomic])
        analyzer.run(module)
        analyzer.get_struct_info(obj, module).mark_boundary(0)

        out = io.StringIO()
        assert print_func_ptr_st(analyzer, out) == 1
        assert print_func_table_st(analyzer, out) == 1
        assert print_refcnt_st(analyzer, out) == 1
        assert print_boundary_st(analyzer, out) == 1
        assert print_cred_st(analyzer, out) == 0
        assert out.getvalue().splitlines() == [
            "struct.ops 0",
            "struct.ops",
            "struct.obj 8",
            "struct.obj 0",
        ]
        assert ops is analyzer.get_struct_type("struct.ops")
