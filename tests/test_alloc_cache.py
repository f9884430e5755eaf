# tests/test_alloc_cache.py
"""
Tests for slab cache classification: generic size classes and the
dedicated-cache name chain.
"""

import logging

import pytest

from slabstruct.alloc_cache import (
    AllocCacheClassifier,
    CacheNameResolver,
    size_class_name,
)
from slabstruct.analyzer import StructAnalyzer
from slabstruct.config import AnalyzerConfig
from slabstruct.errors import CacheResolutionError
from slabstruct.ir import (
    I8,
    I32,
    I64,
    ArrayType,
    CallInst,
    ConstantDataArray,
    ConstantExpr,
    ConstantInt,
    GlobalVariable,
    PointerType,
    Value,
)


class TestSizeClasses:

    @pytest.mark.parametrize("size,expected", [
        (1, "kmalloc-8"),
        (8, "kmalloc-8"),
        (9, "kmalloc-16"),
        (96, "kmalloc-128"),
        (256, "kmalloc-256"),
        (257, "kmalloc-1k"),
        (300, "kmalloc-1k"),
        (512, "kmalloc-1k"),
        (513, "kmalloc-2k"),
        (1023, "kmalloc-2k"),
        (1024, "kmalloc-2k"),
        (1025, "kmalloc-4k"),
        (2048, "kmalloc-4k"),
        (4096, "kmalloc-8k"),
        (4097, "kmalloc-8192"),
    ])
    def test_bucket(self, size, expected):
        assert size_class_name(size) == expected

    def test_zero_size_takes_smallest_class(self):
        assert size_class_name(0) == "kmalloc-8"

    def test_custom_minimum_shift(self):
        assert size_class_name(1, min_shift=5) == "kmalloc-32"


class TestGenericAllocations:

    def test_kmalloc_site_uses_size_class(self, builder):
        call = builder.kmalloc(300)
        assert AllocCacheClassifier().classify([call], 300) == "kmalloc-1k"

    def test_descriptor_alloc_cache(self, builder, analyzer):
        st = builder.module.create_struct("struct.foo", [ArrayType(I8, 300)])
        info = analyzer.get_struct_info(st, builder.module)
        info.add_alloc_site(builder.kmalloc(300, allocator="kzalloc"))
        assert info.get_alloc_size() == 300
        assert info.get_alloc_cache() == "kmalloc-1k"

    def test_explicit_alloc_size_wins(self, builder, analyzer):
        st = builder.module.create_struct("struct.foo", [I64])
        info = analyzer.get_struct_info(st, builder.module)
        info.set_alloc_size(2000)
        info.add_alloc_site(builder.kmalloc(2000))
        assert info.get_alloc_cache() == "kmalloc-4k"

    def test_no_sites(self):
        assert AllocCacheClassifier().classify([], 64) == ""

    def test_unknown_allocator(self, builder):
        call = builder.kmalloc(64, allocator="vmalloc")
        assert AllocCacheClassifier().classify([call], 64) == ""

    def test_indirect_call_skipped(self, builder):
        fptr = Value(PointerType(), "alloc_fn")
        call = builder.emit(CallInst(fptr, [ConstantInt(64)], type=PointerType(I8)))
        assert AllocCacheClassifier().classify([call], 64) == ""

    def test_registered_allocator(self, builder):
        call = builder.kmalloc(40, allocator="my_kmalloc")
        cfg = AnalyzerConfig().add_generic_allocator("my_kmalloc")
        assert AllocCacheClassifier(cfg).classify([call], 40) == "kmalloc-64"


class TestDedicatedCaches:

    def test_name_bytes_are_kept(self, builder):
        cachep = builder.cache_global("foo_cachep")
        raw = ConstantDataArray(b"caf\xff_cache\x00")
        text = builder.module.add_global(GlobalVariable(".str", raw.type, raw, constant=True))
        builder.create_cache(cachep, ConstantExpr.gep(text, 0, 0))
        name = CacheNameResolver().resolve(builder.cache_alloc(cachep))
        assert name.encode("utf-8", "surrogateescape") == b"caf\xff_cache"
        assert "\ufffd" not in name

    def test_named_cache(self, builder):
        cachep = builder.cache_global("foo_cachep")
        builder.create_named_cache(cachep, "foo_cache")
        call = builder.cache_alloc(cachep)
        assert AllocCacheClassifier().classify([call], 48) == "foo_cache"

    def test_named_cache_beats_generic_site(self, builder):
        cachep = builder.cache_global("foo_cachep")
        builder.create_named_cache(cachep, "foo_cache")
        sites = [builder.kmalloc(48), builder.cache_alloc(cachep)]
        assert AllocCacheClassifier().classify(sites, 48) == "foo_cache"

    def test_handle_passed_directly(self, builder):
        cachep = builder.cache_global("foo_cachep")
        builder.create_named_cache(cachep, "foo_cache")
        fn = builder.declare("kmem_cache_alloc", params=(builder.cache_ptr, I32))
        call = builder.emit(CallInst(fn, [cachep, ConstantInt(0, I32)]))
        assert CacheNameResolver().resolve(call) == "foo_cache"

    def test_handle_behind_bitcast(self, builder):
        cachep = builder.cache_global("foo_cachep")
        builder.create_named_cache(cachep, "foo_cache")
        fn = builder.declare("kmem_cache_alloc", params=(PointerType(I8), I32))
        cast = ConstantExpr.bitcast(cachep, PointerType(I8))
        call = builder.emit(CallInst(fn, [cast, ConstantInt(0, I32)]))
        assert CacheNameResolver().resolve(call) == "foo_cache"

    def test_string_global_passed_directly(self, builder):
        cachep = builder.cache_global("foo_cachep")
        text = builder.string_global("bar_cache")
        builder.create_cache(cachep, text)
        assert CacheNameResolver().resolve(builder.cache_alloc(cachep)) == "bar_cache"

    def test_creation_wrapper_matches_by_substring(self, builder):
        cachep = builder.cache_global("foo_cachep")
        text = builder.string_global("usercopy_cache")
        builder.create_cache(cachep, ConstantExpr.gep(text, 0, 0), create="kmem_cache_create_usercopy")
        assert CacheNameResolver().resolve(builder.cache_alloc(cachep)) == "usercopy_cache"

    def test_opaque_pointer_handle_accepted(self, builder):
        cachep = builder.module.add_global(GlobalVariable("opaque_cachep", PointerType()))
        builder.create_named_cache(cachep, "opaque_cache")
        assert CacheNameResolver().resolve(builder.cache_alloc(cachep)) == "opaque_cache"

    def test_first_resolved_site_wins(self, builder):
        a = builder.cache_global("a_cachep")
        b = builder.cache_global("b_cachep")
        builder.create_named_cache(a, "a_cache", str_name=".str.a")
        builder.create_named_cache(b, "b_cache", str_name=".str.b")
        sites = [builder.cache_alloc(a), builder.cache_alloc(b)]
        assert AllocCacheClassifier().classify(sites, 64) == "a_cache"

    def test_later_store_resolves(self, builder):
        cachep = builder.cache_global("foo_cachep")
        builder.create_cache(cachep, Value(PointerType(I8), "runtime_name"))
        builder.create_named_cache(cachep, "late_cache")
        assert CacheNameResolver().resolve(builder.cache_alloc(cachep)) == "late_cache"

    def test_registered_cache_allocator(self, builder):
        cachep = builder.cache_global("foo_cachep")
        builder.create_named_cache(cachep, "foo_cache")
        call = builder.cache_alloc(cachep, allocator="my_cache_alloc")
        assert AllocCacheClassifier().classify([call], 64) == ""
        cfg = AnalyzerConfig().add_cache_allocator("my_cache_alloc")
        assert AllocCacheClassifier(cfg).classify([call], 64) == "foo_cache"


class TestBrokenChains:

    def _resolve_error(self, call):
        with pytest.raises(CacheResolutionError) as excinfo:
            CacheNameResolver().resolve(call)
        return excinfo.value

    def test_handle_not_a_global(self, builder):
        fn = builder.declare("kmem_cache_alloc", params=(builder.cache_ptr, I32))
        local = Value(builder.cache_ptr, "c")
        call = builder.emit(CallInst(fn, [local, ConstantInt(0, I32)]))
        assert self._resolve_error(call).state == "handle"

    def test_handle_of_wrong_type(self, builder):
        other = builder.module.create_struct("struct.other", [I32])
        gv = builder.module.add_global(GlobalVariable("not_a_cache", PointerType(other)))
        fn = builder.declare("kmem_cache_alloc", params=(builder.cache_ptr, I32))
        call = builder.emit(CallInst(fn, [gv, ConstantInt(0, I32)]))
        assert self._resolve_error(call).state == "handle"

    def test_handle_never_assigned(self, builder):
        cachep = builder.cache_global("foo_cachep")
        assert self._resolve_error(builder.cache_alloc(cachep)).state == "global"

    def test_name_not_constant(self, builder):
        cachep = builder.cache_global("foo_cachep")
        builder.create_cache(cachep, Value(PointerType(I8), "runtime_name"))
        assert self._resolve_error(builder.cache_alloc(cachep)).state == "name_expr"

    def test_overindexing_gep(self, builder):
        cachep = builder.cache_global("foo_cachep")
        text = builder.string_global("foo_cache")
        builder.create_cache(cachep, ConstantExpr.gep(text, 0, 40, no_overindexing=False))
        assert self._resolve_error(builder.cache_alloc(cachep)).state == "name_expr"

    def test_mutable_name_global(self, builder):
        cachep = builder.cache_global("foo_cachep")
        text = builder.string_global("foo_cache", constant=False)
        builder.create_cache(cachep, ConstantExpr.gep(text, 0, 0))
        assert self._resolve_error(builder.cache_alloc(cachep)).state == "name_global"

    def test_initializer_not_characters(self, builder):
        cachep = builder.cache_global("foo_cachep")
        words = ConstantDataArray(b"\x01\x00\x02\x00", element=I32)
        gv = builder.module.add_global(GlobalVariable("words", words.type, words, constant=True))
        builder.create_cache(cachep, ConstantExpr.gep(gv, 0, 0))
        assert self._resolve_error(builder.cache_alloc(cachep)).state == "char_array"

    def test_broken_chain_falls_back_to_size_class(self, builder):
        cachep = builder.cache_global("foo_cachep")
        sites = [builder.cache_alloc(cachep), builder.kmalloc(100)]
        assert AllocCacheClassifier().classify(sites, 100) == "kmalloc-128"

    def test_broken_chain_is_logged(self, builder, caplog):
        cachep = builder.cache_global("foo_cachep")
        call = builder.cache_alloc(cachep)
        with caplog.at_level(logging.DEBUG, logger="slabstruct.alloc_cache"):
            assert AllocCacheClassifier().classify([call], 64) == ""
        assert "unresolved" in caplog.text
        assert "[global]" in caplog.text


class TestConfig:

    def test_default_families(self):
        cfg = AnalyzerConfig()
        assert cfg.is_generic_allocator("kmalloc")
        assert cfg.is_cache_allocator("kmem_cache_alloc")
        assert not cfg.is_generic_allocator("kmem_cache_alloc")
        assert not cfg.is_cache_allocator(None)

    def test_from_env(self):
        cfg = AnalyzerConfig.from_env({
            "SLABSTRUCT_GENERIC_ALLOCATORS": "my_kmalloc, my_kzalloc,",
            "SLABSTRUCT_CACHE_ALLOCATORS": "my_cache_alloc",
        })
        assert cfg.is_generic_allocator("my_kzalloc")
        assert cfg.is_generic_allocator("kmalloc")
        assert cfg.is_cache_allocator("my_cache_alloc")
        assert "" not in cfg.generic_allocators

    def test_from_env_reads_process_environment(self, monkeypatch):
        monkeypatch.setenv("SLABSTRUCT_CACHE_ALLOCATORS", "vendor_cache_alloc")
        assert AnalyzerConfig.from_env().is_cache_allocator("vendor_cache_alloc")

    def test_configs_do_not_share_sets(self):
        AnalyzerConfig().add_generic_allocator("only_here")
        assert not AnalyzerConfig().is_generic_allocator("only_here")

    def test_analyzer_config_reaches_descriptors(self, builder):
        cfg = AnalyzerConfig().add_generic_allocator("my_kmalloc")
        st = builder.module.create_struct("struct.foo", [I64, I64])
        info = StructAnalyzer(cfg).get_struct_info(st, builder.module)
        info.add_alloc_site(builder.kmalloc(16, allocator="my_kmalloc"))
        assert info.get_alloc_cache() == "kmalloc-16"
