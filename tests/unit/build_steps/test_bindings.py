"""
Unit tests for cffi binding generation.

Runs the real pycparser/cffi pipeline on canned preprocessor output, with
the preprocessor itself replaced by the fake process runner.
"""

import re

import pytest
from pathlib import Path

import cffi

from rocksbuild.build.bindings import (
    NEUTRALIZING_DEFINES,
    SPDK_DENYLIST_TYPES,
    BindingDeclaration,
    BindingDenylist,
    BindingGenerator,
    GeneratedBindingSet,
    parse_int_literal,
    split_preprocessed,
)
from rocksbuild.errors import BindingGenerationError
from rocksbuild.process_runner import ProcessResult

DENYLIST = BindingDenylist(
    types=frozenset({"max_align_t", "bad_t"}),
    opaque_types=frozenset({"sgl_t"}),
    functions=frozenset({"rocksdb_denied"}),
    macros=frozenset({"FP_NAN"}),
    items=("IPPORT_.*",),
)


@pytest.fixture
def include_dir(tmp_path):
    """RocksDB-style include directory with an (empty) c.h."""
    inc = tmp_path.resolve() / "include"
    (inc / "rocksdb").mkdir(parents=True)
    (inc / "rocksdb" / "c.h").write_text("/* placeholder */\n")
    return inc


def canned_output(include_dir: Path) -> str:
    header = include_dir / "rocksdb" / "c.h"
    return f"""# 1 "<built-in>"
#define __STDC__ 1
# 1 "/usr/include/stdint.h" 1 3 4
typedef unsigned long uint64_t;
typedef unsigned long size_t;
#define UINT64_WIDTH 64
# 1 "/usr/include/sys/types.h" 1 3 4
typedef long my_off_t;
struct timespec_like {{ long sec; long nsec; }};
typedef int unused_t;
# 1 "{header}" 1
#pragma once
#define ROCKSDB_MAJOR 9
#define ROCKSDB_MINOR (0x2)
#define ROCKSDB_NAME "rocksdb"
#define ROCKSDB_STRINGIFY(x) #x
#define ROCKSDB_EMPTY
#define FP_NAN 0
#define IPPORT_ECHO 7
#define ROCKSDB_GONE 1
#undef ROCKSDB_GONE
typedef struct {{ long long a; long double b; }} max_align_t;
typedef struct rocksdb_t rocksdb_t;
typedef struct rocksdb_options_t rocksdb_options_t;
typedef enum {{ rocksdb_no_compression = 0, rocksdb_snappy_compression = 1 }} rocksdb_compression_t;
extern rocksdb_t* rocksdb_open(const rocksdb_options_t* options, const char* name, char** errptr);
extern void rocksdb_close(rocksdb_t* db);
extern uint64_t rocksdb_approximate_size(rocksdb_t* db, size_t n);
extern my_off_t rocksdb_offset(struct timespec_like* ts);
struct bad_t {{ int x; }};
extern void rocksdb_use_bad(struct bad_t* b);
typedef struct {{ int len; char data[16]; }} sgl_t;
extern void rocksdb_use_sgl(sgl_t* s);
extern int rocksdb_denied(void);
extern int IPPORT_helper;
static int rocksdb_hidden(void) {{ return 1; }}
"""


@pytest.fixture
def binding_set(include_dir, fake_runner):
    generator = BindingGenerator(fake_runner)
    return generator.build_binding_set(canned_output(include_dir), [include_dir], DENYLIST)


class TestSelection:
    """Which declarations reach the cdef."""

    def test_functions(self, binding_set):
        assert binding_set.names("function") == [
            "rocksdb_open",
            "rocksdb_close",
            "rocksdb_approximate_size",
            "rocksdb_offset",
            "rocksdb_use_sgl",
        ]

    def test_denylisted_function_omitted(self, binding_set):
        assert "rocksdb_denied" not in binding_set.names()

    def test_denylisted_type_and_dependents_omitted(self, binding_set):
        cdef = binding_set.render_cdef()
        assert "bad_t" not in cdef
        assert "rocksdb_use_bad" not in cdef

    def test_default_denied_type_omitted(self, binding_set):
        assert "max_align_t" not in binding_set.render_cdef()

    def test_item_pattern_applies_to_variables(self, binding_set):
        assert "IPPORT_helper" not in binding_set.names()

    def test_static_and_bodies_skipped(self, binding_set):
        assert "rocksdb_hidden" not in binding_set.render_cdef()

    def test_dependencies_from_other_headers(self, binding_set):
        cdef = binding_set.render_cdef()
        assert "typedef long my_off_t;" in cdef
        assert "struct timespec_like" in cdef
        assert "unused_t" not in cdef

    def test_known_types_not_redeclared(self, binding_set):
        cdef = binding_set.render_cdef()
        assert "typedef unsigned long uint64_t" not in cdef
        assert "typedef unsigned long size_t" not in cdef

    def test_opaque_type_forward_declared(self, binding_set):
        cdef = binding_set.render_cdef()
        assert "typedef struct sgl_t sgl_t;" in cdef
        assert "len" not in cdef

    def test_enum_kept(self, binding_set):
        assert "rocksdb_snappy_compression = 1" in binding_set.render_cdef()


class TestMacros:
    """Integer-literal macros only."""

    def test_values(self, binding_set):
        assert binding_set.macros == (("ROCKSDB_MAJOR", 9), ("ROCKSDB_MINOR", 2))

    def test_rendered_sorted_as_decimal(self, binding_set):
        lines = binding_set.render_cdef().splitlines()
        assert lines[-2:] == ["#define ROCKSDB_MAJOR 9", "#define ROCKSDB_MINOR 2"]


class TestOutput:
    """cffi validation and the written module."""

    def test_cffi_accepts(self, binding_set):
        ffi = cffi.FFI()
        ffi.cdef(binding_set.render_cdef())
        assert ffi.typeof("rocksdb_compression_t").kind == "enum"
        assert ffi.sizeof("rocksdb_t *") == ffi.sizeof("void *")

    def test_deterministic(self, include_dir, fake_runner):
        generator = BindingGenerator(fake_runner)
        first = generator.build_binding_set(canned_output(include_dir), [include_dir], DENYLIST)
        second = generator.build_binding_set(canned_output(include_dir), [include_dir], DENYLIST)
        assert first.render_module() == second.render_module()

    def test_validate_rejects_bad_cdef(self, fake_runner):
        broken = GeneratedBindingSet(
            declarations=(BindingDeclaration("function", "f", "void f(unknown_type_t x);"),),
            macros=(),
        )
        with pytest.raises(BindingGenerationError, match="cffi rejected"):
            BindingGenerator(fake_runner).validate(broken)

    def test_write_module(self, binding_set, fake_runner, tmp_path):
        path = BindingGenerator(fake_runner).write(binding_set, tmp_path / "out")
        assert path == tmp_path / "out" / "bindings.py"
        namespace = {}
        exec(compile(path.read_text(), str(path), "exec"), namespace)
        assert namespace["CDEF"].lstrip("\n") == binding_set.render_cdef()
        assert isinstance(namespace["ffi"], cffi.FFI)


class TestGenerate:
    """Preprocessing through the runner."""

    def test_generate(self, include_dir, fake_runner, tmp_path):
        fake_runner.on("cc", stdout=canned_output(include_dir))
        generator = BindingGenerator(fake_runner)
        binding_set = generator.generate(
            [include_dir / "rocksdb" / "c.h"], [include_dir], DENYLIST, tmp_path / "work"
        )
        assert "rocksdb_open" in binding_set.names()

        cmd = fake_runner.commands("cc")[0]
        assert cmd[:5] == ["cc", "-E", "-dD", "-x", "c"]
        assert f"-D{NEUTRALIZING_DEFINES[0]}" in cmd
        assert f"-I{include_dir}" in cmd
        umbrella = Path(cmd[-1])
        assert umbrella.read_text() == f'#include "{(include_dir / "rocksdb" / "c.h").as_posix()}"\n'

    def test_missing_header(self, fake_runner, tmp_path):
        with pytest.raises(BindingGenerationError, match="Header not found"):
            BindingGenerator(fake_runner).generate(
                [tmp_path / "nope.h"], [], BindingDenylist(), tmp_path
            )
        assert fake_runner.calls == []

    def test_preprocessor_failure(self, include_dir, fake_runner, tmp_path):
        fake_runner.on("clang", returncode=1, stderr="fatal error: 'stddef.h' file not found")
        with pytest.raises(BindingGenerationError, match="stddef.h"):
            BindingGenerator(fake_runner, cc="clang").generate(
                [include_dir / "rocksdb" / "c.h"], [include_dir], BindingDenylist(), tmp_path
            )

    def test_parse_failure(self, include_dir, fake_runner, tmp_path):
        fake_runner.on("cc", stdout="int (;\n")
        with pytest.raises(BindingGenerationError, match="parse"):
            BindingGenerator(fake_runner).generate(
                [include_dir / "rocksdb" / "c.h"], [include_dir], BindingDenylist(), tmp_path
            )


class TestDenylist:
    """Default and SPDK denylists."""

    def test_default(self):
        denylist = BindingDenylist.for_features({"snappy"})
        assert denylist.types == frozenset({"max_align_t"})
        assert denylist.items == ()

    def test_spdk(self):
        denylist = BindingDenylist.for_features({"spdk"})
        assert set(SPDK_DENYLIST_TYPES) < denylist.types
        assert "max_align_t" in denylist.types
        assert denylist.opaque_types == frozenset({"spdk_nvme_sgl_descriptor"})
        assert denylist.functions == frozenset({"spdk_nvme_ctrlr_get_data"})
        assert "FP_INFINITE" in denylist.macros

    def test_items_match_whole_name(self):
        denylist = BindingDenylist(items=("IPPORT_.*",))
        assert denylist.blocks_item("IPPORT_RESERVED")
        assert not denylist.blocks_item("MY_IPPORT_X")


class TestHelpers:
    """Literal parsing and output splitting."""

    @pytest.mark.parametrize("text,value", [
        ("9", 9),
        ("0", 0),
        ("(0x10UL)", 16),
        ("010", 8),
        ("-1", -1),
        ("( -4 )", -4),
        ("1ULL", 1),
        ("1.5", None),
        ("'a'", None),
        ("FOO", None),
        ("", None),
    ])
    def test_parse_int_literal(self, text, value):
        assert parse_int_literal(text) == value

    def test_split_preprocessed(self):
        text = '# 1 "/a.h"\n#define A 1\nint x;\n#pragma pack(1)\n# 5 "/b.h"\n#undef A\n'
        source, events = split_preprocessed(text)
        assert source.splitlines() == ['# 1 "/a.h"', "", "int x;", "", '# 5 "/b.h"', ""]
        assert events == [("A", "1", "/a.h"), ("A", None, "/b.h")]


STDINT = """# 1 "/usr/include/stdint.h" 1 3 4
typedef unsigned char uint8_t;
typedef unsigned short uint16_t;
typedef unsigned int uint32_t;
typedef unsigned long uint64_t;
"""


def packed_output(include_dir: Path) -> str:
    header = include_dir / "spdk" / "nvme_spec.h"
    return STDINT + f"""# 1 "{header}" 1
struct spdk_hdr {{
    uint8_t type;
    uint32_t len;
}} __attribute__((packed));
typedef struct __attribute__((__packed__)) {{ uint8_t kind; uint64_t addr; }} spdk_addr_t;
struct spdk_aligned {{ uint8_t a; uint64_t b __attribute__((aligned(16))); }};
struct spdk_holder {{ struct spdk_aligned inner; }};
#pragma pack(push, 1)
struct spdk_pragma {{ uint8_t a; uint16_t b; }};
#pragma pack(pop)
struct spdk_plain {{ uint8_t a; uint32_t b; }};
struct spdk_outer {{ uint8_t tag; struct spdk_hdr hdr; }};
extern void spdk_send(struct spdk_hdr* hdr) __attribute__((nonnull(1)));
extern void spdk_hold(struct spdk_holder* h);
extern int spdk_old(void) __attribute__((deprecated("use spdk_send")));
"""


def opaque_output(include_dir: Path) -> str:
    header = include_dir / "spdk" / "nvme.h"
    return STDINT + f"""# 1 "{header}" 1
struct spdk_nvme_sgl_descriptor {{ uint64_t address; uint32_t length; uint8_t reserved[3]; uint8_t type; }};
struct spdk_nvme_cmd {{ uint16_t cid; struct spdk_nvme_sgl_descriptor sgl1; }};
typedef struct spdk_nvme_sgl_descriptor sgl_alias_t;
struct spdk_nvme_wrapper {{ sgl_alias_t sgl; }};
extern void spdk_nvme_submit(struct spdk_nvme_cmd* cmd);
extern void spdk_nvme_sgl_dump(const struct spdk_nvme_sgl_descriptor* sgl);
"""


SGL_DENYLIST = BindingDenylist(opaque_types=frozenset({"spdk_nvme_sgl_descriptor"}))


def layout_compiler(size: int, align: int):
    """Answers `-fsyntax-only` layout checks as a compiler would."""
    def answer(args, cwd):
        text = Path(args[-1]).read_text()
        match = re.search(r"\((sizeof|__alignof__)\([^)]*\)\) <= (\d+)", text)
        value = size if match.group(1) == "sizeof" else align
        return ProcessResult(args, 0 if value <= int(match.group(2)) else 1)
    return answer


class TestPackedRecords:
    """Layout attributes survive into the generated bindings."""

    @pytest.fixture
    def packed_set(self, include_dir, fake_runner):
        return BindingGenerator(fake_runner).build_binding_set(
            packed_output(include_dir), [include_dir], BindingDenylist()
        )

    def test_packed_sizes(self, packed_set):
        ffi = packed_set.load()
        assert ffi.sizeof("struct spdk_hdr") == 5
        assert ffi.sizeof("spdk_addr_t") == 9
        assert ffi.sizeof("struct spdk_pragma") == 3
        assert ffi.offsetof("struct spdk_hdr", "len") == 1

    def test_natural_records_unchanged(self, packed_set):
        ffi = packed_set.load()
        assert ffi.sizeof("struct spdk_plain") == 8
        assert ffi.sizeof("struct spdk_outer") == 6
        assert ffi.new("struct spdk_outer *").hdr.len == 0

    def test_bodies_in_packed_cdef(self, packed_set):
        cdef = packed_set.render_cdef()
        packed_cdef = packed_set.render_packed_cdef()
        assert "struct spdk_hdr;" in cdef
        assert "typedef struct spdk_addr_t spdk_addr_t;" in cdef
        assert "uint32_t len;" in packed_cdef
        assert "uint32_t len;" not in cdef
        assert "struct spdk_plain" not in packed_cdef

    def test_inexpressible_layout_omitted(self, packed_set):
        text = packed_set.render_cdef() + packed_set.render_packed_cdef()
        assert "spdk_aligned" not in text
        assert "spdk_holder" not in text
        assert packed_set.names("function") == ["spdk_send", "spdk_old"]

    def test_validate(self, packed_set, fake_runner):
        BindingGenerator(fake_runner).validate(packed_set)

    def test_module_loads_packed_cdef(self, packed_set, fake_runner, tmp_path):
        path = BindingGenerator(fake_runner).write(packed_set, tmp_path)
        namespace = {}
        exec(compile(path.read_text(), str(path), "exec"), namespace)
        assert namespace["ffi"].sizeof("struct spdk_hdr") == 5
        assert "packed=True" in path.read_text()

    def test_module_without_packed_records(self, binding_set):
        assert "PACKED_CDEF" not in binding_set.render_module()


class TestOpaqueLayout:
    """Opaque types keep the compiler's size and alignment."""

    def test_sized_blob(self, include_dir, fake_runner):
        spellings = []

        def layouts(spelling):
            spellings.append(spelling)
            return (16, 8)

        binding_set = BindingGenerator(fake_runner).build_binding_set(
            opaque_output(include_dir), [include_dir], SGL_DENYLIST, measure=layouts
        )
        cdef = binding_set.render_cdef()
        assert spellings == ["struct spdk_nvme_sgl_descriptor"]
        assert "struct spdk_nvme_sgl_descriptor { uint64_t _opaque[2]; };" in cdef
        assert "address" not in cdef

        ffi = binding_set.load()
        assert ffi.sizeof("struct spdk_nvme_cmd") == 24
        assert ffi.new("struct spdk_nvme_cmd *").cid == 0
        assert ffi.sizeof("struct spdk_nvme_wrapper") == 16

    def test_unknown_size_drops_holders(self, include_dir, fake_runner):
        binding_set = BindingGenerator(fake_runner).build_binding_set(
            opaque_output(include_dir), [include_dir], SGL_DENYLIST
        )
        cdef = binding_set.render_cdef()
        assert "struct spdk_nvme_sgl_descriptor;" in cdef
        assert "typedef struct spdk_nvme_sgl_descriptor sgl_alias_t;" in cdef
        assert "spdk_nvme_cmd" not in cdef
        assert "spdk_nvme_wrapper" not in cdef
        assert binding_set.names("function") == ["spdk_nvme_sgl_dump"]
        BindingGenerator(fake_runner).validate(binding_set)

    def test_unsupported_alignment_left_incomplete(self, include_dir, fake_runner):
        binding_set = BindingGenerator(fake_runner).build_binding_set(
            opaque_output(include_dir), [include_dir], SGL_DENYLIST, measure=lambda s: (32, 16)
        )
        assert "spdk_nvme_cmd" not in binding_set.render_cdef()

    def test_generate_measures_with_compiler(self, include_dir, fake_runner, tmp_path):
        header = include_dir / "spdk" / "nvme.h"
        header.parent.mkdir(parents=True, exist_ok=True)
        header.write_text("/* nvme */\n")
        fake_runner.on(["cc", "-E"], stdout=opaque_output(include_dir))
        fake_runner.on(["cc", "-fsyntax-only"], side_effect=layout_compiler(16, 8))

        binding_set = BindingGenerator(fake_runner).generate(
            [header], [include_dir], SGL_DENYLIST, tmp_path / "work"
        )
        assert binding_set.load().sizeof("struct spdk_nvme_cmd") == 24

        checks = [c for c in fake_runner.commands("cc") if "-fsyntax-only" in c]
        assert checks
        assert all(f"-I{include_dir}" in c for c in checks)
        check_source = tmp_path / "work" / "layout_check" / "layout_check.c"
        assert f'#include "{header.as_posix()}"' in check_source.read_text()

    def test_layout_from_compiler(self, include_dir, fake_runner, tmp_path):
        fake_runner.on(["cc", "-fsyntax-only"], side_effect=layout_compiler(24, 4))
        found = BindingGenerator(fake_runner).measure_layout(
            "struct x", [include_dir / "rocksdb" / "c.h"], [include_dir], tmp_path
        )
        assert found == (24, 4)

    def test_layout_compiler_error(self, include_dir, fake_runner, tmp_path):
        fake_runner.on(["cc", "-fsyntax-only"], returncode=1, stderr="error: unknown type")
        found = BindingGenerator(fake_runner).measure_layout(
            "struct missing", [include_dir / "rocksdb" / "c.h"], [include_dir], tmp_path
        )
        assert found is None
        assert len(fake_runner.calls) == 1


class TestValidateLayout:
    """validate() completes every record."""

    def test_record_with_incomplete_member(self, fake_runner):
        broken = GeneratedBindingSet(
            declarations=(
                BindingDeclaration("type", "a", "struct a;"),
                BindingDeclaration("type", "b", "struct b { struct a inner; };", complete_type="struct b"),
            ),
            macros=(),
        )
        with pytest.raises(BindingGenerationError, match="cannot lay out struct b"):
            BindingGenerator(fake_runner).validate(broken)
