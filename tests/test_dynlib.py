import struct

import pytest

from orbisfself.constants import (
    DF_TEXTREL,
    DT_FLAGS,
    DT_INIT,
    DT_NEEDED,
    DT_NULL,
    DT_PLTGOT,
    DT_PLTRELSZ,
    DT_SCE_EXPORT_LIB,
    DT_SCE_IMPORT_LIB,
    DT_SCE_IMPORT_MODULE,
    DT_SCE_PLTGOT,
    DT_TEXTREL,
    R_AMD64_64,
    SHT_DYNAMIC,
    SHT_DYNSYM,
    SHT_PROGBITS,
    SHT_RELA,
    SHT_STRTAB,
    SHT_SYMTAB,
    STB_GLOBAL,
    STB_LOCAL,
    STT_FUNC,
    STT_OBJECT,
    STT_SECTION,
)
from orbisfself.dynlib import (
    TableOffsets,
    build_dynamic_table,
    build_hash_table,
    build_relocation_table,
    build_symbol_table,
    generate_dynlib_data,
    make_attr_tag_value,
    make_lib_tag_value,
    make_module_tag_value,
)
from orbisfself.elffile import ElfError, parse_elf
from orbisfself.libraries import LibraryIndex
from orbisfself.strtab import StringTable

SYM = struct.Struct("<IBBHQQ")
GLOBAL_FUNC = (STB_GLOBAL << 4) | STT_FUNC


def _strtab(names):
    blob = bytearray(b"\0")
    offsets = {}
    for name in names:
        if name not in offsets:
            offsets[name] = len(blob)
            blob += name.encode() + b"\0"
    return bytes(blob), offsets


def _symtab(entries, offsets):
    out = SYM.pack(0, 0, 0, 0, 0, 0)
    for name, info, shndx, value in entries:
        out += SYM.pack(offsets[name], info, 0, shndx, value, 0)
    return out


def make_elf(dynsyms=(), syms=(), dynamic=(), needed=(), rela_plt=None, rela_dyn=None, got_plt_addr=None):
    dynstr, dynoff = _strtab([s[0] for s in dynsyms] + list(needed))
    strtab, stroff = _strtab([s[0] for s in syms])
    dyn = b"".join(struct.pack("<QQ", DT_NEEDED, dynoff[n]) for n in needed)
    dyn += b"".join(struct.pack("<QQ", t, v) for t, v in dynamic)
    dyn += struct.pack("<QQ", 0, 0)
    sections = [
        (".dynstr", SHT_STRTAB, dynstr, 0, 0),
        (".dynsym", SHT_DYNSYM, _symtab(dynsyms, dynoff), 1, 0),
        (".strtab", SHT_STRTAB, strtab, 0, 0),
        (".symtab", SHT_SYMTAB, _symtab(syms, stroff), 3, 0),
        (".dynamic", SHT_DYNAMIC, dyn, 1, 0),
    ]
    if rela_plt is not None:
        data = b"".join(struct.pack("<QQQ", *r) for r in rela_plt)
        sections.append((".rela.plt", SHT_RELA, data, 2, 0))
    if rela_dyn is not None:
        data = b"".join(struct.pack("<QQQ", *r) for r in rela_dyn)
        sections.append((".rela.dyn", SHT_RELA, data, 2, 0))
    if got_plt_addr is not None:
        sections.append((".got.plt", SHT_PROGBITS, bytes(8), 0, got_plt_addr))
    shstr, shnames = _strtab([s[0] for s in sections] + [".shstrtab"])
    sections.append((".shstrtab", SHT_STRTAB, shstr, 0, 0))

    body = bytearray(64)
    headers = [bytes(64)]
    for name, stype, data, link, addr in sections:
        body += bytes(-len(body) % 8)
        headers.append(
            struct.pack("<IIQQQQIIQQ", shnames[name], stype, 0, addr, len(body), len(data), link, 0, 8, 0)
        )
        body += data
    body += bytes(-len(body) % 8)
    shoff = len(body)
    shnum = len(headers)
    ident = b"\x7fELF" + bytes([2, 1, 1, 0]) + bytes(8)
    body[:64] = ident + struct.pack("<HHIQQQIHHHHHH", 2, 62, 1, 0, 0, shoff, 0, 64, 0x38, 0, 64, shnum, shnum - 1)
    return parse_elf(bytes(body) + b"".join(headers))


def make_index(with_libc=True):
    symbols = {"libkernel": ["sceKernelOpen"]}
    modules = ["libkernel"]
    if with_libc:
        symbols["libc"] = ["printf"]
        modules.append("libc")
    return LibraryIndex(
        symbols=symbols,
        library_modules={name: name for name in modules},
        modules=modules,
    )


def entries(blob):
    return list(SYM.iter_unpack(blob))


def dyn_entries(blob):
    return list(struct.iter_unpack("<QQ", blob))


def test_module_tag_value_layout():
    value = make_module_tag_value(0x10, 1, 1, 2)
    assert struct.pack("<Q", value) == struct.pack("<IBBH", 0x10, 1, 1, 2)


def test_lib_tag_value_layout_and_truncation():
    value = make_lib_tag_value(0x20, 1, 3)
    assert struct.pack("<Q", value) == struct.pack("<IHH", 0x20, 1, 3)
    wide = make_lib_tag_value(0x1_0000_0020, 1, 0x1_0003)
    assert wide == value


def test_attr_tag_value_layout():
    value = make_attr_tag_value(9, 4)
    assert struct.pack("<Q", value) == struct.pack("<HHHH", 9, 0, 0, 4)


@pytest.mark.parametrize("count", [0, 1, 2, 5, 9])
def test_hash_table_shape(count):
    blob = build_hash_table(count)
    words = [w for (w,) in struct.iter_unpack("<I", blob)]
    assert len(blob) == 12 + 4 * count
    assert words[:3] == [1, count, 1]
    if count:
        assert words[3] == 0
        assert words[-1] == 0


def test_hash_table_chain_links():
    words = [w for (w,) in struct.iter_unpack("<I", build_hash_table(4))]
    assert words[3:] == [0, 2, 3, 0]


def test_symbol_table_for_executable():
    elf = make_elf(
        dynsyms=[("printf", GLOBAL_FUNC, 0, 0), ("main", GLOBAL_FUNC, 5, 0x1000)],
        syms=[("main", GLOBAL_FUNC, 5, 0x1000)],
    )
    table = build_symbol_table(elf, 100, make_index(), False)
    rows = entries(table.data)
    assert table.num_entries == len(rows) == 4
    assert rows[0] == (0, 0, 0, 0, 0, 0)
    assert rows[1][1] == STT_SECTION
    assert rows[2][0] == 100 and rows[2][1] == GLOBAL_FUNC
    assert table.need_libc_index == 1
    assert rows[3][0] == 100 + 0x10
    assert rows[3][1] == (STB_GLOBAL << 4) | STT_OBJECT


def test_symbol_table_without_libc():
    elf = make_elf(dynsyms=[("sceKernelOpen", GLOBAL_FUNC, 0, 0)])
    table = build_symbol_table(elf, 40, make_index(with_libc=False), False)
    assert table.need_libc_index is None
    assert table.num_entries == 3


def test_relocation_table_shifts_symbol_index():
    elf = make_elf(
        rela_plt=[(0x2000, (1 << 32) | 7, 0)],
        rela_dyn=[(0x3000, 8, 0x40)],
    )
    rows = list(struct.iter_unpack("<QQQ", build_relocation_table(elf, None, False)))
    assert rows == [(0x2000, (2 << 32) | 7, 0), (0x3000, (1 << 32) | 8, 0x40)]


def test_relocation_table_need_libc_entries():
    elf = make_elf(syms=[("_sceLibc", GLOBAL_FUNC, 3, 0x5000), ("_sceLibcParam", GLOBAL_FUNC, 3, 0x6000)])
    rows = list(struct.iter_unpack("<QQQ", build_relocation_table(elf, 0, False)))
    info = (2 << 32) + R_AMD64_64
    assert rows == [(0x6000 + 0x48, info, 0), (0x5000, info, 0)]
    lib_rows = list(struct.iter_unpack("<QQQ", build_relocation_table(elf, 0, True)))
    assert lib_rows == [(0x5000, info, 0)]


def _strings():
    return StringTable(
        data=b"\0",
        library_offsets=[1, 15],
        imported_module_offsets=[24, 34],
        imported_library_offsets=[24, 34],
        project_name_offset=39,
        file_name_offset=43,
        nid_table_offset=52,
    )


def test_dynamic_table_requires_got_plt():
    elf = make_elf()
    with pytest.raises(ElfError):
        build_dynamic_table(elf, TableOffsets(), _strings(), True)


def test_dynamic_table_for_executable():
    elf = make_elf(got_plt_addr=0x8000, dynamic=[(DT_INIT, 0x1100)])
    rows = dyn_entries(build_dynamic_table(elf, TableOffsets(), _strings(), False))
    tags = dict(rows)
    assert tags[DT_SCE_PLTGOT] == 0x8000
    assert tags[DT_INIT] == 0x1100
    assert DT_TEXTREL in tags
    assert tags[DT_FLAGS] == DF_TEXTREL
    assert [v for t, v in rows if t == DT_NEEDED] == [1, 15]
    assert DT_SCE_EXPORT_LIB not in tags
    modules = [v for t, v in rows if t == DT_SCE_IMPORT_MODULE]
    assert modules == [make_module_tag_value(24, 1, 1, 1), make_module_tag_value(34, 1, 1, 2)]
    libs = [v for t, v in rows if t == DT_SCE_IMPORT_LIB]
    assert libs == [make_lib_tag_value(24, 1, 1), make_lib_tag_value(34, 1, 2)]
    assert rows[-1] == (DT_NULL, 0)


def test_dynamic_table_for_library():
    elf = make_elf()
    offsets = TableOffsets(linking_table=0x9000)
    rows = dyn_entries(build_dynamic_table(elf, offsets, _strings(), True))
    tags = dict(rows)
    assert tags[DT_SCE_PLTGOT] == 0x9000
    assert DT_TEXTREL not in tags
    assert tags[DT_FLAGS] == 0
    assert tags[DT_SCE_EXPORT_LIB] == make_lib_tag_value(39, 1, 0)


def _program_elf():
    return make_elf(
        dynsyms=[("printf", GLOBAL_FUNC, 0, 0)],
        syms=[("printf", GLOBAL_FUNC, 0, 0), ("_sceLibc", GLOBAL_FUNC, 3, 0x5000)],
        needed=["libc.so"],
        dynamic=[(DT_PLTGOT, 0x4000), (DT_PLTRELSZ, 24)],
        rela_plt=[(0x4018, (1 << 32) | 7, 0)],
    )


def test_generate_dynlib_data_layout():
    data = generate_dynlib_data(_program_elf(), "build/app.elf", "", make_index(), False, 0x10000)
    offsets = data.offsets
    assert data.data[:0x18] == b"OPENORBIS-HOMEBREW".ljust(0x18, b"\0")
    assert offsets.string_table == 0x18
    assert data.data[0x18:0x18 + offsets.string_table_size] == data.strings.data
    assert offsets.symbol_table % 8 == 0
    assert data.data[offsets.symbol_table:offsets.symbol_table + offsets.symbol_table_size] == data.symbols.data
    assert offsets.relocation_table == offsets.jump_table + offsets.jump_table_size
    assert offsets.hash_table == offsets.jump_table + offsets.jump_table_size + offsets.relocation_table_size
    assert offsets.dynamic_table % 0x10 == 0
    assert offsets.dynamic_table + offsets.dynamic_table_size == data.size == len(data.data)
    assert data.dynamic_offset == 0x10000 + offsets.dynamic_table
    assert data.data[-16:] == bytes(16)


def test_generate_dynlib_data_dynamic_points_at_tables():
    data = generate_dynlib_data(_program_elf(), "build/app.elf", "", make_index(), False, 0)
    table = data.data[data.offsets.dynamic_table:]
    tags = dict(dyn_entries(table))
    assert tags[DT_SCE_PLTGOT] == 0x4000
    assert tags[0x61000025] == data.offsets.hash_table
    assert tags[0x61000035] == data.offsets.string_table


def test_generate_dynlib_data_missing_library_raises():
    elf = make_elf(dynsyms=[("unknown_symbol", GLOBAL_FUNC, 0, 0)], dynamic=[(DT_PLTGOT, 0x4000)])
    with pytest.raises(ElfError):
        generate_dynlib_data(elf, "app.elf", "", make_index(), False, 0)