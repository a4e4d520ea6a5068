"""Generation of the .sce_dynlib_data segment: symbol, relocation, hash and dynamic tables."""

from __future__ import annotations

import struct
from dataclasses import dataclass

from .constants import (
    DF_TEXTREL,
    DT_DEBUG,
    DT_FINI,
    DT_FINI_ARRAY,
    DT_FINI_ARRAYSZ,
    DT_FLAGS,
    DT_INIT,
    DT_INIT_ARRAY,
    DT_INIT_ARRAYSZ,
    DT_NEEDED,
    DT_NULL,
    DT_PLTGOT,
    DT_PLTRELSZ,
    DT_RELA,
    DT_SCE_EXPORT_LIB,
    DT_SCE_EXPORT_LIB_ATTR,
    DT_SCE_EXPORT_MODULE,
    DT_SCE_FILENAME,
    DT_SCE_FINGERPRINT,
    DT_SCE_HASH,
    DT_SCE_HASHSZ,
    DT_SCE_IMPORT_LIB,
    DT_SCE_IMPORT_LIB_ATTR,
    DT_SCE_IMPORT_MODULE,
    DT_SCE_JMPREL,
    DT_SCE_MODULE_ATTR,
    DT_SCE_PLTGOT,
    DT_SCE_PLTREL,
    DT_SCE_PLTRELSZ,
    DT_SCE_RELA,
    DT_SCE_RELAENT,
    DT_SCE_RELASZ,
    DT_SCE_STRSZ,
    DT_SCE_STRTAB,
    DT_SCE_SYMENT,
    DT_SCE_SYMTAB,
    DT_SCE_SYMTABSZ,
    DT_TEXTREL,
    R_AMD64_64,
    SHN_UNDEF,
    STB_GLOBAL,
    STB_WEAK,
    STT_OBJECT,
    STT_SECTION,
)
from .elffile import ElfError
from .strtab import MODULE_STOP, StringTable, build_string_table

FINGERPRINT = "OPENORBIS-HOMEBREW"
FINGERPRINT_SIZE = 0x18
SYMBOL_ENTRY_SIZE = 0x18
RELA_ENTRY_SIZE = 0x18
NID_ENTRY_SIZE = 0x10

_MASK16 = 0xFFFF
_MASK32 = 0xFFFFFFFF
_MASK64 = 0xFFFFFFFFFFFFFFFF

_SYM = struct.Struct("<IBBHQQ")
_RELA = struct.Struct("<QQQ")
_DYN = struct.Struct("<QQ")
_HASH_WORD = struct.Struct("<I")


@dataclass
class TableOffsets:
    """Offsets (within the segment) and sizes of the tables the dynamic table points to."""

    linking_table: int = 0
    string_table: int = 0
    string_table_size: int = 0
    symbol_table: int = 0
    symbol_table_size: int = 0
    jump_table: int = 0
    jump_table_size: int = 0
    relocation_table: int = 0
    relocation_table_size: int = 0
    hash_table: int = 0
    hash_table_size: int = 0
    dynamic_table: int = 0
    dynamic_table_size: int = 0


@dataclass
class SymbolTable:
    """The encoded symbol table and the index of the Need_sceLibc entry, if any."""

    data: bytes
    need_libc_index: int | None = None

    @property
    def num_entries(self) -> int:
        return len(self.data) // SYMBOL_ENTRY_SIZE


@dataclass
class DynlibData:
    """A generated dynlib data segment and the layout of its tables."""

    data: bytes
    offsets: TableOffsets
    strings: StringTable
    symbols: SymbolTable
    base_offset: int = 0

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def dynamic_offset(self) -> int:
        return self.base_offset + self.offsets.dynamic_table

    @property
    def dynamic_size(self) -> int:
        return self.offsets.dynamic_table_size


def make_module_tag_value(name_offset, version_major, version_minor, module_id):
    """Pack a module tag: name offset, major and minor version, and module id."""
    return (
        (name_offset & _MASK32)
        | (version_major & 0xFF) << 32
        | (version_minor & 0xFF) << 40
        | (module_id & _MASK16) << 48
    )


def make_lib_tag_value(name_offset, version, library_id):
    """Pack a library tag: name offset, version and library id."""
    return (name_offset & _MASK32) | (version & _MASK16) << 32 | (library_id & _MASK16) << 48


def make_attr_tag_value(attr, tag_id):
    """Pack a module or library attribute tag."""
    return (attr & _MASK16) | (tag_id & _MASK16) << 48


def _pad(buffer: bytearray, alignment: int) -> None:
    buffer += bytes(-len(buffer) % alignment)


def _pack_symbol(name=0, info=0, other=0, shndx=0, value=0, size=0) -> bytes:
    return _SYM.pack(name & _MASK32, info & 0xFF, other & 0xFF, shndx & _MASK16, value & _MASK64, size & _MASK64)


def _pack_rela(offset: int, info: int, addend: int) -> bytes:
    return _RELA.pack(offset & _MASK64, info & _MASK64, addend & _MASK64)


def _is_exported(symbol) -> bool:
    return symbol.bind in (STB_GLOBAL, STB_WEAK) and symbol.value != 0


def _symbols_or_empty(read) -> list:
    try:
        return read()
    except ElfError:
        return []


def build_symbol_table(elf, nid_table_offset, index, is_library):
    """Build the SCE symbol table whose names point into the NID table."""
    table = bytearray(_pack_symbol())
    table += _pack_symbol(info=STT_SECTION)

    def nid_name(position: int) -> int:
        return nid_table_offset + position * NID_ENTRY_SIZE

    count = 0
    for symbol in _symbols_or_empty(elf.dynamic_symbols):
        if symbol.section != SHN_UNDEF:
            continue
        if symbol.name:
            table += _pack_symbol(name=nid_name(count), info=symbol.info)
            count += 1
        else:
            table += _pack_symbol()

    need_libc_index = None
    if "libc" in index.libraries:
        need_libc_index = count
        table += _pack_symbol(name=nid_name(count), info=(STB_GLOBAL << 4) | STT_OBJECT)
        count += 1

    if is_library:
        for symbol in filter(_is_exported, _symbols_or_empty(elf.symbols)):
            table += _pack_symbol(
                name=nid_name(count),
                info=symbol.info,
                other=symbol.other,
                shndx=symbol.section,
                value=symbol.value,
                size=symbol.size,
            )
            count += 1

        stop_offset = nid_name(count)
        start_offset = stop_offset + len(MODULE_STOP) + 1
        table += _pack_symbol(name=stop_offset, info=STB_WEAK << 4)
        table += _pack_symbol(name=start_offset, info=STB_WEAK << 4)

    return SymbolTable(data=bytes(table), need_libc_index=need_libc_index)


def _read_relocations(elf, name: str) -> list[tuple[int, int, int]] | None:
    section = elf.section(name)
    if section is None:
        return []
    try:
        blob = elf.section_data(section)
    except ElfError:
        return None
    if len(blob) % RELA_ENTRY_SIZE:
        raise ElfError(f"length of section {name!r} is not a multiple of the relocation entry size")
    order = "<" if elf.byte_order == "little" else ">"
    return list(struct.iter_unpack(order + "QQQ", blob))


def build_relocation_table(elf, need_libc_index, is_library):
    """Build the relocation table from .rela.plt, .rela.dyn and the Need_sceLibc entries.

    Symbol indices are shifted by one for the extra STT_SECTION symbol. If a
    relocation section cannot be read, the table is empty.
    """
    table = bytearray()
    for name in (".rela.plt", ".rela.dyn"):
        entries = _read_relocations(elf, name)
        if entries is None:
            return b""
        for offset, info, addend in entries:
            table += _pack_rela(offset, info + (1 << 32), addend)

    if need_libc_index is not None and need_libc_index >= 0:
        symbol_info = ((need_libc_index + 2) << 32) + R_AMD64_64
        libc = elf.find_symbol("_sceLibc")
        if not is_library:
            libc_param = elf.find_symbol("_sceLibcParam")
            param_value = libc_param.value if libc_param is not None else 0
            table += _pack_rela(param_value + 0x48, symbol_info, 0)
        table += _pack_rela(libc.value if libc is not None else 0, symbol_info, 0)

    return bytes(table)


def build_hash_table(num_entries):
    """Build a hash table with one bucket and a single chain through every symbol."""
    words = [1, num_entries, 1]
    if num_entries > 0:
        words.append(0)
        words.extend(range(2, num_entries))
        if num_entries > 1:
            words.append(0)
    return b"".join(_HASH_WORD.pack(word & _MASK32) for word in words)


def _optional_tag(elf, tag: int) -> int:
    try:
        return elf.dynamic_tag(tag)
    except ElfError:
        return 0


def build_dynamic_table(elf, offsets, strings, is_library):
    """Build the SCE dynamic table.

    Raises ElfError if the input has no PLTGOT tag and no .got.plt section.
    """
    entries: list[tuple[int, int]] = [
        (DT_SCE_HASH, offsets.hash_table),
        (DT_SCE_HASHSZ, offsets.hash_table_size),
        (DT_SCE_STRTAB, offsets.string_table),
        (DT_SCE_STRSZ, offsets.string_table_size),
        (DT_SCE_SYMTAB, offsets.symbol_table),
        (DT_SCE_SYMTABSZ, offsets.symbol_table_size),
        (DT_SCE_SYMENT, SYMBOL_ENTRY_SIZE),
        (DT_SCE_RELA, offsets.relocation_table),
        (DT_SCE_RELASZ, offsets.relocation_table_size),
        (DT_SCE_RELAENT, RELA_ENTRY_SIZE),
    ]

    if offsets.linking_table == 0:
        got_plt = elf.section(".got.plt")
        if got_plt is None:
            raise ElfError(".got.plt section must exist for SPRX")
        entries.append((DT_SCE_PLTGOT, got_plt.addr))
    else:
        entries.append((DT_SCE_PLTGOT, offsets.linking_table))

    entries += [
        (DT_SCE_JMPREL, offsets.jump_table),
        (DT_SCE_PLTRELSZ, offsets.jump_table_size),
        (DT_SCE_PLTREL, DT_RELA),
    ]

    for tag in (DT_INIT_ARRAY, DT_INIT_ARRAYSZ, DT_INIT, DT_FINI_ARRAY, DT_FINI_ARRAYSZ, DT_FINI):
        value = _optional_tag(elf, tag)
        if value != 0:
            entries.append((tag, value))

    entries.append((DT_DEBUG, 0))
    if not is_library:
        entries.append((DT_TEXTREL, 0))
    entries.append((DT_FLAGS, 0 if is_library else DF_TEXTREL))

    entries += [(DT_NEEDED, offset) for offset in strings.library_offsets]

    for module_id, offset in enumerate(strings.imported_module_offsets, start=1):
        entries.append((DT_SCE_IMPORT_MODULE, make_module_tag_value(offset, 1, 1, module_id)))

    if is_library:
        entries.append((DT_SCE_EXPORT_LIB, make_lib_tag_value(strings.project_name_offset, 1, 0)))
        entries.append((DT_SCE_EXPORT_LIB_ATTR, make_attr_tag_value(1, 0)))

    for library_id, offset in enumerate(strings.imported_library_offsets, start=1):
        entries.append((DT_SCE_IMPORT_LIB, make_lib_tag_value(offset, 1, library_id)))
        entries.append((DT_SCE_IMPORT_LIB_ATTR, make_attr_tag_value(0x9, library_id)))

    entries += [
        (DT_SCE_FINGERPRINT, 0),
        (DT_SCE_FILENAME, strings.file_name_offset),
        (DT_SCE_EXPORT_MODULE, make_module_tag_value(strings.project_name_offset, 1, 1, 0)),
        (DT_SCE_MODULE_ATTR, make_attr_tag_value(0, 0)),
        (DT_NULL, 0),
    ]
    return b"".join(_DYN.pack(tag & _MASK64, value & _MASK64) for tag, value in entries)


def generate_dynlib_data(elf, file_name, library_name, index, is_library, base_offset):
    """Build the complete dynlib data segment to be placed at *base_offset* in the file."""
    offsets = TableOffsets(
        linking_table=elf.dynamic_tag(DT_PLTGOT),
        jump_table_size=elf.dynamic_tag(DT_PLTRELSZ),
    )

    segment = bytearray(FINGERPRINT.encode("ascii").ljust(FINGERPRINT_SIZE, b"\0"))

    strings = build_string_table(elf, file_name, library_name, index, is_library)
    offsets.string_table = len(segment)
    offsets.string_table_size = strings.size
    segment += strings.data
    _pad(segment, 0x8)

    symbols = build_symbol_table(elf, strings.nid_table_offset, index, is_library)
    offsets.symbol_table = len(segment)
    offsets.symbol_table_size = len(symbols.data)
    segment += symbols.data

    relocations = build_relocation_table(elf, symbols.need_libc_index, is_library)
    offsets.jump_table = len(segment)
    offsets.relocation_table = len(segment) + offsets.jump_table_size
    offsets.relocation_table_size = (len(relocations) - offsets.jump_table_size) & _MASK64
    segment += relocations

    hash_table = build_hash_table(symbols.num_entries)
    offsets.hash_table = len(segment)
    offsets.hash_table_size = len(hash_table)
    segment += hash_table
    _pad(segment, 0x10)

    offsets.dynamic_table = len(segment)
    dynamic = build_dynamic_table(elf, offsets, strings, is_library)
    offsets.dynamic_table_size = len(dynamic)
    segment += dynamic

    return DynlibData(
        data=bytes(segment),
        offsets=offsets,
        strings=strings,
        symbols=symbols,
        base_offset=base_offset,
    )