"""Packing of an Orbis ELF into a fake signed ELF (FSELF) container."""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass
from pathlib import Path

from .constants import (
    BLOCK_SIZE,
    PT_LOAD,
    PT_SCE_DYNLIBDATA,
    PT_SCE_RELRO,
    SELF_CONTROL_BLOCK_TYPE_NPDRM,
    SELF_DATA_LSB,
    SELF_ELF_HEADER_SIZE,
    SELF_ELF_PROGHEADER_SIZE,
    SELF_ENTRY_PROPERTY_BIT_BLOCKSIZE,
    SELF_ENTRY_PROPERTY_BIT_HASBLOCKS,
    SELF_ENTRY_PROPERTY_BIT_HASDIGESTS,
    SELF_ENTRY_PROPERTY_BIT_SEGMENT_INDEX,
    SELF_ENTRY_PROPERTY_BIT_SIGNED,
    SELF_ENTRY_SIZE,
    SELF_EXTENDED_HEADER_SIZE,
    SELF_HEADER_SIZE,
    SELF_MAGIC_SELF,
    SELF_META_BLOCK_SIZE,
    SELF_META_DATA_BLOCK_SIZE,
    SELF_META_FOOTER_SIZE,
    SELF_MODE_SPECIFICUSER,
    SELF_NPDRM_BLOCK_SIZE,
    SELF_SIGNATURE_SIZE,
    SelfProgramType,
)
from .elffile import ElfError, parse_elf

_MASK16 = 0xFFFF
_MASK64 = 0xFFFFFFFFFFFFFFFF

_SELF_HEADER = struct.Struct("<IBBBBIHHQHH")
_SELF_ENTRY = struct.Struct("<QQQQ")
_PROGRAM_HEADER = struct.Struct("<IIQQQQQQ")
_EXTENDED_INFO = struct.Struct("<QQQQ32s")
_NPDRM_BLOCK = struct.Struct("<H14s19s13s")
_META_FOOTER = struct.Struct("<48sI28s")
_SIGNATURE_PREFIX = struct.Struct("<QQ")

_SEGMENT_TYPES = frozenset({PT_LOAD, PT_SCE_RELRO, PT_SCE_DYNLIBDATA})
_HEADER_VERSION = 0
_HEADER_ATTRIBUTES = 0x12
_KEY_TYPE = 0x101
_SIGNED_BLOCK_COUNT = 0x2
_META_FOOTER_VALUE = 0x10000
_HEX_DIGITS = frozenset(b"0123456789abcdefABCDEF")


@dataclass
class SelfEntry:
    """An entry of the SELF entry table together with the bytes it describes."""

    properties: int
    offset: int = 0
    file_size: int = 0
    memory_size: int = 0
    data: bytes = b""


def align(value, alignment):
    """Round *value* up to a multiple of the power-of-two *alignment*."""
    return (value + (alignment - 1)) & ~(alignment - 1) & _MASK64


def ilog2(value):
    """Return the integer base-2 logarithm of *value* (0 for 0)."""
    signed = value - (1 << 64) if value & (1 << 63) else value
    return len(format(signed, "b")) - 1


def set_property(prop, bit, mask, value):
    """Return *prop* with ``value & mask`` or-ed in at bit position *bit*."""
    return (prop | ((value & mask) << bit)) & _MASK64


def _decode_hex(raw: bytes) -> bytes:
    """Decode hex pairs, leaving zeros from the first invalid pair onwards."""
    decoded = bytearray(len(raw) // 2)
    pairs = (raw[i:i + 2] for i in range(0, len(decoded) * 2, 2))
    for position, pair in enumerate(pairs):
        if not all(char in _HEX_DIGITS for char in pair):
            break
        decoded[position] = int(pair, 16)
    return bytes(decoded)


def create_signature(auth_info, paid):
    """Build the signature block from hex *auth_info* and the program authentication id.

    It holds the decoded length, the PAID, and the auth info minus its first
    eight bytes, padded with zeros to a multiple of 0x100.
    """
    auth_bytes = _decode_hex(auth_info.encode("utf-8"))
    if len(auth_bytes) < 8:
        raise ValueError("authentication info must hold at least 8 bytes")
    signature = bytearray(_SIGNATURE_PREFIX.pack(len(auth_bytes), paid & _MASK64))
    signature += auth_bytes[8:]
    signature += bytes(-len(signature) % SELF_SIGNATURE_SIZE)
    return bytes(signature)


def _pad(buffer: bytearray, alignment: int) -> None:
    buffer += bytes(-len(buffer) % alignment)


def _segment_bytes(data: bytes, program) -> bytes:
    end = program.offset + program.filesz
    if end > len(data):
        raise ElfError("segment extends past end of file")
    return data[program.offset:end]


def _resolve_program_type(program_type) -> SelfProgramType:
    if isinstance(program_type, SelfProgramType):
        return program_type
    return SelfProgramType.from_name(program_type)


def _layout_entries(data: bytes, programs, first_offset: int) -> tuple[list[SelfEntry], int]:
    """Create a meta and a data entry per loadable segment and place them from *first_offset*."""
    entries: list[SelfEntry] = []
    offset = first_offset
    for program_index, program in enumerate(programs):
        if program.type not in _SEGMENT_TYPES:
            continue

        meta_props = set_property(0, SELF_ENTRY_PROPERTY_BIT_SIGNED, 1, 1)
        meta_props = set_property(meta_props, SELF_ENTRY_PROPERTY_BIT_HASDIGESTS, 1, 1)
        meta_props = set_property(meta_props, SELF_ENTRY_PROPERTY_BIT_SEGMENT_INDEX, 0xFFFF, len(entries) + 1)

        data_props = set_property(0, SELF_ENTRY_PROPERTY_BIT_SIGNED, 1, 1)
        data_props = set_property(data_props, SELF_ENTRY_PROPERTY_BIT_HASBLOCKS, 1, 1)
        data_props = set_property(data_props, SELF_ENTRY_PROPERTY_BIT_BLOCKSIZE, 0xF, ilog2(BLOCK_SIZE) - 12)
        data_props = set_property(data_props, SELF_ENTRY_PROPERTY_BIT_SEGMENT_INDEX, 0xFFFF, program_index)

        num_blocks = align(program.filesz, BLOCK_SIZE) // BLOCK_SIZE
        meta_data = bytes(SELF_META_DATA_BLOCK_SIZE * num_blocks)
        meta = SelfEntry(meta_props, offset, len(meta_data), len(meta_data), meta_data)
        offset = align(offset + meta.file_size, 0x10)

        segment = _segment_bytes(data, program)
        data_entry = SelfEntry(data_props, offset, program.filesz, program.filesz, segment)
        offset = align(offset + data_entry.file_size, 0x10)

        entries += [meta, data_entry]
    return entries, offset


def build_fself(data, paid, program_type, app_version, fw_version, auth_info):
    """Return the FSELF container bytes for the Orbis ELF image *data*.

    *program_type* is a name such as ``npdrm_exec`` (unknown names give a
    fake type) or a SelfProgramType. An empty *auth_info* gives a zero signature.
    """
    data = bytes(data)
    elf = parse_elf(data)
    digest = hashlib.sha256(data).digest()
    signature = create_signature(auth_info, paid) if auth_info else bytes(SELF_SIGNATURE_SIZE)

    num_entries = 2 * sum(1 for p in elf.programs if p.type in _SEGMENT_TYPES)
    header_size = (
        SELF_HEADER_SIZE
        + num_entries * SELF_META_DATA_BLOCK_SIZE
        + SELF_ELF_HEADER_SIZE
        + len(elf.programs) * SELF_ELF_PROGHEADER_SIZE
    )
    header_size = align(header_size, 0x10) + SELF_EXTENDED_HEADER_SIZE + SELF_NPDRM_BLOCK_SIZE
    meta_size = num_entries * SELF_ENTRY_SIZE + SELF_META_FOOTER_SIZE + SELF_SIGNATURE_SIZE

    entries, file_size = _layout_entries(data, elf.programs, header_size + meta_size)
    flags = 0x2 | ((_SIGNED_BLOCK_COUNT & 0x7) << 4)

    out = bytearray(
        _SELF_HEADER.pack(
            SELF_MAGIC_SELF,
            _HEADER_VERSION,
            SELF_MODE_SPECIFICUSER,
            SELF_DATA_LSB,
            _HEADER_ATTRIBUTES,
            _KEY_TYPE,
            header_size & _MASK16,
            meta_size & _MASK16,
            file_size & _MASK64,
            len(entries) & _MASK16,
            flags & _MASK16,
        )
    )
    _pad(out, 0x10)
    for entry in entries:
        out += _SELF_ENTRY.pack(entry.properties, entry.offset, entry.file_size, entry.memory_size)

    out += data[:SELF_ELF_HEADER_SIZE]
    for program in elf.programs:
        out += _PROGRAM_HEADER.pack(
            program.type,
            program.flags,
            program.offset,
            program.vaddr,
            program.paddr,
            program.filesz,
            program.memsz,
            program.align,
        )
    _pad(out, 0x10)

    out += _EXTENDED_INFO.pack(
        paid & _MASK64,
        int(_resolve_program_type(program_type)),
        app_version & _MASK64,
        fw_version & _MASK64,
        digest,
    )
    out += _NPDRM_BLOCK.pack(SELF_CONTROL_BLOCK_TYPE_NPDRM, b"", b"", b"")
    out += bytes(SELF_META_BLOCK_SIZE * len(entries))
    out += _META_FOOTER.pack(b"", _META_FOOTER_VALUE, b"")
    out += signature

    for entry in entries:
        if not entry.data:
            continue
        end = entry.offset + len(entry.data)
        if len(out) < end:
            out += bytes(end - len(out))
        out[entry.offset:end] = entry.data

    return bytes(out)


def create_fself(is_library, elf_path, output_path, paid, program_type, app_version, fw_version, auth_info):
    """Read the Orbis ELF at *elf_path* and write its FSELF to *output_path*.

    *is_library* does not change the container layout. Returns the bytes written.
    """
    data = Path(elf_path).read_bytes()
    container = build_fself(data, paid, program_type, app_version, fw_version, auth_info)
    Path(output_path).write_bytes(container)
    return container