"""A small read-only ELF parser covering what the converter needs."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Iterator, NamedTuple

from .constants import (
    DT_NEEDED,
    ELF_MAGIC,
    ELFCLASS32,
    ELFCLASS64,
    ELFDATA2LSB,
    ELFDATA2MSB,
    EV_CURRENT,
    SHT_DYNAMIC,
    SHT_DYNSYM,
    SHT_NOBITS,
    SHT_STRTAB,
    SHT_SYMTAB,
)

_IDENT_SIZE = 16


class ElfError(ValueError):
    """Raised when an ELF image is malformed or lacks a requested part."""


@dataclass
class Section:
    """A section header."""

    name: str
    type: int
    flags: int
    addr: int
    offset: int
    size: int
    link: int
    info: int
    addralign: int
    entsize: int


@dataclass
class Symbol:
    """A symbol table entry."""

    name: str
    info: int
    other: int
    section: int
    value: int
    size: int

    @property
    def bind(self) -> int:
        return (self.info >> 4) & 0xF

    @property
    def type(self) -> int:
        return self.info & 0xF


@dataclass
class ProgramHeader:
    """A program header; mutable so converters can adjust it in place."""

    type: int
    flags: int
    offset: int
    vaddr: int
    paddr: int
    filesz: int
    memsz: int
    align: int


class _Layout(NamedTuple):
    header: struct.Struct
    program: struct.Struct
    section: struct.Struct
    symbol: struct.Struct
    dynamic: struct.Struct


@lru_cache(maxsize=None)
def _layout(elf_class: int, byte_order: str) -> _Layout:
    e = "<" if byte_order == "little" else ">"
    if elf_class == ELFCLASS64:
        return _Layout(
            header=struct.Struct(e + "HHIQQQIHHHHHH"),
            program=struct.Struct(e + "IIQQQQQQ"),
            section=struct.Struct(e + "IIQQQQIIQQ"),
            symbol=struct.Struct(e + "IBBHQQ"),
            dynamic=struct.Struct(e + "QQ"),
        )
    return _Layout(
        header=struct.Struct(e + "HHIIIIIHHHHHH"),
        program=struct.Struct(e + "IIIIIIII"),
        section=struct.Struct(e + "IIIIIIIIII"),
        symbol=struct.Struct(e + "IIIBBH"),
        dynamic=struct.Struct(e + "II"),
    )


def _unpack(layout: struct.Struct, data: bytes, offset: int, what: str) -> tuple:
    if offset < 0 or offset + layout.size > len(data):
        raise ElfError(f"truncated {what}")
    return layout.unpack_from(data, offset)


def _c_string(blob: bytes, offset: int) -> str:
    if offset >= len(blob):
        return ""
    end = blob.find(b"\0", offset)
    raw = blob[offset:] if end < 0 else blob[offset:end]
    return raw.decode("utf-8", "surrogateescape")


@dataclass
class ElfFile:
    """A parsed ELF image together with its raw bytes."""

    data: bytes
    elf_class: int
    byte_order: str
    os_abi: int
    type: int
    machine: int
    version: int
    entry: int
    flags: int
    phoff: int
    shoff: int
    shentsize: int
    shnum: int
    shstrndx: int
    programs: list[ProgramHeader] = field(default_factory=list)
    sections: list[Section] = field(default_factory=list)

    @property
    def _layout(self) -> _Layout:
        return _layout(self.elf_class, self.byte_order)

    def section(self, name):
        """Return the first section called *name*, or None."""
        return next((s for s in self.sections if s.name == name), None)

    def section_by_type(self, section_type):
        """Return the first section of *section_type*, or None."""
        return next((s for s in self.sections if s.type == section_type), None)

    def section_data(self, section):
        """Return the file contents of *section*."""
        if section.type == SHT_NOBITS:
            raise ElfError(f"section {section.name!r} has no data in the file")
        end = section.offset + section.size
        if end > len(self.data):
            raise ElfError(f"section {section.name!r} extends past end of file")
        return self.data[section.offset:end]

    def _linked_strings(self, section: Section) -> bytes:
        if not 0 <= section.link < len(self.sections):
            raise ElfError(f"section {section.name!r} links to a missing string table")
        return self.section_data(self.sections[section.link])

    def _read_symbols(self, section_type: int) -> list[Symbol]:
        section = self.section_by_type(section_type)
        if section is None:
            raise ElfError("no symbol section")
        blob = self.section_data(section)
        layout = self._layout.symbol
        if not blob:
            raise ElfError("symbol section is empty")
        if len(blob) % layout.size:
            raise ElfError("length of symbol section is not a multiple of the entry size")
        strings = self._linked_strings(section)
        symbols = []
        for fields in list(layout.iter_unpack(blob))[1:]:
            if self.elf_class == ELFCLASS64:
                name, info, other, shndx, value, size = fields
            else:
                name, value, size, info, other, shndx = fields
            symbols.append(Symbol(_c_string(strings, name), info, other, shndx, value, size))
        return symbols

    def symbols(self):
        """Return the static symbol table, without its leading null entry."""
        return self._read_symbols(SHT_SYMTAB)

    def dynamic_symbols(self):
        """Return the dynamic symbol table, without its leading null entry."""
        return self._read_symbols(SHT_DYNSYM)

    def _dynamic_entries(self) -> Iterator[tuple[int, int]]:
        section = self.section_by_type(SHT_DYNAMIC)
        if section is None:
            return
        blob = self.section_data(section)
        layout = self._layout.dynamic
        usable = len(blob) - len(blob) % layout.size
        yield from layout.iter_unpack(blob[:usable])

    def imported_libraries(self):
        """Return the DT_NEEDED library names in table order."""
        section = self.section_by_type(SHT_DYNAMIC)
        if section is None:
            return []
        strings = self._linked_strings(section)
        return [_c_string(strings, value) for tag, value in self._dynamic_entries() if tag == DT_NEEDED]

    def dynamic_tag(self, tag):
        """Return the value of the first dynamic entry with *tag*, or 0."""
        return next((value for t, value in self._dynamic_entries() if t == tag), 0)

    def find_symbol(self, name):
        """Return the static symbol called *name*, or None if absent."""
        try:
            symbols = self.symbols()
        except ElfError:
            return None
        return next((s for s in symbols if s.name == name), None)

    def find_program_header(self, header_type, header_flags):
        """Return the first program header with this type and exact flags, or None."""
        return next(
            (p for p in self.programs if p.type == header_type and p.flags == header_flags),
            None,
        )


def parse_elf(data):
    """Parse an ELF image held in memory."""
    data = bytes(data)
    if len(data) < _IDENT_SIZE or data[:4] != ELF_MAGIC:
        raise ElfError("bad magic number")
    elf_class = data[4]
    if elf_class not in (ELFCLASS32, ELFCLASS64):
        raise ElfError(f"unknown ELF class {elf_class}")
    encoding = data[5]
    if encoding == ELFDATA2LSB:
        byte_order = "little"
    elif encoding == ELFDATA2MSB:
        byte_order = "big"
    else:
        raise ElfError(f"unknown ELF data encoding {encoding}")
    if data[6] != EV_CURRENT:
        raise ElfError(f"unknown ELF version {data[6]}")

    layout = _layout(elf_class, byte_order)
    (
        elf_type,
        machine,
        version,
        entry,
        phoff,
        shoff,
        flags,
        _ehsize,
        phentsize,
        phnum,
        shentsize,
        shnum,
        shstrndx,
    ) = _unpack(layout.header, data, _IDENT_SIZE, "ELF header")
    if version != EV_CURRENT:
        raise ElfError(f"unknown ELF version {version}")
    if phnum and phentsize < layout.program.size:
        raise ElfError("invalid ELF phentsize")
    if shnum and shentsize < layout.section.size:
        raise ElfError("invalid ELF shentsize")
    if shnum and shstrndx >= shnum:
        raise ElfError("invalid ELF shstrndx")

    elf = ElfFile(
        data=data,
        elf_class=elf_class,
        byte_order=byte_order,
        os_abi=data[7],
        type=elf_type,
        machine=machine,
        version=version,
        entry=entry,
        flags=flags,
        phoff=phoff,
        shoff=shoff,
        shentsize=shentsize,
        shnum=shnum,
        shstrndx=shstrndx,
    )

    for i in range(phnum):
        fields = _unpack(layout.program, data, phoff + i * phentsize, "program header")
        if elf_class == ELFCLASS64:
            p_type, p_flags, offset, vaddr, paddr, filesz, memsz, align = fields
        else:
            p_type, offset, vaddr, paddr, filesz, memsz, p_flags, align = fields
        elf.programs.append(ProgramHeader(p_type, p_flags, offset, vaddr, paddr, filesz, memsz, align))

    raw_sections = [
        _unpack(layout.section, data, shoff + i * shentsize, "section header") for i in range(shnum)
    ]
    for name_offset, *rest in raw_sections:
        elf.sections.append(Section("", *rest))

    if elf.sections:
        names_section = elf.sections[shstrndx]
        if names_section.type != SHT_STRTAB:
            raise ElfError("invalid ELF section name string table type")
        names = elf.section_data(names_section)
        for section, (name_offset, *_) in zip(elf.sections, raw_sections):
            section.name = _c_string(names, name_offset)
    return elf


def read_elf(path):
    """Read and parse the ELF file at *path*."""
    return parse_elf(Path(path).read_bytes())