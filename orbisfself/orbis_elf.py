"""Conversion of a linked x86-64 ELF into an Orbis ELF (OELF)."""

from __future__ import annotations

import struct
from dataclasses import replace

from .constants import (
    ELFCLASS64,
    EM_X86_64,
    ET_SCE_DYNAMIC,
    ET_SCE_EXEC_ASLR,
    PF_R,
    PF_W,
    PF_X,
    PT_DYNAMIC,
    PT_GNU_EH_FRAME,
    PT_GNU_RELRO,
    PT_GNU_STACK,
    PT_INTERP,
    PT_LOAD,
    PT_SCE_DYNLIBDATA,
    PT_SCE_MODULE_PARAM,
    PT_SCE_PROC_PARAM,
    PT_SCE_RELRO,
    PT_TLS,
    SHT_DYNAMIC,
)
from .dynlib import generate_dynlib_data as _build_dynlib
from .elffile import ElfError, ProgramHeader, read_elf
from .libraries import build_library_index

PAGE_ALIGN = 0x4000

_MASK64 = 0xFFFFFFFFFFFFFFFF

_ELF_HEADER = struct.Struct("<16sHHIQQQIHHHHHH")
_PROGRAM_HEADER = struct.Struct("<IIQQQQQQ")
_SECTION_HEADER = struct.Struct("<IIQQQQIIQQ")

_ELF_HEADER_SIZE = 0x40
_PROGRAM_HEADER_OFFSET = 0x40
_PROGRAM_HEADER_SIZE = 0x38
_ORBIS_IDENT = bytes([0x7F, 0x45, 0x4C, 0x46, 0x02, 0x01, 0x01, 0x09]) + bytes(8)

_INTERPRETER_SIZE = 0x20
_INTERPRETER_HEADER_SIZE = 0x15
_SDK_VERSION_OFFSET = 0x10
_TLS_ALIGN = 0x20

_PROCESS_PARAM_SECTION = ".data.sce_process_param"
_MODULE_PARAM_SECTION = ".data.sce_module_param"
_RELRO_SECTION = ".data.rel.ro"

_UNKNOWN_PRIORITY = 2**31 - 1
_PRIORITY_ORDER = (
    PT_LOAD,
    PT_SCE_RELRO,
    PT_LOAD,
    PT_SCE_PROC_PARAM,
    PT_SCE_MODULE_PARAM,
    PT_DYNAMIC,
    PT_INTERP,
    PT_TLS,
    PT_GNU_EH_FRAME,
    PT_SCE_DYNLIBDATA,
)


def _align(value: int, alignment: int) -> int:
    return (value + alignment - 1) & ~(alignment - 1)


def _is_rw_data(section) -> bool:
    return section.name.startswith(".data") and section.name != _RELRO_SECTION


def validate_elf(elf):
    """Raise ElfError unless *elf* is a little-endian, 64-bit x86-64 image."""
    if elf.byte_order != "little":
        raise ElfError("byte order must be little endian")
    if elf.machine != EM_X86_64:
        raise ElfError("architecture must be x86_64 / AMD64")
    if elf.elf_class != ELFCLASS64:
        raise ElfError("elf must be a 64-bit elf")


def program_header_priority(header_type, header_flags):
    """Return the sort position of a program header in the final table.

    The first PT_LOAD slot is for code, the second for read-write data.
    Unknown types sort last.
    """
    for position, wanted in enumerate(_PRIORITY_ORDER):
        if wanted != header_type:
            continue
        if wanted == PT_LOAD and position == 0 and header_flags == PF_R | PF_W:
            continue
        return position
    return _UNKNOWN_PRIORITY


class OrbisElf:
    """An ELF being rewritten into an Orbis ELF at *output_path*.

    The input is validated and copied to the output on construction; the
    generate and rewrite steps then patch the output in place.
    """

    def __init__(self, is_library, input_path, output_path, library_name="", extra_library_to_module=None):
        self.elf = read_elf(input_path)
        validate_elf(self.elf)
        self.is_library = bool(is_library)
        self.input_path = str(input_path)
        self.output_path = str(output_path)
        self.library_name = library_name or ""
        self.extra_library_to_module = dict(extra_library_to_module or {})
        self.program_headers: list[ProgramHeader] = []
        self.dynlib = None
        self._file = open(output_path, "w+b")
        self._file.write(self.elf.data)
        self.written_bytes = len(self.elf.data)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    @property
    def dynlib_offset(self) -> int:
        return self.dynlib.base_offset if self.dynlib else 0

    @property
    def dynlib_size(self) -> int:
        return self.dynlib.size if self.dynlib else 0

    @property
    def dynamic_offset(self) -> int:
        return self.dynlib.dynamic_offset if self.dynlib else 0

    @property
    def dynamic_size(self) -> int:
        return self.dynlib.dynamic_size if self.dynlib else 0

    @property
    def _param_section_name(self) -> str:
        return _MODULE_PARAM_SECTION if self.is_library else _PROCESS_PARAM_SECTION

    def _write_at(self, offset: int, data: bytes) -> None:
        self._file.seek(offset)
        self._file.write(data)

    def _section_offset(self, name: str) -> int:
        section = self.elf.section(name)
        if section is None:
            raise ElfError("tried to access a non-existent section")
        return section.offset

    def generate_dynlib_data(self, sdk_path, library_path):
        """Build the .sce_dynlib_data segment and append it to the output."""
        index = build_library_index(self.elf, sdk_path, library_path, self.extra_library_to_module)
        self.dynlib = _build_dynlib(
            self.elf,
            self.input_path,
            self.library_name,
            index,
            self.is_library,
            self.written_bytes,
        )
        self._write_at(self.written_bytes, self.dynlib.data)
        return self.dynlib

    def generate_program_headers(self):
        """Compute the Orbis program header table from the input's headers and sections."""
        elf = self.elf
        text = elf.section(".text")
        relro = elf.section(_RELRO_SECTION)
        param = elf.section(self._param_section_name)
        bss = elf.section(".bss")

        data_sections = [s for s in elf.sections if _is_rw_data(s)]
        if not data_sections:
            raise ElfError("no read-write .data section")
        if param is None:
            raise ElfError(f"missing section {self._param_section_name}")
        if text is None and not self.is_library:
            raise ElfError("missing section .text")
        gnu_relro = elf.find_program_header(PT_GNU_RELRO, PF_R)
        if gnu_relro is None:
            raise ElfError("missing read-only GNU_RELRO program header")

        first, last = data_sections[0], data_sections[-1]
        all_data_filesz = (last.offset - first.offset) + last.size
        all_data_memsz = (last.addr - first.addr) + last.size
        if bss is not None:
            all_data_memsz += _align(bss.size, 16)
        relro_memsz = _align(gnu_relro.memsz, PAGE_ALIGN)

        headers = []
        for original in elf.programs:
            header = replace(original)
            if header.type == PT_LOAD and header.flags == PF_R:
                continue
            if header.type == PT_LOAD and header.offset == gnu_relro.offset:
                if header.memsz <= relro_memsz:
                    continue
                header.offset += relro_memsz
                header.vaddr += relro_memsz
                header.paddr = 0
                header.filesz = max(header.filesz - relro_memsz, 0)
                header.memsz -= relro_memsz
            if header.type == PT_GNU_RELRO and relro is None:
                continue
            if header.type == PT_GNU_STACK:
                continue
            headers.append(header)

        for header in headers:
            if header.type == PT_DYNAMIC:
                header.offset = header.vaddr = header.paddr = self.dynamic_offset
                header.filesz = header.memsz = self.dynamic_size
            if header.type == PT_GNU_RELRO:
                header.type = PT_SCE_RELRO
                expanded = (first.offset - header.offset) & _MASK64
                header.filesz = header.memsz = expanded
                header.align = PAGE_ALIGN
            if header.type == PT_LOAD:
                header.align = PAGE_ALIGN
                if header.flags == PF_R | PF_X and relro is not None:
                    expanded = (relro.offset - header.offset) & _MASK64
                    header.filesz = header.memsz = expanded
                if header.flags == PF_R | PF_W:
                    header.offset = first.offset
                    header.vaddr = header.paddr = first.addr
                    header.filesz = all_data_filesz
                    header.memsz = all_data_memsz

        headers.append(
            ProgramHeader(
                type=PT_SCE_MODULE_PARAM if self.is_library else PT_SCE_PROC_PARAM,
                flags=PF_R,
                offset=param.offset,
                vaddr=param.addr,
                paddr=param.addr,
                filesz=param.size,
                memsz=param.size,
                align=0x8,
            )
        )
        headers.append(
            ProgramHeader(
                type=PT_SCE_DYNLIBDATA,
                flags=PF_R,
                offset=self.dynlib_offset,
                vaddr=0,
                paddr=0,
                filesz=self.dynlib_size,
                memsz=0,
                align=0x10,
            )
        )
        if not self.is_library:
            headers.append(
                ProgramHeader(
                    type=PT_INTERP,
                    flags=PF_R,
                    offset=text.offset,
                    vaddr=0,
                    paddr=0,
                    filesz=_INTERPRETER_HEADER_SIZE,
                    memsz=_INTERPRETER_HEADER_SIZE,
                    align=1,
                )
            )

        self.program_headers = sorted(headers, key=lambda h: program_header_priority(h.type, h.flags))
        return self.program_headers

    def rewrite_elf_header(self):
        """Overwrite the ELF header with the Orbis type, identifier and header count."""
        elf = self.elf
        header = _ELF_HEADER.pack(
            _ORBIS_IDENT,
            ET_SCE_DYNAMIC if self.is_library else ET_SCE_EXEC_ASLR,
            EM_X86_64,
            1,
            0 if self.is_library else elf.entry,
            _PROGRAM_HEADER_OFFSET,
            elf.shoff,
            0,
            _ELF_HEADER_SIZE,
            _PROGRAM_HEADER_SIZE,
            len(self.program_headers) & 0xFFFF,
            elf.shentsize,
            elf.shnum,
            elf.shstrndx,
        )
        self._write_at(0, header)

    def rewrite_sdk_version(self, sdk_version):
        """Write *sdk_version* into the process or module parameter section."""
        offset = self._section_offset(self._param_section_name) + _SDK_VERSION_OFFSET
        self._write_at(offset, (sdk_version & 0xFFFFFFFF).to_bytes(4, "little"))

    def rewrite_program_headers(self):
        """Write the generated program headers over the output's header table."""
        for position, header in enumerate(self.program_headers):
            alignment = _TLS_ALIGN if header.type == PT_TLS else header.align
            packed = _PROGRAM_HEADER.pack(
                header.type,
                header.flags,
                header.offset,
                header.vaddr,
                header.paddr,
                header.filesz,
                header.memsz,
                alignment,
            )
            self._write_at(_PROGRAM_HEADER_OFFSET + position * _PROGRAM_HEADER_SIZE, packed)

    def rewrite_interpreter(self, interpreter):
        """Write *interpreter*, padded or cut to 0x20 bytes, at the start of .text."""
        offset = self._section_offset(".text")
        raw = interpreter.encode("utf-8")[:_INTERPRETER_SIZE].ljust(_INTERPRETER_SIZE, b"\0")
        self._write_at(offset, raw)

    def rewrite_dynamic_section_header(self):
        """Point the .dynamic section header at the generated dynamic table."""
        elf = self.elf
        for position, section in enumerate(elf.sections):
            if section.type != SHT_DYNAMIC:
                continue
            header_offset = elf.shoff + position * elf.shentsize
            fields = list(_SECTION_HEADER.unpack_from(elf.data, header_offset))
            fields[3] = self.dynamic_offset
            fields[4] = self.dynamic_offset
            fields[5] = self.dynamic_size
            self._write_at(header_offset, _SECTION_HEADER.pack(*fields))
            break

    def close(self):
        """Flush and close the output file."""
        self._file.close()