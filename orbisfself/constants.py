"""Numeric constants for ELF files, SCE extensions and the fake SELF container."""

from __future__ import annotations

from enum import IntEnum

# ---------------------------------------------------------------------------
# Standard ELF identification and header values
# ---------------------------------------------------------------------------

ELF_MAGIC = b"\x7fELF"

ELFCLASS32 = 1
ELFCLASS64 = 2

ELFDATA2LSB = 1
ELFDATA2MSB = 2

EV_CURRENT = 1

EM_X86_64 = 62

# ---------------------------------------------------------------------------
# Standard program header types and flags
# ---------------------------------------------------------------------------

PT_NULL = 0
PT_LOAD = 1
PT_DYNAMIC = 2
PT_INTERP = 3
PT_NOTE = 4
PT_SHLIB = 5
PT_PHDR = 6
PT_TLS = 7
PT_GNU_EH_FRAME = 0x6474E550
PT_GNU_STACK = 0x6474E551
PT_GNU_RELRO = 0x6474E552

PF_X = 0x1
PF_W = 0x2
PF_R = 0x4

# ---------------------------------------------------------------------------
# Standard section header types and indices
# ---------------------------------------------------------------------------

SHT_NULL = 0
SHT_PROGBITS = 1
SHT_SYMTAB = 2
SHT_STRTAB = 3
SHT_RELA = 4
SHT_HASH = 5
SHT_DYNAMIC = 6
SHT_NOTE = 7
SHT_NOBITS = 8
SHT_REL = 9
SHT_DYNSYM = 11

SHN_UNDEF = 0

# ---------------------------------------------------------------------------
# Symbol binding and type
# ---------------------------------------------------------------------------

STB_LOCAL = 0
STB_GLOBAL = 1
STB_WEAK = 2

STT_NOTYPE = 0
STT_OBJECT = 1
STT_FUNC = 2
STT_SECTION = 3
STT_FILE = 4

# ---------------------------------------------------------------------------
# Standard dynamic table tags and flags
# ---------------------------------------------------------------------------

DT_NULL = 0
DT_NEEDED = 1
DT_PLTRELSZ = 2
DT_PLTGOT = 3
DT_HASH = 4
DT_STRTAB = 5
DT_SYMTAB = 6
DT_RELA = 7
DT_RELASZ = 8
DT_RELAENT = 9
DT_STRSZ = 10
DT_SYMENT = 11
DT_INIT = 12
DT_FINI = 13
DT_SONAME = 14
DT_RPATH = 15
DT_SYMBOLIC = 16
DT_REL = 17
DT_RELSZ = 18
DT_RELENT = 19
DT_PLTREL = 20
DT_DEBUG = 21
DT_TEXTREL = 22
DT_JMPREL = 23
DT_BIND_NOW = 24
DT_INIT_ARRAY = 25
DT_FINI_ARRAY = 26
DT_INIT_ARRAYSZ = 27
DT_FINI_ARRAYSZ = 28
DT_RUNPATH = 29
DT_FLAGS = 30

DF_TEXTREL = 0x4

# ---------------------------------------------------------------------------
# SCE-specific ELF types
# ---------------------------------------------------------------------------

ET_SCE_EXEC_ASLR = 0xFE10
ET_SCE_DYNAMIC = 0xFE18

# SCE-specific program header types
PT_SCE_DYNLIBDATA = 0x61000000  # Dynamic linking data
PT_SCE_PROC_PARAM = 0x61000001  # Process parameters
PT_SCE_MODULE_PARAM = 0x61000002  # Module parameters
PT_SCE_RELRO = 0x61000010  # Read-only relocation data

# SCE-specific dynamic table tags
DT_SCE_FINGERPRINT = 0x61000007
DT_SCE_FILENAME = 0x61000009
DT_SCE_EXPORT_MODULE = 0x6100000D
DT_SCE_IMPORT_MODULE = 0x6100000F
DT_SCE_MODULE_ATTR = 0x61000011
DT_SCE_EXPORT_LIB = 0x61000013
DT_SCE_IMPORT_LIB = 0x61000015
DT_SCE_EXPORT_LIB_ATTR = 0x61000017
DT_SCE_IMPORT_LIB_ATTR = 0x61000019
DT_SCE_HASH = 0x61000025
DT_SCE_PLTGOT = 0x61000027
DT_SCE_JMPREL = 0x61000029
DT_SCE_PLTREL = 0x6100002B
DT_SCE_PLTRELSZ = 0x6100002D
DT_SCE_RELA = 0x6100002F
DT_SCE_RELASZ = 0x61000031
DT_SCE_RELAENT = 0x61000033
DT_SCE_STRTAB = 0x61000035
DT_SCE_STRSZ = 0x61000037
DT_SCE_SYMTAB = 0x61000039
DT_SCE_SYMENT = 0x6100003B
DT_SCE_HASHSZ = 0x6100003D
DT_SCE_SYMTABSZ = 0x6100003F

R_AMD64_64 = 0x00000001

# ---------------------------------------------------------------------------
# Fake SELF container
# ---------------------------------------------------------------------------

BLOCK_SIZE = 0x4000

SELF_MAGIC_SELF = 0x1D3D154F
SELF_CONTROL_BLOCK_TYPE_NPDRM = 0x3

SELF_MODE_SPECIFICUSER = 0x1

SELF_DATA_LSB = 0x1

SELF_ENTRY_PROPERTY_BIT_SIGNED = 2
SELF_ENTRY_PROPERTY_BIT_HASBLOCKS = 11
SELF_ENTRY_PROPERTY_BIT_BLOCKSIZE = 12
SELF_ENTRY_PROPERTY_BIT_HASDIGESTS = 16
SELF_ENTRY_PROPERTY_BIT_SEGMENT_INDEX = 20

SELF_HEADER_SIZE = 0x20
SELF_ENTRY_SIZE = 0x50
SELF_ELF_HEADER_SIZE = 0x40
SELF_ELF_PROGHEADER_SIZE = 0x38
SELF_EXTENDED_HEADER_SIZE = 0x40
SELF_META_FOOTER_SIZE = 0x50
SELF_NPDRM_BLOCK_SIZE = 0x30
SELF_META_BLOCK_SIZE = 0x50
SELF_META_DATA_BLOCK_SIZE = 0x20
SELF_SIGNATURE_SIZE = 0x100


class SelfProgramType(IntEnum):
    """Program type recorded in the SELF extended info header."""

    FAKE = 0x1
    NPDRM_EXEC = 0x4
    NPDRM_DYNLIB = 0x5
    SYSTEM_EXEC = 0x8
    SYSTEM_DYNLIB = 0x9
    HOST_KERNEL = 0xC
    SECURE_MODULE = 0xE
    SECURE_KERNEL = 0xF

    @classmethod
    def from_name(cls, name):
        """Return the type for a lower-case name such as ``npdrm_exec``.

        Empty or unrecognised names give ``FAKE``. Matching is case-sensitive.
        """
        by_name = {member.name.lower(): member for member in cls}
        return by_name.get(name or "", cls.FAKE)