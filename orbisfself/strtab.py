"""The SCE dynamic string table: module names, project metadata and NIDs."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import PurePath

from .constants import SHN_UNDEF, STB_GLOBAL, STB_WEAK
from .elffile import ElfError
from .nid import build_nid_entry

MODULE_STOP = "module_stop"
MODULE_START = "module_start"
NEED_SCE_LIBC = "Need_sceLibc"

# System modules whose prx file is named after the module itself.
_SYSTEM_MODULES = """
    libc libkernel libkernel_sys
    libSceAjm libSceAppContent libSceAudio3d libSceAudioIn libSceAudioOut
    libSceAvSetting libSceCamera libSceCommonDialog libSceConvertKeycode
    libSceFios2 libSceGameCustomDataDialog libSceGnmDriver libSceHttp
    libSceInvitationDialog libSceJpegDec libSceJpegEnc libSceKeyboard
    libSceMouse libSceNetCtl libSceNpCommon libSceNpParty libSceNpTrophy
    libSceNpUtility libScePad libScePadTracker libScePlayReady libScePngDec
    libScePngEnc libSceSaveData libSceSaveDataDialog libSceScreenShot
    libSceShareUtility libSceSsl libSceSystemService libSceSysmodule
    libSceSysUtil libSceUserService libSceVideodec libSceVideoCoreInterface
    libSceVideoOut libSceVoice libSceWebBrowserDialog libSceZlib libSceFreeType
""".split()

# System modules shipped in a differently named prx file.
_RENAMED_MODULES = {
    name: f"{name}-module.prx" for name in ("libSceFont", "libSceFontFt")
}

MODULE_TO_LIBRARY: dict[str, str] = {
    **{name: f"{name}.prx" for name in _SYSTEM_MODULES},
    **_RENAMED_MODULES,
}


def _encode(text: str) -> bytes:
    return text.encode("utf-8", "surrogateescape")


def _c_entry(text: str) -> bytes:
    return _encode(text) + b"\0"


def _extension(file_name: str) -> str:
    base = PurePath(file_name).name
    dot = base.rfind(".")
    return base[dot:] if dot >= 0 else ""


@dataclass
class StringTable:
    """The string table bytes, with the offsets other tables refer to."""

    data: bytes
    library_offsets: list[int] = field(default_factory=list)
    imported_module_offsets: list[int] = field(default_factory=list)
    imported_library_offsets: list[int] = field(default_factory=list)
    project_name_offset: int = 0
    file_name_offset: int = 0
    nid_table_offset: int = 0

    @property
    def size(self) -> int:
        return len(self.data)


def module_prx_name(module):
    """Return the prx file name that holds *module*."""
    name = module.replace("_stub", "", 1)
    return MODULE_TO_LIBRARY.get(name) or f"{name}.prx"


def project_name(file_name, library_name):
    """Return *library_name* if given, else the file name without directory or extension."""
    if library_name:
        return library_name
    return PurePath(file_name).name.replace(_extension(file_name), "")


def _is_exported(symbol) -> bool:
    return symbol.bind in (STB_GLOBAL, STB_WEAK) and symbol.value != 0


def _safe(read):
    try:
        return read()
    except ElfError:
        return []


def build_nid_table(elf, index, is_library):
    """Return the NID entries for imported (and, for libraries, exported) symbols.

    Raises ElfError when an imported symbol has no library or module.
    """
    libraries = index.libraries
    modules = index.modules
    table = bytearray()

    imported = (s for s in _safe(elf.dynamic_symbols) if s.section == SHN_UNDEF)
    for symbol in imported:
        library = index.library_of(symbol.name)
        if library is None:
            raise ElfError(f"missing library for symbol ({symbol.name})")
        module = index.library_modules.get(library)
        if module not in modules:
            raise ElfError(f"missing module {module} for symbol ({symbol.name})")
        entry = build_nid_entry(
            symbol.name, libraries.index(library) + 1, modules.index(module) + 1
        )
        table += _encode(entry)

    if "libc" in modules:
        libc_id = modules.index("libc") + 1
        table += _encode(build_nid_entry(NEED_SCE_LIBC, libc_id, libc_id))

    if is_library:
        for symbol in filter(_is_exported, _safe(elf.symbols)):
            table += _encode(build_nid_entry(symbol.name, 0, 0))

    return bytes(table)


def build_string_table(elf, file_name, library_name, index, is_library):
    """Build the complete string table, starting with its null entry."""
    modules = index.modules
    table = bytearray(b"\0")

    def append(text: str) -> int:
        offset = len(table)
        table.extend(_c_entry(text))
        return offset

    library_offsets = [append(module_prx_name(m)) for m in modules]
    imported_module_offsets = [append(m.replace("_stub", "", 1)) for m in modules]
    imported_library_offsets = list(imported_module_offsets)

    for library in index.libraries:
        name = library.replace("stub", "", 1)
        if name not in modules:
            imported_library_offsets.append(append(name))

    project_name_offset = append(project_name(file_name, library_name))
    file_name_offset = append(file_name)

    nid_table_offset = len(table)
    table += build_nid_table(elf, index, is_library)

    if is_library:
        append(MODULE_STOP)
        append(MODULE_START)

    return StringTable(
        data=bytes(table),
        library_offsets=library_offsets,
        imported_module_offsets=imported_module_offsets,
        imported_library_offsets=imported_library_offsets,
        project_name_offset=project_name_offset,
        file_name_offset=file_name_offset,
        nid_table_offset=nid_table_offset,
    )