"""Locating shared libraries and mapping imported symbols to them."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import PurePath

from .elffile import ElfError, read_elf

KERNEL_LIBRARY = "libkernel"
_KERNEL_FILE = "libkernel.so"
_DYNAMIC_SYMBOL = "_DYNAMIC"


def _strip_so(file_name: str) -> str:
    return file_name.replace(".so", "", 1)


def open_library(name, sdk_path, library_path):
    """Open the shared object *name* from the SDK or the extra search path.

    The SDK's ``lib`` directory is searched first, then each directory of
    *library_path* (separated by ``os.pathsep``). The error from the last
    attempt is raised if no directory holds a readable ELF file.
    """
    directories = [f"{sdk_path}/lib", *(library_path or "").split(os.pathsep)]
    error: Exception | None = None
    for directory in directories:
        try:
            return read_elf(f"{directory}/{name}")
        except (OSError, ElfError) as exc:
            error = exc
    assert error is not None
    raise error


@dataclass
class LibraryIndex:
    """Which library provides each imported symbol, and which module holds each library.

    ``symbols`` keeps its keys in the order the string and dynamic tables
    need: modules first, then libraries that are not modules themselves.
    """

    symbols: dict[str, list[str]] = field(default_factory=dict)
    library_modules: dict[str, str] = field(default_factory=dict)
    modules: list[str] = field(default_factory=list)

    @property
    def libraries(self) -> list[str]:
        return list(self.symbols)

    def library_of(self, symbol_name):
        """Return the first library that provides *symbol_name*, or None."""
        return next(
            (library for library, names in self.symbols.items() if symbol_name in names),
            None,
        )


def build_library_index(elf, sdk_path, library_path, extra_library_to_module=None):
    """Resolve the libraries *elf* imports and attribute its symbols to them.

    *extra_library_to_module* maps libraries that live inside another module
    to that module's name. libkernel always comes first. Raises if a library
    cannot be opened or *elf* has no symbol table.
    """
    extra = extra_library_to_module or {}
    libraries = [PurePath(name).name for name in elf.imported_libraries()]

    if _KERNEL_FILE in libraries:
        position = libraries.index(_KERNEL_FILE)
        libraries[position] = libraries[0]
        libraries[0] = _KERNEL_FILE

    opened = [(KERNEL_LIBRARY, open_library(_KERNEL_FILE, sdk_path, library_path))]
    library_names = [KERNEL_LIBRARY]
    library_modules = {KERNEL_LIBRARY: KERNEL_LIBRARY}
    modules = [KERNEL_LIBRARY]

    for library in libraries:
        if library == _KERNEL_FILE:
            continue
        library_elf = open_library(library, sdk_path, library_path)
        name = _strip_so(library)
        opened.append((name, library_elf))
        if name not in library_names:
            library_names.append(name)
        module = extra.get(name, name)
        if module not in modules:
            modules.append(module)
        library_modules[name] = module

    symbols: dict[str, list[str]] = {module: [] for module in modules}
    for name in library_names:
        symbols.setdefault(name, [])

    exported = []
    for name, library_elf in opened:
        try:
            names = {symbol.name for symbol in library_elf.symbols()}
        except ElfError:
            names = set()
        exported.append((name, names))

    for symbol in elf.symbols():
        if symbol.name == _DYNAMIC_SYMBOL:
            continue
        for name, names in exported:
            if symbol.name in names:
                symbols[name].append(symbol.name)

    return LibraryIndex(symbols=symbols, library_modules=library_modules, modules=modules)