# orbisfself

`orbisfself` turns a little-endian, 64-bit x86-64 ELF produced by a standard
linker into an Orbis ELF (OELF), and then wraps it into a fake signed ELF
(FSELF) that can be used as an `eboot.bin` or as a loadable library.

The conversion:

- builds a `.sce_dynlib_data` segment holding a fingerprint, the string table
  (module and library names, project name, file name, NIDs), the symbol,
  relocation and hash tables, and a new dynamic table, and appends it to the
  output file;
- regenerates and reorders the program headers (SCE relro, process or module
  parameter and dynlib data segments, and an interpreter header for
  executables);
- rewrites the ELF header, the SDK version in `.data.sce_process_param`
  (executables) or `.data.sce_module_param` (libraries), and the `.dynamic`
  section header;
- packs the result into an FSELF with self entries, the ELF and program
  headers, extended info (program authentication ID, program type, versions
  and a SHA-256 digest of the OELF), an NPDRM control block, meta blocks, a
  meta footer, a signature and the segment data.

## Installation

```
pip install .
```

No third-party packages are required.

## Command line

The toolchain root must be given in the `OO_PS4_TOOLCHAIN` environment
variable. Shared objects named by the input's `DT_NEEDED` entries, and
`libkernel.so` in every case, are looked up in the toolchain's `lib`
directory first, then in the directories passed with `-library-path`
(separated by `os.pathsep`: `:`, or `;` on Windows).

Build an executable:

```
create-fself -in=app.elf -eboot=eboot.bin
```

Build a library:

```
create-fself -in=libfoo.elf -lib=libfoo.prx -libname=libfoo
```

Exactly one of `-eboot` and `-lib` must be given. Every option may also be
written with two dashes (`--in`), and with its value after `=` or as the next
argument. Integer options accept decimal or prefixed forms such as `0x...`.

| Option          | Default              | Meaning                                   |
|-----------------|----------------------|-------------------------------------------|
| `-in`           | (required)           | input ELF path                            |
| `-eboot`        |                      | eboot.bin output path                     |
| `-lib`          |                      | library output path                       |
| `-out`          | input path up to its first `.`, plus `.oelf` | intermediate OELF path (kept if given) |
| `-sdkver`       | `0x1000051`          | SDK version integer                       |
| `-ptype`        | fake                 | program type: `fake`, `npdrm_exec`, `npdrm_dynlib`, `system_exec`, `system_dynlib`, `host_kernel`, `secure_module`, `secure_kernel`; any other value gives fake |
| `-authinfo`     |                      | authentication info, hex encoded, at least 8 bytes; empty gives an all-zero signature |
| `-paid`         | `0x3800000000000011` | program authentication ID                 |
| `-appversion`   | `0`                  | application version                       |
| `-fwversion`    | `0`                  | firmware version                          |
| `-libname`      |                      | library name written as the project name (file name stem when empty) |
| `-library-path` |                      | extra directories to search for `.so` files |

When `-out` is not given, the intermediate OELF file is removed afterwards,
whether or not the build succeeded.

On success the command exits with status 0. On a missing environment
variable, a bad combination of options, or an error while reading, converting
or writing (for example a library that cannot be found, an input that is not
a little-endian x86-64 64-bit ELF, or an imported symbol that no library
provides), it prints a message to standard output and exits with a failure
status.

## Library use

The steps are available from Python as well:

```python
from orbisfself.nid import calculate_nid, build_nid_entry
from orbisfself.fself import build_fself, create_fself
from orbisfself.orbis_elf import OrbisElf

nid = calculate_nid("printf")            # 11-character NID
entry = build_nid_entry("printf", 1, 1)  # "<nid>#B#B\0"

with OrbisElf(False, "app.elf", "app.oelf") as orbis:
    orbis.generate_dynlib_data("/path/to/toolchain", "")
    orbis.generate_program_headers()
    orbis.rewrite_elf_header()
    orbis.rewrite_sdk_version(0x1000051)
    orbis.rewrite_program_headers()
    orbis.rewrite_dynamic_section_header()

create_fself(False, "app.oelf", "eboot.bin", 0x3800000000000011, "fake", 0, 0, "")
```

Modules:

- `orbisfself.elffile` – a read-only ELF parser (`parse_elf`, `read_elf`,
  `ElfFile`, `Section`, `Symbol`, `ProgramHeader`, `ElfError`).
- `orbisfself.nid` – `calculate_nid`, `encode_index`, `build_nid_entry`.
  Symbols named `__PS4_NID_<nid>` carry their NID explicitly, with `_plus`
  and `_minus` standing for `+` and `-`.
- `orbisfself.libraries` – `open_library`, `build_library_index` and
  `LibraryIndex`, which attribute imported symbols to libraries and modules.
- `orbisfself.strtab` – `build_string_table`, `build_nid_table`,
  `module_prx_name`, `project_name` and `StringTable`.
- `orbisfself.dynlib` – the symbol, relocation, hash and dynamic tables and
  `generate_dynlib_data`, which returns a `DynlibData`.
- `orbisfself.orbis_elf` – `OrbisElf`, `validate_elf` and
  `program_header_priority`. `OrbisElf` also offers `rewrite_interpreter`,
  which the command does not use.
- `orbisfself.fself` – `build_fself` (bytes in, bytes out), `create_fself`
  (file in, file out), `create_signature` and helpers.
- `orbisfself.constants` – ELF, SCE and SELF constants and the
  `SelfProgramType` enum.

## What it does not do

- It has no built-in table of libraries that live inside another module.
  Each library is taken to be its own module unless a mapping is passed to
  `build_library_index` or as `OrbisElf(..., extra_library_to_module=...)`;
  the command passes none.
- It does not ship the toolchain's stub libraries; they must exist under
  `$OO_PS4_TOOLCHAIN/lib` or a `-library-path` directory.
- The FSELF is not really signed: meta blocks and digests are zero, and the
  signature only carries the given authentication info.

## Tests

```
pip install .[test]
pytest
```