"""Command line entry point: convert an ELF into an Orbis ELF and pack it as an FSELF."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from .fself import create_fself
from .orbis_elf import OrbisElf

TOOLCHAIN_VARIABLE = "OO_PS4_TOOLCHAIN"
DEFAULT_SDK_VERSION = 0x1000051
DEFAULT_PAID = 0x3800000000000011
EXIT_FAILURE = -1

_PROGRAM_TYPES = (
    "fake, npdrm_exec, npdrm_dynlib, system_exec, system_dynlib, "
    "host_kernel, secure_module, secure_kernel"
)


def _integer(text: str) -> int:
    try:
        return int(text, 0)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid integer value {text!r}") from exc


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="create-fself",
        description="Build an Orbis ELF from a linked ELF and wrap it in a fake signed ELF.",
        allow_abbrev=False,
    )
    parser.add_argument("-in", "--in", dest="input", default="", help="input ELF path")
    parser.add_argument("-eboot", "--eboot", dest="eboot", default="", help="eboot.bin output path")
    parser.add_argument("-lib", "--lib", dest="lib", default="", help="library output path")
    parser.add_argument("-out", "--out", dest="out", default="", help="output OELF path")
    parser.add_argument(
        "-sdkver", "--sdkver", dest="sdkver", type=_integer, default=DEFAULT_SDK_VERSION,
        help="SDK version integer",
    )
    parser.add_argument(
        "-ptype", "--ptype", dest="ptype", default="", help=f"program type {{{_PROGRAM_TYPES}}}"
    )
    parser.add_argument("-authinfo", "--authinfo", dest="authinfo", default="", help="authentication info")
    parser.add_argument(
        "-paid", "--paid", dest="paid", type=_integer, default=DEFAULT_PAID,
        help="program authentication ID",
    )
    parser.add_argument(
        "-appversion", "--appversion", dest="appversion", type=_integer, default=0,
        help="application version",
    )
    parser.add_argument(
        "-fwversion", "--fwversion", dest="fwversion", type=_integer, default=0,
        help="firmware version",
    )
    parser.add_argument(
        "-libname", "--libname", dest="libname", default="",
        help="library name (ignored in create-eboot)",
    )
    parser.add_argument(
        "-library-path", "--library-path", dest="library_path", default="",
        help="additional directories to search for .so files",
    )
    return parser


def _fail(message: str) -> int:
    print(message)
    return EXIT_FAILURE


def _build(args, sdk_path: str, is_library: bool, oelf_path: str, fself_path: str) -> None:
    with OrbisElf(is_library, args.input, oelf_path, args.libname) as orbis:
        orbis.generate_dynlib_data(sdk_path, args.library_path)
        orbis.generate_program_headers()
        orbis.rewrite_elf_header()
        orbis.rewrite_sdk_version(args.sdkver)
        orbis.rewrite_program_headers()
        orbis.rewrite_dynamic_section_header()

    create_fself(
        is_library,
        oelf_path,
        fself_path,
        args.paid,
        args.ptype,
        args.appversion,
        args.fwversion,
        args.authinfo,
    )


def main(argv=None):
    """Run the converter; returns 0 on success and -1 on failure."""
    sdk_path = os.environ.get(TOOLCHAIN_VARIABLE, "")
    if not sdk_path:
        return _fail(
            f"The '{TOOLCHAIN_VARIABLE}' environment variable is not set. "
            "It must be set to the root directory of the toolchain."
        )

    args = _parser().parse_args(argv)

    if not args.input:
        return _fail("Input file not specified, try -in=[input ELF path]")
    if args.eboot and args.lib:
        return _fail("Invalid to have an output eboot path and output library path at the same time.")
    if not args.eboot and not args.lib:
        return _fail("Need either an output eboot path or output library path.")

    is_library = bool(args.lib)
    fself_path = args.eboot or args.lib

    oelf_path = args.out
    is_temporary = not oelf_path
    if is_temporary:
        oelf_path = args.input.split(".")[0] + ".oelf"

    try:
        _build(args, sdk_path, is_library, oelf_path, fself_path)
    except (OSError, ValueError) as exc:
        return _fail(f"Failed to build FSELF: {exc}")
    finally:
        if is_temporary:
            Path(oelf_path).unlink(missing_ok=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())