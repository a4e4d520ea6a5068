"""Computation of NIDs, the hashed symbol identifiers used by the SCE linker."""

from __future__ import annotations

import base64
import hashlib

NID_SUFFIX_KEY = "518D64A635DED8C1E6B039B1C3E55230"
INDEX_ENCODING_TABLE = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+-"
EXPLICIT_NID_PREFIX = "__PS4_NID_"

_NID_SUFFIX = bytes.fromhex(NID_SUFFIX_KEY)


def calculate_nid(symbol_name):
    """Return the 11-character NID hash of *symbol_name*.

    The name plus a fixed suffix is SHA-1 hashed; the first eight bytes,
    reversed, are base64 encoded without the trailing pad, with '/' as '-'.
    """
    digest = hashlib.sha1(symbol_name.encode("utf-8", "surrogateescape") + _NID_SUFFIX).digest()
    encoded = base64.b64encode(digest[:8][::-1]).decode("ascii")
    return encoded[:-1].replace("/", "-")


def encode_index(index):
    """Return the single character encoding a library or module index."""
    if not 0 <= index < len(INDEX_ENCODING_TABLE):
        raise ValueError(f"index {index} cannot be encoded in a NID entry")
    return INDEX_ENCODING_TABLE[index]


def build_nid_entry(symbol_name, library_id, module_id):
    """Return the NUL-terminated string-table entry ``NID#L#M`` for a symbol.

    Names starting with ``__PS4_NID_`` carry their NID explicitly, with
    ``_plus`` and ``_minus`` standing for '+' and '-'.
    """
    if symbol_name.startswith(EXPLICIT_NID_PREFIX):
        nid = symbol_name.split("_NID_")[1].replace("_plus", "+").replace("_minus", "-")
    else:
        nid = calculate_nid(symbol_name)
    return f"{nid}#{encode_index(library_id)}#{encode_index(module_id)}\0"