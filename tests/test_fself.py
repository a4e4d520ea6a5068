import hashlib
import struct

import pytest

from orbisfself.constants import (
    BLOCK_SIZE,
    PF_R,
    PT_LOAD,
    PT_NOTE,
    PT_SCE_DYNLIBDATA,
    SELF_CONTROL_BLOCK_TYPE_NPDRM,
    SELF_DATA_LSB,
    SELF_ENTRY_PROPERTY_BIT_BLOCKSIZE,
    SELF_ENTRY_PROPERTY_BIT_SEGMENT_INDEX,
    SELF_ENTRY_SIZE,
    SELF_MAGIC_SELF,
    SELF_META_DATA_BLOCK_SIZE,
    SELF_META_FOOTER_SIZE,
    SELF_MODE_SPECIFICUSER,
    SELF_SIGNATURE_SIZE,
    SelfProgramType,
)
from orbisfself.elffile import ElfError
from orbisfself.fself import (
    SelfEntry,
    align,
    build_fself,
    create_fself,
    create_signature,
    ilog2,
    set_property,
)

PAID = 0x3800000000000011
AUTH_INFO = "00" * 8 + "ab" * 4


def make_elf(segments):
    """Build a minimal little-endian x86-64 ELF with the given (type, payload) segments."""
    phoff = 0x40
    offset = phoff + 0x38 * len(segments)
    headers = bytearray()
    payloads = bytearray()
    for p_type, payload in segments:
        headers += struct.pack(
            "<IIQQQQQQ", p_type, PF_R, offset, 0x1000, 0x1000, len(payload), len(payload), 0x10
        )
        payloads += payload
        offset += len(payload)
    ident = b"\x7fELF" + bytes([2, 1, 1, 0]) + bytes(8)
    header = ident + struct.pack(
        "<HHIQQQIHHHHHH", 2, 62, 1, 0, phoff, 0, 0, 0x40, 0x38, len(segments), 0, 0, 0
    )
    return bytes(header + headers + payloads)


def read_header(out):
    return struct.unpack_from("<IBBBBIHHQHH", out, 0)


def read_entries(out):
    count = read_header(out)[9]
    return [struct.unpack_from("<QQQQ", out, 0x20 + i * 0x20) for i in range(count)]


PAYLOAD = bytes(range(0x10))


@pytest.fixture
def simple_elf():
    return make_elf([(PT_NOTE, b"note"), (PT_LOAD, PAYLOAD)])


def test_align_pinned_value():
    assert align(0x21, 0x10) == 0x30


@pytest.mark.parametrize("value", [0, 1, 0xF, 0x10, 0x11, 0x3FFF, 0x4000, 0x4001])
@pytest.mark.parametrize("alignment", [0x8, 0x10, 0x4000])
def test_align_invariants(value, alignment):
    result = align(value, alignment)
    assert result % alignment == 0
    assert 0 <= result - value < alignment


def test_ilog2_block_size():
    assert ilog2(BLOCK_SIZE) == 14


@pytest.mark.parametrize("value", [1, 2, 3, 7, 8, 1000, 0x4000, 2**40 + 5])
def test_ilog2_brackets_value(value):
    result = ilog2(value)
    assert 1 << result <= value < 1 << (result + 1)


def test_ilog2_zero():
    assert ilog2(0) == 0


def test_set_property_masks_and_preserves():
    assert set_property(0, 20, 0xFFFF, 0x1FFFF) == 0xFFFF << 20
    assert set_property(1, 2, 1, 1) == 1 | (1 << 2)


def test_create_signature_layout():
    signature = create_signature(AUTH_INFO, PAID)
    assert len(signature) == SELF_SIGNATURE_SIZE
    length, paid = struct.unpack_from("<QQ", signature, 0)
    assert length == len(AUTH_INFO) // 2
    assert paid == PAID
    assert signature[16:20] == bytes.fromhex("ab" * 4)
    assert signature[20:] == bytes(SELF_SIGNATURE_SIZE - 20)


def test_create_signature_invalid_hex_leaves_zeros():
    signature = create_signature("zz" + "ab" * 9, PAID)
    assert struct.unpack_from("<Q", signature, 0)[0] == 10
    assert signature[16:18] == bytes(2)


def test_create_signature_too_short():
    with pytest.raises(ValueError):
        create_signature("00" * 7, PAID)


def test_header_fields(simple_elf):
    out = build_fself(simple_elf, PAID, "", 0, 0, "")
    magic, version, mode, endian, attr, key_type, _hs, meta_size, _fs, count, flags = read_header(out)
    assert out[:4] == struct.pack("<I", SELF_MAGIC_SELF)
    assert magic == SELF_MAGIC_SELF
    assert (version, mode, endian, attr) == (0, SELF_MODE_SPECIFICUSER, SELF_DATA_LSB, 0x12)
    assert key_type == 0x101
    assert count == 2
    assert flags == 0x22
    assert meta_size == count * SELF_ENTRY_SIZE + SELF_META_FOOTER_SIZE + SELF_SIGNATURE_SIZE


def test_entries_point_at_segment_data(simple_elf):
    out = build_fself(simple_elf, PAID, "", 0, 0, "")
    header = read_header(out)
    header_size, meta_size = header[6], header[7]
    (meta_props, meta_off, meta_fs, meta_ms), (data_props, data_off, data_fs, data_ms) = read_entries(out)
    assert meta_off == header_size + meta_size
    assert meta_fs == meta_ms == SELF_META_DATA_BLOCK_SIZE
    assert out[meta_off:meta_off + meta_fs] == bytes(meta_fs)
    assert data_off % 0x10 == 0
    assert data_fs == data_ms == len(PAYLOAD)
    assert out[data_off:data_off + data_fs] == PAYLOAD
    assert (meta_props >> SELF_ENTRY_PROPERTY_BIT_SEGMENT_INDEX) & 0xFFFF == 1
    assert (data_props >> SELF_ENTRY_PROPERTY_BIT_SEGMENT_INDEX) & 0xFFFF == 1
    assert (data_props >> SELF_ENTRY_PROPERTY_BIT_BLOCKSIZE) & 0xF == ilog2(BLOCK_SIZE) - 12


def test_file_size_field_matches_output(simple_elf):
    out = build_fself(simple_elf, PAID, "", 0, 0, "")
    assert read_header(out)[8] == align(len(out), 0x10)


def test_elf_headers_copied(simple_elf):
    out = build_fself(simple_elf, PAID, "", 0, 0, "")
    start = 0x20 + len(read_entries(out)) * 0x20
    assert out[start:start + 0x40] == simple_elf[:0x40]
    assert out[start + 0x40:start + 0x40 + 2 * 0x38] == simple_elf[0x40:0x40 + 2 * 0x38]


def test_extended_info_and_control_block(simple_elf):
    out = build_fself(simple_elf, PAID, "npdrm_exec", 7, 9, "")
    header_size = read_header(out)[6]
    paid, p_type, app, fw, digest = struct.unpack_from("<QQQQ32s", out, header_size - 0x70)
    assert paid == PAID
    assert p_type == SelfProgramType.NPDRM_EXEC
    assert (app, fw) == (7, 9)
    assert digest == hashlib.sha256(simple_elf).digest()
    assert struct.unpack_from("<H", out, header_size - 0x30)[0] == SELF_CONTROL_BLOCK_TYPE_NPDRM
    assert out[header_size - 0x2E:header_size] == bytes(0x2E)


def test_unknown_program_type_is_fake(simple_elf):
    out = build_fself(simple_elf, PAID, "bogus", 0, 0, "")
    header_size = read_header(out)[6]
    assert struct.unpack_from("<Q", out, header_size - 0x68)[0] == SelfProgramType.FAKE


def test_meta_footer_and_default_signature(simple_elf):
    out = build_fself(simple_elf, PAID, "", 0, 0, "")
    header_size = read_header(out)[6]
    footer = header_size + 2 * SELF_ENTRY_SIZE
    assert out[header_size:footer] == bytes(2 * SELF_ENTRY_SIZE)
    assert struct.unpack_from("<I", out, footer + 0x30)[0] == 0x10000
    sig_start = footer + SELF_META_FOOTER_SIZE
    assert out[sig_start:sig_start + SELF_SIGNATURE_SIZE] == bytes(SELF_SIGNATURE_SIZE)


def test_signature_from_auth_info(simple_elf):
    out = build_fself(simple_elf, PAID, "", 0, 0, AUTH_INFO)
    header_size = read_header(out)[6]
    sig_start = header_size + 2 * SELF_ENTRY_SIZE + SELF_META_FOOTER_SIZE
    assert out[sig_start:sig_start + SELF_SIGNATURE_SIZE] == create_signature(AUTH_INFO, PAID)


def test_multi_block_segment_meta_size():
    payload = bytes(BLOCK_SIZE + 1)
    out = build_fself(make_elf([(PT_SCE_DYNLIBDATA, payload)]), PAID, "", 0, 0, "")
    meta, data = read_entries(out)
    assert meta[2] == 2 * SELF_META_DATA_BLOCK_SIZE
    assert data[2] == len(payload)
    assert data[1] == align(meta[1] + meta[2], 0x10)


def test_no_loadable_segments():
    out = build_fself(make_elf([(PT_NOTE, b"abcd")]), PAID, "", 0, 0, "")
    header = read_header(out)
    assert header[9] == 0
    assert len(out) == header[6] + header[7]
    assert header[8] == len(out)


def test_truncated_segment_raises(simple_elf):
    with pytest.raises(ElfError):
        build_fself(simple_elf[:-4], PAID, "", 0, 0, "")


def test_invalid_elf_raises():
    with pytest.raises(ElfError):
        build_fself(b"not an elf at all" * 4, PAID, "", 0, 0, "")


def test_create_fself_writes_file(tmp_path, simple_elf):
    source = tmp_path / "app.oelf"
    source.write_bytes(simple_elf)
    target = tmp_path / "eboot.bin"
    result = create_fself(False, source, target, PAID, "system_exec", 1, 2, "")
    assert target.read_bytes() == result
    assert result == build_fself(simple_elf, PAID, "system_exec", 1, 2, "")


def test_create_fself_missing_input(tmp_path):
    with pytest.raises(FileNotFoundError):
        create_fself(False, tmp_path / "missing.oelf", tmp_path / "out.bin", PAID, "", 0, 0, "")


def test_self_entry_defaults():
    entry = SelfEntry(properties=5)
    assert (entry.offset, entry.file_size, entry.memory_size, entry.data) == (0, 0, 0, b"")