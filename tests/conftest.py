import struct

import pytest

from struct_offset_finder.layout import layout_from_dict

CODE = 0x60000020      # CNT_CODE | MEM_EXECUTE | MEM_READ
RDATA = 0x40000040     # CNT_INITIALIZED_DATA | MEM_READ

FILE_ALIGN = 0x200
SECTION_ALIGN = 0x1000
FIRST_RAW = 0x400


def _align(value, to):
    return (value + to - 1) // to * to


def build_pe(sections, machine=0x8664, timestamp=0x65A1B2C3,
             image_base=0x140000000, entry=0x1000, magic=None):
    """Assemble a minimal PE image from (name, body, characteristics) tuples."""
    is_64bit = machine == 0x8664
    opt_size = 0xF0 if is_64bit else 0xE0
    pe_off = 0x80
    sec_table = pe_off + 4 + 20 + opt_size

    placed = []
    raw, va = FIRST_RAW, SECTION_ALIGN
    for name, body, chars in sections:
        raw_size = _align(len(body), FILE_ALIGN)
        placed.append((name, body, chars, va, raw, raw_size))
        raw += raw_size
        va += max(_align(len(body), SECTION_ALIGN), SECTION_ALIGN)

    buf = bytearray(raw)
    buf[0:2] = b'MZ'
    struct.pack_into('<I', buf, 0x3C, pe_off)
    buf[pe_off:pe_off + 4] = b'PE\x00\x00'
    struct.pack_into('<HHIIIHH', buf, pe_off + 4, machine, len(sections),
                     timestamp, 0, 0, opt_size, 0x22)
    opt = pe_off + 24
    if magic is None:
        magic = 0x20B if is_64bit else 0x10B
    struct.pack_into('<H', buf, opt, magic)
    struct.pack_into('<I', buf, opt + 16, entry)
    if is_64bit:
        struct.pack_into('<Q', buf, opt + 24, image_base)
    else:
        struct.pack_into('<I', buf, opt + 28, image_base)

    for i, (name, body, chars, va, raw_ptr, raw_size) in enumerate(placed):
        s = sec_table + i * 40
        struct.pack_into('<8sIIII', buf, s, name.encode('ascii'), len(body), va, raw_size, raw_ptr)
        struct.pack_into('<I', buf, s + 36, chars)
        buf[raw_ptr:raw_ptr + len(body)] = body
    return bytes(buf)


def mov_read(disp, modrm=0x81):
    return bytes([0x48, 0x8B, modrm]) + struct.pack('<i', disp)


def mov_write(disp, modrm=0x81):
    return bytes([0x48, 0x89, modrm]) + struct.pack('<i', disp)


def lea(disp, modrm=0x81):
    return bytes([0x48, 0x8D, modrm]) + struct.pack('<i', disp)


def pad(n=16):
    return b'\xCC' * n


@pytest.fixture
def make_pe():
    return build_pe


CHARACTER_DOC = {
    "version": 1,
    "structs": [
        {"type": "GameObject", "size": "0x100",
         "fields": [{"name": "Position", "type": "Vector3", "offset": "0x80"},
                    {"name": "ObjectKind", "type": "byte", "offset": "0x8C"}]},
        {"type": "Character", "base": "GameObject", "size": "0x200",
         "fields": [{"name": "Health", "type": "uint", "offset": "0x1A0"},
                    {"name": "Mana", "type": "uint", "offset": "0x1A4"},
                    {"type": "byte", "offset": "0x1B0"}]},
    ],
}


@pytest.fixture
def character_layout():
    return layout_from_dict(CHARACTER_DOC)


@pytest.fixture
def game_binary():
    """Old build: Character.Health / Mana read once each, RTTI in .rdata."""
    code = (pad() + mov_read(0x1A0) + pad() + mov_write(0x1A4, modrm=0x83) + pad()
            + lea(0x80, modrm=0x8F) + pad())
    rdata = b'\x00' * 16 + b'.?AVCharacter@@\x00' + b'7.05\x00' + b'\x00' * 16
    return build_pe([('.text', code, CODE), ('.rdata', rdata, RDATA)])


@pytest.fixture
def patched_binary():
    """New build: the same code with Character fields moved by +0x8."""
    code = (pad() + mov_read(0x1A8) + pad() + mov_write(0x1AC, modrm=0x83) + pad()
            + lea(0x80, modrm=0x8F) + pad())
    rdata = b'\x00' * 16 + b'.?AVCharacter@@\x00' + b'7.2a\x00' + b'\x00' * 16
    return build_pe([('.text', code, CODE), ('.rdata', rdata, RDATA)])
