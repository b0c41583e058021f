import struct

from struct_offset_finder.config import MAX_DISPLACEMENT
from struct_offset_finder.displacement import (
    INSTRUCTION_KINDS, build_index, decode_displacement_access,
)
from struct_offset_finder.pe import parse_pe

from conftest import CODE, RDATA, build_pe, lea, mov_read, mov_write, pad


def _index(data):
    return build_index(data, parse_pe(data))


def test_mov_read_at_0x1000_is_indexed():
    body = pad(0x1000 - 0x400) + mov_read(0x10)
    data = build_pe([('.text', body, CODE)])
    index = _index(data)
    entries = index.lookup(0x10)
    assert len(entries) == 1
    assert entries[0].file_offset == 0x1000
    assert entries[0].kind == 'mov_read'
    assert entries[0].instruction_bytes == bytes.fromhex('488B8110000000')


def test_all_shapes_recognized():
    data = build_pe([('.text', pad() + mov_read(0x20) + mov_write(0x20) + lea(0x20) + pad(), CODE)])
    kinds = [e.kind for e in _index(data).lookup(0x20)]
    assert kinds == ['mov_read', 'mov_write', 'lea']
    assert set(kinds) == set(INSTRUCTION_KINDS)


def test_rejects_sib_and_non_disp32_forms():
    sib = bytes([0x48, 0x8B, 0x84]) + struct.pack('<i', 0x30)      # rm=100
    disp8 = bytes([0x48, 0x8B, 0x41]) + struct.pack('<i', 0x30)    # mod=01
    other = bytes([0x48, 0x31, 0x81]) + struct.pack('<i', 0x30)    # xor, unknown opcode
    data = build_pe([('.text', pad() + sib + disp8 + other + pad(), CODE)])
    assert 0x30 not in _index(data)


def test_negative_and_huge_displacements_are_noise():
    body = pad() + mov_read(-8) + mov_read(MAX_DISPLACEMENT) + mov_read(MAX_DISPLACEMENT - 1) + pad()
    index = _index(build_pe([('.text', body, CODE)]))
    assert list(index) == [MAX_DISPLACEMENT - 1]
    assert all(0 <= d < MAX_DISPLACEMENT for d in index)


def test_only_executable_sections_are_scanned():
    data = build_pe([('.text', pad(), CODE), ('.rdata', mov_read(0x40), RDATA)])
    assert len(_index(data)) == 0


def test_instruction_must_fit_inside_section():
    # The instruction straddles the end of the raw section data.
    body = pad(0x200 - 3)
    data = bytearray(build_pe([('.text', body, CODE), ('.rdata', pad(), RDATA)]))
    text_end = 0x400 + 0x200
    data[text_end - 3:text_end + 4] = mov_read(0x50)
    assert 0x50 not in _index(bytes(data))


def test_entries_in_increasing_offset_order():
    body = pad() + lea(0x60) + mov_read(0x60) + pad() + mov_write(0x60) + mov_read(0x60)
    entries = _index(build_pe([('.text', body, CODE)])).lookup(0x60)
    offsets = [e.file_offset for e in entries]
    assert offsets == sorted(offsets)
    assert len(offsets) == 4


def test_building_twice_is_identical():
    body = pad() + mov_read(0x10) + lea(0x18) + mov_write(0x10) + pad()
    data = build_pe([('.text', body, CODE)])
    first, second = _index(data), _index(data)
    assert list(first.items()) == list(second.items())


def test_lookup_returns_copy_and_empty_for_absent():
    index = _index(build_pe([('.text', pad() + mov_read(0x10), CODE)]))
    assert index.lookup(0x999) == []
    index.lookup(0x10).clear()
    assert index.count(0x10) == 1


def test_stats_orders_busiest_first():
    body = pad() + mov_read(0x10) * 3 + mov_read(0x20) + pad()
    stats = _index(build_pe([('.text', body, CODE)])).stats()
    assert stats['unique_offsets'] == 2
    assert stats['total_entries'] == 4
    assert stats['top_offsets'][0] == {'offset': 0x10, 'count': 3}


def test_decode_out_of_range_position():
    assert decode_displacement_access(mov_read(0x10), 1) is None
    assert decode_displacement_access(mov_read(0x10), 0) == ('mov_read', 0x10)
