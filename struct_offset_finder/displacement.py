"""
Displacement index: every [reg + disp32] field access in the code sections.

One linear pass over the executable sections recognizes a fixed set of
instruction shapes and files each occurrence under its displacement, so a
field offset can be looked up in O(1) instead of rescanning the binary for
every field.
"""

import heapq
import struct
import logging
from collections import Counter
from dataclasses import dataclass

from .config import MAX_DISPLACEMENT, INSTRUCTION_LENGTH, INDEX_STATS_TOP

logger = logging.getLogger(__name__)

# region Instruction Shapes

REX_W = 0x48

MOD_DISP32 = 0b10
RM_SIB = 0b100

# (prefix, opcode) -> instruction kind.  All shapes are
#   REX.W  opcode  ModR/M(mod=10, rm!=100)  disp32
# so no SIB byte ever needs decoding.  Adding a shape is one entry here.
INSTRUCTION_SHAPES = {
    (REX_W, 0x8B): 'mov_read',    # mov r64, [r64+disp32]
    (REX_W, 0x89): 'mov_write',   # mov [r64+disp32], r64
    (REX_W, 0x8D): 'lea',         # lea r64, [r64+disp32]
}

INSTRUCTION_KINDS = tuple(INSTRUCTION_SHAPES.values())

_PREFIXES = sorted({prefix for prefix, _ in INSTRUCTION_SHAPES})

# endregion Instruction Shapes


@dataclass(frozen=True)
class DisplacementEntry:
    file_offset: int
    kind: str
    instruction_bytes: bytes

    @property
    def modrm(self):
        return self.instruction_bytes[2]

    def to_dict(self):
        return {
            'file_offset': self.file_offset,
            'kind': self.kind,
            'instruction_bytes': self.instruction_bytes.hex(' ').upper(),
        }


def decode_displacement_access(data, pos):
    """Decode a recognized field access at pos.

    Returns (kind, displacement) or None.  The displacement is the raw
    signed disp32; range filtering is the indexer's job.
    """
    if pos < 0 or pos + INSTRUCTION_LENGTH > len(data):
        return None
    kind = INSTRUCTION_SHAPES.get((data[pos], data[pos + 1]))
    if kind is None:
        return None
    modrm = data[pos + 2]
    if (modrm >> 6) & 0x03 != MOD_DISP32 or modrm & 0x07 == RM_SIB:
        return None
    return kind, struct.unpack_from('<i', data, pos + 3)[0]


class DisplacementIndex:
    """Mapping displacement -> [DisplacementEntry, ...] (read-only view)."""

    def __init__(self, entries_by_offset):
        self._index = entries_by_offset

    def __len__(self):
        return len(self._index)

    def __contains__(self, displacement):
        return displacement in self._index

    def __iter__(self):
        return iter(self._index)

    def items(self):
        return self._index.items()

    def lookup(self, displacement):
        return list(self._index.get(displacement, ()))

    def count(self, displacement):
        return len(self._index.get(displacement, ()))

    def stats(self, top=INDEX_STATS_TOP):
        counts = Counter({off: len(entries) for off, entries in self._index.items()})
        return {
            'unique_offsets': len(self._index),
            'total_entries': sum(counts.values()),
            'top_offsets': [
                {'offset': off, 'count': n} for off, n in counts.most_common(top)
            ],
        }


def _candidates(data, prefix, start, last):
    needle = bytes([prefix])
    pos = data.find(needle, start, last + 1)
    while pos >= 0:
        yield pos
        pos = data.find(needle, pos + 1, last + 1)


def _scan_section(data, start, end, index):
    """Append every recognized access in data[start:end] to index.

    Candidate positions come from bytes.find() on the prefix bytes, merged
    so entries are appended in increasing file-offset order.
    """
    found = 0
    last = end - INSTRUCTION_LENGTH
    streams = [_candidates(data, prefix, start, last) for prefix in _PREFIXES]
    for pos in heapq.merge(*streams):
        decoded = decode_displacement_access(data, pos)
        if decoded is None:
            continue
        kind, disp = decoded
        if 0 <= disp < MAX_DISPLACEMENT:
            entry = DisplacementEntry(
                file_offset=pos,
                kind=kind,
                instruction_bytes=bytes(data[pos:pos + INSTRUCTION_LENGTH]),
            )
            index.setdefault(disp, []).append(entry)
            found += 1
    return found


def build_index(data, pe):
    """Index every recognized field access in the executable sections of pe."""
    index = {}
    for section in pe.executable_sections():
        start, end = section.raw_range(len(data))
        if end - start < INSTRUCTION_LENGTH:
            continue
        found = _scan_section(data, start, end, index)
        logger.debug("indexed %d accesses in %s [0x%X, 0x%X)",
                     found, section.name, start, end)
    return DisplacementIndex(index)
