"""
Minimal PE (Portable Executable) header parser.

Only the DOS header, PE signature, COFF header, the optional-header fields
we need (magic, entry point, image base) and the section table are read.
Malformed input never raises: the caller gets an image with valid=False.
"""

import struct
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

logger = logging.getLogger(__name__)

# region PE Constants

DOS_MAGIC = 0x5A4D               # "MZ"
PE_SIGNATURE = b'PE\x00\x00'
E_LFANEW_OFFSET = 0x3C

MACHINE_I386 = 0x014C
MACHINE_AMD64 = 0x8664

OPTIONAL_MAGIC_PE32 = 0x10B
OPTIONAL_MAGIC_PE32_PLUS = 0x20B

COFF_HEADER_SIZE = 20
SECTION_HEADER_SIZE = 40

IMAGE_SCN_CNT_CODE = 0x00000020
IMAGE_SCN_MEM_EXECUTE = 0x20000000

# endregion PE Constants


# region PE Types

@dataclass(frozen=True)
class Section:
    name: str
    virtual_address: int
    virtual_size: int
    raw_address: int
    raw_size: int
    characteristics: int

    @property
    def is_executable(self):
        return bool(self.characteristics & (IMAGE_SCN_CNT_CODE | IMAGE_SCN_MEM_EXECUTE))

    def raw_range(self, data_len):
        """File range [start, end) of this section, clamped to the buffer."""
        start = min(self.raw_address, data_len)
        end = min(self.raw_address + self.raw_size, data_len)
        return start, end

    def to_dict(self):
        return {
            'name': self.name,
            'virtual_address': self.virtual_address,
            'virtual_size': self.virtual_size,
            'raw_address': self.raw_address,
            'raw_size': self.raw_size,
            'characteristics': self.characteristics,
            'executable': self.is_executable,
        }


@dataclass(frozen=True)
class PEImage:
    valid: bool
    is_64bit: bool = False
    machine: int = 0
    image_base: int = 0
    entry_point_rva: int = 0
    timestamp: int = 0
    sections: tuple = field(default_factory=tuple)

    @classmethod
    def invalid(cls):
        return cls(valid=False)

    @property
    def build_time(self) -> Optional[datetime]:
        if not self.valid:
            return None
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)

    def executable_sections(self) -> List[Section]:
        return [s for s in self.sections if s.is_executable]

    def rva_to_offset(self, rva):
        """Map an RVA to a file offset, or None when no section holds it."""
        for s in self.sections:
            # Some linkers leave VirtualSize zero; fall back to the raw size.
            size = s.virtual_size or s.raw_size
            if s.virtual_address <= rva < s.virtual_address + size:
                return s.raw_address + (rva - s.virtual_address)
        return None

    def offset_to_rva(self, offset):
        """Map a file offset to an RVA, or None when no section holds it."""
        for s in self.sections:
            if s.raw_address <= offset < s.raw_address + s.raw_size:
                return s.virtual_address + (offset - s.raw_address)
        return None

    def section_for_offset(self, offset):
        for s in self.sections:
            if s.raw_address <= offset < s.raw_address + s.raw_size:
                return s
        return None

    def to_dict(self):
        return {
            'valid': self.valid,
            'is_64bit': self.is_64bit,
            'machine': self.machine,
            'image_base': self.image_base,
            'entry_point_rva': self.entry_point_rva,
            'timestamp': self.timestamp,
            'build_time': self.build_time.isoformat() if self.build_time else None,
            'sections': [s.to_dict() for s in self.sections],
        }

# endregion PE Types


# region PE Parser

def _read(fmt, data, offset):
    """struct.unpack_from that reports truncation as None instead of raising."""
    if offset < 0 or offset + struct.calcsize(fmt) > len(data):
        return None
    return struct.unpack_from(fmt, data, offset)[0]


def parse_pe(data) -> PEImage:
    """Parse DOS/PE/COFF/optional headers and the section table."""
    if len(data) < 0x40 or _read('<H', data, 0) != DOS_MAGIC:
        logger.debug("missing MZ header")
        return PEImage.invalid()

    pe_offset = _read('<I', data, E_LFANEW_OFFSET)
    if pe_offset is None or pe_offset + 4 + COFF_HEADER_SIZE > len(data):
        logger.debug("PE header offset 0x%X out of range", pe_offset or 0)
        return PEImage.invalid()

    if data[pe_offset:pe_offset + 4] != PE_SIGNATURE:
        logger.debug("bad PE signature at 0x%X", pe_offset)
        return PEImage.invalid()

    coff = pe_offset + 4
    machine = _read('<H', data, coff)
    num_sections = _read('<H', data, coff + 2)
    timestamp = _read('<I', data, coff + 4)
    opt_header_size = _read('<H', data, coff + 16)

    is_64bit = machine == MACHINE_AMD64

    opt = coff + COFF_HEADER_SIZE
    magic = _read('<H', data, opt)
    expected_magic = OPTIONAL_MAGIC_PE32_PLUS if is_64bit else OPTIONAL_MAGIC_PE32
    if magic != expected_magic:
        logger.debug("optional header magic 0x%X does not match machine 0x%X",
                     magic or 0, machine)
        return PEImage.invalid()

    entry_point = _read('<I', data, opt + 16)
    if is_64bit:  # PE32+
        image_base = _read('<Q', data, opt + 24)
    else:  # PE32
        image_base = _read('<I', data, opt + 28)
    if entry_point is None or image_base is None:
        return PEImage.invalid()

    sections = []
    sec_offset = opt + opt_header_size
    for i in range(num_sections):
        s = sec_offset + i * SECTION_HEADER_SIZE
        if s + SECTION_HEADER_SIZE > len(data):
            logger.debug("section table truncated at entry %d of %d", i, num_sections)
            return PEImage.invalid()
        name = data[s:s+8].split(b'\x00', 1)[0].decode('ascii', errors='replace')
        vsize, vaddr, raw_size, raw_offset = struct.unpack_from('<IIII', data, s + 8)
        characteristics = struct.unpack_from('<I', data, s + 36)[0]
        sections.append(Section(
            name=name, virtual_address=vaddr, virtual_size=vsize,
            raw_address=raw_offset, raw_size=raw_size,
            characteristics=characteristics,
        ))

    return PEImage(
        valid=True,
        is_64bit=is_64bit,
        machine=machine,
        image_base=image_base,
        entry_point_rva=entry_point,
        timestamp=timestamp,
        sections=tuple(sections),
    )

# endregion PE Parser
