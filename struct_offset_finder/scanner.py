"""
Binary scanner: signature extraction and scanning over one PE image.

Extraction turns declared field offsets into byte signatures using the
displacement index; scanning looks those signatures up in a newer build and
reads back where each field moved.
"""

import re
import struct
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List

from .config import (
    AMBIGUOUS_MATCH_LIMIT, CONTEXT_LOST_CONFIDENCE, DEFAULT_CONTEXT_BYTES,
    DEFAULT_MIN_CONFIDENCE, INSTRUCTION_LENGTH, MAX_FIELD_OCCURRENCES,
    MIN_STRING_LENGTH, RTTI_FIELD,
)
from .displacement import build_index
from .pe import parse_pe
from .patterns import (
    bytes_to_pattern, extract_displacement, find_all, fix_displacement, parse_pattern,
)
from .signatures import (
    DATA_KINDS, FIELD_ACCESS, RTTI, SIGNATURE_TYPE_WEIGHTS, VTABLE_REF,
    FieldChange, ScanResult, Signature, SignatureMatch, StructSignatures,
    assign_pattern_groups, calculate_confidence, detect_patterns,
    extraction_confidence, majority,
)

logger = logging.getLogger(__name__)

# Bytes of a field-access instruction that hold the disp32.
DISP32_POSITIONS = range(3, INSTRUCTION_LENGTH)

_VERSION_RE = re.compile(r'^\d+\.\d+[a-z]?$')
_BUILD_DATE_RE = re.compile(r'20\d{2}\.\d{2}\.\d{2}')


class InvalidBinaryError(ValueError):
    """Raised when extraction or scanning is asked of a non-PE buffer."""


def utc_now():
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ExtractionResult:
    collections: List[StructSignatures] = field(default_factory=list)
    fields_attempted: int = 0
    fields_covered: int = 0
    skipped_no_refs: int = 0
    skipped_ambiguous: int = 0
    skipped_low_confidence: int = 0
    rtti_found: int = 0

    @property
    def coverage(self):
        """Percentage of attempted fields that got a signature."""
        if not self.fields_attempted:
            return 0.0
        return 100.0 * self.fields_covered / self.fields_attempted

    @property
    def signature_count(self):
        return sum(len(c.signatures) for c in self.collections)

    def to_dict(self):
        return {
            'collections': [c.to_dict() for c in self.collections],
            'fieldsAttempted': self.fields_attempted,
            'fieldsCovered': self.fields_covered,
            'skippedNoRefs': self.skipped_no_refs,
            'skippedAmbiguous': self.skipped_ambiguous,
            'skippedLowConfidence': self.skipped_low_confidence,
            'rttiFound': self.rtti_found,
            'coverage': round(self.coverage, 1),
        }


class BinaryScanner:
    """One loaded binary.  The displacement index is built on first use."""

    def __init__(self, data, name='unknown'):
        self.data = bytes(data)
        self.name = name
        self.pe = parse_pe(self.data)
        self.hash = hashlib.sha256(self.data).hexdigest()
        self._index = None

    @classmethod
    def from_file(cls, path):
        path = Path(path)
        return cls(path.read_bytes(), name=path.name)

    def _require_valid(self):
        if not self.pe.valid:
            raise InvalidBinaryError(f"{self.name}: not a valid PE image")

    # region Index

    def build_displacement_index(self):
        if self._index is None:
            self._index = build_index(self.data, self.pe)
            logger.info("displacement index: %d unique offsets", len(self._index))
        return self._index

    def lookup_offset(self, displacement):
        return self.build_displacement_index().lookup(displacement)

    def index_stats(self, top=None):
        index = self.build_displacement_index()
        return index.stats() if top is None else index.stats(top)

    # endregion Index

    # region Addressing / Search

    def rva_to_offset(self, rva):
        return self.pe.rva_to_offset(rva)

    def offset_to_rva(self, offset):
        return self.pe.offset_to_rva(offset)

    def _sections(self, executable_only):
        if executable_only:
            return self.pe.executable_sections()
        return list(self.pe.sections)

    def find_pattern(self, pattern, executable_only=True):
        """File offsets of every match, section by section."""
        parsed = parse_pattern(pattern) if isinstance(pattern, str) else pattern
        matches = []
        for section in self._sections(executable_only):
            start, end = section.raw_range(len(self.data))
            matches.extend(find_all(self.data, parsed, start, end))
        return matches

    def find_strings(self, regex, min_length=MIN_STRING_LENGTH):
        """(offset, text) of printable ASCII runs in any section matching regex."""
        if isinstance(regex, str):
            regex = re.compile(regex)
        run = re.compile(rb'[\x20-\x7e]{%d,}' % min_length)
        results = []
        for section in self.pe.sections:
            start, end = section.raw_range(len(self.data))
            for m in run.finditer(self.data, start, end):
                text = m.group().decode('ascii')
                if regex.search(text):
                    results.append((m.start(), text))
        return results

    def find_rtti(self, struct_name):
        """File offsets of the "<Struct>@@" decorated-name fragment."""
        return self.find_pattern(rtti_pattern(struct_name), executable_only=False)

    # endregion Addressing / Search

    # region Extraction

    def _context(self, entry, context_bytes):
        section = self.pe.section_for_offset(entry.file_offset)
        sec_start, sec_end = section.raw_range(len(self.data))
        begin = max(sec_start, entry.file_offset - context_bytes)
        instr_end = entry.file_offset + INSTRUCTION_LENGTH
        finish = min(sec_end, instr_end + context_bytes)
        before = self.data[begin:entry.file_offset]
        after = self.data[instr_end:finish]
        return (bytes_to_pattern(before) or None,
                bytes_to_pattern(after) or None)

    def _field_signature(self, struct_def, fdef, result, min_confidence, context_bytes):
        entries = self.lookup_offset(fdef.offset)
        n = len(entries)
        if n == 0:
            result.skipped_no_refs += 1
            return None
        if n > MAX_FIELD_OCCURRENCES:
            result.skipped_ambiguous += 1
            return None
        confidence = extraction_confidence(FIELD_ACCESS, n)
        if confidence < min_confidence:
            result.skipped_low_confidence += 1
            return None

        entry = entries[0]
        before, after = self._context(entry, context_bytes) if context_bytes else (None, None)
        rva = self.offset_to_rva(entry.file_offset)
        return Signature(
            kind=FIELD_ACCESS,
            struct=struct_def.type,
            field=fdef.display_name,
            offset=fdef.offset,
            pattern=bytes_to_pattern(entry.instruction_bytes, DISP32_POSITIONS),
            confidence=confidence,
            context_before=before,
            context_after=after,
            notes=(f"{entry.kind} at RVA 0x{rva:X}, {n} reference(s)"
                   if rva is not None else f"{entry.kind}, {n} reference(s)"),
        )

    def extract(self, structs, version=None, min_confidence=DEFAULT_MIN_CONFIDENCE,
                context_bytes=DEFAULT_CONTEXT_BYTES):
        """Build signature collections for the declared structs."""
        self._require_valid()
        self.build_displacement_index()
        version = version or detect_game_version(self) or 'unknown'
        extracted_at = utc_now()
        result = ExtractionResult()

        for struct_def in structs:
            sigs = []
            for fdef in struct_def.fields:
                if fdef.offset is None:
                    continue
                result.fields_attempted += 1
                sig = self._field_signature(struct_def, fdef, result,
                                            min_confidence, context_bytes)
                if sig is not None:
                    result.fields_covered += 1
                    sigs.append(sig)

            rtti_hits = self.find_rtti(struct_def.type)
            if rtti_hits:
                result.rtti_found += 1
                sigs.append(Signature(
                    kind=RTTI,
                    struct=struct_def.type,
                    field=RTTI_FIELD,
                    offset=0,
                    pattern=rtti_pattern(struct_def.type),
                    confidence=SIGNATURE_TYPE_WEIGHTS[RTTI],
                    notes=f"Found at offset 0x{rtti_hits[0]:X}",
                ))

            if sigs:
                result.collections.append(StructSignatures(
                    struct=struct_def.type,
                    version=version,
                    binary_hash=self.hash,
                    extracted_at=extracted_at,
                    signatures=sigs,
                ))
            logger.debug("%s: %d signature(s)", struct_def.type, len(sigs))

        logger.info("extracted %d signatures for %d/%d fields",
                    result.signature_count, result.fields_covered, result.fields_attempted)
        return result

    # endregion Extraction

    # region Scanning

    def match_signature(self, sig):
        """Locate one signature and read back the offset it now encodes.

        Search order: the pattern with its stored context, then the
        instruction with the old displacement still fixed (field unchanged),
        then the bare pattern.  A bare hit after the context went missing
        identifies an instruction shape, not the field, so its confidence
        is held at CONTEXT_LOST_CONFIDENCE.
        """
        executable_only = sig.kind not in DATA_KINDS
        parsed = parse_pattern(sig.pattern)
        # Field and vtable patterns carry a ModR/M wildcard ahead of the disp32.
        width = 4 if sig.kind in (FIELD_ACCESS, VTABLE_REF) else None
        hits = []
        context_matched = False
        context_lost = False
        notes = None

        if sig.has_context:
            skip = sig.context_length
            hits = [h + skip for h in self.find_pattern(sig.full_pattern, executable_only)]
            context_matched = bool(hits)
            context_lost = not hits
        if not hits and context_lost and width:
            anchored = fix_displacement(parsed, sig.offset, width)
            if anchored is not None:
                hits = self.find_pattern(anchored, executable_only)
                if hits:
                    context_lost = False
                    notes = "Context lost; instruction still reads the old offset"
        if not hits:
            hits = self.find_pattern(parsed, executable_only)

        if not hits:
            return SignatureMatch(signature=sig, status='missing',
                                  notes='Pattern not found in binary')
        if len(hits) > AMBIGUOUS_MATCH_LIMIT:
            return SignatureMatch(signature=sig, status='ambiguous', match_count=len(hits),
                                  context_matched=context_matched,
                                  notes=f"{len(hits)} matches, too many to pick one")

        observed = []
        for hit in hits:
            value = extract_displacement(self.data, hit, parsed, width=width)
            # A fully fixed pattern only proves presence.
            observed.append(sig.offset if value is None else value)

        winner, votes = majority(observed)
        candidates = list(dict.fromkeys(observed))
        confidence = calculate_confidence(sig, len(hits), context_matched)
        if context_lost:
            confidence = min(confidence, CONTEXT_LOST_CONFIDENCE)
            notes = "Context lost; matched by the bare pattern only"
        if len(candidates) > 1:
            notes = ((notes + "; ") if notes else "") + (
                f"{len(hits)} matches disagree on the offset; "
                f"{votes} vote(s) for 0x{winner:X}")
        elif len(hits) > 1 and notes is None:
            notes = f"{len(hits)} matches agree on the offset"

        return SignatureMatch(
            signature=sig,
            status='matched',
            confidence=confidence,
            match_count=len(hits),
            file_offset=hits[observed.index(winner)],
            observed_offset=winner,
            context_matched=context_matched,
            candidate_offsets=candidates,
            notes=notes,
        )

    def scan(self, collections, binary=None):
        """Match every signature of every collection against this binary."""
        self._require_valid()
        matches = []
        changes = []
        for collection in collections:
            for sig in collection.signatures:
                match = self.match_signature(sig)
                matches.append(match)
                if match.found and match.observed_offset != sig.offset:
                    changes.append(FieldChange(
                        struct=sig.struct,
                        field=sig.field,
                        old_offset=sig.offset,
                        new_offset=match.observed_offset,
                        confidence=match.confidence,
                    ))

        patterns = detect_patterns(changes)
        assign_pattern_groups(changes, patterns)
        result = ScanResult(
            binary=binary or self.name,
            binary_hash=self.hash,
            scanned_at=utc_now(),
            matches=matches,
            changes=changes,
            pattern_groups=patterns,
            version_detected=detect_game_version(self),
        )
        logger.info("scan: %d/%d matched, %d changed, %d pattern(s)",
                    result.signatures_matched, result.signatures_total,
                    len(changes), len(patterns))
        return result

    # endregion Scanning


def rtti_pattern(struct_name):
    return bytes_to_pattern(f"{struct_name}@@".encode('ascii'))


def generate_candidate_patterns(offset):
    """Field-access patterns that may reference offset, for manual hunting."""
    disp32 = struct.pack('<I', offset & 0xFFFFFFFF).hex(' ').upper()
    patterns = [
        f"48 8B ?? {disp32}",   # mov r64, [r64+disp32]
        f"48 89 ?? {disp32}",   # mov [r64+disp32], r64
        f"48 8D ?? {disp32}",   # lea r64, [r64+disp32]
    ]
    if -128 <= offset < 128:
        disp8 = f"{offset & 0xFF:02X}"
        patterns += [f"48 8B ?? {disp8}", f"48 89 ?? {disp8}", f"48 8D ?? {disp8}"]
    return patterns


def detect_game_version(scanner):
    """First "N.N" style version string in the image, else a build date."""
    for _offset, text in scanner.find_strings(_VERSION_RE):
        return text
    for _offset, text in scanner.find_strings(_BUILD_DATE_RE):
        return _BUILD_DATE_RE.search(text).group()
    return None
