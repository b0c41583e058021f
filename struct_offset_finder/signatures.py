"""
Signature model, confidence scoring and bulk-shift clustering.

Signatures are byte patterns extracted from a game binary that reference a
known struct field.  When a new build ships they are scanned for again, and
the displacement read back from each match tells where the field moved.
"""

from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import List, Optional

from .config import HIGH_CONFIDENCE, LOW_CONFIDENCE, WEAK_STRUCT_AVERAGE
from .layout import parse_offset, to_hex, signed_hex
from .patterns import parse_pattern

# region Signature Kinds

FIELD_ACCESS = 'field_access'   # mov reg, [reg+offset]
RTTI = 'rtti'                   # RTTI type descriptor string
STRING_REF = 'string_ref'       # nearby string literal reference
FUNC_PROLOGUE = 'func_prologue' # unique function bytes
VTABLE_REF = 'vtable_ref'       # vtable pointer reference

# RTTI and vtable anchors are intrinsically unique, hence trusted most.
SIGNATURE_TYPE_WEIGHTS = {
    RTTI: 99,
    VTABLE_REF: 95,
    FIELD_ACCESS: 85,
    FUNC_PROLOGUE: 80,
    STRING_REF: 70,
}

# Kinds whose pattern lives in data sections rather than code.
DATA_KINDS = (RTTI, STRING_REF)

# endregion Signature Kinds


# region Confidence

def clamp(value, low=0, high=100):
    return max(low, min(high, value))


def base_weight(kind):
    try:
        return SIGNATURE_TYPE_WEIGHTS[kind]
    except KeyError:
        raise ValueError(f"Unknown signature kind: {kind!r}") from None


def calculate_confidence(signature, occurrences, context_matched=False):
    """Scan-time confidence of a signature match.

    Every occurrence beyond the first costs 10 points (at most 30); a
    contextual match adds 5.  Always within [0, 100].
    """
    kind = signature.kind if isinstance(signature, Signature) else signature
    confidence = base_weight(kind)
    if occurrences > 1:
        confidence -= min(30, (occurrences - 1) * 10)
    if context_matched:
        confidence += 5
    return clamp(confidence)


def extraction_confidence(kind, occurrences):
    """Confidence assigned when a signature is first extracted.

    A field referenced exactly once gets a 10 point uniqueness bonus; each
    extra reference costs 5 points (at most 20).
    """
    confidence = base_weight(kind)
    if occurrences == 1:
        confidence += 10
    else:
        confidence -= min(20, (occurrences - 1) * 5)
    return clamp(confidence)

# endregion Confidence


# region Signature Types

@dataclass(frozen=True)
class Signature:
    kind: str
    struct: str
    field: str
    offset: int
    pattern: str
    confidence: int
    context_before: Optional[str] = None
    context_after: Optional[str] = None
    source_function: Optional[str] = None
    notes: Optional[str] = None

    def __post_init__(self):
        base_weight(self.kind)
        # Fail loudly on a bad signature file rather than matching nothing.
        parse_pattern(self.pattern)
        for ctx in (self.context_before, self.context_after):
            if ctx:
                parse_pattern(ctx)

    @property
    def full_pattern(self):
        parts = [self.context_before, self.pattern, self.context_after]
        return ' '.join(p for p in parts if p)

    @property
    def context_length(self):
        """Number of pattern tokens preceding the core pattern."""
        return len(self.context_before.split()) if self.context_before else 0

    @property
    def has_context(self):
        return bool(self.context_before or self.context_after)

    def to_dict(self):
        d = {
            'type': self.kind,
            'struct': self.struct,
            'field': self.field,
            'offset': self.offset,
            'pattern': self.pattern,
            'confidence': self.confidence,
        }
        for key, value in (('contextBefore', self.context_before),
                           ('contextAfter', self.context_after),
                           ('sourceFunction', self.source_function),
                           ('notes', self.notes)):
            if value:
                d[key] = value
        return d

    @classmethod
    def from_dict(cls, d):
        return cls(
            kind=d['type'],
            struct=d['struct'],
            field=d['field'],
            offset=parse_offset(d['offset']),
            pattern=d['pattern'],
            confidence=int(d.get('confidence', SIGNATURE_TYPE_WEIGHTS.get(d['type'], 0))),
            context_before=d.get('contextBefore'),
            context_after=d.get('contextAfter'),
            source_function=d.get('sourceFunction'),
            notes=d.get('notes'),
        )


@dataclass
class StructSignatures:
    struct: str
    version: str
    binary_hash: str
    extracted_at: str
    signatures: List[Signature] = field(default_factory=list)

    @property
    def identity(self):
        return (self.struct, self.binary_hash)

    def to_dict(self):
        return {
            'struct': self.struct,
            'version': self.version,
            'binaryHash': self.binary_hash,
            'extractedAt': self.extracted_at,
            'signatures': [s.to_dict() for s in self.signatures],
        }

    @classmethod
    def from_dict(cls, d):
        return cls(
            struct=d['struct'],
            version=str(d.get('version', 'unknown')),
            binary_hash=d.get('binaryHash', ''),
            extracted_at=d.get('extractedAt', ''),
            signatures=[Signature.from_dict(s) for s in d.get('signatures') or []],
        )


@dataclass
class SignatureMatch:
    signature: Signature
    status: str                        # matched | missing | ambiguous
    confidence: int = 0
    match_count: int = 0
    file_offset: Optional[int] = None
    observed_offset: Optional[int] = None
    context_matched: bool = False
    candidate_offsets: List[int] = field(default_factory=list)
    notes: Optional[str] = None

    @property
    def found(self):
        return self.status == 'matched'

    def to_dict(self):
        return {
            'signature': self.signature.to_dict(),
            'status': self.status,
            'found': self.found,
            'fileOffset': self.file_offset,
            'newOffset': self.observed_offset,
            'confidence': self.confidence,
            'matchCount': self.match_count,
            'contextMatched': self.context_matched,
            'candidateOffsets': list(self.candidate_offsets),
            'notes': self.notes,
        }


@dataclass
class FieldChange:
    struct: str
    field: str
    old_offset: int
    new_offset: int
    confidence: int
    pattern_group: Optional[str] = None

    @property
    def delta(self):
        return self.new_offset - self.old_offset

    def to_dict(self):
        return {
            'struct': self.struct,
            'field': self.field,
            'oldOffset': self.old_offset,
            'newOffset': self.new_offset,
            'delta': self.delta,
            'confidence': self.confidence,
            'patternGroup': self.pattern_group,
        }


@dataclass
class ChangePattern:
    name: str
    delta: int
    affected_structs: List[str]
    affected_fields: List[str]
    match_count: int
    total_candidates: int
    average_confidence: int
    likely_cause: str
    anomalies: List[FieldChange] = field(default_factory=list)

    @property
    def confidence(self):
        """Share of all candidate changes explained by this delta (0-1)."""
        if not self.total_candidates:
            return 0.0
        return clamp(self.match_count / self.total_candidates, 0.0, 1.0)

    def to_dict(self):
        return {
            'name': self.name,
            'delta': self.delta,
            'affectedStructs': list(self.affected_structs),
            'affectedFields': list(self.affected_fields),
            'matchCount': self.match_count,
            'totalCandidates': self.total_candidates,
            'confidence': self.confidence,
            'averageConfidence': self.average_confidence,
            'likelyCause': self.likely_cause,
            'anomalies': [a.to_dict() for a in self.anomalies],
        }


@dataclass
class ScanResult:
    binary: str
    binary_hash: str
    scanned_at: str
    matches: List[SignatureMatch] = field(default_factory=list)
    changes: List[FieldChange] = field(default_factory=list)
    pattern_groups: List[ChangePattern] = field(default_factory=list)
    version_detected: Optional[str] = None

    @property
    def signatures_total(self):
        return len(self.matches)

    @property
    def signatures_matched(self):
        return sum(1 for m in self.matches if m.status == 'matched')

    @property
    def signatures_missing(self):
        return sum(1 for m in self.matches if m.status == 'missing')

    @property
    def signatures_ambiguous(self):
        return sum(1 for m in self.matches if m.status == 'ambiguous')

    def to_dict(self):
        return {
            'binary': self.binary,
            'binaryHash': self.binary_hash,
            'scannedAt': self.scanned_at,
            'versionDetected': self.version_detected,
            'signaturesMatched': self.signatures_matched,
            'signaturesMissing': self.signatures_missing,
            'signaturesAmbiguous': self.signatures_ambiguous,
            'signaturesTotal': self.signatures_total,
            'matches': [m.to_dict() for m in self.matches],
            'changes': [c.to_dict() for c in self.changes],
            'patternGroups': [p.to_dict() for p in self.pattern_groups],
        }

# endregion Signature Types


# region Bulk Shift Detection

def pattern_name(delta):
    return f"bulk_shift_{signed_hex(delta)}"


def group_by_delta(items, delta_of):
    """Partition items by exact delta, preserving first-seen order."""
    groups = {}
    for item in items:
        groups.setdefault(delta_of(item), []).append(item)
    return groups


def detect_patterns(changes):
    """Cluster field changes into bulk-shift hypotheses.

    Changes are partitioned by exact delta; a delta shared by at least two
    changes becomes a ChangePattern.  A single change is evidence, not a
    pattern.  Anomalies are the changes of the same structs whose delta
    disagrees with the pattern.
    """
    patterns = []
    total = len(changes)
    by_delta = group_by_delta(changes, lambda c: c.delta)

    for delta, members in by_delta.items():
        if delta == 0 or len(members) < 2:
            continue
        structs = list(dict.fromkeys(c.struct for c in members))
        avg = sum(c.confidence for c in members) / len(members)
        anomalies = [c for c in changes if c.struct in structs and c.delta != delta]
        patterns.append(ChangePattern(
            name=pattern_name(delta),
            delta=delta,
            affected_structs=structs,
            affected_fields=[f"{c.struct}.{c.field}" for c in members],
            match_count=len(members),
            total_candidates=total,
            average_confidence=round(avg),
            likely_cause=('Possible base class size change' if len(structs) > 1
                          else f"Fields in {structs[0]} shifted"),
            anomalies=anomalies,
        ))

    # Most impactful first
    patterns.sort(key=lambda p: (len(p.affected_structs), p.match_count), reverse=True)
    return patterns


def assign_pattern_groups(changes, patterns):
    """Label each change with the name of the pattern sharing its delta."""
    by_delta = {p.delta: p.name for p in patterns}
    for change in changes:
        change.pattern_group = by_delta.get(change.delta)
    return changes


def majority(values):
    """(value, count) of the most common value; earliest wins ties."""
    if not values:
        return None, 0
    return Counter(values).most_common(1)[0]

# endregion Bulk Shift Detection


# region Signature Status

@dataclass
class StructStatus:
    struct: str
    signature_count: int
    average_confidence: int


@dataclass
class SignatureStatus:
    collections: int = 0
    signatures: int = 0
    by_kind: dict = field(default_factory=dict)
    average_confidence: int = 0
    high_confidence: int = 0
    low_confidence: int = 0
    structs: List[StructStatus] = field(default_factory=list)

    def weakest(self, below=WEAK_STRUCT_AVERAGE, limit=10):
        """Structs averaging under below, lowest first."""
        weak = [s for s in self.structs if s.average_confidence < below]
        return sorted(weak, key=lambda s: s.average_confidence)[:limit]

    def to_dict(self):
        return asdict(self)


def summarize_signatures(collections):
    """Counts and confidence bands over loaded signature collections."""
    status = SignatureStatus()
    total = 0
    for c in collections:
        status.collections += 1
        if not c.signatures:
            continue
        confidences = [s.confidence for s in c.signatures]
        for sig in c.signatures:
            status.by_kind[sig.kind] = status.by_kind.get(sig.kind, 0) + 1
        status.signatures += len(confidences)
        status.high_confidence += sum(1 for v in confidences if v >= HIGH_CONFIDENCE)
        status.low_confidence += sum(1 for v in confidences if v < LOW_CONFIDENCE)
        total += sum(confidences)
        status.structs.append(StructStatus(
            c.struct, len(confidences), round(sum(confidences) / len(confidences))))
    if status.signatures:
        status.average_confidence = round(total / status.signatures)
    return status

# endregion Signature Status


# region Signature Dump

def serialize_signatures(sigs):
    """Readable YAML-like dump of a StructSignatures collection."""
    lines = [
        f"# Signatures for {sigs.struct}",
        f"# Extracted from game version {sigs.version}",
        f"# Generated: {sigs.extracted_at}",
        '',
        f"struct: {sigs.struct}",
        f'version: "{sigs.version}"',
        f'binaryHash: "{sigs.binary_hash}"',
        f'extractedAt: "{sigs.extracted_at}"',
        'signatures:',
    ]
    for sig in sigs.signatures:
        lines.append(f"  - type: {sig.kind}")
        lines.append(f"    struct: {sig.struct}")
        lines.append(f"    field: {sig.field}")
        lines.append(f"    offset: {to_hex(sig.offset)}")
        lines.append(f'    pattern: "{sig.pattern}"')
        if sig.context_before:
            lines.append(f'    contextBefore: "{sig.context_before}"')
        if sig.context_after:
            lines.append(f'    contextAfter: "{sig.context_after}"')
        lines.append(f"    confidence: {sig.confidence}")
        if sig.source_function:
            lines.append(f'    sourceFunction: "{sig.source_function}"')
        if sig.notes:
            lines.append(f'    notes: "{sig.notes}"')
        lines.append('')
    return '\n'.join(lines)

# endregion Signature Dump
