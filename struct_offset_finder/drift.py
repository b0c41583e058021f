"""
Symbolic drift detection between two declared layout snapshots.

Diffs are computed struct by struct, then the field offset deltas are
clustered per inheritance hierarchy into shift hypotheses.  Nothing here
touches a binary.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional, Union

from .config import (
    CASCADE_SUGGESTION_THRESHOLD, CROSS_HIERARCHY_SUGGESTION_THRESHOLD,
    HIERARCHY_SUGGESTION_THRESHOLD,
)
from .layout import signed_hex, to_hex
from .signatures import clamp, group_by_delta, majority

logger = logging.getLogger(__name__)

ADDED = 'added'
REMOVED = 'removed'
MODIFIED = 'modified'


# region Diff Types

@dataclass
class FieldDiff:
    change: str
    name: str
    type: str
    old_offset: Optional[int] = None
    new_offset: Optional[int] = None
    old_type: Optional[str] = None
    new_type: Optional[str] = None
    old_size: Optional[int] = None
    new_size: Optional[int] = None

    @property
    def delta(self):
        """Offset delta of a modified field, None when either side is unknown."""
        if self.change != MODIFIED or self.old_offset is None or self.new_offset is None:
            return None
        return self.new_offset - self.old_offset


@dataclass
class FuncDiff:
    change: str
    name: str
    old_address: Optional[int] = None
    new_address: Optional[int] = None
    old_signature: Optional[str] = None
    new_signature: Optional[str] = None


@dataclass
class VFuncDiff:
    change: str
    name: str
    old_id: Optional[int] = None
    new_id: Optional[int] = None
    old_signature: Optional[str] = None
    new_signature: Optional[str] = None


@dataclass
class StructDiff:
    change: str
    struct: str
    old_size: Optional[int] = None
    new_size: Optional[int] = None
    fields: List[FieldDiff] = field(default_factory=list)
    funcs: List[FuncDiff] = field(default_factory=list)
    vfuncs: List[VFuncDiff] = field(default_factory=list)

    def offset_shifts(self):
        """Modified fields whose offset moved, with their delta."""
        return [(f, f.delta) for f in self.fields if f.delta]


@dataclass
class EnumValueDiff:
    change: str
    name: str
    old_value: Union[int, str, None] = None
    new_value: Union[int, str, None] = None


@dataclass
class EnumDiff:
    change: str
    enum: str
    old_underlying: Optional[str] = None
    new_underlying: Optional[str] = None
    values: List[EnumValueDiff] = field(default_factory=list)

# endregion Diff Types


# region Struct / Enum Diff

def _keyed(items, key):
    """Name -> item, later duplicates win."""
    return {key(i): i for i in items}


def _diff_keyed(old_map, new_map, removed, added, modified):
    """Walk two keyed maps: removed first, then added / modified in new order."""
    out = [removed(k, v) for k, v in old_map.items() if k not in new_map]
    for k, new in new_map.items():
        if k not in old_map:
            out.append(added(k, new))
        else:
            change = modified(k, old_map[k], new)
            if change is not None:
                out.append(change)
    return out


def diff_fields(old_fields, new_fields):
    def modified(key, old, new):
        if old.offset == new.offset and old.type == new.type and old.size == new.size:
            return None
        return FieldDiff(MODIFIED, key, new.type, old.offset, new.offset,
                         old.type, new.type, old.size, new.size)

    return _diff_keyed(
        _keyed(old_fields, lambda f: f.key),
        _keyed(new_fields, lambda f: f.key),
        lambda key, f: FieldDiff(REMOVED, key, f.type, old_offset=f.offset,
                                 old_type=f.type, old_size=f.size),
        lambda key, f: FieldDiff(ADDED, key, f.type, new_offset=f.offset,
                                 new_type=f.type, new_size=f.size),
        modified,
    )


def diff_funcs(old_funcs, new_funcs):
    def modified(name, old, new):
        if old.ea == new.ea and old.signature == new.signature:
            return None
        return FuncDiff(MODIFIED, name, old.ea, new.ea, old.signature, new.signature)

    return _diff_keyed(
        _keyed([f for f in old_funcs if f.name], lambda f: f.name),
        _keyed([f for f in new_funcs if f.name], lambda f: f.name),
        lambda name, f: FuncDiff(REMOVED, name, old_address=f.ea, old_signature=f.signature),
        lambda name, f: FuncDiff(ADDED, name, new_address=f.ea, new_signature=f.signature),
        modified,
    )


def diff_vfuncs(old_vfuncs, new_vfuncs):
    def modified(name, old, new):
        if old.id == new.id and old.signature == new.signature:
            return None
        return VFuncDiff(MODIFIED, name, old.id, new.id, old.signature, new.signature)

    return _diff_keyed(
        _keyed([f for f in old_vfuncs if f.name], lambda f: f.name),
        _keyed([f for f in new_vfuncs if f.name], lambda f: f.name),
        lambda name, f: VFuncDiff(REMOVED, name, old_id=f.id, old_signature=f.signature),
        lambda name, f: VFuncDiff(ADDED, name, new_id=f.id, new_signature=f.signature),
        modified,
    )


def compare_structs(old, new):
    """StructDiff for two versions of one struct, or None if unchanged."""
    fields = diff_fields(old.fields, new.fields)
    funcs = diff_funcs(old.funcs, new.funcs)
    vfuncs = diff_vfuncs(old.vfuncs, new.vfuncs)
    if old.size == new.size and not (fields or funcs or vfuncs):
        return None
    return StructDiff(MODIFIED, old.type, old.size, new.size, fields, funcs, vfuncs)


def diff_structs(old_structs, new_structs):
    return _diff_keyed(
        _keyed(old_structs, lambda s: s.type),
        _keyed(new_structs, lambda s: s.type),
        lambda name, s: StructDiff(REMOVED, name, old_size=s.size),
        lambda name, s: StructDiff(ADDED, name, new_size=s.size),
        lambda name, old, new: compare_structs(old, new),
    )


def diff_enum_values(old_values, new_values):
    return _diff_keyed(
        old_values, new_values,
        lambda name, v: EnumValueDiff(REMOVED, name, old_value=v),
        lambda name, v: EnumValueDiff(ADDED, name, new_value=v),
        lambda name, old, new: None if old == new else EnumValueDiff(MODIFIED, name, old, new),
    )


def diff_enums(old_enums, new_enums):
    def modified(name, old, new):
        values = diff_enum_values(old.values, new.values)
        if old.underlying == new.underlying and not values:
            return None
        return EnumDiff(MODIFIED, name, old.underlying, new.underlying, values)

    return _diff_keyed(
        _keyed(old_enums, lambda e: e.type),
        _keyed(new_enums, lambda e: e.type),
        lambda name, e: EnumDiff(REMOVED, name, old_underlying=e.underlying),
        lambda name, e: EnumDiff(ADDED, name, new_underlying=e.underlying),
        modified,
    )

# endregion Struct / Enum Diff


# region Inheritance Hierarchies

@dataclass
class Hierarchy:
    root: str
    members: List[str]
    parents: Dict[str, str]


def build_inheritance_hierarchies(structs):
    """Group structs by the root reached when walking their base chain.

    A base not present in structs, or a cycle, ends the walk.  Largest
    hierarchies come first.
    """
    names = [s.type for s in structs if s.type]
    known = set(names)
    parents = {s.type: s.base for s in structs if s.type and s.base}

    def find_root(name):
        seen = set()
        while name not in seen:
            seen.add(name)
            parent = parents.get(name)
            if not parent or parent not in known:
                return name
            name = parent
        return name

    groups = {}
    for name in dict.fromkeys(names):
        groups.setdefault(find_root(name), []).append(name)

    hierarchies = [
        Hierarchy(root, members, {m: parents[m] for m in members if m in parents})
        for root, members in groups.items()
    ]
    hierarchies.sort(key=lambda h: len(h.members), reverse=True)
    return hierarchies

# endregion Inheritance Hierarchies


# region Hierarchy Deltas

@dataclass
class FieldShift:
    struct: str
    field: str
    old_offset: int
    new_offset: int

    @property
    def delta(self):
        return self.new_offset - self.old_offset


@dataclass
class HierarchyDeltaCandidate:
    hierarchy: str
    struct_names: List[str]
    delta: int
    start_offset: int
    match_count: int
    total_fields: int
    confidence: float
    matching_fields: List[FieldShift] = field(default_factory=list)
    anomalies: List[dict] = field(default_factory=list)

    def to_dict(self):
        return asdict(self)


def _hierarchy_shifts(hierarchy, diff_map):
    shifts = []
    for name in hierarchy.members:
        d = diff_map.get(name)
        if d is None or d.change != MODIFIED:
            continue
        for fdiff, _delta in d.offset_shifts():
            shifts.append(FieldShift(name, fdiff.name, fdiff.old_offset, fdiff.new_offset))
    return shifts


def detect_hierarchy_deltas(old_structs, new_structs, diffs):
    """One shift hypothesis per hierarchy whose fields mostly agree.

    The most frequent non-zero delta wins.  confidence is the share of the
    hierarchy's moved fields that agree with it; the rest become anomalies.
    A hierarchy needs two agreeing fields to produce a candidate.
    """
    diff_map = {d.struct: d for d in diffs}
    candidates = []

    for hierarchy in build_inheritance_hierarchies(old_structs):
        shifts = _hierarchy_shifts(hierarchy, diff_map)
        if not shifts:
            continue
        best, count = majority([s.delta for s in shifts])
        if count < 2:
            logger.debug("%s: no two fields agree on a delta", hierarchy.root)
            continue
        matching = [s for s in shifts if s.delta == best]
        candidates.append(HierarchyDeltaCandidate(
            hierarchy=hierarchy.root,
            struct_names=list(hierarchy.members),
            delta=best,
            start_offset=min(s.old_offset for s in matching),
            match_count=count,
            total_fields=len(shifts),
            confidence=clamp(count / len(shifts), 0.0, 1.0),
            matching_fields=matching,
            anomalies=[dict(asdict(s), actual_delta=s.delta)
                       for s in shifts if s.delta != best],
        ))

    candidates.sort(key=lambda c: (c.confidence, c.match_count), reverse=True)
    return candidates

# endregion Hierarchy Deltas


# region Pattern Analysis

@dataclass
class OffsetShiftPattern:
    start_offset: int
    delta: int
    match_count: int
    confidence: float
    affected_fields: List[str]


@dataclass
class VTableShiftPattern:
    delta: int
    match_count: int
    confidence: float
    affected_funcs: List[str]


@dataclass
class PatternAnalysis:
    offset_shifts: List[OffsetShiftPattern]
    vtable_shifts: List[VTableShiftPattern]
    size_change_delta: Optional[int]
    summary: str


def _offset_shift_patterns(shifts):
    patterns = []
    for delta, members in group_by_delta(shifts, lambda s: s[1]).items():
        if len(members) < 2:
            continue
        patterns.append(OffsetShiftPattern(
            start_offset=min(s[0] for s in members),
            delta=delta,
            match_count=len(members),
            confidence=min(1.0, len(members) / 10),
            affected_fields=[s[2] for s in members],
        ))
    patterns.sort(key=lambda p: p.match_count, reverse=True)
    return patterns


def _vtable_shift_patterns(shifts):
    patterns = []
    for delta, members in group_by_delta(shifts, lambda s: s[0]).items():
        if len(members) < 2:
            continue
        patterns.append(VTableShiftPattern(
            delta=delta,
            match_count=len(members),
            confidence=min(1.0, len(members) / 5),
            affected_funcs=[s[1] for s in members],
        ))
    patterns.sort(key=lambda p: p.match_count, reverse=True)
    return patterns


def consistent_size_delta(size_deltas):
    """The non-zero size delta shared by a strict majority of structs."""
    nonzero = [d for d in size_deltas if d != 0]
    best, count = majority(nonzero)
    if best is not None and count > len(size_deltas) / 2:
        return best
    return None


def _pattern_summary(offset_shifts, vtable_shifts, size_delta):
    parts = []
    if offset_shifts:
        top = offset_shifts[0]
        parts.append(f"Detected offset shift: {signed_hex(top.delta)} starting at "
                     f"{to_hex(top.start_offset)} ({top.match_count} fields, "
                     f"{top.confidence * 100:.0f}% confidence)")
    if vtable_shifts:
        top = vtable_shifts[0]
        parts.append(f"Detected vtable shift: {top.delta:+d} slots ({top.match_count} "
                     f"functions, {top.confidence * 100:.0f}% confidence)")
    if size_delta is not None:
        parts.append(f"Consistent struct size change: {signed_hex(size_delta)}")
    return '\n'.join(parts) or 'No consistent patterns detected'


def analyze_patterns(diffs):
    """Flat (hierarchy-blind) clustering of offset, slot and size deltas."""
    offset_shifts = []
    vtable_shifts = []
    size_deltas = []

    for d in diffs:
        if d.change != MODIFIED:
            continue
        if d.old_size is not None and d.new_size is not None:
            size_deltas.append(d.new_size - d.old_size)
        for fdiff, delta in d.offset_shifts():
            offset_shifts.append((fdiff.old_offset, delta, f"{d.struct}.{fdiff.name}"))
        for vdiff in d.vfuncs:
            if vdiff.change == MODIFIED and vdiff.old_id is not None and vdiff.new_id is not None:
                delta = vdiff.new_id - vdiff.old_id
                if delta:
                    vtable_shifts.append((delta, f"{d.struct}.{vdiff.name}"))

    offsets = _offset_shift_patterns(offset_shifts)
    vtables = _vtable_shift_patterns(vtable_shifts)
    size_delta = consistent_size_delta(size_deltas)
    return PatternAnalysis(offsets, vtables, size_delta,
                           _pattern_summary(offsets, vtables, size_delta))

# endregion Pattern Analysis


# region Cascades / Cross-Hierarchy / Suggestions

@dataclass
class CascadingPattern:
    source_struct: str
    size_delta: int
    affected_structs: List[str]
    offset_delta: int
    confidence: float
    is_size_increase: bool


@dataclass
class CrossHierarchyPattern:
    description: str
    delta: int
    hierarchies: List[str]
    affected_count: int
    confidence: float


@dataclass
class PatchSuggestion:
    struct_pattern: str
    delta: int
    start_offset: int
    confidence: float
    description: str
    structs: List[str] = field(default_factory=list)


def detect_cascading_patterns(old_structs, new_structs, diffs):
    """Base structs whose size change shows up as the same shift in children.

    A child counts when at least one of its fields past the base's old size
    moved by exactly the base's size delta.
    """
    diff_map = {d.struct: d for d in diffs}
    patterns = []

    for d in diffs:
        if d.change != MODIFIED or d.old_size is None or d.new_size is None:
            continue
        size_delta = d.new_size - d.old_size
        if not size_delta:
            continue
        children = [s.type for s in old_structs if s.base == d.struct]
        if not children:
            continue

        shifted = []
        for child in children:
            cd = diff_map.get(child)
            if cd is None or cd.change != MODIFIED:
                continue
            if any(delta == size_delta and f.old_offset >= d.old_size
                   for f, delta in cd.offset_shifts()):
                shifted.append(child)

        if shifted:
            patterns.append(CascadingPattern(
                source_struct=d.struct,
                size_delta=size_delta,
                affected_structs=shifted,
                offset_delta=size_delta,
                confidence=len(shifted) / len(children),
                is_size_increase=size_delta > 0,
            ))

    patterns.sort(key=lambda p: p.confidence, reverse=True)
    return patterns


def detect_cross_hierarchy_patterns(hierarchy_deltas):
    """Deltas shared by several hierarchies (engine-wide changes)."""
    patterns = []
    for delta, members in group_by_delta(hierarchy_deltas, lambda c: c.delta).items():
        if len(members) < 2:
            continue
        avg = sum(c.confidence for c in members) / len(members)
        spread = len(members) / len(hierarchy_deltas) + 0.5
        patterns.append(CrossHierarchyPattern(
            description=f"Common {signed_hex(delta)} shift across {len(members)} hierarchies",
            delta=delta,
            hierarchies=[c.hierarchy for c in members],
            affected_count=sum(len(c.struct_names) for c in members),
            confidence=clamp(avg * spread, 0.0, 1.0),
        ))
    patterns.sort(key=lambda p: p.confidence, reverse=True)
    return patterns


def generate_patch_suggestions(hierarchy_deltas, cascading, cross_hierarchy):
    suggestions = []

    for hd in hierarchy_deltas:
        if hd.confidence < HIERARCHY_SUGGESTION_THRESHOLD:
            continue
        pattern = hd.struct_names[0] if len(hd.struct_names) == 1 else f"{hd.hierarchy}*"
        suggestions.append(PatchSuggestion(
            struct_pattern=pattern,
            delta=hd.delta,
            start_offset=hd.start_offset,
            confidence=hd.confidence,
            description=(f"Shift offsets {signed_hex(hd.delta)} for {hd.hierarchy} "
                         f"hierarchy ({hd.match_count} fields match)"),
            structs=list(hd.struct_names),
        ))

    for cp in cascading:
        if cp.confidence < CASCADE_SUGGESTION_THRESHOLD:
            continue
        for child in cp.affected_structs:
            suggestions.append(PatchSuggestion(
                struct_pattern=child,
                delta=cp.offset_delta,
                start_offset=0,
                # Indirect evidence, ranked just below a direct hypothesis.
                confidence=cp.confidence * 0.9,
                description=(f"Cascade from {cp.source_struct} size change: shift "
                             f"{child} offsets {signed_hex(cp.offset_delta)}"),
                structs=[child],
            ))

    for xp in cross_hierarchy:
        if xp.confidence < CROSS_HIERARCHY_SUGGESTION_THRESHOLD:
            continue
        suggestions.append(PatchSuggestion(
            struct_pattern=', '.join(f"{h}*" for h in xp.hierarchies),
            delta=xp.delta,
            start_offset=0,
            confidence=xp.confidence,
            description=f"Cross-hierarchy pattern: {xp.description}",
            structs=list(xp.hierarchies),
        ))

    suggestions.sort(key=lambda s: s.confidence, reverse=True)
    seen = set()
    unique = []
    for s in suggestions:
        key = (s.struct_pattern, s.delta)
        if key not in seen:
            seen.add(key)
            unique.append(s)
    return unique

# endregion Cascades / Cross-Hierarchy / Suggestions


# region Full Diff

@dataclass
class DiffStats:
    structs_added: int = 0
    structs_removed: int = 0
    structs_modified: int = 0
    enums_added: int = 0
    enums_removed: int = 0
    enums_modified: int = 0
    total_field_changes: int = 0
    total_func_changes: int = 0


@dataclass
class DiffResult:
    structs: List[StructDiff]
    enums: List[EnumDiff]
    patterns: PatternAnalysis
    stats: DiffStats

    def to_dict(self):
        return asdict(self)


@dataclass
class DriftReport:
    result: DiffResult
    hierarchy_deltas: List[HierarchyDeltaCandidate]
    cascading_patterns: List[CascadingPattern]
    cross_hierarchy_patterns: List[CrossHierarchyPattern]
    patch_suggestions: List[PatchSuggestion]

    def to_dict(self):
        return asdict(self)


def _count(items, change):
    return sum(1 for i in items if i.change == change)


def diff(old_structs, new_structs, old_enums=(), new_enums=()):
    struct_diffs = diff_structs(old_structs, new_structs)
    enum_diffs = diff_enums(old_enums, new_enums)
    stats = DiffStats(
        structs_added=_count(struct_diffs, ADDED),
        structs_removed=_count(struct_diffs, REMOVED),
        structs_modified=_count(struct_diffs, MODIFIED),
        enums_added=_count(enum_diffs, ADDED),
        enums_removed=_count(enum_diffs, REMOVED),
        enums_modified=_count(enum_diffs, MODIFIED),
        total_field_changes=sum(len(d.fields) for d in struct_diffs),
        total_func_changes=sum(len(d.funcs) + len(d.vfuncs) for d in struct_diffs),
    )
    logger.info("diff: %d added, %d removed, %d modified structs",
                stats.structs_added, stats.structs_removed, stats.structs_modified)
    return DiffResult(struct_diffs, enum_diffs, analyze_patterns(struct_diffs), stats)


def diff_with_suggestions(old_structs, new_structs, old_enums=(), new_enums=()):
    """diff() plus hierarchy, cascade and cross-hierarchy hypotheses."""
    result = diff(old_structs, new_structs, old_enums, new_enums)
    hierarchy_deltas = detect_hierarchy_deltas(old_structs, new_structs, result.structs)
    cascading = detect_cascading_patterns(old_structs, new_structs, result.structs)
    cross = detect_cross_hierarchy_patterns(hierarchy_deltas)
    return DriftReport(
        result=result,
        hierarchy_deltas=hierarchy_deltas,
        cascading_patterns=cascading,
        cross_hierarchy_patterns=cross,
        patch_suggestions=generate_patch_suggestions(hierarchy_deltas, cascading, cross),
    )

# endregion Full Diff
