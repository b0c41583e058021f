"""
Cross-verification of declared layouts against signature evidence.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import List, Optional

from .config import PATCH_CONFIDENCE_THRESHOLD, SEVERITY_DELTA_THRESHOLD
from .layout import signed_hex, to_hex
from .signatures import FIELD_ACCESS, FieldChange, detect_patterns

logger = logging.getLogger(__name__)

# Issue kinds
OFFSET_MISMATCH = 'offset_mismatch'
MISSING_FIELD = 'missing_field'
MISSING_SIGNATURE = 'missing_signature'
STRUCT_NOT_FOUND = 'struct_not_found'
STALE_SIGNATURE = 'stale_signature'
DUPLICATE_SIGNATURE = 'duplicate_signature'
MISSING_OFFSET = 'missing_offset'

ERROR = 'error'
WARNING = 'warning'
INFO = 'info'


@dataclass
class ValidationIssue:
    kind: str
    severity: str
    struct: str
    message: str
    field: Optional[str] = None
    signature_offset: Optional[int] = None
    declared_offset: Optional[int] = None
    delta: Optional[int] = None
    confidence: Optional[int] = None
    suggested_fix: Optional[str] = None


@dataclass
class SuggestedPatch:
    struct: str
    field: str
    current_offset: int
    suggested_offset: int
    confidence: int

    @property
    def description(self):
        return (f"Update {self.struct}.{self.field}: "
                f"{to_hex(self.current_offset)} -> {to_hex(self.suggested_offset)}")


@dataclass
class ValidationResult:
    signatures_checked: int = 0
    signatures_valid: int = 0
    signatures_with_issues: int = 0
    structs_covered: int = 0
    structs_without_signatures: int = 0
    fields_total: int = 0
    fields_covered: int = 0
    issues: List[ValidationIssue] = field(default_factory=list)
    suggested_patches: List[SuggestedPatch] = field(default_factory=list)
    bulk_shifts: list = field(default_factory=list)

    @property
    def coverage(self):
        if not self.fields_total:
            return 0
        return round(100 * self.fields_covered / self.fields_total)

    @property
    def errors(self):
        return [i for i in self.issues if i.severity == ERROR]

    @property
    def warnings(self):
        return [i for i in self.issues if i.severity == WARNING]

    def to_dict(self):
        d = asdict(self)
        d['bulk_shifts'] = [p.to_dict() for p in self.bulk_shifts]
        d['suggested_patches'] = [dict(asdict(p), description=p.description)
                                  for p in self.suggested_patches]
        d['fields_coverage'] = {
            'total': self.fields_total,
            'covered': self.fields_covered,
            'percentage': self.coverage,
        }
        return d


@dataclass
class _Evidence:
    """One signature together with the offset and confidence it vouches for."""
    signature: object
    offset: int
    confidence: int


# region Reconciliation

def _mismatch(struct_name, field_name, declared, observed, confidence):
    delta = observed - declared
    severity = ERROR if abs(delta) > SEVERITY_DELTA_THRESHOLD else WARNING
    trusted = confidence >= PATCH_CONFIDENCE_THRESHOLD
    return ValidationIssue(
        kind=OFFSET_MISMATCH,
        severity=severity,
        struct=struct_name,
        field=field_name,
        message=(f"Signature offset {to_hex(observed)} doesn't match declared offset "
                 f"{to_hex(declared)} (delta: {signed_hex(delta)})"),
        signature_offset=observed,
        declared_offset=declared,
        delta=delta,
        confidence=confidence,
        suggested_fix=(f"Update field offset to {to_hex(observed)}" if trusted
                       else f"Verify which offset is correct (sig confidence: {confidence}%)"),
    )


def _duplicates(struct_name, evidence):
    by_field = {}
    for ev in evidence:
        if ev.signature.kind == FIELD_ACCESS:
            by_field.setdefault(ev.signature.field, []).append(ev)
    issues = []
    for field_name, evs in by_field.items():
        offsets = sorted({ev.offset for ev in evs})
        if len(offsets) > 1:
            issues.append(ValidationIssue(
                kind=DUPLICATE_SIGNATURE,
                severity=WARNING,
                struct=struct_name,
                field=field_name,
                message=(f"{len(evs)} signatures for {field_name} disagree: "
                         + ', '.join(to_hex(o) for o in offsets)),
            ))
    return issues


def _reconcile(groups, structs, strict):
    """groups: list of (struct name, [_Evidence, ...])."""
    result = ValidationResult()
    struct_map = {s.type: s for s in structs if s.type}
    covered_structs = set()

    for struct_name, evidence in groups:
        sdef = struct_map.get(struct_name)
        if sdef is None:
            result.issues.append(ValidationIssue(
                kind=STRUCT_NOT_FOUND,
                severity=ERROR,
                struct=struct_name,
                message=f"Signature references unknown struct '{struct_name}'",
            ))
            result.signatures_checked += len(evidence)
            result.signatures_with_issues += len(evidence)
            continue

        covered_structs.add(struct_name)
        fields = sdef.field_map()
        with_signatures = set()

        for ev in evidence:
            sig = ev.signature
            result.signatures_checked += 1
            if sig.kind != FIELD_ACCESS:
                result.signatures_valid += 1
                continue

            with_signatures.add(sig.field)
            fdef = fields.get(sig.field)
            if fdef is None:
                result.issues.append(ValidationIssue(
                    kind=MISSING_FIELD,
                    severity=WARNING,
                    struct=struct_name,
                    field=sig.field,
                    message=f"Signature references field '{sig.field}' not declared in {struct_name}",
                    signature_offset=ev.offset,
                    confidence=ev.confidence,
                ))
                result.signatures_with_issues += 1
                continue

            if fdef.offset is None:
                result.issues.append(ValidationIssue(
                    kind=MISSING_OFFSET,
                    severity=INFO,
                    struct=struct_name,
                    field=sig.field,
                    message=f"{struct_name}.{sig.field} has no declared offset",
                    signature_offset=ev.offset,
                    confidence=ev.confidence,
                    suggested_fix=f"Declare offset {to_hex(ev.offset)}",
                ))
                result.signatures_with_issues += 1
                continue

            declared = fdef.offset
            if ev.offset == declared:
                result.signatures_valid += 1
                continue

            result.issues.append(_mismatch(struct_name, sig.field, declared,
                                           ev.offset, ev.confidence))
            result.signatures_with_issues += 1
            if ev.confidence >= PATCH_CONFIDENCE_THRESHOLD:
                result.suggested_patches.append(SuggestedPatch(
                    struct=struct_name,
                    field=sig.field,
                    current_offset=declared,
                    suggested_offset=ev.offset,
                    confidence=ev.confidence,
                ))

        result.issues.extend(_duplicates(struct_name, evidence))

        if strict:
            for name, fdef in fields.items():
                if fdef.offset is not None and name not in with_signatures:
                    result.issues.append(ValidationIssue(
                        kind=MISSING_SIGNATURE,
                        severity=INFO,
                        struct=struct_name,
                        field=name,
                        message=f"No signature covers {struct_name}.{name}",
                        declared_offset=fdef.offset,
                    ))

        result.fields_total += len(fields)
        result.fields_covered += len(with_signatures & set(fields))

    result.structs_covered = len(covered_structs)
    result.structs_without_signatures = sum(
        1 for s in structs if s.type and s.fields and s.type not in covered_structs)
    result.bulk_shifts = detect_bulk_shifts(result.issues)
    return result

# endregion Reconciliation


def validate_signatures(collections, structs, strict=False):
    """Check extracted signature files against the declared layouts.

    Collections naming the same struct (split and combined files loaded
    together) are merged first; identical signatures count once.
    """
    grouped = {}
    for c in collections:
        grouped.setdefault(c.struct, {}).update(dict.fromkeys(c.signatures))
    groups = [
        (name, [_Evidence(s, s.offset, s.confidence) for s in sigs])
        for name, sigs in grouped.items()
    ]
    result = _reconcile(groups, structs, strict)
    logger.info("validated %d signatures: %d issue(s)",
                result.signatures_checked, len(result.issues))
    return result


def validate_scan(scan_result, structs, strict=False):
    """Check the offsets observed by a scan against the declared layouts.

    Signatures that were missing or ambiguous in the scanned binary carry no
    offset; they are reported as stale instead of being compared.
    """
    grouped = {}
    stale = []
    for m in scan_result.matches:
        sig = m.signature
        if not m.found:
            stale.append(ValidationIssue(
                kind=STALE_SIGNATURE,
                severity=INFO,
                struct=sig.struct,
                field=sig.field,
                message=f"Signature for {sig.struct}.{sig.field} is {m.status} in {scan_result.binary}",
                signature_offset=sig.offset,
                confidence=m.confidence,
            ))
            continue
        grouped.setdefault(sig.struct, []).append(
            _Evidence(sig, m.observed_offset, m.confidence))

    result = _reconcile(list(grouped.items()), structs, strict)
    result.issues.extend(stale)
    result.signatures_checked += len(stale)
    result.signatures_with_issues += len(stale)
    logger.info("validated scan of %s: %d issue(s)", scan_result.binary, len(result.issues))
    return result


def group_issues_by_struct(issues):
    grouped = {}
    for issue in issues:
        grouped.setdefault(issue.struct, []).append(issue)
    return grouped


def detect_bulk_shifts(issues):
    """Cluster offset mismatches by exact delta into bulk-shift suggestions."""
    changes = [
        FieldChange(struct=i.struct, field=i.field, old_offset=i.declared_offset,
                    new_offset=i.signature_offset, confidence=i.confidence or 0)
        for i in issues
        if i.kind == OFFSET_MISMATCH and i.delta is not None
    ]
    return detect_patterns(changes)
