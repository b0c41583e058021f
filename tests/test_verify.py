import pytest

from struct_offset_finder.layout import layout_from_dict
from struct_offset_finder.signatures import (
    ScanResult, Signature, SignatureMatch, StructSignatures,
)
from struct_offset_finder.verify import (
    DUPLICATE_SIGNATURE, ERROR, INFO, MISSING_FIELD, MISSING_OFFSET, MISSING_SIGNATURE,
    OFFSET_MISMATCH, STALE_SIGNATURE, STRUCT_NOT_FOUND, WARNING,
    group_issues_by_struct, validate_scan, validate_signatures,
)


def _sig(field, offset, confidence=95, struct='Character', kind='field_access'):
    return Signature(kind=kind, struct=struct, field=field, offset=offset,
                     pattern='48 8B 81 ?? ?? ?? ??', confidence=confidence)


def _collection(*sigs, struct='Character'):
    return StructSignatures(struct=struct, version='7.05', binary_hash='ab' * 32,
                            extracted_at='2024-01-12T00:00:00+00:00', signatures=list(sigs))


def _kinds(result):
    return [i.kind for i in result.issues]


def test_matching_signatures_are_valid(character_layout):
    result = validate_signatures(
        [_collection(_sig('Health', 0x1A0), _sig('Mana', 0x1A4))], character_layout.structs)
    assert result.issues == []
    assert result.signatures_checked == 2
    assert result.signatures_valid == 2
    assert (result.fields_covered, result.fields_total) == (2, 3)
    assert result.coverage == 67
    assert result.structs_covered == 1
    assert result.structs_without_signatures == 1   # GameObject


def test_small_mismatch_is_warning_with_patch(character_layout):
    result = validate_signatures([_collection(_sig('Health', 0x1A8))], character_layout.structs)
    (issue,) = result.issues
    assert issue.kind == OFFSET_MISMATCH
    assert issue.severity == WARNING
    assert (issue.declared_offset, issue.signature_offset, issue.delta) == (0x1A0, 0x1A8, 0x8)
    assert "delta: +0x8" in issue.message
    assert issue.suggested_fix == "Update field offset to 0x1A8"
    (patch,) = result.suggested_patches
    assert patch.description == "Update Character.Health: 0x1A0 -> 0x1A8"
    assert result.signatures_with_issues == 1


def test_large_mismatch_is_error(character_layout):
    result = validate_signatures([_collection(_sig('Health', 0x5A0))], character_layout.structs)
    assert result.issues[0].severity == ERROR
    assert result.errors == result.issues


@pytest.mark.parametrize('delta, severity', [
    (0x100, WARNING),
    (-0x100, WARNING),
    (0x101, ERROR),
    (-0x101, ERROR),
])
def test_severity_boundary(character_layout, delta, severity):
    result = validate_signatures([_collection(_sig('Health', 0x1A0 + delta))],
                                 character_layout.structs)
    (issue,) = result.issues
    assert issue.delta == delta
    assert issue.severity == severity


def test_low_confidence_mismatch_gets_no_patch(character_layout):
    result = validate_signatures([_collection(_sig('Health', 0x1A8, confidence=60))],
                                 character_layout.structs)
    assert result.suggested_patches == []
    assert "60%" in result.issues[0].suggested_fix


def test_patch_threshold_is_inclusive(character_layout):
    result = validate_signatures([_collection(_sig('Health', 0x1A8, confidence=70))],
                                 character_layout.structs)
    assert len(result.suggested_patches) == 1


def test_unknown_struct_and_field(character_layout):
    result = validate_signatures(
        [_collection(_sig('X', 0x10, struct='Ghost'), struct='Ghost'),
         _collection(_sig('Stamina', 0x1C0))],
        character_layout.structs)
    assert _kinds(result) == [STRUCT_NOT_FOUND, MISSING_FIELD]
    assert result.issues[0].severity == ERROR
    assert result.issues[1].severity == WARNING
    assert result.signatures_with_issues == 2


def test_unnamed_field_matched_by_display_name(character_layout):
    result = validate_signatures([_collection(_sig('field_0x1B0', 0x1B0))],
                                 character_layout.structs)
    assert result.issues == []


def test_disagreeing_signatures_for_one_field(character_layout):
    result = validate_signatures(
        [_collection(_sig('Health', 0x1A0), _sig('Health', 0x1A8))], character_layout.structs)
    assert sorted(_kinds(result)) == sorted([OFFSET_MISMATCH, DUPLICATE_SIGNATURE])
    dup = next(i for i in result.issues if i.kind == DUPLICATE_SIGNATURE)
    assert "0x1A0" in dup.message and "0x1A8" in dup.message


def test_non_field_signatures_count_as_valid(character_layout):
    rtti = _sig('_rtti', 0, kind='rtti')
    result = validate_signatures([_collection(rtti)], character_layout.structs)
    assert result.signatures_valid == 1
    assert result.fields_covered == 0


def test_strict_reports_uncovered_fields(character_layout):
    result = validate_signatures([_collection(_sig('Health', 0x1A0))],
                                 character_layout.structs, strict=True)
    missing = [i for i in result.issues if i.kind == MISSING_SIGNATURE]
    assert {i.field for i in missing} == {'Mana', 'field_0x1B0'}
    assert all(i.severity == INFO for i in missing)
    assert not result.errors and not result.warnings


def test_bulk_shift_from_mismatches(character_layout):
    result = validate_signatures(
        [_collection(_sig('Health', 0x1A8), _sig('Mana', 0x1AC))], character_layout.structs)
    (shift,) = result.bulk_shifts
    assert shift.name == 'bulk_shift_+0x8'
    assert shift.match_count == 2
    assert shift.confidence == pytest.approx(1.0)


def test_validate_scan_uses_observed_offsets(character_layout):
    health = _sig('Health', 0x1A0)
    mana = _sig('Mana', 0x1A4)
    scan = ScanResult(
        binary='game_new.exe', binary_hash='cd' * 32, scanned_at='2024-02-01T00:00:00+00:00',
        matches=[
            SignatureMatch(signature=health, status='matched', confidence=85,
                           match_count=1, observed_offset=0x1A8),
            SignatureMatch(signature=mana, status='missing'),
        ])
    result = validate_scan(scan, character_layout.structs)
    assert _kinds(result) == [OFFSET_MISMATCH, STALE_SIGNATURE]
    assert result.issues[0].signature_offset == 0x1A8
    assert "game_new.exe" in result.issues[1].message
    assert result.signatures_checked == 2
    assert result.signatures_with_issues == 2


def test_group_issues_and_to_dict(character_layout):
    result = validate_signatures(
        [_collection(_sig('X', 0x10, struct='Ghost'), struct='Ghost'),
         _collection(_sig('Health', 0x1A8))],
        character_layout.structs)
    grouped = group_issues_by_struct(result.issues)
    assert list(grouped) == ['Ghost', 'Character']

    d = result.to_dict()
    assert d['fields_coverage'] == {'total': 3, 'covered': 1, 'percentage': 33}
    assert d['suggested_patches'][0]['description'].startswith("Update Character.Health")
    assert d['issues'][0]['kind'] == STRUCT_NOT_FOUND


def test_collections_for_one_struct_are_merged(character_layout):
    combined = _collection(_sig('Health', 0x1A0), _sig('Mana', 0x1A4))
    split = _collection(_sig('Health', 0x1A0))
    result = validate_signatures([combined, split], character_layout.structs, strict=True)
    assert result.fields_total == 3
    assert result.fields_covered == 2
    assert result.signatures_checked == 2
    missing = [i for i in result.issues if i.kind == MISSING_SIGNATURE]
    assert [i.field for i in missing] == ['field_0x1B0']


def test_field_without_declared_offset_is_not_a_mismatch():
    layout = layout_from_dict({"structs": [
        {"type": "Character", "fields": [{"name": "Health", "type": "uint"}]}]})
    result = validate_signatures([_collection(_sig('Health', 0x1A0))], layout.structs)
    (issue,) = result.issues
    assert issue.kind == MISSING_OFFSET
    assert issue.severity == INFO
    assert issue.suggested_fix == "Declare offset 0x1A0"
    assert result.suggested_patches == []
    assert result.bulk_shifts == []
