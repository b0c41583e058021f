import pytest

from struct_offset_finder.config import CONTEXT_LOST_CONFIDENCE, PATCH_CONFIDENCE_THRESHOLD
from struct_offset_finder.scanner import (
    BinaryScanner, InvalidBinaryError, detect_game_version,
    generate_candidate_patterns, rtti_pattern,
)
from struct_offset_finder.signatures import Signature, StructSignatures
from struct_offset_finder.verify import validate_scan

from conftest import CODE, RDATA, build_pe, mov_read, pad


def _collection(*sigs):
    return StructSignatures('Foo', '1.0', 'hash', 'now', list(sigs))


def _field_sig(offset=0x10, pattern='48 8B ?? 10 00 00 00', **kw):
    return Signature(kind='field_access', struct='Foo', field='fieldA', offset=offset,
                     pattern=pattern, confidence=85, **kw)


def test_hash_and_lazy_index(game_binary):
    scanner = BinaryScanner(game_binary, name='game.exe')
    assert len(scanner.hash) == 64
    assert scanner._index is None
    index = scanner.build_displacement_index()
    assert scanner.build_displacement_index() is index
    assert scanner.lookup_offset(0x1A0)[0].kind == 'mov_read'


def test_from_file(tmp_path, game_binary):
    path = tmp_path / 'game.exe'
    path.write_bytes(game_binary)
    scanner = BinaryScanner.from_file(path)
    assert scanner.name == 'game.exe'
    assert scanner.pe.valid


def test_invalid_binary_constructs_but_refuses_work():
    scanner = BinaryScanner(b'MZ' + b'\xFF' * 100)
    assert scanner.pe.valid is False
    with pytest.raises(InvalidBinaryError):
        scanner.extract([])
    with pytest.raises(InvalidBinaryError):
        scanner.scan([])


def test_find_strings_and_version(game_binary, patched_binary):
    scanner = BinaryScanner(game_binary)
    strings = [s for _o, s in scanner.find_strings(r'Character')]
    assert strings == ['.?AVCharacter@@']
    assert detect_game_version(scanner) == '7.05'
    assert detect_game_version(BinaryScanner(patched_binary)) == '7.2a'


def test_build_date_fallback():
    rdata = b'\x00' * 8 + b'build 2024.06.28.0000\x00'
    scanner = BinaryScanner(build_pe([('.text', pad(), CODE), ('.rdata', rdata, RDATA)]))
    assert detect_game_version(scanner) == '2024.06.28'


def test_find_rtti_searches_data_sections(game_binary):
    scanner = BinaryScanner(game_binary)
    assert len(scanner.find_rtti('Character')) == 1
    assert scanner.find_rtti('Nope') == []
    assert rtti_pattern('AB') == '41 42 40 40'


def test_extract_field_signatures(game_binary, character_layout):
    scanner = BinaryScanner(game_binary)
    result = scanner.extract(character_layout.structs)

    assert result.fields_attempted == 5
    assert result.fields_covered == 3
    assert result.skipped_no_refs == 2
    assert result.rtti_found == 1
    assert result.coverage == pytest.approx(60.0)

    by_struct = {c.struct: c for c in result.collections}
    assert set(by_struct) == {'GameObject', 'Character'}
    character = by_struct['Character']
    assert character.version == '7.05'
    assert character.binary_hash == scanner.hash

    health = next(s for s in character.signatures if s.field == 'Health')
    assert health.pattern == '48 8B 81 ?? ?? ?? ??'
    assert health.context_before == 'CC CC CC CC CC CC CC CC'
    assert health.context_after == 'CC CC CC CC CC CC CC CC'
    assert health.confidence == 95
    assert health.offset == 0x1A0

    rtti = next(s for s in character.signatures if s.kind == 'rtti')
    assert rtti.field == '_rtti'
    assert rtti.offset == 0
    assert rtti.pattern == rtti_pattern('Character')


def test_extract_skips_ambiguous_and_low_confidence(make_pe, character_layout):
    code = pad() + mov_read(0x1A0) * 11 + pad() + mov_read(0x1A4) * 4 + pad()
    scanner = BinaryScanner(make_pe([('.text', code, CODE)]))
    result = scanner.extract(character_layout.structs, version='test')
    assert result.skipped_ambiguous == 1       # Health: 11 references
    assert result.skipped_low_confidence == 0  # Mana: 4 references -> 70
    strict = scanner.extract(character_layout.structs, min_confidence=71)
    assert strict.skipped_low_confidence == 1


def test_extract_without_context(game_binary, character_layout):
    result = BinaryScanner(game_binary).extract(character_layout.structs, context_bytes=0)
    sig = result.collections[0].signatures[0]
    assert sig.context_before is None and sig.context_after is None


def test_unique_match_scores_base_weight():
    code = pad() + mov_read(0x10) + pad()
    scanner = BinaryScanner(build_pe([('.text', code, CODE)]))
    m = scanner.match_signature(_field_sig())
    assert m.status == 'matched'
    assert m.confidence == 85
    assert m.match_count == 1
    assert m.observed_offset == 0x10
    assert not m.context_matched


def test_missing_and_ambiguous():
    code = pad() + mov_read(0x20) * 11 + pad()
    scanner = BinaryScanner(build_pe([('.text', code, CODE)]))
    assert scanner.match_signature(_field_sig()).status == 'missing'
    many = scanner.match_signature(_field_sig(offset=0x20, pattern='48 8B ?? 20 00 00 00'))
    assert many.status == 'ambiguous'
    assert many.match_count == 11


def test_majority_of_observed_offsets_wins():
    code = pad() + mov_read(0x28) + pad() + mov_read(0x30) + pad() + mov_read(0x30) + pad()
    scanner = BinaryScanner(build_pe([('.text', code, CODE)]))
    m = scanner.match_signature(_field_sig(pattern='48 8B 81 ?? ?? ?? ??'))
    assert m.observed_offset == 0x30
    assert m.candidate_offsets == [0x28, 0x30]
    assert m.match_count == 3
    assert m.confidence == 65
    assert scanner.data[m.file_offset + 3] == 0x30


def test_scan_detects_bulk_shift(game_binary, patched_binary, character_layout):
    collections = BinaryScanner(game_binary).extract(character_layout.structs).collections
    result = BinaryScanner(patched_binary, name='new.exe').scan(collections)

    assert result.binary == 'new.exe'
    assert result.version_detected == '7.2a'
    assert result.signatures_total == 4
    assert result.signatures_matched == 4
    assert result.signatures_missing == 0

    changes = {c.field: c for c in result.changes}
    assert set(changes) == {'Health', 'Mana'}
    assert changes['Health'].new_offset == 0x1A8
    assert changes['Health'].confidence == 90

    assert len(result.pattern_groups) == 1
    group = result.pattern_groups[0]
    assert group.delta == 8
    assert group.likely_cause == 'Fields in Character shifted'
    assert all(c.pattern_group == group.name for c in result.changes)

    d = result.to_dict()
    assert d['signaturesMatched'] == 4
    assert d['changes'][0]['delta'] == 8


def test_context_miss_finds_instruction_with_old_offset(game_binary, character_layout):
    collections = BinaryScanner(game_binary).extract(character_layout.structs).collections
    code = b'\x90' * 16 + mov_read(0x1A0) + b'\x90' * 16
    result = BinaryScanner(build_pe([('.text', code, CODE)])).scan(collections)
    health = next(m for m in result.matches if m.signature.field == 'Health')
    assert health.status == 'matched'
    assert not health.context_matched
    assert health.confidence == 85
    assert health.observed_offset == 0x1A0
    assert 'old offset' in health.notes
    assert result.changes == []


def test_context_miss_bare_hit_is_capped(game_binary, character_layout):
    collections = BinaryScanner(game_binary).extract(character_layout.structs).collections
    code = b'\x90' * 16 + mov_read(0x50) + b'\x90' * 16
    result = BinaryScanner(build_pe([('.text', code, CODE)])).scan(collections)
    health = next(m for m in result.matches if m.signature.field == 'Health')
    assert health.status == 'matched'
    assert health.observed_offset == 0x50
    assert health.confidence == CONTEXT_LOST_CONFIDENCE
    assert health.confidence < PATCH_CONFIDENCE_THRESHOLD
    assert 'bare pattern' in health.notes

    verified = validate_scan(result, character_layout.structs)
    assert verified.suggested_patches == []
    assert verified.issues[0].suggested_fix.startswith('Verify')


def test_candidate_patterns():
    assert generate_candidate_patterns(0x1A0) == [
        '48 8B ?? A0 01 00 00', '48 89 ?? A0 01 00 00', '48 8D ?? A0 01 00 00']
    small = generate_candidate_patterns(0x10)
    assert len(small) == 6
    assert small[3] == '48 8B ?? 10'
