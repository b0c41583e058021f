"""
Command line entry point.

  struct-offset-finder info       <binary>
  struct-offset-finder extract    <binary> <layout.json>... -o sigs.json
  struct-offset-finder scan       <binary> <sigs.json>...
  struct-offset-finder status     <sigs.json>...
  struct-offset-finder diff       <old.json> <new.json>
  struct-offset-finder verify     <layout.json>... --signatures sigs.json [--scan scan.json]
  struct-offset-finder candidates <offset>

Exit codes: 0 clean, 1 incomplete coverage or findings, 2 hard failure.
"""

import sys
import json
import logging
import argparse
from pathlib import Path

from . import VERSION
from . import report
from .config import DEFAULT_CONTEXT_BYTES, DEFAULT_MIN_CONFIDENCE
from .drift import diff_with_suggestions
from .layout import load_layouts, parse_offset
from .scanner import BinaryScanner, InvalidBinaryError, generate_candidate_patterns
from .signatures import (
    FieldChange, ScanResult, Signature, SignatureMatch, StructSignatures,
    serialize_signatures, summarize_signatures,
)
from .verify import group_issues_by_struct, validate_scan, validate_signatures
from .viz import generate_viz_graph

logger = logging.getLogger(__name__)


# region Input Helpers

def load_binary(path):
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    scanner = BinaryScanner.from_file(path)
    if not scanner.pe.valid:
        raise InvalidBinaryError(f"{path}: not a valid PE image")
    return scanner


def _collections_from_doc(doc):
    if isinstance(doc, list):
        return [StructSignatures.from_dict(d) for d in doc]
    if 'results' in doc:
        return _collections_from_doc(doc['results'])
    if 'collections' in doc:
        return _collections_from_doc(doc['collections'])
    return [StructSignatures.from_dict(doc)]


def load_signatures(paths):
    """Signature collections from files written by `extract` (any layout)."""
    collections = []
    for p in paths:
        doc = json.loads(Path(p).read_text(encoding='utf-8'))
        collections.extend(_collections_from_doc(doc))
    return collections


def load_scan(path):
    """Rebuild a ScanResult from a `scan --json` report."""
    doc = json.loads(Path(path).read_text(encoding='utf-8'))
    doc = doc.get('results', doc)
    matches = [
        SignatureMatch(
            signature=Signature.from_dict(m['signature']),
            status=m['status'],
            confidence=m.get('confidence', 0),
            match_count=m.get('matchCount', 0),
            file_offset=m.get('fileOffset'),
            observed_offset=m.get('newOffset'),
            context_matched=m.get('contextMatched', False),
            candidate_offsets=m.get('candidateOffsets', []),
            notes=m.get('notes'),
        )
        for m in doc.get('matches', [])
    ]
    changes = [
        FieldChange(c['struct'], c['field'], c['oldOffset'], c['newOffset'],
                    c['confidence'], c.get('patternGroup'))
        for c in doc.get('changes', [])
    ]
    return ScanResult(binary=doc.get('binary', 'unknown'),
                      binary_hash=doc.get('binaryHash', ''),
                      scanned_at=doc.get('scannedAt', ''),
                      matches=matches, changes=changes,
                      version_detected=doc.get('versionDetected'))

# endregion Input Helpers


# region Commands

def cmd_info(args):
    scanner = load_binary(args.binary)
    report.print_header("PE summary and displacement index")
    report.print_file_info(scanner, args.binary)
    report.print_index_stats(scanner.index_stats())
    if args.json:
        payload = {'pe': scanner.pe.to_dict(), 'index': scanner.index_stats()}
        report.write_json(args.json, report.format_json('info', payload, scanner, args.binary))
    return 0


def cmd_extract(args):
    scanner = load_binary(args.binary)
    layout = load_layouts(args.layouts)
    report.print_header("Signature extraction")
    report.print_file_info(scanner, args.binary)

    structs = layout.structs
    if args.struct:
        wanted = set(args.struct)
        structs = [s for s in structs if s.type in wanted]

    result = scanner.extract(structs, version=args.version,
                             min_confidence=args.min_confidence,
                             context_bytes=args.context_bytes)
    report.print_extraction(result)

    out = Path(args.output)
    if args.split:
        out.mkdir(parents=True, exist_ok=True)
        for c in result.collections:
            (out / f"{c.struct}.json").write_text(json.dumps(c.to_dict(), indent=2),
                                                  encoding='utf-8')
        print(f"\n  Signature files saved: {out} ({len(result.collections)} file(s))")
    else:
        out.write_text(json.dumps([c.to_dict() for c in result.collections], indent=2),
                       encoding='utf-8')
        print(f"\n  Signatures saved: {out}")

    if args.yaml:
        dumps = [serialize_signatures(c) for c in result.collections]
        Path(args.yaml).write_text("\n---\n".join(dumps), encoding='utf-8')
        print(f"  YAML dump saved: {args.yaml}")

    if result.fields_attempted and result.fields_covered == result.fields_attempted:
        print("\n  *** ALL FIELDS COVERED ***")
        return 0
    print(f"\n  *** PARTIAL COVERAGE: {result.fields_covered}/{result.fields_attempted} fields ***")
    return 1


def cmd_scan(args):
    scanner = load_binary(args.binary)
    collections = load_signatures(args.signatures)
    report.print_header("Signature scan")
    report.print_file_info(scanner, args.binary)

    same_binary = [c.struct for c in collections if c.binary_hash == scanner.hash]
    if same_binary:
        print(f"\n  [INFO] {len(same_binary)} collection(s) were extracted from this same binary")

    result = scanner.scan(collections, binary=str(args.binary))
    report.print_scan(result, min_confidence=args.min_confidence)
    if args.json:
        report.write_json(args.json, report.format_json('scan', result.to_dict(),
                                                        scanner, args.binary))

    if result.signatures_missing or result.signatures_ambiguous or result.changes:
        print(f"\n  *** {len(result.changes)} OFFSET CHANGE(S), "
              f"{result.signatures_missing + result.signatures_ambiguous} UNRESOLVED ***")
        return 1
    print("\n  *** ALL SIGNATURES MATCHED AT THEIR EXPECTED OFFSETS ***")
    return 0


def cmd_status(args):
    collections = load_signatures(args.signatures)
    report.print_header("Signature status")
    status = summarize_signatures(collections)
    report.print_signature_status(status)
    if args.json:
        report.write_json(args.json, report.format_json('status', status.to_dict()))
    return 1 if status.low_confidence else 0


def cmd_diff(args):
    old = load_layouts([args.old])
    new = load_layouts([args.new])
    report.print_header("Layout drift")
    drift = diff_with_suggestions(old.structs, new.structs, old.enums, new.enums)
    report.print_drift(drift)

    if args.json:
        report.write_json(args.json, report.format_json('diff', drift.to_dict()))
    if args.graph:
        path = generate_viz_graph(old.structs, drift, args.graph)
        if path:
            print(f"\n  Inheritance graph saved: {path}")
        else:
            print("\n  [INFO] Graph skipped (networkx/matplotlib not installed)")

    stats = drift.result.stats
    return 1 if stats.structs_modified or stats.structs_removed else 0


def cmd_verify(args):
    layout = load_layouts(args.layouts)
    report.print_header("Cross-verification")
    if args.scan:
        result = validate_scan(load_scan(args.scan), layout.structs, strict=args.strict)
    else:
        result = validate_signatures(load_signatures(args.signatures), layout.structs,
                                     strict=args.strict)
    report.print_validation(result, group_issues_by_struct(result.issues))
    if args.json:
        report.write_json(args.json, report.format_json('verify', result.to_dict()))

    if result.errors or result.warnings:
        print(f"\n  *** {len(result.errors)} ERROR(S), {len(result.warnings)} WARNING(S) ***")
        return 1
    print("\n  *** DECLARED OFFSETS AGREE WITH SIGNATURES ***")
    return 0


def cmd_candidates(args):
    offset = parse_offset(args.offset)
    for pattern in generate_candidate_patterns(offset):
        print(pattern)
    return 0

# endregion Commands


def build_parser():
    parser = argparse.ArgumentParser(
        prog='struct-offset-finder',
        description='Track struct field offset drift across game binary builds.')
    parser.add_argument('--version', action='version', version=f"%(prog)s {VERSION}")
    parser.add_argument('-v', '--verbose', action='store_true', help='debug logging')
    sub = parser.add_subparsers(dest='command', required=True)

    p = sub.add_parser('info', help='PE summary and displacement index stats')
    p.add_argument('binary')
    p.add_argument('--json', metavar='PATH')
    p.set_defaults(func=cmd_info)

    p = sub.add_parser('extract', help='extract field signatures from a binary')
    p.add_argument('binary')
    p.add_argument('layouts', nargs='+', help='JSON layout file(s)')
    p.add_argument('-o', '--output', default='signatures.json')
    p.add_argument('--split', action='store_true', help='one file per struct in OUTPUT dir')
    p.add_argument('--struct', action='append', help='limit to this struct (repeatable)')
    p.add_argument('--version', dest='version', help='game version label')
    p.add_argument('--min-confidence', type=int, default=DEFAULT_MIN_CONFIDENCE)
    p.add_argument('--context-bytes', type=int, default=DEFAULT_CONTEXT_BYTES)
    p.add_argument('--yaml', metavar='PATH', help='also write a readable YAML dump')
    p.set_defaults(func=cmd_extract)

    p = sub.add_parser('scan', help='scan a binary for extracted signatures')
    p.add_argument('binary')
    p.add_argument('signatures', nargs='+', help='signature file(s)')
    p.add_argument('--min-confidence', type=int, default=0, help='hide weaker changes')
    p.add_argument('--json', metavar='PATH')
    p.set_defaults(func=cmd_scan)

    p = sub.add_parser('status', help='signature counts and confidence bands')
    p.add_argument('signatures', nargs='+', help='signature file(s)')
    p.add_argument('--json', metavar='PATH')
    p.set_defaults(func=cmd_status)

    p = sub.add_parser('diff', help='compare two layout snapshots')
    p.add_argument('old')
    p.add_argument('new')
    p.add_argument('--json', metavar='PATH')
    p.add_argument('--graph', metavar='PNG', help='render inheritance drift graph')
    p.set_defaults(func=cmd_diff)

    p = sub.add_parser('verify', help='check layouts against signatures')
    p.add_argument('layouts', nargs='+')
    evidence = p.add_mutually_exclusive_group(required=True)
    evidence.add_argument('--signatures', nargs='+', metavar='SIGS')
    evidence.add_argument('--scan', metavar='SCAN_JSON')
    p.add_argument('--strict', action='store_true', help='also report uncovered fields')
    p.add_argument('--json', metavar='PATH')
    p.set_defaults(func=cmd_verify)

    p = sub.add_parser('candidates', help='print field-access patterns for an offset')
    p.add_argument('offset')
    p.set_defaults(func=cmd_candidates)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format='%(levelname)s %(name)s: %(message)s')
    logger.debug("running %s", args.command)
    try:
        return args.func(args)
    # InvalidBinaryError, PatternError, LayoutError and JSONDecodeError are ValueErrors
    except (OSError, ValueError, KeyError) as e:
        print(f"\nERROR: {e}")
        return 2


if __name__ == '__main__':
    sys.exit(main())
