"""
Console printers and JSON emitters for the command line.
"""

import json
from pathlib import Path

from . import VERSION
from .config import HIGH_CONFIDENCE, LOW_CONFIDENCE
from .layout import signed_hex, to_hex

RULE = "=" * 65


def banner(title):
    print("\n" + RULE)
    print(f"  {title}")
    print(RULE)


def print_header(subtitle):
    print(RULE)
    print(f"  Struct Offset Finder v{VERSION}")
    print(f"  {subtitle}")
    print(RULE)


def _tag(confidence):
    if confidence >= 90:
        return 'PASS'
    if confidence >= 70:
        return 'WARN'
    return 'FAIL'


# region Binary

def print_file_info(scanner, path=None):
    size = len(scanner.data)
    pe = scanner.pe
    print(f"\n  File: {path or scanner.name}")
    print(f"  Size: {size:,} bytes ({size / (1024*1024):.2f} MB)")
    print(f"  SHA256: {scanner.hash}")
    if not pe.valid:
        print("  WARNING: not a valid PE image")
        return
    print(f"\n  Architecture:        {'x86-64 (PE32+)' if pe.is_64bit else 'x86 (PE32)'}")
    print(f"  PE Image Base:       0x{pe.image_base:X}")
    print(f"  Entry Point RVA:     0x{pe.entry_point_rva:X}")
    print(f"  PE Timestamp:        {pe.build_time.strftime('%Y-%m-%d %H:%M:%S UTC')}")
    for s in pe.sections:
        flag = 'X' if s.is_executable else ' '
        print(f"    {s.name:8s} {flag} VA=0x{s.virtual_address:08X}  Size=0x{s.raw_size:08X}"
              f"  Raw=0x{s.raw_address:08X}")


def print_index_stats(stats, limit=10):
    banner("DISPLACEMENT INDEX")
    print(f"  Unique offsets:      {stats['unique_offsets']:,}")
    print(f"  Total accesses:      {stats['total_entries']:,}")
    if stats['top_offsets']:
        print("\n  Busiest offsets:")
        for item in stats['top_offsets'][:limit]:
            print(f"    {to_hex(item['offset']):>10s}  {item['count']:>6d} access(es)")

# endregion Binary


# region Signatures

def print_extraction(result):
    banner("PHASE 2: Signature Extraction")
    for c in result.collections:
        fields = sum(1 for s in c.signatures if s.kind == 'field_access')
        rtti = len(c.signatures) - fields
        print(f"  [INFO] {c.struct:40s} {fields:3d} field(s)"
              + ("  +rtti" if rtti else ""))

    print("\n" + RULE)
    print("  EXTRACTION SUMMARY")
    print(RULE)
    print(f"  Fields attempted:    {result.fields_attempted}")
    print(f"  Fields covered:      {result.fields_covered} ({result.coverage:.1f}%)")
    print(f"  No references:       {result.skipped_no_refs}")
    print(f"  Too ambiguous:       {result.skipped_ambiguous}")
    print(f"  Low confidence:      {result.skipped_low_confidence}")
    print(f"  RTTI anchors:        {result.rtti_found}")
    print(f"  Signatures written:  {result.signature_count}")


def print_scan(result, min_confidence=0):
    banner("PHASE 2: Signature Scan")
    for m in result.matches:
        sig = m.signature
        label = f"{sig.struct}.{sig.field}"
        if m.status == 'missing':
            print(f"  [FAIL] {label:45s} not found")
        elif m.status == 'ambiguous':
            print(f"  [WARN] {label:45s} ambiguous ({m.match_count} matches)")
        elif m.observed_offset != sig.offset:
            print(f"  [{_tag(m.confidence)}] {label:45s} {to_hex(sig.offset)} -> "
                  f"{to_hex(m.observed_offset)} [{m.confidence}%]")

    changes = [c for c in result.changes if c.confidence >= min_confidence]
    if changes:
        banner("PHASE 3: Offset Changes")
        for c in changes:
            group = f"  ({c.pattern_group})" if c.pattern_group else ""
            print(f"  {c.struct}.{c.field}: {to_hex(c.old_offset)} -> {to_hex(c.new_offset)}"
                  f" ({signed_hex(c.delta)}) [{c.confidence}%]{group}")

    if result.pattern_groups:
        banner("PHASE 4: Bulk Shift Patterns")
        for p in result.pattern_groups:
            print(f"  {p.name}: {p.match_count}/{p.total_candidates} change(s), "
                  f"{p.confidence * 100:.0f}% of candidates, avg {p.average_confidence}%")
            print(f"    Structs: {', '.join(p.affected_structs)}")
            print(f"    Likely cause: {p.likely_cause}")
            for a in p.anomalies:
                print(f"    [WARN] anomaly {a.struct}.{a.field} ({signed_hex(a.delta)})")

    print("\n" + RULE)
    print("  RESULTS SUMMARY")
    print(RULE)
    print(f"  Version detected:    {result.version_detected or 'unknown'}")
    print(f"  Matched:             {result.signatures_matched} / {result.signatures_total}")
    print(f"  Missing:             {result.signatures_missing}")
    print(f"  Ambiguous:           {result.signatures_ambiguous}")
    print(f"  Changed offsets:     {len(result.changes)}")


def print_signature_status(status):
    banner("SIGNATURE STATUS")
    print(f"  Collections:         {status.collections}")
    print(f"  Signatures:          {status.signatures}")
    print(f"  Average confidence:  {status.average_confidence}%")
    print(f"  High confidence:     {status.high_confidence} (>= {HIGH_CONFIDENCE}%)")
    print(f"  Low confidence:      {status.low_confidence} (< {LOW_CONFIDENCE}%)")
    if status.by_kind:
        print("\n  By kind:")
        for kind, count in status.by_kind.items():
            print(f"    {kind:16s} {count}")
    weak = status.weakest()
    if weak:
        print("\n  Structs with low confidence:")
        for s in weak:
            print(f"    [WARN] {s.struct}: {s.signature_count} signature(s), "
                  f"{s.average_confidence}% avg")

# endregion Signatures


# region Drift

def print_drift(report):
    result = report.result
    stats = result.stats
    banner("PHASE 1: Layout Diff")
    print(f"  Structs:  +{stats.structs_added}  -{stats.structs_removed}  ~{stats.structs_modified}")
    print(f"  Enums:    +{stats.enums_added}  -{stats.enums_removed}  ~{stats.enums_modified}")
    print(f"  Field changes:       {stats.total_field_changes}")
    print(f"  Function changes:    {stats.total_func_changes}")

    for d in result.structs:
        if d.change != 'modified':
            print(f"  [{'ADD ' if d.change == 'added' else 'DEL '}] {d.struct}")
            continue
        size = ""
        if d.old_size != d.new_size and d.old_size is not None and d.new_size is not None:
            size = f"  size {to_hex(d.old_size)} -> {to_hex(d.new_size)}"
        print(f"  [MOD ] {d.struct}{size}")
        for f in d.fields:
            if f.delta:
                print(f"           {f.name}: {to_hex(f.old_offset)} -> {to_hex(f.new_offset)}"
                      f" ({signed_hex(f.delta)})")

    banner("PHASE 2: Patterns")
    for line in result.patterns.summary.splitlines():
        print(f"  {line}")

    if report.hierarchy_deltas:
        banner("PHASE 3: Hierarchy Deltas")
        for c in report.hierarchy_deltas:
            print(f"  [{_tag(c.confidence * 100)}] {c.hierarchy:30s} {signed_hex(c.delta)} from "
                  f"{to_hex(c.start_offset)}  {c.match_count}/{c.total_fields} fields "
                  f"({c.confidence * 100:.0f}%)")
            for a in c.anomalies:
                print(f"         anomaly {a['struct']}.{a['field']} "
                      f"({signed_hex(a['actual_delta'])})")

    for p in report.cascading_patterns:
        print(f"  [CASC] {p.source_struct} size {signed_hex(p.size_delta)} -> "
              f"{', '.join(p.affected_structs)} ({p.confidence * 100:.0f}%)")
    for p in report.cross_hierarchy_patterns:
        print(f"  [XHIE] {p.description} ({p.confidence * 100:.0f}%)")

    if report.patch_suggestions:
        banner("PATCH SUGGESTIONS")
        for s in report.patch_suggestions:
            print(f"  [{s.confidence * 100:3.0f}%] {s.struct_pattern}: {s.description}")

# endregion Drift


# region Verification

_SEVERITY_TAG = {'error': 'FAIL', 'warning': 'WARN', 'info': 'INFO'}


def print_validation(result, grouped):
    banner("PHASE 3: Cross-Verification")
    for struct_name, issues in grouped.items():
        print(f"  {struct_name}")
        for i in issues:
            print(f"    [{_SEVERITY_TAG[i.severity]}] {i.message}")
            if i.suggested_fix:
                print(f"           -> {i.suggested_fix}")

    if result.bulk_shifts:
        banner("BULK SHIFTS")
        for p in result.bulk_shifts:
            print(f"  {p.name}: {p.match_count}/{p.total_candidates} mismatches "
                  f"({p.confidence * 100:.0f}%) in {', '.join(p.affected_structs)}")

    if result.suggested_patches:
        banner("SUGGESTED PATCHES")
        for p in result.suggested_patches:
            print(f"  [{p.confidence:3d}%] {p.description}")

    print("\n" + RULE)
    print("  RESULTS SUMMARY")
    print(RULE)
    print(f"  Signatures checked:  {result.signatures_checked}")
    print(f"  Valid:               {result.signatures_valid}")
    print(f"  With issues:         {result.signatures_with_issues}")
    print(f"  Errors / warnings:   {len(result.errors)} / {len(result.warnings)}")
    print(f"  Field coverage:      {result.fields_covered}/{result.fields_total} "
          f"({result.coverage}%)")

# endregion Verification


# region JSON

def format_json(command, results, scanner=None, file_path=None):
    """Machine-readable report envelope around a result's to_dict()."""
    out = {
        "tool": "struct_offset_finder",
        "version": VERSION,
        "command": command,
    }
    if scanner is not None:
        out["file"] = str(file_path or scanner.name)
        out["file_size"] = len(scanner.data)
        out["sha256"] = scanner.hash
        if scanner.pe.valid:
            out["pe_timestamp"] = scanner.pe.timestamp
            out["pe_build_time"] = scanner.pe.build_time.isoformat()
            out["image_base"] = hex(scanner.pe.image_base)
    out["results"] = results
    return json.dumps(out, indent=2)


def write_json(path, text):
    path = Path(path)
    path.write_text(text, encoding='utf-8')
    print(f"  JSON saved: {path}")
    return path

# endregion JSON
