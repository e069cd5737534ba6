"""Command line entry point.

    structdrift diff OLD.json NEW.json
    structdrift extract BINARY CATALOG.json -o sigs.json
    structdrift scan BINARY sigs.json
    structdrift status sigs.json [--catalog CATALOG.json]
    structdrift validation REPORT.json [--catalog CATALOG.json]

Exit status is 1 on unreadable or malformed input and 0 otherwise, however
many fields went unmatched.
"""

import argparse
import dataclasses
import json
import sys
import threading
from pathlib import Path

from . import VERSION
from .aggregate import aggregate, delta_patterns
from .binfmt import load_binary
from .catalog import field_targets, load_snapshot
from .config import DEFAULT_MIN_CONFIDENCE, MAX_WINDOW, DriftContext
from .coverage import coverage_to_dict, signature_coverage
from .diff import diff_snapshots
from .errors import InputError
from .extractor import extract_signatures
from .patterns import analyze
from .report import (
    RULE,
    print_coverage,
    print_diff,
    print_extraction,
    print_patterns,
    print_scan,
    print_validation,
)
from .scanner import scan_signatures
from .store import (
    load_store,
    pattern_to_dict,
    save_store,
    scan_report_to_dict,
    store_to_dict,
    write_json,
)
from .validation import compare_with_catalog, load_validation_report, validation_deltas


def _confidence(text):
    try:
        value = float(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a number: {text!r}")
    if not 0.0 <= value <= 1.0:
        raise argparse.ArgumentTypeError(f"confidence must be within [0, 1], got {value}")
    return value


def _context(args):
    return DriftContext(
        min_confidence=getattr(args, 'min_confidence', DEFAULT_MIN_CONFIDENCE),
        max_window=getattr(args, 'max_window', MAX_WINDOW),
        workers=getattr(args, 'workers', None),
        verbose=getattr(args, 'verbose', False),
    )


def _run_cancellable(ctx, fn, *args):
    """Run ``fn`` on a background thread; Ctrl+C cancels ``ctx`` instead of killing it.

    In-flight fields finish and everything collected so far is returned.
    """
    box = {}

    def target():
        try:
            box['result'] = fn(*args)
        except Exception as e:
            box['error'] = e

    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    while thread.is_alive():
        try:
            thread.join(0.2)
        except KeyboardInterrupt:
            if not ctx.cancelled:
                print("\n  [STOP] Cancelling, waiting for in-flight fields...")
            ctx.cancel()
    if 'error' in box:
        raise box['error']
    return box['result']


def _emit_json(data, args):
    if args.output:
        write_json(data, args.output)
        print(f"  JSON written: {args.output}")
    else:
        print(json.dumps(data, indent=2))


def _maybe_graph(args, patterns, cascades=()):
    if not getattr(args, 'graph', None):
        return
    from .viz import generate_pattern_graph
    path = generate_pattern_graph(patterns, args.graph, cascades)
    if path:
        print(f"\n  Pattern graph saved: {path}")
    else:
        print("\n  No patterns to graph")


# region Commands

def cmd_diff(args):
    ctx = _context(args)
    old = load_snapshot(args.old)
    new = load_snapshot(args.new)
    diff = diff_snapshots(old, new)
    analysis = analyze(diff, ctx, old=old)

    if args.json:
        _emit_json({
            "old_version": diff.old_version,
            "new_version": diff.new_version,
            "stats": dataclasses.asdict(diff.stats),
            "field_deltas": [
                {"struct": d.struct, "field": d.field, "old_offset": hex(d.old_offset),
                 "new_offset": hex(d.new_offset), "delta": d.delta,
                 "old_type": d.old_type, "new_type": d.new_type}
                for sd in diff.structs for d in sd.field_deltas
            ],
            "structs": [{"name": sd.name, "change": sd.change} for sd in diff.structs],
            "enums": [{"name": ed.name, "change": ed.change} for ed in diff.enums],
            "patterns": [pattern_to_dict(p) for p in analysis.patterns],
            "size_delta": analysis.size_delta,
            "cascades": [{"source": c.source, "size_delta": c.size_delta,
                          "affected": list(c.affected), "confidence": round(c.confidence, 4)}
                         for c in analysis.cascades],
            "hierarchy_deltas": [
                {"root": h.root, "structs": list(h.structs), "delta": h.delta,
                 "start_offset": hex(h.start_offset), "matching": h.match_count,
                 "anomalies": [f"{d.struct}.{d.field}" for d in h.anomalies],
                 "confidence": round(h.confidence, 4)}
                for h in analysis.hierarchy_deltas
            ],
            "cross_hierarchy": [{"delta": x.delta, "hierarchies": list(x.hierarchies),
                                 "affected_count": x.affected_count,
                                 "confidence": round(x.confidence, 4)}
                                for x in analysis.cross_hierarchy],
            "suggestions": [{"target": s.target, "delta": s.delta,
                             "start_offset": hex(s.start_offset),
                             "confidence": round(s.confidence, 4),
                             "description": s.description}
                            for s in analysis.suggestions],
            "summary": analysis.summary,
        }, args)
    else:
        print_diff(diff, analysis, ctx.min_confidence)
    _maybe_graph(args, analysis.patterns, analysis.cascades)
    return 0


def cmd_extract(args):
    ctx = _context(args)
    image = load_binary(args.binary)
    snapshot = load_snapshot(args.catalog)
    targets = field_targets(snapshot)
    version = args.label or snapshot.version

    if not args.json:
        print(f"  Extracting {len(targets)} field(s) from {image.path} "
              f"({ctx.workers} worker(s))")
    report = _run_cancellable(ctx, extract_signatures, image, targets, ctx, version)

    out = Path(args.output) if args.output else Path(args.binary).with_suffix('.sigs.json')
    save_store(report.store, out)

    if args.json:
        print(json.dumps(store_to_dict(report.store), indent=2))
    else:
        print_extraction(report, image)
        print(f"\n  Signatures written: {out}")
    return 0


def cmd_scan(args):
    ctx = _context(args)
    image = load_binary(args.binary)
    store = load_store(args.signatures)
    if store.binary_md5 == image.md5 and not args.json:
        print("  NOTE: scanning the same binary the signatures were extracted from")

    results = _run_cancellable(ctx, scan_signatures, image, store.signatures, ctx)
    report = aggregate(results, ctx)

    if args.json or args.output:
        _emit_json(scan_report_to_dict(report, image, store), args)
    if not args.json:
        print_scan(report, ctx.min_confidence)
    _maybe_graph(args, report.patterns)
    return 0


def cmd_status(args):
    store = load_store(args.signatures)
    snapshot = load_snapshot(args.catalog) if args.catalog else None
    cov = signature_coverage(store, snapshot)
    if args.json:
        print(json.dumps(coverage_to_dict(cov), indent=2))
    else:
        print_coverage(cov)
    return 0


def cmd_validation(args):
    ctx = _context(args)
    results = load_validation_report(args.report)
    snapshot = load_snapshot(args.catalog) if args.catalog else None
    patterns = delta_patterns(validation_deltas(results, snapshot), ctx)

    comparison = None
    if snapshot is not None:
        comparison = compare_with_catalog(results, snapshot)

    if args.json:
        data = {"patterns": [pattern_to_dict(p) for p in patterns]}
        if comparison is not None:
            data.update({
                "matched": comparison.matched,
                "mismatches": [{"struct": m.name, "declared_size": m.declared_size,
                                "actual_size": m.actual_size, "problems": list(m.problems)}
                               for m in comparison.mismatches],
                "missing_in_catalog": list(comparison.missing_in_catalog),
                "missing_in_report": list(comparison.missing_in_report),
            })
        print(json.dumps(data, indent=2))
    elif comparison is not None:
        print_validation(comparison, patterns, ctx.min_confidence)
    else:
        print_patterns(patterns, ctx.min_confidence, title="VALIDATION SHIFT PATTERNS")
    _maybe_graph(args, patterns)
    return 0

# endregion Commands


def build_parser():
    ap = argparse.ArgumentParser(
        prog='structdrift',
        description='Track struct layout drift across binary versions')
    ap.add_argument('--version', action='version', version=f'%(prog)s {VERSION}')
    sub = ap.add_subparsers(dest='command')

    def common(p):
        p.add_argument('--min-confidence', type=_confidence, default=DEFAULT_MIN_CONFIDENCE,
                       help=f'Hide or drop results below this (default: {DEFAULT_MIN_CONFIDENCE})')
        p.add_argument('--json', action='store_true', help='Machine-readable output')
        p.add_argument('-v', '--verbose', action='store_true',
                       help='Print per-field progress')

    # diff
    d = sub.add_parser('diff', help='Compare two catalog snapshots')
    d.add_argument('old', help='Old catalog JSON')
    d.add_argument('new', help='New catalog JSON')
    d.add_argument('-o', '--output', help='Write JSON here instead of stdout (with --json)')
    d.add_argument('--graph', metavar='PNG', help='Render the pattern graph')
    common(d)
    d.set_defaults(func=cmd_diff)

    # extract
    e = sub.add_parser('extract', help='Extract field signatures from a reference binary')
    e.add_argument('binary', help='Reference binary')
    e.add_argument('catalog', help='Catalog JSON with the known offsets')
    e.add_argument('-o', '--output', help='Signature store (default: BINARY.sigs.json)')
    e.add_argument('--label', help='Version label (default: catalog version)')
    e.add_argument('--workers', type=int, default=None, help='Worker threads (default: CPU count)')
    e.add_argument('--max-window', type=int, default=MAX_WINDOW,
                   help=f'Largest signature in bytes (default: {MAX_WINDOW})')
    common(e)
    e.set_defaults(func=cmd_extract)

    # scan
    s = sub.add_parser('scan', help='Find stored signatures in a new binary')
    s.add_argument('binary', help='New binary')
    s.add_argument('signatures', help='Signature store JSON')
    s.add_argument('-o', '--output', help='Write the JSON scan report here')
    s.add_argument('--workers', type=int, default=None, help='Worker threads (default: CPU count)')
    s.add_argument('--graph', metavar='PNG', help='Render the pattern graph')
    common(s)
    s.set_defaults(func=cmd_scan)

    # status
    st = sub.add_parser('status', help='Signature health and coverage')
    st.add_argument('signatures', help='Signature store JSON')
    st.add_argument('--catalog', help='Cross-check against this catalog')
    st.add_argument('--json', action='store_true', help='Machine-readable output')
    st.set_defaults(func=cmd_status)

    # validation
    va = sub.add_parser('validation', help='Explain a live validation report')
    va.add_argument('report', help='Validation report JSON')
    va.add_argument('--catalog', help='Compare struct sizes against this catalog')
    va.add_argument('--graph', metavar='PNG', help='Render the pattern graph')
    common(va)
    va.set_defaults(func=cmd_validation)

    return ap


def main(argv=None):
    ap = build_parser()
    args = ap.parse_args(argv)
    if args.command is None:
        ap.print_help()
        return 1

    if not getattr(args, 'json', False):
        print(RULE)
        print(f"  structdrift v{VERSION}")
        print(RULE)

    try:
        return args.func(args)
    except InputError as e:
        print(f"\nERROR: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
