"""Console reports.  Plain print output with bracketed status tags."""

from .config import HIGH_CONFIDENCE, WEAK_CONFIDENCE
from .diff import ADDED, MODIFIED, REMOVED
from .model import AMBIGUOUS, CANCELLED, FOUND, INVALID, NO_MATCH, VTABLE_SLOT
from .scanner import format_pattern

RULE = "=" * 65

STATUS_TAGS = {
    FOUND: "[SIG ]",
    NO_MATCH: "[MISS]",
    AMBIGUOUS: "[AMBG]",
    INVALID: "[BAD ]",
    CANCELLED: "[STOP]",
}

CHANGE_TAGS = {ADDED: "[ADD ]", REMOVED: "[DEL ]", MODIFIED: "[MOD ]"}


def banner(title):
    print("\n" + RULE)
    print(f"  {title}")
    print(RULE)


def _hex(value):
    return "-" if value is None else f"0x{value:X}"


def _signed_hex(value):
    return f"{'-' if value < 0 else '+'}0x{abs(value):X}"


def print_patterns(patterns, min_confidence, title="SHIFT PATTERNS"):
    shown = [p for p in patterns if p.confidence >= min_confidence]
    banner(title)
    if not shown:
        print("  No consistent patterns detected")
    for p in shown:
        tag = "[PASS]" if p.confidence >= HIGH_CONFIDENCE else "[WARN]"
        if p.kind == VTABLE_SLOT:
            shift = f"{p.delta:+d} slot(s) from slot {p.start_offset}"
        else:
            shift = f"{_signed_hex(p.delta)} from 0x{p.start_offset:X}"
        print(f"  {tag} {shift:28s} {p.confidence:6.1%}  "
              f"{p.explained}/{p.population}  {', '.join(p.affected)}")
        for s, f in p.contradictions[:5]:
            print(f"         contradicted by {s}.{f}")
    hidden = len(patterns) - len(shown)
    if hidden:
        print(f"  ({hidden} pattern(s) below {min_confidence:.0%} hidden; see --json)")


# region Diff

def print_diff(diff, analysis, min_confidence):
    banner(f"CATALOG DIFF  {diff.old_version} -> {diff.new_version}")
    for sd in diff.structs:
        size = ""
        if sd.change == MODIFIED and sd.size_delta:
            size = f"  size {_hex(sd.old_size)} -> {_hex(sd.new_size)}"
        print(f"  {CHANGE_TAGS[sd.change]} {sd.name}{size}")
        if sd.change != MODIFIED:
            continue
        if sd.old_base != sd.new_base:
            print(f"         base {sd.old_base} -> {sd.new_base}")
        for f in sd.removed_fields:
            print(f"         - {f.name:30s} {_hex(f.offset):>8s}  {f.type}")
        for f in sd.added_fields:
            print(f"         + {f.name:30s} {_hex(f.offset):>8s}  {f.type}")
        for d in sd.field_deltas:
            line = f"         ~ {d.field:30s} {_hex(d.old_offset):>8s} -> {_hex(d.new_offset):<8s}"
            if d.delta:
                line += f" ({_signed_hex(d.delta)})"
            if d.old_type != d.new_type:
                line += f"  {d.old_type} -> {d.new_type}"
            print(line)
        for c in sd.vfunc_changes:
            print(f"         v {c.change:8s} {c.name} slot {c.old} -> {c.new}")
        for c in sd.func_changes:
            print(f"         f {c.change:8s} {c.name} {_hex(c.old)} -> {_hex(c.new)}")

    for ed in diff.enums:
        print(f"  {CHANGE_TAGS[ed.change]} enum {ed.name}")
        if ed.old_underlying != ed.new_underlying and ed.change == MODIFIED:
            print(f"         underlying {ed.old_underlying} -> {ed.new_underlying}")
        for vc in ed.value_changes:
            print(f"         {vc.change:8s} {vc.name} {vc.old_value} -> {vc.new_value}")

    st = diff.stats
    banner("DIFF SUMMARY")
    print(f"  Structs:          +{st.structs_added} -{st.structs_removed} ~{st.structs_modified}")
    print(f"  Enums:            +{st.enums_added} -{st.enums_removed} ~{st.enums_modified}")
    print(f"  Field changes:    {st.field_changes}")
    print(f"  Function changes: {st.func_changes}")

    print_patterns(analysis.patterns, min_confidence)
    for c in analysis.cascades:
        print(f"  [CASC] {c.description}  ({c.confidence:.0%})")
    for h in analysis.hierarchy_deltas:
        print(f"  [HIER] {h.root} ({len(h.structs)} structs) {_signed_hex(h.delta)} from "
              f"{_hex(h.start_offset)}  {h.match_count}/{h.total} fields  ({h.confidence:.0%})")
        for d in h.anomalies:
            print(f"         ! {d.struct}.{d.field} moved {_signed_hex(d.delta)}")
    for s in analysis.suggestions:
        print(f"  [FIX ] {s.description}  ({s.confidence:.0%})")
    print(f"\n  {analysis.summary.replace(chr(10), chr(10) + '  ')}")

# endregion Diff


# region Signatures

def print_extraction(report, image):
    store = report.store
    banner("SIGNATURE EXTRACTION")
    print(f"  Binary:     {image.path}  ({image.format.upper()}, {image.arch})")
    print(f"  MD5:        {image.md5}")
    print(f"  Regions:    {len(image.regions)} executable, "
          f"{sum(e - s for s, e in image.regions):,} bytes")
    for sig in store.signatures:
        tag = "[PASS]" if sig.high_confidence else "[WARN]"
        print(f"  {tag} {sig.key:40s} {_hex(sig.offset):>8s}  {sig.kind:10s} "
              f"{sig.confidence:5.0%}  {format_pattern(sig.pattern)}")
    for sk in report.skipped:
        print(f"  [SKIP] {sk.struct + '.' + sk.field:40s} {_hex(sk.offset):>8s}  {sk.reason}")

    banner("EXTRACTION SUMMARY")
    print(f"  Requested:        {report.requested}")
    print(f"  Signatures:       {len(store.signatures)}")
    print(f"  Skipped:          {len(report.skipped)}")


def print_scan(scan_report, min_confidence):
    banner("SIGNATURE SCAN")
    for r in scan_report.results:
        sig = r.signature
        tag = STATUS_TAGS.get(r.status, "[????]")
        if r.found:
            moved = f"({_signed_hex(r.delta)})" if r.delta else "(unchanged)"
            print(f"  {tag} {sig.key:40s} {_hex(sig.offset):>8s} -> {_hex(r.new_offset):<8s} {moved}")
        elif r.status == AMBIGUOUS:
            cands = ', '.join(_hex(c) for c in r.candidates[:4])
            print(f"  {tag} {sig.key:40s} {r.error}: {r.match_count} matches ({cands})")
        else:
            print(f"  {tag} {sig.key:40s} {r.error}")

    counts = scan_report.status_counts()
    banner("SCAN SUMMARY")
    print(f"  Scanned:          {len(scan_report.results)}")
    print(f"  Found:            {counts.get(FOUND, 0)}  (moved: {len(scan_report.moved)})")
    print(f"  Not found:        {counts.get(NO_MATCH, 0)}")
    print(f"  Ambiguous:        {counts.get(AMBIGUOUS, 0)}")
    if counts.get(INVALID):
        print(f"  Invalid:          {counts[INVALID]}")
    if counts.get(CANCELLED):
        print(f"  Cancelled:        {counts[CANCELLED]}")

    print_patterns(scan_report.patterns, min_confidence)


def print_coverage(cov):
    banner("SIGNATURE STATUS")
    print(f"  Total signatures:   {cov.total}")
    print(f"  Average confidence: {cov.avg_confidence:.0%}")
    print(f"  High confidence:    {cov.high_confidence}")
    print(f"  Weak:               {cov.weak}")
    print(f"  Ambiguous:          {cov.ambiguous}")
    if cov.coverage is not None:
        print(f"  Coverage:           {cov.covered_fields}/{cov.catalog_fields} fields "
              f"({cov.coverage:.0%})")

    if cov.by_kind:
        print("\n  By kind:")
        for kind, n in cov.by_kind.items():
            print(f"    {kind:12s} {n}")

    weak = [c for c in cov.structs if c.avg_confidence < WEAK_CONFIDENCE][:10]
    if weak:
        print("\n  Structs with low confidence:")
        for c in weak:
            print(f"  [WARN] {c.name}: {c.signatures} sigs, {c.avg_confidence:.0%} avg")

    for issue in cov.issues:
        detail = ""
        if issue.expected is not None:
            detail = f"  catalog {_hex(issue.expected)}, signature {_hex(issue.actual)}"
        print(f"  [WARN] {issue.struct}.{issue.field}: {issue.problem}{detail}")

# endregion Signatures


def print_validation(comparison, patterns, min_confidence):
    banner("VALIDATION REPORT")
    print(f"  Matched:            {comparison.matched}")
    print(f"  Mismatched:         {len(comparison.mismatches)}")
    print(f"  Missing in catalog: {len(comparison.missing_in_catalog)}")
    print(f"  Missing in report:  {len(comparison.missing_in_report)}")
    for m in comparison.mismatches:
        print(f"  [FAIL] {m.name}")
        for problem in m.problems:
            print(f"         {problem}")
    for name in comparison.missing_in_catalog:
        print(f"  [WARN] {name}: not in catalog")

    print_patterns(patterns, min_confidence)
