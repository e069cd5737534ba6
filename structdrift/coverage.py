"""Signature health: confidence spread, per-struct coverage, catalog cross-check."""

from collections import Counter, defaultdict
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .config import HIGH_CONFIDENCE, WEAK_CONFIDENCE

UNKNOWN_STRUCT = "unknown-struct"
MISSING_FIELD = "missing-field"
OFFSET_MISMATCH = "offset-mismatch"


@dataclass(frozen=True)
class StructCoverage:
    name: str
    signatures: int
    fields: Optional[int]
    avg_confidence: float

    @property
    def ratio(self):
        if not self.fields:
            return None
        return self.signatures / self.fields


@dataclass(frozen=True)
class CatalogIssue:
    """A stored signature that disagrees with the current catalog."""

    struct: str
    field: str
    problem: str
    expected: Optional[int] = None
    actual: Optional[int] = None


@dataclass(frozen=True)
class CoverageReport:
    total: int
    by_kind: Dict[str, int]
    avg_confidence: float
    high_confidence: int
    weak: int
    ambiguous: int
    structs: Tuple[StructCoverage, ...]
    catalog_fields: Optional[int] = None
    covered_fields: Optional[int] = None
    issues: Tuple[CatalogIssue, ...] = ()

    @property
    def coverage(self):
        if not self.catalog_fields:
            return None
        return self.covered_fields / self.catalog_fields


def check_against_catalog(store, snapshot):
    """Signatures whose struct, field or offset no longer matches ``snapshot``."""
    issues = []
    for sig in store.signatures:
        sdef = snapshot.structs.get(sig.struct)
        if sdef is None:
            issues.append(CatalogIssue(sig.struct, sig.field, UNKNOWN_STRUCT))
            continue
        fdef = sdef.field_map().get(sig.field)
        if fdef is None:
            issues.append(CatalogIssue(sig.struct, sig.field, MISSING_FIELD))
        elif fdef.offset != sig.offset:
            issues.append(CatalogIssue(sig.struct, sig.field, OFFSET_MISMATCH,
                                       expected=fdef.offset, actual=sig.offset))
    return issues


def signature_coverage(store, snapshot=None):
    sigs = store.signatures
    by_kind = dict(sorted(Counter(s.kind for s in sigs).items()))
    total = len(sigs)

    per_struct = defaultdict(list)
    for s in sigs:
        per_struct[s.struct].append(s.confidence)

    structs = []
    for name in sorted(per_struct):
        confs = per_struct[name]
        fields = None
        if snapshot is not None and name in snapshot.structs:
            fields = len(snapshot.structs[name].fields)
        structs.append(StructCoverage(name, len(confs), fields, sum(confs) / len(confs)))
    # Weakest structs first
    structs.sort(key=lambda c: (c.avg_confidence, c.name))

    catalog_fields = covered = None
    issues = ()
    if snapshot is not None:
        catalog_fields = sum(len(s.fields) for s in snapshot.structs.values())
        keys = {(s.struct, s.field) for s in sigs}
        covered = sum(1 for s in snapshot.structs.values() for f in s.fields
                      if (s.name, f.name) in keys)
        issues = tuple(check_against_catalog(store, snapshot))

    return CoverageReport(
        total=total,
        by_kind=by_kind,
        avg_confidence=sum(s.confidence for s in sigs) / total if total else 0.0,
        high_confidence=sum(1 for s in sigs if s.high_confidence),
        weak=sum(1 for s in sigs if s.confidence < WEAK_CONFIDENCE),
        ambiguous=sum(1 for s in sigs if s.match_count > 1),
        structs=tuple(structs),
        catalog_fields=catalog_fields,
        covered_fields=covered,
        issues=issues,
    )


def coverage_to_dict(report):
    return {
        "total": report.total,
        "by_kind": report.by_kind,
        "avg_confidence": round(report.avg_confidence, 4),
        "high_confidence": report.high_confidence,
        "weak": report.weak,
        "ambiguous": report.ambiguous,
        "catalog_fields": report.catalog_fields,
        "covered_fields": report.covered_fields,
        "structs": [
            {"name": c.name, "signatures": c.signatures, "fields": c.fields,
             "avg_confidence": round(c.avg_confidence, 4)}
            for c in report.structs
        ],
        "issues": [
            {"struct": i.struct, "field": i.field, "problem": i.problem,
             "expected": hex(i.expected) if i.expected is not None else None,
             "actual": hex(i.actual) if i.actual is not None else None}
            for i in report.issues
        ],
    }
