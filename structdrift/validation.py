"""Validation reports from a live struct validator, consumed as data.

The validator runs inside the target process and writes a JSON report; this
module only reads that report.  Issues naming a field with integer expected /
actual values, and field validations checked against a catalog, are turned
into FieldDeltas so the pattern detector can explain them the same way it
explains catalog diffs.
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from .catalog import parse_int
from .errors import InputError
from .model import FieldDelta


@dataclass(frozen=True)
class ValidationIssue:
    severity: str
    rule: str
    message: str
    field: Optional[str] = None
    expected: Optional[str] = None
    actual: Optional[str] = None


@dataclass(frozen=True)
class FieldValidation:
    """A field as the validator saw it in the live layout."""

    name: str
    offset: int
    type: Optional[str] = None
    size: Optional[int] = None

@dataclass(frozen=True)
class StructValidation:
    name: str
    declared_size: Optional[int]
    actual_size: Optional[int]
    issues: Tuple[ValidationIssue, ...] = ()
    fields: Tuple[FieldValidation, ...] = ()

    @property
    def short_name(self):
        return self.name.rsplit('.', 1)[-1]

    @property
    def errors(self):
        return [i for i in self.issues if i.severity == "error"]


def _opt_text(value):
    return None if value is None else str(value)


def _struct_from_dict(d):
    issues = []
    for i in d.get("issues") or []:
        issues.append(ValidationIssue(
            severity=str(i.get("severity", "info")),
            rule=str(i.get("rule", "")),
            message=str(i.get("message", "")),
            field=i.get("field"),
            expected=_opt_text(i.get("expected")),
            actual=_opt_text(i.get("actual")),
        ))
    fields = []
    for f in d.get("fieldValidations") or []:
        size = f.get("size")
        fields.append(FieldValidation(
            name=str(f["name"]),
            offset=parse_int(f["offset"], "fieldValidations.offset"),
            type=_opt_text(f.get("type")),
            size=None if size is None else parse_int(size, "fieldValidations.size"),
        ))
    declared = d.get("declaredSize")
    actual = d.get("actualSize")
    return StructValidation(
        name=d["structName"],
        declared_size=None if declared is None else parse_int(declared, "declaredSize"),
        actual_size=None if actual is None else parse_int(actual, "actualSize"),
        issues=tuple(issues),
        fields=tuple(fields),
    )


def parse_validation_report(data):
    """Accept either a bare result list or a report object with ``results``."""
    if isinstance(data, dict):
        data = data.get("results")
    if not isinstance(data, list):
        raise InputError("validation report must be a list of struct results")
    try:
        return [_struct_from_dict(d) for d in data]
    except (KeyError, ValueError, TypeError, AttributeError) as e:
        raise InputError(f"malformed validation report: {e}")


def load_validation_report(path):
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise InputError(f"cannot read validation report: {e.strerror or e}", path)
    except ValueError as e:
        raise InputError(f"validation report is not valid JSON: {e}", path)
    try:
        return parse_validation_report(data)
    except InputError as e:
        raise InputError(str(e), path)


def _as_int(text):
    try:
        return parse_int(text)
    except ValueError:
        return None


def _catalog_struct(sv, snapshot):
    if snapshot is None:
        return None
    return snapshot.structs.get(sv.name) or snapshot.structs.get(sv.short_name)


def validation_deltas(results, snapshot=None):
    """FieldDeltas recovered from a validation report.

    Any issue naming a field whose expected / actual values both parse as
    non-negative integers yields a delta, whatever its rule.  With a catalog,
    every field validation whose name is a catalog field yields one too,
    unchanged members included, so they count as pattern population.  The
    first delta for a (struct, field) pair wins; catalog ones come first.
    """
    deltas = []
    seen = set()

    def add(d):
        if (d.struct, d.field) not in seen:
            seen.add((d.struct, d.field))
            deltas.append(d)

    for sv in results:
        sdef = _catalog_struct(sv, snapshot)
        if sdef is None:
            continue
        declared = sdef.field_map()
        for fv in sv.fields:
            f = declared.get(fv.name)
            if f is not None:
                add(FieldDelta(sdef.name, fv.name, f.offset, fv.offset,
                               old_type=f.type, new_type=fv.type))

    for sv in results:
        sdef = _catalog_struct(sv, snapshot)
        name = sdef.name if sdef is not None else sv.name
        for issue in sv.issues:
            if not issue.field:
                continue
            old = _as_int(issue.expected)
            new = _as_int(issue.actual)
            if old is None or new is None or old < 0 or new < 0:
                continue
            add(FieldDelta(name, issue.field, old, new))
    return deltas


@dataclass(frozen=True)
class StructMismatch:
    name: str
    declared_size: Optional[int]
    actual_size: Optional[int]
    problems: Tuple[str, ...]


@dataclass(frozen=True)
class ValidationComparison:
    matched: int
    mismatches: Tuple[StructMismatch, ...]
    missing_in_catalog: Tuple[str, ...]
    missing_in_report: Tuple[str, ...]


def compare_with_catalog(results, snapshot):
    """Cross-check a validation report against catalog sizes.

    Report names may be namespace-qualified; a catalog struct matches on its
    full name or on the last dotted component.
    """
    by_name = {}
    for sv in results:
        by_name[sv.name] = sv
        by_name.setdefault(sv.short_name, sv)

    matched = 0
    mismatches: List[StructMismatch] = []
    missing_in_report = []
    for name in sorted(snapshot.structs):
        sdef = snapshot.structs[name]
        sv = by_name.get(name)
        if sv is None:
            missing_in_report.append(name)
            continue
        problems = []
        if sdef.size and sv.actual_size and sdef.size != sv.actual_size:
            problems.append(f"size mismatch: catalog declares 0x{sdef.size:X}, "
                            f"actual is 0x{sv.actual_size:X}")
        for issue in sv.errors:
            problems.append(f"[{issue.rule}] {issue.message}")
        if problems:
            mismatches.append(StructMismatch(name, sdef.size, sv.actual_size, tuple(problems)))
        else:
            matched += 1

    missing_in_catalog = sorted(sv.name for sv in results
                                if sv.name not in snapshot.structs
                                and sv.short_name not in snapshot.structs)

    return ValidationComparison(
        matched=matched,
        mismatches=tuple(mismatches),
        missing_in_catalog=tuple(missing_in_catalog),
        missing_in_report=tuple(missing_in_report),
    )
