"""Signature store and scan report JSON."""

import json
from pathlib import Path

from .catalog import parse_int
from .errors import InputError
from .model import FieldSignature, SignatureStore
from .scanner import format_pattern, parse_pattern

TOOL_NAME = "structdrift"
FORMAT_VERSION = 1


# region Signature Store

def signature_to_dict(sig):
    return {
        "struct": sig.struct,
        "field": sig.field,
        "offset": hex(sig.offset),
        "pattern": format_pattern(sig.pattern),
        "displacement_position": sig.disp_position,
        "displacement_width": sig.disp_width,
        "instruction_kind": sig.kind,
        "match_count": sig.match_count,
        "confidence": round(sig.confidence, 4),
        "reference_address": hex(sig.reference_address) if sig.reference_address is not None else None,
    }


def signature_from_dict(d):
    ref = d.get("reference_address")
    return FieldSignature(
        struct=d["struct"],
        field=d["field"],
        offset=parse_int(d["offset"], "offset"),
        pattern=parse_pattern(d["pattern"]),
        disp_position=parse_int(d["displacement_position"], "displacement_position"),
        disp_width=parse_int(d["displacement_width"], "displacement_width"),
        kind=d.get("instruction_kind", "read"),
        match_count=parse_int(d.get("match_count", 1), "match_count"),
        confidence=float(d.get("confidence", 0.0)),
        reference_address=None if ref is None else parse_int(ref, "reference_address"),
    )


def store_to_dict(store):
    return {
        "tool": TOOL_NAME,
        "format_version": FORMAT_VERSION,
        "version": store.version,
        "timestamp": store.timestamp,
        "binary_md5": store.binary_md5,
        "count": len(store.signatures),
        "signatures": [signature_to_dict(s) for s in store.signatures],
    }


def store_from_dict(data):
    if not isinstance(data, dict) or not isinstance(data.get("signatures"), list):
        raise InputError("signature store must be an object with a 'signatures' list")
    try:
        sigs = [signature_from_dict(s) for s in data["signatures"]]
    except (KeyError, ValueError, TypeError, AttributeError) as e:
        raise InputError(f"malformed signature entry: {e}")
    return SignatureStore(
        version=str(data.get("version", "unknown")),
        timestamp=str(data.get("timestamp", "")),
        signatures=sigs,
        binary_md5=data.get("binary_md5"),
    )


def save_store(store, path):
    return write_json(store_to_dict(store), path)


def load_store(path):
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise InputError(f"cannot read signature store: {e.strerror or e}", path)
    except ValueError as e:
        raise InputError(f"signature store is not valid JSON: {e}", path)
    try:
        return store_from_dict(data)
    except InputError as e:
        raise InputError(str(e), path)

# endregion Signature Store


# region Reports

def pattern_to_dict(p):
    return {
        "kind": p.kind,
        "delta": p.delta,
        "start_offset": hex(p.start_offset),
        "affected": list(p.affected),
        "confidence": round(p.confidence, 4),
        "explained": p.explained,
        "population": p.population,
        "contradictions": [f"{s}.{f}" for s, f in p.contradictions],
        "description": p.description,
    }


def result_to_dict(r):
    out = {
        "struct": r.signature.struct,
        "field": r.signature.field,
        "found": r.found,
        "status": r.status,
        "old_offset": hex(r.signature.offset),
        "match_count": r.match_count,
    }
    if r.found:
        out["new_offset"] = hex(r.new_offset)
        out["delta"] = r.delta
        out["confidence"] = r.confidence
    if r.match_address is not None:
        out["match_address"] = hex(r.match_address)
    if r.error:
        out["error"] = r.error
    if r.candidates:
        out["candidates"] = [hex(c) for c in r.candidates]
    return out


def scan_report_to_dict(report, image=None, store=None):
    counts = report.status_counts()
    return {
        "tool": TOOL_NAME,
        "format_version": FORMAT_VERSION,
        "signature_version": store.version if store else None,
        "binary_md5": image.md5 if image else None,
        "total": len(report.results),
        "statuses": dict(sorted(counts.items())),
        "results": [result_to_dict(r) for r in report.results],
        "patterns": [pattern_to_dict(p) for p in report.patterns],
    }


def write_json(data, path):
    path = Path(path)
    path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
    return path

# endregion Reports
