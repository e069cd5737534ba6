"""Catalog boundary: plain JSON mappings -> Snapshot.

The richer definition formats are produced elsewhere; this module only
accepts the canonical JSON shape and turns any structural problem into an
InputError.
"""

import json
from pathlib import Path

from .errors import InputError
from .model import EnumDef, FieldDef, FuncDef, Snapshot, StructDef, VFuncDef
from .typetags import type_size


def parse_int(value, what="value"):
    """Accept ints and "0x.." / decimal strings; reject everything else."""
    if isinstance(value, bool):
        raise ValueError(f"{what}: expected integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            if text.lower().startswith(('0x', '-0x')):
                return int(text, 16)
            return int(text, 10)
        except ValueError:
            pass
    raise ValueError(f"{what}: expected integer, got {value!r}")


def _opt_int(value, what):
    return None if value is None else parse_int(value, what)


def _struct_from_dict(d):
    name = d.get('name') or d.get('type')
    if not name:
        raise ValueError("struct without a name")
    fields = []
    for i, f in enumerate(d.get('fields') or []):
        fname = f.get('name') or f"field_{i}"
        ftype = str(f.get('type', ''))
        size = f.get('size')
        # Without an explicit size, primitives get their natural width
        if size is None:
            size = type_size(ftype) or 0
        fields.append(FieldDef(
            name=fname,
            type=ftype,
            offset=parse_int(f.get('offset', 0), f"{name}.{fname}.offset"),
            size=parse_int(size, f"{name}.{fname}.size"),
            notes=f.get('notes'),
        ))
    vfuncs = []
    for v in d.get('vfuncs') or []:
        vfuncs.append(VFuncDef(
            index=parse_int(v.get('id', v.get('index')), f"{name} vfunc slot"),
            name=v.get('name'),
            address=_opt_int(v.get('address'), f"{name} vfunc address"),
        ))
    funcs = []
    for fn in d.get('funcs') or []:
        if not fn.get('name'):
            continue
        funcs.append(FuncDef(
            name=fn['name'],
            address=_opt_int(fn.get('ea'), f"{name}.{fn['name']} address"),
            signature=fn.get('signature'),
        ))
    return StructDef(
        name=name,
        size=_opt_int(d.get('size'), f"{name}.size"),
        base=d.get('base'),
        fields=fields,
        vfuncs=vfuncs,
        funcs=funcs,
    )


def _enum_from_dict(d):
    name = d.get('name') or d.get('type')
    if not name:
        raise ValueError("enum without a name")
    values = {}
    for k, v in (d.get('values') or {}).items():
        values[k] = parse_int(v, f"{name}.{k}")
    return EnumDef(name=name, values=values, underlying=d.get('underlying'))


def snapshot_from_dict(data, version=None):
    """Build a Snapshot from the canonical catalog mapping."""
    if not isinstance(data, dict):
        raise InputError("catalog must be a JSON object")
    try:
        structs = [_struct_from_dict(s) for s in data.get('structs') or []]
        enums = [_enum_from_dict(e) for e in data.get('enums') or []]
        label = version or str(data.get('version', 'unknown'))
        return Snapshot.build(label, structs, enums)
    except (ValueError, TypeError, AttributeError) as e:
        raise InputError(f"malformed catalog: {e}")


def load_snapshot(path, version=None):
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding='utf-8'))
    except OSError as e:
        raise InputError(f"cannot read catalog: {e.strerror or e}", path)
    except ValueError as e:
        raise InputError(f"catalog is not valid JSON: {e}", path)
    try:
        return snapshot_from_dict(data, version=version)
    except InputError as e:
        raise InputError(str(e), path)


def field_targets(snapshot):
    """Every (struct, field, offset) triple; structs by name, fields in declared order."""
    targets = []
    for sname in sorted(snapshot.structs):
        for f in snapshot.structs[sname].fields:
            targets.append((sname, f.name, f.offset))
    return targets
