"""Diff engine: field-level deltas between two catalog snapshots.

Structs and enums are matched by fully-qualified name, members by name.
The engine is a pure function of its two inputs; ordering of the output is
fixed (names ascending, field deltas by old offset).
"""

from dataclasses import dataclass
from typing import Optional, Tuple

from .model import FieldDef, FieldDelta
from .typetags import types_equivalent

ADDED = "added"
REMOVED = "removed"
MODIFIED = "modified"


# region Result Types

@dataclass(frozen=True)
class MemberChange:
    """A vfunc slot or non-virtual function that appeared, vanished or moved."""

    change: str
    name: str
    old: Optional[int] = None
    new: Optional[int] = None
    old_signature: Optional[str] = None
    new_signature: Optional[str] = None


@dataclass(frozen=True)
class StructDiff:
    name: str
    change: str
    old_size: Optional[int] = None
    new_size: Optional[int] = None
    old_base: Optional[str] = None
    new_base: Optional[str] = None
    added_fields: Tuple[FieldDef, ...] = ()
    removed_fields: Tuple[FieldDef, ...] = ()
    field_deltas: Tuple[FieldDelta, ...] = ()
    vfunc_changes: Tuple[MemberChange, ...] = ()
    func_changes: Tuple[MemberChange, ...] = ()

    @property
    def size_delta(self):
        if self.old_size is None or self.new_size is None:
            return None
        return self.new_size - self.old_size

    @property
    def field_change_count(self):
        return len(self.added_fields) + len(self.removed_fields) + len(self.field_deltas)


@dataclass(frozen=True)
class EnumValueChange:
    change: str
    name: str
    old_value: Optional[int] = None
    new_value: Optional[int] = None


@dataclass(frozen=True)
class EnumDiff:
    name: str
    change: str
    old_underlying: Optional[str] = None
    new_underlying: Optional[str] = None
    value_changes: Tuple[EnumValueChange, ...] = ()


@dataclass(frozen=True)
class DiffStats:
    structs_added: int = 0
    structs_removed: int = 0
    structs_modified: int = 0
    enums_added: int = 0
    enums_removed: int = 0
    enums_modified: int = 0
    field_changes: int = 0
    func_changes: int = 0


@dataclass(frozen=True)
class SnapshotDiff:
    old_version: str
    new_version: str
    structs: Tuple[StructDiff, ...]
    enums: Tuple[EnumDiff, ...]
    # Same-named members of modified structs, changed or not.  These are the
    # evidence the pattern detector weighs hypotheses against.
    observations: Tuple[FieldDelta, ...]
    vfunc_observations: Tuple[FieldDelta, ...]
    stats: DiffStats

    @property
    def empty(self):
        return not self.structs and not self.enums

# endregion Result Types


# region Struct Comparison

def _diff_fields(sname, old_fields, new_fields):
    old_by_name = {f.name: f for f in old_fields}
    new_by_name = {f.name: f for f in new_fields}

    removed = [f for n, f in old_by_name.items() if n not in new_by_name]
    added = [f for n, f in new_by_name.items() if n not in old_by_name]

    deltas = []
    observations = []
    for name, of in old_by_name.items():
        nf = new_by_name.get(name)
        if nf is None:
            continue
        d = FieldDelta(sname, name, of.offset, nf.offset,
                       old_type=of.type, new_type=nf.type,
                       old_size=of.size, new_size=nf.size)
        observations.append(d)
        if (of.offset != nf.offset or of.size != nf.size
                or not types_equivalent(of.type, nf.type)):
            deltas.append(d)

    by_offset = lambda f: (f.offset, f.name)
    by_old = lambda d: (d.old_offset, d.field)
    return (tuple(sorted(added, key=by_offset)),
            tuple(sorted(removed, key=by_offset)),
            tuple(sorted(deltas, key=by_old)),
            observations)


def _diff_vfuncs(sname, old_vfuncs, new_vfuncs):
    # Unnamed slots cannot be matched across versions
    old_by_name = {v.name: v for v in old_vfuncs if v.name}
    new_by_name = {v.name: v for v in new_vfuncs if v.name}

    changes = []
    observations = []
    for name, ov in old_by_name.items():
        nv = new_by_name.get(name)
        if nv is None:
            changes.append(MemberChange(REMOVED, name, old=ov.index))
            continue
        observations.append(FieldDelta(sname, name, ov.index, nv.index))
        if ov.index != nv.index:
            changes.append(MemberChange(MODIFIED, name, old=ov.index, new=nv.index))
    for name, nv in new_by_name.items():
        if name not in old_by_name:
            changes.append(MemberChange(ADDED, name, new=nv.index))

    changes.sort(key=lambda c: (c.old if c.old is not None else c.new, c.name))
    return tuple(changes), observations


def _diff_funcs(old_funcs, new_funcs):
    old_by_name = {f.name: f for f in old_funcs}
    new_by_name = {f.name: f for f in new_funcs}

    changes = []
    for name, of in old_by_name.items():
        nf = new_by_name.get(name)
        if nf is None:
            changes.append(MemberChange(REMOVED, name, old=of.address,
                                        old_signature=of.signature))
        elif of.address != nf.address or of.signature != nf.signature:
            changes.append(MemberChange(MODIFIED, name, old=of.address, new=nf.address,
                                        old_signature=of.signature,
                                        new_signature=nf.signature))
    for name, nf in new_by_name.items():
        if name not in old_by_name:
            changes.append(MemberChange(ADDED, name, new=nf.address,
                                        new_signature=nf.signature))

    changes.sort(key=lambda c: c.name)
    return tuple(changes)


def diff_structs(old_struct, new_struct):
    """Compare two versions of one struct.

    Returns (StructDiff or None, field observations, vfunc observations).
    """
    added, removed, deltas, field_obs = _diff_fields(
        old_struct.name, old_struct.fields, new_struct.fields)
    vfunc_changes, vfunc_obs = _diff_vfuncs(
        old_struct.name, old_struct.vfuncs, new_struct.vfuncs)
    func_changes = _diff_funcs(old_struct.funcs, new_struct.funcs)

    unchanged = (old_struct.size == new_struct.size
                 and old_struct.base == new_struct.base
                 and not added and not removed and not deltas
                 and not vfunc_changes and not func_changes)
    if unchanged:
        return None, [], []

    sd = StructDiff(
        name=old_struct.name,
        change=MODIFIED,
        old_size=old_struct.size,
        new_size=new_struct.size,
        old_base=old_struct.base,
        new_base=new_struct.base,
        added_fields=added,
        removed_fields=removed,
        field_deltas=deltas,
        vfunc_changes=vfunc_changes,
        func_changes=func_changes,
    )
    return sd, field_obs, vfunc_obs

# endregion Struct Comparison


# region Enum Comparison

def diff_enum_values(old_values, new_values):
    """Value-name keyed comparison.

    A renamed entry that keeps its integer shows up as one removal plus one
    addition; no rename inference is attempted.
    """
    changes = []
    for name, value in old_values.items():
        if name not in new_values:
            changes.append(EnumValueChange(REMOVED, name, old_value=value))
        elif new_values[name] != value:
            changes.append(EnumValueChange(MODIFIED, name, old_value=value,
                                           new_value=new_values[name]))
    for name, value in new_values.items():
        if name not in old_values:
            changes.append(EnumValueChange(ADDED, name, new_value=value))
    changes.sort(key=lambda c: c.name)
    return tuple(changes)


def _diff_enums(old_enums, new_enums):
    diffs = []
    for name in sorted(set(old_enums) | set(new_enums)):
        oe = old_enums.get(name)
        ne = new_enums.get(name)
        if ne is None:
            diffs.append(EnumDiff(name, REMOVED, old_underlying=oe.underlying))
        elif oe is None:
            diffs.append(EnumDiff(name, ADDED, new_underlying=ne.underlying))
        else:
            values = diff_enum_values(oe.values, ne.values)
            if values or oe.underlying != ne.underlying:
                diffs.append(EnumDiff(name, MODIFIED, oe.underlying, ne.underlying, values))
    return tuple(diffs)

# endregion Enum Comparison


# region Snapshot Comparison

def diff_snapshots(old, new):
    """Compare two snapshots.  Pure: no state is kept between calls."""
    struct_diffs = []
    observations = []
    vfunc_observations = []

    for name in sorted(set(old.structs) | set(new.structs)):
        os_ = old.structs.get(name)
        ns = new.structs.get(name)
        if ns is None:
            struct_diffs.append(StructDiff(name, REMOVED, old_size=os_.size,
                                           old_base=os_.base,
                                           removed_fields=tuple(sorted(
                                               os_.fields, key=lambda f: (f.offset, f.name)))))
        elif os_ is None:
            struct_diffs.append(StructDiff(name, ADDED, new_size=ns.size,
                                           new_base=ns.base,
                                           added_fields=tuple(sorted(
                                               ns.fields, key=lambda f: (f.offset, f.name)))))
        else:
            sd, f_obs, v_obs = diff_structs(os_, ns)
            if sd is not None:
                struct_diffs.append(sd)
                observations.extend(f_obs)
                vfunc_observations.extend(v_obs)

    enum_diffs = _diff_enums(old.enums, new.enums)

    modified = [d for d in struct_diffs if d.change == MODIFIED]
    stats = DiffStats(
        structs_added=sum(1 for d in struct_diffs if d.change == ADDED),
        structs_removed=sum(1 for d in struct_diffs if d.change == REMOVED),
        structs_modified=len(modified),
        enums_added=sum(1 for d in enum_diffs if d.change == ADDED),
        enums_removed=sum(1 for d in enum_diffs if d.change == REMOVED),
        enums_modified=sum(1 for d in enum_diffs if d.change == MODIFIED),
        field_changes=sum(d.field_change_count for d in modified),
        func_changes=sum(len(d.func_changes) + len(d.vfunc_changes) for d in modified),
    )

    key = lambda d: (d.struct, d.old_offset, d.field)
    return SnapshotDiff(
        old_version=old.version,
        new_version=new.version,
        structs=tuple(struct_diffs),
        enums=enum_diffs,
        observations=tuple(sorted(observations, key=key)),
        vfunc_observations=tuple(sorted(vfunc_observations, key=key)),
        stats=stats,
    )


def field_deltas(diff):
    """All offset-changing FieldDeltas across modified structs."""
    out = []
    for sd in diff.structs:
        out.extend(d for d in sd.field_deltas if d.delta != 0)
    return out

# endregion Snapshot Comparison
