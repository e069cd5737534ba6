"""Pattern detector: generalize scattered offset changes into bulk shifts.

A hypothesis is "every member at or after ``start`` in these structs moved
by ``delta``".  It is scored against all same-named members of the affected
structs, so fields that did not move (or moved differently) count against it.
"""

from collections import Counter, defaultdict
from dataclasses import dataclass
from typing import Optional, Tuple

from .config import (
    MIN_FIELDS_FOR_FULL_CONFIDENCE,
    MIN_GROUP_SIZE,
    MIN_STRUCTS_FOR_FULL_CONFIDENCE,
    REPORT_FLOOR,
    SUGGEST_CASCADE_MIN,
    SUGGEST_CROSS_MIN,
    SUGGEST_HIERARCHY_MIN,
)
from .diff import MODIFIED, field_deltas
from .model import FIELD_OFFSET, VTABLE_SLOT, FieldDelta, OffsetPattern


def _signed_hex(value):
    sign = '-' if value < 0 else '+'
    return f"{sign}0x{abs(value):X}"


def confidence_ceiling(n_structs, n_fields):
    """Upper bound on confidence for a group of the given breadth.

    Full confidence needs enough structs and enough moved members; anything
    narrower stays below HIGH_CONFIDENCE no matter how clean it looks.
    """
    if (n_structs >= MIN_STRUCTS_FOR_FULL_CONFIDENCE
            and n_fields >= MIN_FIELDS_FOR_FULL_CONFIDENCE):
        return 1.0
    s = min(n_structs, MIN_STRUCTS_FOR_FULL_CONFIDENCE) / MIN_STRUCTS_FOR_FULL_CONFIDENCE
    f = min(n_fields, MIN_FIELDS_FOR_FULL_CONFIDENCE) / MIN_FIELDS_FOR_FULL_CONFIDENCE
    return 0.5 + 0.4 * s * f


def _describe(kind, delta, start, n_structs, explained, population):
    if kind == VTABLE_SLOT:
        sign = '+' if delta > 0 else '-'
        return (f"vtable shift {sign}{abs(delta)} slot(s) from slot {start} "
                f"in {n_structs} struct(s) ({explained}/{population} functions)")
    return (f"offset shift {_signed_hex(delta)} at/after 0x{start:X} "
            f"in {n_structs} struct(s) ({explained}/{population} fields)")


def detect_patterns(observations, kind=FIELD_OFFSET, min_group=MIN_GROUP_SIZE,
                    floor=REPORT_FLOOR):
    """Return OffsetPatterns explaining ``observations``, best first.

    ``observations`` are FieldDeltas for every same-named member of the
    changed structs, including those that did not move.  Pure function.
    """
    observations = list(observations)
    groups = defaultdict(list)
    for obs in observations:
        if obs.delta != 0:
            groups[obs.delta].append(obs)

    by_struct = defaultdict(list)
    for obs in observations:
        by_struct[obs.struct].append(obs)

    patterns = []
    for delta, members in groups.items():
        if len(members) < min_group:
            continue
        start = min(m.old_offset for m in members)
        structs = tuple(sorted({m.struct for m in members}))

        population = [o for s in structs for o in by_struct[s] if o.old_offset >= start]
        explained = [o for o in population if o.delta == delta]
        contradictions = tuple(sorted((o.struct, o.field)
                                      for o in population if o.delta != delta))

        ceiling = confidence_ceiling(len(structs), len(members))
        confidence = len(explained) / len(population) * ceiling
        if confidence < floor:
            continue

        patterns.append(OffsetPattern(
            delta=delta,
            start_offset=start,
            affected=structs,
            confidence=confidence,
            kind=kind,
            description=_describe(kind, delta, start, len(structs),
                                  len(explained), len(population)),
            explained=len(explained),
            population=len(population),
            contradictions=contradictions,
        ))

    patterns.sort(key=lambda p: (-p.confidence, -p.affected_count, p.delta,
                                 p.kind, p.start_offset))
    return patterns


# region Size and Inheritance

def consistent_size_delta(struct_diffs):
    """Most common non-zero declared-size change, if a strict majority share it."""
    deltas = [d.size_delta for d in struct_diffs
              if d.change == MODIFIED and d.size_delta is not None]
    if not deltas:
        return None
    counts = Counter(x for x in deltas if x != 0)
    if not counts:
        return None
    # Ties resolve to the smaller delta
    delta, count = min(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    if count * 2 > len(deltas):
        return delta
    return None


@dataclass(frozen=True)
class Cascade:
    """A base struct's size change reappearing as a shift in its children."""

    source: str
    size_delta: int
    affected: Tuple[str, ...]
    children: int
    confidence: float
    start_offset: int = 0

    @property
    def description(self):
        return (f"{self.source} size {_signed_hex(self.size_delta)} shifts "
                f"{len(self.affected)}/{self.children} derived struct(s)")


def detect_cascades(old, diff):
    """Find base structs whose size change shows up in derived structs.

    A child counts when at least one of its fields at or past the base's old
    size moved by exactly the base's size delta.
    """
    by_name = {d.name: d for d in diff.structs}
    cascades = []
    for sd in diff.structs:
        if sd.change != MODIFIED or not sd.size_delta:
            continue
        children = sorted(s.name for s in old.structs.values() if s.base == sd.name)
        if not children:
            continue
        affected = []
        for child in children:
            cd = by_name.get(child)
            if cd is None or cd.change != MODIFIED:
                continue
            if any(fd.delta == sd.size_delta and fd.old_offset >= sd.old_size
                   for fd in cd.field_deltas):
                affected.append(child)
        if affected:
            cascades.append(Cascade(
                source=sd.name,
                size_delta=sd.size_delta,
                affected=tuple(affected),
                children=len(children),
                confidence=len(affected) / len(children),
                start_offset=sd.old_size,
            ))
    cascades.sort(key=lambda c: (-c.confidence, c.source))
    return cascades

# endregion Size and Inheritance


# region Hierarchies

def inheritance_roots(snapshot):
    """Map every struct name to the root of its base chain.

    A base missing from the snapshot ends the chain.  A cycle ends at the
    first struct seen twice.
    """
    roots = {}
    for name in snapshot.structs:
        seen = set()
        cur = name
        while cur not in seen:
            seen.add(cur)
            base = snapshot.structs[cur].base
            if not base or base not in snapshot.structs:
                break
            cur = base
        roots[name] = cur
    return roots


@dataclass(frozen=True)
class HierarchyDelta:
    """The shift most moved fields of one inheritance hierarchy agree on."""

    root: str
    structs: Tuple[str, ...]
    delta: int
    start_offset: int
    matching: Tuple[FieldDelta, ...]
    anomalies: Tuple[FieldDelta, ...]
    confidence: float

    @property
    def match_count(self):
        return len(self.matching)

    @property
    def total(self):
        return len(self.matching) + len(self.anomalies)


def detect_hierarchy_deltas(old, diff):
    """One HierarchyDelta per inheritance root with moved fields.

    Hierarchies come from the old snapshot.  Fields that moved by any other
    amount are listed as anomalies.
    """
    roots = inheritance_roots(old)
    members = defaultdict(list)
    for name, root in roots.items():
        members[root].append(name)

    moved = defaultdict(list)
    for d in field_deltas(diff):
        if d.struct in roots:
            moved[roots[d.struct]].append(d)

    out = []
    for root, changes in moved.items():
        groups = defaultdict(list)
        for d in changes:
            groups[d.delta].append(d)
        # Largest group wins; ties go to the smaller delta
        delta, matching = min(groups.items(), key=lambda kv: (-len(kv[1]), kv[0]))
        size = len(members[root])
        # Agreement ratio, plus a small bonus for broad hierarchies and for
        # five or more agreeing fields
        confidence = min(1.0, len(matching) / len(changes) * 0.8
                         + min(0.2, size / 50)
                         + (0.1 if len(matching) >= 5 else 0.0))
        out.append(HierarchyDelta(
            root=root,
            structs=tuple(sorted(members[root])),
            delta=delta,
            start_offset=min(d.old_offset for d in matching),
            matching=tuple(matching),
            anomalies=tuple(d for d in changes if d.delta != delta),
            confidence=confidence,
        ))
    out.sort(key=lambda h: (-h.confidence, h.root))
    return out


@dataclass(frozen=True)
class CrossHierarchyPattern:
    """The same shift found in several unrelated hierarchies."""

    delta: int
    hierarchies: Tuple[str, ...]
    affected_count: int
    confidence: float

    @property
    def description(self):
        return (f"common {_signed_hex(self.delta)} shift across "
                f"{len(self.hierarchies)} hierarchies")


def detect_cross_hierarchy(hierarchy_deltas):
    by_delta = defaultdict(list)
    for h in hierarchy_deltas:
        by_delta[h.delta].append(h)

    out = []
    for delta, group in by_delta.items():
        if len(group) < 2:
            continue
        avg = sum(h.confidence for h in group) / len(group)
        share = len(group) / len(hierarchy_deltas)
        out.append(CrossHierarchyPattern(
            delta=delta,
            hierarchies=tuple(sorted(h.root for h in group)),
            affected_count=sum(len(h.structs) for h in group),
            confidence=min(1.0, avg * (share + 0.5)),
        ))
    out.sort(key=lambda c: (-c.confidence, c.delta))
    return out


@dataclass(frozen=True)
class PatchSuggestion:
    # A struct name, "Root*" for a whole hierarchy, or a comma-separated list
    target: str
    delta: int
    start_offset: int
    confidence: float
    description: str


def patch_suggestions(hierarchy_deltas, cascades=(), cross=()):
    """Catalog fixes implied by the detected shifts, best first, one per (target, delta)."""
    suggestions = []
    for h in hierarchy_deltas:
        if h.confidence < SUGGEST_HIERARCHY_MIN:
            continue
        target = h.structs[0] if len(h.structs) == 1 else f"{h.root}*"
        suggestions.append(PatchSuggestion(
            target, h.delta, h.start_offset, h.confidence,
            f"shift {target} {_signed_hex(h.delta)} from 0x{h.start_offset:X} "
            f"({h.match_count}/{h.total} moved fields agree)"))

    for c in cascades:
        if c.confidence < SUGGEST_CASCADE_MIN:
            continue
        for child in c.affected:
            suggestions.append(PatchSuggestion(
                child, c.size_delta, c.start_offset, c.confidence * 0.9,
                f"shift {child} {_signed_hex(c.size_delta)} from 0x{c.start_offset:X} "
                f"after {c.source} size change"))

    for x in cross:
        if x.confidence < SUGGEST_CROSS_MIN:
            continue
        target = ", ".join(f"{root}*" for root in x.hierarchies)
        suggestions.append(PatchSuggestion(
            target, x.delta, 0, x.confidence, f"shift {target} {_signed_hex(x.delta)} ({x.description})"))

    suggestions.sort(key=lambda s: -s.confidence)
    seen = set()
    out = []
    for s in suggestions:
        if (s.target, s.delta) in seen:
            continue
        seen.add((s.target, s.delta))
        out.append(s)
    return out

# endregion Hierarchies


# region Analysis

@dataclass(frozen=True)
class PatternReport:
    field_patterns: Tuple[OffsetPattern, ...]
    vtable_patterns: Tuple[OffsetPattern, ...]
    size_delta: Optional[int]
    cascades: Tuple[Cascade, ...]
    hierarchy_deltas: Tuple[HierarchyDelta, ...] = ()
    cross_hierarchy: Tuple[CrossHierarchyPattern, ...] = ()
    suggestions: Tuple[PatchSuggestion, ...] = ()

    @property
    def patterns(self):
        return self.field_patterns + self.vtable_patterns

    @property
    def summary(self):
        parts = []
        if self.field_patterns:
            top = self.field_patterns[0]
            parts.append(f"Detected offset shift: {_signed_hex(top.delta)} starting at "
                         f"0x{top.start_offset:X} ({top.explained} fields, "
                         f"{top.confidence * 100:.0f}% confidence)")
        if self.vtable_patterns:
            top = self.vtable_patterns[0]
            parts.append(f"Detected vtable shift: {top.delta:+d} slots "
                         f"({top.explained} functions, {top.confidence * 100:.0f}% confidence)")
        if self.size_delta is not None:
            parts.append(f"Consistent struct size change: {_signed_hex(self.size_delta)}")
        for c in self.cascades:
            parts.append(f"Cascade: {c.description}")
        for x in self.cross_hierarchy:
            parts.append(f"Cross-hierarchy: {x.description}")
        if not parts:
            return "No consistent patterns detected"
        return "\n".join(parts)


def analyze(diff, ctx=None, old=None):
    """Run every detector over a SnapshotDiff.

    Cascades need the old snapshot's inheritance links and are skipped when
    ``old`` is not given.
    """
    min_group = ctx.min_group if ctx else MIN_GROUP_SIZE
    floor = ctx.report_floor if ctx else REPORT_FLOOR

    field_patterns = detect_patterns(diff.observations, FIELD_OFFSET, min_group, floor)
    vtable_patterns = detect_patterns(diff.vfunc_observations, VTABLE_SLOT, min_group, floor)
    cascades = []
    hierarchy_deltas = []
    if old is not None:
        cascades = detect_cascades(old, diff)
        hierarchy_deltas = detect_hierarchy_deltas(old, diff)
    cross = detect_cross_hierarchy(hierarchy_deltas)

    if ctx:
        ctx.echo(f"  [PATN] {len(field_patterns)} field / {len(vtable_patterns)} vtable "
                 f"pattern(s), {len(cascades)} cascade(s), {len(hierarchy_deltas)} hierarchy shift(s)")

    return PatternReport(
        field_patterns=tuple(field_patterns),
        vtable_patterns=tuple(vtable_patterns),
        size_delta=consistent_size_delta(diff.structs),
        cascades=tuple(cascades),
        hierarchy_deltas=tuple(hierarchy_deltas),
        cross_hierarchy=tuple(cross),
        suggestions=tuple(patch_suggestions(hierarchy_deltas, cascades, cross)),
    )

# endregion Analysis
