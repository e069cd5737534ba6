import unittest

from structdrift.config import DriftContext, HIGH_CONFIDENCE
from structdrift.diff import diff_snapshots
from structdrift.model import FIELD_OFFSET, VTABLE_SLOT, FieldDef, FieldDelta, Snapshot, StructDef
from structdrift.patterns import (
    analyze,
    confidence_ceiling,
    Cascade,
    HierarchyDelta,
    consistent_size_delta,
    detect_cascades,
    detect_cross_hierarchy,
    detect_hierarchy_deltas,
    detect_patterns,
    inheritance_roots,
    patch_suggestions,
)


def five_struct_observations(extra=()):
    """5 structs: 3 fields below 0x100 unchanged, 3 at/above shifted +0x8."""
    obs = []
    for i in range(5):
        name = f"S{i}"
        for j in range(3):
            obs.append(FieldDelta(name, f"lo{j}", j * 8, j * 8))
        for j in range(3):
            obs.append(FieldDelta(name, f"hi{j}", 0x100 + j * 8, 0x108 + j * 8))
    obs.extend(extra)
    return obs


def struct(name, fields, size=None, base=None):
    return StructDef(name, size=size, base=base,
                     fields=[FieldDef(n, "int", o) for n, o in fields])


class TestBulkShift(unittest.TestCase):

    def test_five_struct_scenario(self):
        patterns = detect_patterns(five_struct_observations())
        self.assertEqual(len(patterns), 1)
        p = patterns[0]
        self.assertEqual(p.delta, 0x8)
        self.assertEqual(p.start_offset, 0x100)
        self.assertEqual(p.affected_count, 5)
        self.assertGreaterEqual(p.confidence, HIGH_CONFIDENCE)
        self.assertEqual((p.explained, p.population), (15, 15))
        self.assertEqual(p.kind, FIELD_OFFSET)

    def test_contradiction_lowers_confidence(self):
        base = detect_patterns(five_struct_observations())[0]
        stray = FieldDelta("S0", "stuck", 0x118, 0x118)
        worse = detect_patterns(five_struct_observations([stray]))[0]
        self.assertLess(worse.confidence, base.confidence)
        self.assertEqual(worse.contradictions, (("S0", "stuck"),))
        self.assertEqual(worse.explained, base.explained)

    def test_contradiction_lowers_capped_confidence(self):
        obs = [FieldDelta("Foo", "C", 0x100, 0x108), FieldDelta("Foo", "D", 0x108, 0x110)]
        before = detect_patterns(obs)[0].confidence
        after = detect_patterns(obs + [FieldDelta("Foo", "E", 0x120, 0x120)])[0].confidence
        self.assertLess(after, before)

    def test_foo_scenario(self):
        old = Snapshot.build("1", [struct("Foo", [("A", 0), ("B", 8), ("C", 0x100), ("D", 0x108)])])
        new = Snapshot.build("2", [struct("Foo", [("A", 0), ("B", 8), ("C", 0x108), ("D", 0x110)])])
        patterns = detect_patterns(diff_snapshots(old, new).observations)
        self.assertEqual(len(patterns), 1)
        p = patterns[0]
        self.assertEqual(p.delta, 0x8)
        self.assertTrue(0xFC <= p.start_offset <= 0x100)
        self.assertEqual(p.affected, ("Foo",))
        # One struct, two fields: capped below HIGH_CONFIDENCE
        self.assertAlmostEqual(p.confidence, 0.5 + 0.4 * (1 / 3) * (2 / 3))
        self.assertLess(p.confidence, HIGH_CONFIDENCE)

    def test_single_change_not_a_pattern(self):
        self.assertEqual(detect_patterns([FieldDelta("Foo", "a", 0x10, 0x18)]), [])

    def test_floor_suppresses(self):
        # 2 explained out of 10: 0.2 * ceiling is under the default floor
        obs = [FieldDelta("Foo", "a", 0x10, 0x18), FieldDelta("Foo", "b", 0x14, 0x1C)]
        obs += [FieldDelta("Foo", f"z{i}", 0x20 + i * 4, 0x20 + i * 4) for i in range(8)]
        self.assertEqual(detect_patterns(obs), [])
        self.assertEqual(len(detect_patterns(obs, floor=0.0)), 1)

    def test_ordering(self):
        obs = five_struct_observations()
        obs += [FieldDelta("T", "a", 0x40, 0x30), FieldDelta("T", "b", 0x48, 0x38)]
        patterns = detect_patterns(obs)
        self.assertEqual([p.delta for p in patterns], [0x8, -0x10])
        self.assertEqual(patterns[1].affected, ("T",))

    def test_ceiling(self):
        self.assertEqual(confidence_ceiling(3, 3), 1.0)
        self.assertEqual(confidence_ceiling(10, 40), 1.0)
        self.assertLess(confidence_ceiling(2, 30), HIGH_CONFIDENCE)
        self.assertLess(confidence_ceiling(30, 2), HIGH_CONFIDENCE)

    def test_pure(self):
        obs = five_struct_observations()
        snapshot = list(obs)
        self.assertEqual(detect_patterns(obs), detect_patterns(obs))
        self.assertEqual(obs, snapshot)


class TestVTableShift(unittest.TestCase):

    def test_slot_shift(self):
        obs = []
        for name in ("A", "B", "C"):
            obs.append(FieldDelta(name, "Dtor", 0, 0))
            obs += [FieldDelta(name, f"f{i}", 4 + i, 5 + i) for i in range(3)]
        (p,) = detect_patterns(obs, VTABLE_SLOT)
        self.assertEqual((p.delta, p.start_offset, p.kind), (1, 4, VTABLE_SLOT))
        self.assertEqual(p.confidence, 1.0)


class TestSizeAndCascade(unittest.TestCase):

    def setUp(self):
        self.old = Snapshot.build("1", [
            struct("Base", [("vt", 0), ("id", 8)], size=0x10),
            struct("Kid", [("vt", 0), ("id", 8), ("hp", 0x10), ("mp", 0x14)], size=0x20, base="Base"),
            struct("Kid2", [("vt", 0), ("x", 0x10)], size=0x20, base="Base"),
            struct("Kid3", [("vt", 0)], size=0x20, base="Base"),
        ])
        self.new = Snapshot.build("2", [
            struct("Base", [("vt", 0), ("id", 8), ("flags", 0x10)], size=0x18),
            struct("Kid", [("vt", 0), ("id", 8), ("hp", 0x18), ("mp", 0x1C)], size=0x28, base="Base"),
            struct("Kid2", [("vt", 0), ("x", 0x18)], size=0x28, base="Base"),
            struct("Kid3", [("vt", 0)], size=0x20, base="Base"),
        ])
        self.diff = diff_snapshots(self.old, self.new)

    def test_consistent_size_delta(self):
        self.assertEqual(consistent_size_delta(self.diff.structs), 8)

    def test_no_majority(self):
        old = Snapshot.build("1", [struct("A", [], size=0x10), struct("B", [], size=0x10),
                                   struct("C", [], size=0x10)])
        new = Snapshot.build("2", [struct("A", [], size=0x18), struct("B", [], size=0x20),
                                   struct("C", [], size=0x30)])
        self.assertIsNone(consistent_size_delta(diff_snapshots(old, new).structs))

    def test_cascade(self):
        (c,) = detect_cascades(self.old, self.diff)
        self.assertEqual(c.source, "Base")
        self.assertEqual(c.size_delta, 8)
        self.assertEqual(c.affected, ("Kid", "Kid2"))
        self.assertEqual(c.children, 3)
        self.assertAlmostEqual(c.confidence, 2 / 3)

    def test_analyze(self):
        report = analyze(self.diff, DriftContext(workers=1), old=self.old)
        self.assertEqual(report.field_patterns[0].delta, 8)
        self.assertEqual(report.size_delta, 8)
        self.assertEqual(len(report.cascades), 1)
        self.assertIn("Detected offset shift: +0x8", report.summary)
        self.assertIn("Consistent struct size change: +0x8", report.summary)
        self.assertEqual([h.root for h in report.hierarchy_deltas], ["Base"])
        self.assertEqual(report.cross_hierarchy, ())
        self.assertEqual(report.suggestions[0].target, "Base*")

    def test_analyze_nothing(self):
        a = Snapshot.build("1", [struct("A", [("x", 0)])])
        report = analyze(diff_snapshots(a, a))
        self.assertEqual(report.patterns, ())
        self.assertEqual(report.summary, "No consistent patterns detected")


def hierarchy(root, delta, confidence, structs):
    return HierarchyDelta(root=root, structs=structs, delta=delta, start_offset=0x10,
                          matching=(), anomalies=(), confidence=confidence)


class TestHierarchies(unittest.TestCase):

    def setUp(self):
        self.old = Snapshot.build("1", [
            struct("Base", [("vt", 0), ("id", 8)], size=0x10),
            struct("Kid", [("vt", 0), ("id", 8), ("hp", 0x10), ("mp", 0x14)], size=0x20, base="Base"),
            struct("Kid2", [("vt", 0), ("x", 0x10)], size=0x20, base="Base"),
            struct("Kid3", [("vt", 0)], size=0x20, base="Base"),
            struct("Loner", [("a", 0)], size=0x8),
        ])

    def shifted(self, mp_offset):
        return Snapshot.build("2", [
            struct("Base", [("vt", 0), ("id", 8), ("flags", 0x10)], size=0x18),
            struct("Kid", [("vt", 0), ("id", 8), ("hp", 0x18), ("mp", mp_offset)], size=0x28, base="Base"),
            struct("Kid2", [("vt", 0), ("x", 0x18)], size=0x28, base="Base"),
            struct("Kid3", [("vt", 0)], size=0x20, base="Base"),
            struct("Loner", [("a", 0)], size=0x8),
        ])

    def test_roots(self):
        roots = inheritance_roots(self.old)
        self.assertEqual(roots["Kid2"], "Base")
        self.assertEqual(roots["Base"], "Base")
        self.assertEqual(roots["Loner"], "Loner")

    def test_roots_missing_base_and_cycle(self):
        snap = Snapshot.build("1", [
            struct("Orphan", [], base="Gone"),
            struct("A", [], base="B"),
            struct("B", [], base="A"),
        ])
        roots = inheritance_roots(snap)
        self.assertEqual(roots["Orphan"], "Orphan")
        self.assertEqual(roots["A"], "A")
        self.assertEqual(roots["B"], "B")

    def test_hierarchy_shift(self):
        diff = diff_snapshots(self.old, self.shifted(0x1C))
        (h,) = detect_hierarchy_deltas(self.old, diff)
        self.assertEqual(h.root, "Base")
        self.assertEqual(h.structs, ("Base", "Kid", "Kid2", "Kid3"))
        self.assertEqual(h.delta, 8)
        self.assertEqual(h.start_offset, 0x10)
        self.assertEqual(h.match_count, 3)
        self.assertEqual(h.anomalies, ())
        # 3/3 agree, plus 4/50 for hierarchy breadth
        self.assertAlmostEqual(h.confidence, 0.88)

    def test_anomaly(self):
        diff = diff_snapshots(self.old, self.shifted(0x20))
        (h,) = detect_hierarchy_deltas(self.old, diff)
        self.assertEqual(h.delta, 8)
        self.assertEqual(h.match_count, 2)
        self.assertEqual([(d.struct, d.field, d.delta) for d in h.anomalies], [("Kid", "mp", 0xC)])
        self.assertEqual(h.total, 3)
        self.assertAlmostEqual(h.confidence, 2 / 3 * 0.8 + 0.08)

    def test_unchanged(self):
        diff = diff_snapshots(self.old, self.old)
        self.assertEqual(detect_hierarchy_deltas(self.old, diff), [])

    def test_suggestions_from_hierarchy_and_cascade(self):
        diff = diff_snapshots(self.old, self.shifted(0x1C))
        hier = detect_hierarchy_deltas(self.old, diff)
        cascades = detect_cascades(self.old, diff)
        s = patch_suggestions(hier, cascades)
        self.assertEqual([x.target for x in s], ["Base*", "Kid", "Kid2"])
        self.assertAlmostEqual(s[0].confidence, 0.88)
        self.assertAlmostEqual(s[1].confidence, 0.6)
        self.assertEqual(s[1].start_offset, 0x10)
        self.assertEqual(s[1].delta, 8)
        self.assertIn("after Base size change", s[1].description)

    def test_cross_hierarchy(self):
        hier = [
            hierarchy("A", 8, 0.9, ("A", "A1")),
            hierarchy("B", 8, 0.7, ("B", "B1", "B2")),
            hierarchy("C", 4, 0.6, ("C",)),
        ]
        (x,) = detect_cross_hierarchy(hier)
        self.assertEqual(x.delta, 8)
        self.assertEqual(x.hierarchies, ("A", "B"))
        self.assertEqual(x.affected_count, 5)
        self.assertAlmostEqual(x.confidence, 0.8 * (2 / 3 + 0.5))
        self.assertEqual(x.description, "common +0x8 shift across 2 hierarchies")

        s = patch_suggestions(hier, cross=[x])
        self.assertEqual([y.target for y in s], ["A*, B*", "A*", "B*", "C"])
        self.assertEqual(s[0].start_offset, 0)

    def test_single_hierarchy_no_cross(self):
        self.assertEqual(detect_cross_hierarchy([hierarchy("A", 8, 0.9, ("A",))]), [])
        self.assertEqual(detect_cross_hierarchy([]), [])

    def test_suggestion_thresholds_and_dedupe(self):
        hier = [hierarchy("Solo", 8, 0.8, ("Solo",)), hierarchy("Weak", 8, 0.4, ("Weak",))]
        cascades = [Cascade("Parent", 8, ("Solo",), 1, 1.0, start_offset=0x20),
                    Cascade("Other", 4, ("Kid",), 2, 0.5)]
        s = patch_suggestions(hier, cascades)
        self.assertEqual(len(s), 1)
        self.assertEqual(s[0].target, "Solo")
        self.assertAlmostEqual(s[0].confidence, 0.9)
        self.assertEqual(s[0].start_offset, 0x20)


if __name__ == '__main__':
    unittest.main()
