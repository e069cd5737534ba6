import json
import tempfile
import unittest
from pathlib import Path

from structdrift.aggregate import delta_patterns
from structdrift.errors import InputError
from structdrift.model import FieldDef, FieldDelta, Snapshot, StructDef
from structdrift.validation import (
    compare_with_catalog,
    load_validation_report,
    parse_validation_report,
    validation_deltas,
)

REPORT = {
    "results": [
        {
            "structName": "Game.Player",
            "declaredSize": "0x40",
            "actualSize": 72,
            "issues": [
                {"severity": "error", "rule": "field-offset", "message": "hp moved",
                 "field": "hp", "expected": "0x10", "actual": "0x18"},
                {"severity": "error", "rule": "field-offset", "message": "mp moved",
                 "field": "mp", "expected": "0x14", "actual": "0x1C"},
                {"severity": "warning", "rule": "alignment", "message": "odd padding"},
                {"severity": "error", "rule": "field-offset", "message": "garbage",
                 "field": "xp", "expected": "?", "actual": "0x20"},
            ],
        },
        {"structName": "Game.Item", "declaredSize": 16, "actualSize": 16, "issues": []},
        {"structName": "Game.Ghost", "declaredSize": 8, "actualSize": 8},
    ]
}


def catalog():
    return Snapshot.build("1.0", [
        StructDef("Player", size=0x40, fields=[FieldDef("hp", "int", 0x10), FieldDef("mp", "int", 0x14)]),
        StructDef("Item", size=0x10),
        StructDef("Npc", size=0x20),
    ])


class TestValidationReport(unittest.TestCase):

    def test_parse(self):
        results = parse_validation_report(REPORT)
        self.assertEqual([r.name for r in results], ["Game.Player", "Game.Item", "Game.Ghost"])
        player = results[0]
        self.assertEqual((player.declared_size, player.actual_size), (0x40, 72))
        self.assertEqual(player.short_name, "Player")
        self.assertEqual(len(player.errors), 3)

    def test_bare_list(self):
        self.assertEqual(len(parse_validation_report(REPORT["results"])), 3)

    def test_malformed(self):
        for data in ("nope", {"results": {}}, [{"declaredSize": 4}], [{"structName": "A", "declaredSize": "big"}]):
            with self.assertRaises(InputError):
                parse_validation_report(data)

    def test_deltas(self):
        deltas = validation_deltas(parse_validation_report(REPORT))
        self.assertEqual(deltas, [FieldDelta("Game.Player", "hp", 0x10, 0x18),
                                  FieldDelta("Game.Player", "mp", 0x14, 0x1C)])
        (p,) = delta_patterns(deltas)
        self.assertEqual((p.delta, p.start_offset), (8, 0x10))

    def test_load(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "report.json"
            path.write_text(json.dumps(REPORT), encoding="utf-8")
            self.assertEqual(len(load_validation_report(path)), 3)
            path.write_text("[", encoding="utf-8")
            with self.assertRaises(InputError):
                load_validation_report(path)
            with self.assertRaises(InputError):
                load_validation_report(Path(tmp) / "missing.json")


class TestCompareWithCatalog(unittest.TestCase):

    def test_compare(self):
        cmp = compare_with_catalog(parse_validation_report(REPORT), catalog())
        self.assertEqual(cmp.matched, 1)
        (m,) = cmp.mismatches
        self.assertEqual(m.name, "Player")
        self.assertEqual((m.declared_size, m.actual_size), (0x40, 0x48))
        self.assertIn("size mismatch: catalog declares 0x40, actual is 0x48", m.problems)
        self.assertEqual(len(m.problems), 4)
        self.assertEqual(cmp.missing_in_catalog, ("Game.Ghost",))
        self.assertEqual(cmp.missing_in_report, ("Npc",))


# Shape written by the in-process validator: issues use its own rule names
# and fieldValidations list every field at its live offset.
LIVE_REPORT = {
    "results": [
        {
            "structName": "Game.Player",
            "namespace": "Game",
            "declaredSize": 64,
            "actualSize": 72,
            "issues": [
                {"severity": "error", "rule": "struct-size", "field": None,
                 "message": "size differs", "expected": "0x40", "actual": "0x48"},
                {"severity": "warning", "rule": "field-bounds", "field": "xp",
                 "message": "xp past the declared size", "expected": "0x3C", "actual": "0x44"},
                {"severity": "error", "rule": "invalid-float", "field": "speed",
                 "message": "NaN", "expected": "finite", "actual": "NaN"},
            ],
            "fieldValidations": [
                {"name": "id", "offset": 8, "type": "int", "size": 4},
                {"name": "hp", "offset": 24, "type": "int", "size": 4},
                {"name": "mp", "offset": 28, "type": "int", "size": 4},
                {"name": "unknown", "offset": 48, "type": "byte", "size": 1},
            ],
        },
    ]
}


class TestLiveReportShape(unittest.TestCase):

    def test_field_validations_parsed(self):
        (player,) = parse_validation_report(LIVE_REPORT)
        self.assertEqual([f.name for f in player.fields], ["id", "hp", "mp", "unknown"])
        self.assertEqual((player.fields[1].offset, player.fields[1].type, player.fields[1].size),
                         (0x18, "int", 4))

    def test_issue_rule_names_do_not_matter(self):
        deltas = validation_deltas(parse_validation_report(LIVE_REPORT))
        self.assertEqual(deltas, [FieldDelta("Game.Player", "xp", 0x3C, 0x44)])

    def test_deltas_against_catalog(self):
        snapshot = Snapshot.build("1.0", [StructDef("Player", size=0x40, fields=[
            FieldDef("id", "int", 8, 4), FieldDef("hp", "int", 0x10, 4),
            FieldDef("mp", "int", 0x14, 4), FieldDef("xp", "int", 0x3C, 4)])])
        deltas = validation_deltas(parse_validation_report(LIVE_REPORT), snapshot)
        self.assertEqual([(d.struct, d.field, d.old_offset, d.new_offset) for d in deltas], [
            ("Player", "id", 8, 8),
            ("Player", "hp", 0x10, 0x18),
            ("Player", "mp", 0x14, 0x1C),
            ("Player", "xp", 0x3C, 0x44),
        ])
        (p,) = delta_patterns(deltas)
        self.assertEqual((p.delta, p.start_offset, p.explained, p.population), (8, 0x10, 3, 3))

    def test_catalog_field_wins_over_issue(self):
        report = {"results": [{
            "structName": "Player", "declaredSize": 8, "actualSize": 8,
            "issues": [{"severity": "error", "rule": "field-offset-order", "field": "hp",
                        "message": "", "expected": "0", "actual": "4"}],
            "fieldValidations": [{"name": "hp", "offset": 4, "type": "int", "size": 4}],
        }]}
        snapshot = Snapshot.build("1.0", [StructDef("Player", fields=[FieldDef("hp", "int", 2, 4)])])
        self.assertEqual(validation_deltas(parse_validation_report(report), snapshot),
                         [FieldDelta("Player", "hp", 2, 4, old_type="int", new_type="int")])

    def test_malformed_field_validation(self):
        bad = {"results": [{"structName": "A", "fieldValidations": [{"name": "x", "offset": "far"}]}]}
        with self.assertRaises(InputError):
            parse_validation_report(bad)


if __name__ == '__main__':
    unittest.main()
