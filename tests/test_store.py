import json
import tempfile
import unittest
from pathlib import Path

from structdrift.aggregate import aggregate
from structdrift.errors import InputError
from structdrift.model import FOUND, NO_MATCH, FieldSignature, ScanResult, SignatureStore
from structdrift.store import (
    FORMAT_VERSION,
    TOOL_NAME,
    load_store,
    save_store,
    scan_report_to_dict,
    signature_to_dict,
    store_from_dict,
    store_to_dict,
)

SIG = FieldSignature("Foo", "health", 0x1A4, (0x10, 0x48, 0x8B, 0x81, None, None, None, None),
                     4, 4, "read", 1, 1.0, reference_address=0x260)


class TestStore(unittest.TestCase):

    def test_signature_json(self):
        d = signature_to_dict(SIG)
        self.assertEqual(d["offset"], "0x1a4")
        self.assertEqual(d["pattern"], "10 48 8B 81 ?? ?? ?? ??")
        self.assertEqual(d["reference_address"], "0x260")
        self.assertEqual(d["instruction_kind"], "read")

    def test_save_and_load(self):
        store = SignatureStore("1.0", "2024-01-01T00:00:00+00:00", [SIG], binary_md5="abc")
        with tempfile.TemporaryDirectory() as tmp:
            path = save_store(store, Path(tmp) / "sigs.json")
            raw = json.loads(path.read_text(encoding="utf-8"))
            loaded = load_store(path)
        self.assertEqual(raw["tool"], TOOL_NAME)
        self.assertEqual(raw["format_version"], FORMAT_VERSION)
        self.assertEqual(raw["count"], 1)
        self.assertEqual(loaded, store)

    def test_not_a_store(self):
        for data in ([], {"version": "1"}, {"signatures": {}}):
            with self.assertRaises(InputError):
                store_from_dict(data)

    def test_bad_entry(self):
        good = store_to_dict(SignatureStore("1", "", [SIG]))
        for key, value in (("pattern", "ZZ 8B"), ("displacement_width", 3), ("offset", None)):
            data = json.loads(json.dumps(good))
            data["signatures"][0][key] = value
            with self.assertRaises(InputError, msg=key):
                store_from_dict(data)
        data = json.loads(json.dumps(good))
        del data["signatures"][0]["struct"]
        with self.assertRaises(InputError):
            store_from_dict(data)

    def test_load_errors(self):
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(InputError):
                load_store(Path(tmp) / "missing.json")
            bad = Path(tmp) / "bad.json"
            bad.write_text("{not json", encoding="utf-8")
            with self.assertRaises(InputError) as cm:
                load_store(bad)
        self.assertEqual(cm.exception.path, bad)


class TestScanReportJson(unittest.TestCase):

    def test_report(self):
        results = [
            ScanResult(SIG, FOUND, new_offset=0x1AC, match_address=0x260, confidence=1.0,
                       match_count=1),
            ScanResult(FieldSignature("Foo", "mana", 0x2C8, SIG.pattern, 4, 4, "read", 1, 1.0),
                       NO_MATCH, error="signature not found"),
        ]
        store = SignatureStore("1.0", "", [SIG])
        d = scan_report_to_dict(aggregate(results), store=store)
        self.assertEqual(d["total"], 2)
        self.assertEqual(d["statuses"], {FOUND: 1, NO_MATCH: 1})
        self.assertEqual(d["signature_version"], "1.0")
        self.assertIsNone(d["binary_md5"])
        first, second = d["results"]
        self.assertEqual((first["new_offset"], first["delta"]), ("0x1ac", 8))
        self.assertEqual(first["match_count"], 1)
        self.assertFalse(second["found"])
        self.assertEqual(second["match_count"], 0)
        self.assertNotIn("new_offset", second)
        self.assertEqual(second["error"], "signature not found")
        json.dumps(d)


if __name__ == '__main__':
    unittest.main()
