import contextlib
import io
import json
import tempfile
import unittest
from pathlib import Path

from teamslots.cli import main, parse_hours
from teamslots.errors import ValidationError
from teamslots.models import AvailabilityRecord


def _records() -> list[dict]:
    alice = AvailabilityRecord(scope_id="team-1", owner_id="alice", period="2024-01")
    alice.set_range("2024-01-15", [9, 10], True)
    bob = AvailabilityRecord(scope_id="team-1", owner_id="bob", period="2024-01")
    bob.set_slot("2024-01-15", 9, True)
    stranger = AvailabilityRecord(scope_id="team-2", owner_id="zed", period="2024-01")
    stranger.set_slot("2024-01-20", 9, True)
    return [r.to_json() for r in (alice, bob, stranger)]


class TestCli(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "records.json"
        self.path.write_text(json.dumps(_records()), encoding="utf-8")

    def tearDown(self):
        self._tmp.cleanup()

    def run_cli(self, *argv: str) -> tuple[int, str, str]:
        out, err = io.StringIO(), io.StringIO()
        with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
            code = main(list(argv))
        return code, out.getvalue(), err.getvalue()

    def test_rank_table(self):
        code, out, err = self.run_cli(
            "rank", str(self.path), "--scope", "team-1", "--period", "2024-01", "--hours", "9-12"
        )
        self.assertEqual(code, 0)
        lines = out.strip().splitlines()
        self.assertTrue(lines[0].startswith("Slot"))
        self.assertTrue(lines[2].startswith("2024-01-15-9 "))
        self.assertIn("alice, bob", lines[2])
        self.assertEqual(len(lines), 4)
        self.assertIn("2/2 responded", err)

    def test_rank_json(self):
        code, out, _ = self.run_cli(
            "rank", str(self.path), "--scope", "team-1", "--period", "2024-01", "--json", "--members", "4"
        )
        self.assertEqual(code, 0)
        payload = json.loads(out)
        self.assertEqual(payload["response_rate"], 0.5)
        self.assertEqual(payload["ranked_slots"][0]["slot_key"], "2024-01-15-9")
        self.assertEqual(payload["ranked_slots"][0]["score"], 1.0)

    def test_heatmap_json(self):
        code, out, _ = self.run_cli(
            "heatmap", str(self.path), "--scope", "team-1", "--period", "2024-01", "--json"
        )
        self.assertEqual(code, 0)
        days = {d["date"]: d for d in json.loads(out)}
        self.assertEqual(len(days), 31)
        self.assertEqual(days["2024-01-15"]["max_count"], 2)
        self.assertEqual(days["2024-01-20"]["max_count"], 0)

    def test_no_records_for_scope(self):
        code, out, _ = self.run_cli("rank", str(self.path), "--scope", "team-9", "--period", "2024-01")
        self.assertEqual(code, 0)
        self.assertIn("no common availability", out)

    def test_errors_exit_1(self):
        for argv in (
            ["rank", str(self.path), "--scope", "team-1", "--period", "2024-13"],
            ["rank", str(self.path), "--scope", "team-1", "--period", "2024-01", "--hours", "17-9"],
            ["rank", str(self.path) + ".missing", "--scope", "team-1", "--period", "2024-01"],
        ):
            with self.subTest(argv=argv):
                code, out, err = self.run_cli(*argv)
                self.assertEqual(code, 1)
                self.assertEqual(out, "")
                self.assertIn("ERROR:", err)

    def test_invalid_json_file(self):
        self.path.write_text("{not json", encoding="utf-8")
        code, _, err = self.run_cli("rank", str(self.path), "--scope", "team-1", "--period", "2024-01")
        self.assertEqual(code, 1)
        self.assertIn("not valid JSON", err)


class TestParseHours(unittest.TestCase):
    def test_window(self):
        self.assertEqual(list(parse_hours("9-12")), [9, 10, 11])
        self.assertEqual(len(parse_hours("all")), 24)
        self.assertEqual(list(parse_hours("0-24"))[-1], 23)

    def test_rejects(self):
        for bad in ("9", "a-b", "10-10", "0-25"):
            with self.subTest(value=bad):
                with self.assertRaises(ValidationError):
                    parse_hours(bad)


class TestCliMalformedInput(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "records.json"

    def tearDown(self):
        self._tmp.cleanup()

    def run_rank(self) -> tuple[int, str, str]:
        out, err = io.StringIO(), io.StringIO()
        with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
            code = main(["rank", str(self.path), "--scope", "team-1", "--period", "2024-01"])
        return code, out.getvalue(), err.getvalue()

    def test_record_with_wrong_slot_type(self):
        record = {"scopeId": "team-1", "ownerId": "alice", "period": "2024-01", "slots": ["x"]}
        self.path.write_text(json.dumps([record]), encoding="utf-8")
        code, out, err = self.run_rank()
        self.assertEqual(code, 1)
        self.assertEqual(out, "")
        self.assertIn("ERROR:", err)
        self.assertIn("slots", err)

    def test_non_record_entry(self):
        self.path.write_text(json.dumps(["just a string"]), encoding="utf-8")
        code, _, err = self.run_rank()
        self.assertEqual(code, 1)
        self.assertIn("ERROR:", err)

    def test_non_utf8_file(self):
        self.path.write_bytes(b"\xff\xfe\x00[")
        code, _, err = self.run_rank()
        self.assertEqual(code, 1)
        self.assertIn("not UTF-8", err)
