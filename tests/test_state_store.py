import codecs
import json
import os
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from activity_digest.domain.exceptions import StateCorruptionWarning
from activity_digest.domain.models import ActivityRecord, PackageStat
from activity_digest.infrastructure.state_store import JsonStateStore, build_patch, merge_state


class TestJsonStateStore(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self._tmp.name)
        self.path = self.dir / "state.json"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _write_raw(self, content: str) -> None:
        self.path.write_text(content, encoding="utf-8")

    def test_missing_file_yields_empty_snapshot(self) -> None:
        snapshot = JsonStateStore(self.path).load("octocat")

        self.assertIsNone(snapshot.last_check)
        self.assertEqual(snapshot.entities, {})
        self.assertEqual(snapshot.packages, {})

    def test_corrupt_file_yields_empty_snapshot_with_warning(self) -> None:
        self._write_raw("{not json")

        with self.assertWarns(StateCorruptionWarning):
            snapshot = JsonStateStore(self.path).load("octocat")

        self.assertEqual(snapshot.entities, {})
        self.assertEqual(snapshot.packages, {})

    def test_non_object_top_level_is_treated_as_corrupt(self) -> None:
        self._write_raw("[1, 2, 3]")

        with self.assertWarns(StateCorruptionWarning):
            snapshot = JsonStateStore(self.path).load("octocat")

        self.assertIsNone(snapshot.last_check)

    def test_missing_sections_default_to_empty_maps(self) -> None:
        self._write_raw(json.dumps({"last_check": "2024-01-01T00:00:00Z"}))

        snapshot = JsonStateStore(self.path).load("octocat")

        self.assertEqual(snapshot.last_check, datetime(2024, 1, 1, tzinfo=timezone.utc))
        self.assertEqual(snapshot.entities, {})
        self.assertEqual(snapshot.packages, {})

    def test_partial_legacy_entry_keeps_missing_field_unset(self) -> None:
        self._write_raw(json.dumps({"repos": {"legacy": {"stars": 8}}}))

        snapshot = JsonStateStore(self.path).load("octocat")

        self.assertEqual(snapshot.entities["legacy"].stars, 8)
        self.assertIsNone(snapshot.entities["legacy"].forks)

    def test_malformed_entries_are_skipped(self) -> None:
        self._write_raw(json.dumps({
            "repos": {"good": {"stars": 1, "forks": 0}, "bad": "oops", "worse": {"stars": "many"}},
        }))

        with self.assertLogs("activity_digest.infrastructure.state_store", level="WARNING"):
            snapshot = JsonStateStore(self.path).load("octocat")

        self.assertEqual(list(snapshot.entities), ["good"])

    def test_state_for_another_owner_is_ignored(self) -> None:
        self._write_raw(json.dumps({"owner": "someone-else", "repos": {"a": {"stars": 1, "forks": 1}}}))

        snapshot = JsonStateStore(self.path).load("octocat")

        self.assertEqual(snapshot.entities, {})

    def test_save_for_new_owner_drops_previous_owner_entries(self) -> None:
        store = JsonStateStore(self.path)
        store.save({"owner": "alice", "repos": {"shared": {"stars": 500, "forks": 9}}})
        self.assertEqual(store.load("bob").entities, {})

        with self.assertLogs("activity_digest.infrastructure.state_store", level="WARNING"):
            store.save({"owner": "bob", "repos": {"bobs": {"stars": 1, "forks": 0}}})

        self.assertEqual(list(store.load("bob").entities), ["bobs"])
        self.assertEqual(store.load("alice").entities, {})

    def test_save_merges_with_existing_keys(self) -> None:
        store = JsonStateStore(self.path)
        store.save({
            "last_check": "2024-01-01T00:00:00Z",
            "repos": {"a": {"stars": 1, "forks": 1}, "b": {"stars": 2, "forks": 2}},
            "psgallery": {"Mod": {"downloads": 10}},
        })
        store.save({
            "last_check": "2024-01-02T00:00:00Z",
            "repos": {"b": {"stars": 5, "forks": 2}, "c": {"stars": 3, "forks": 0}},
        })

        snapshot = store.load("octocat")

        self.assertEqual(set(snapshot.entities), {"a", "b", "c"})
        self.assertEqual(snapshot.entities["a"].stars, 1)
        self.assertEqual(snapshot.entities["b"].stars, 5)
        self.assertEqual(snapshot.packages["Mod"].downloads, 10)
        self.assertEqual(snapshot.last_check, datetime(2024, 1, 2, tzinfo=timezone.utc))

    def test_save_preserves_unknown_top_level_keys(self) -> None:
        self._write_raw(json.dumps({"notes": "keep me"}))

        JsonStateStore(self.path).save({"repos": {}})

        data = json.loads(self.path.read_text(encoding="utf-8-sig"))
        self.assertEqual(data["notes"], "keep me")

    def test_save_writes_bom_and_creates_directories(self) -> None:
        nested = self.dir / "a" / "b" / "state.json"

        JsonStateStore(nested).save({"repos": {"x": {"stars": 1, "forks": 0}}})

        raw = nested.read_bytes()
        self.assertTrue(raw.startswith(codecs.BOM_UTF8))
        self.assertEqual(os.listdir(nested.parent), ["state.json"])

    def test_save_replaces_corrupt_file(self) -> None:
        self._write_raw("garbage")

        with self.assertWarns(StateCorruptionWarning):
            JsonStateStore(self.path).save({"repos": {"x": {"stars": 1, "forks": 0}}})

        snapshot = JsonStateStore(self.path).load("octocat")
        self.assertEqual(snapshot.entities["x"].stars, 1)


class TestPatchHelpers(unittest.TestCase):
    def test_merge_state_patched_values_win(self) -> None:
        merged = merge_state(
            {"repos": {"a": {"stars": 1}}, "owner": "o", "last_check": None},
            {"repos": {"a": {"stars": 2}}, "last_check": "2024-01-01T00:00:00Z"},
        )

        self.assertEqual(merged["repos"]["a"], {"stars": 2})
        self.assertEqual(merged["owner"], "o")
        self.assertEqual(merged["last_check"], "2024-01-01T00:00:00Z")

    def test_build_patch_uses_wire_shape(self) -> None:
        record = ActivityRecord(name="r", stars_now=12, forks_now=2, stars_delta=2)
        stat = PackageStat(name="TestModule", total_downloads=147, download_delta=47)

        patch = build_patch("octocat", datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc), [record], [stat])

        self.assertEqual(patch["owner"], "octocat")
        self.assertEqual(patch["last_check"], "2024-01-02T03:04:05Z")
        self.assertEqual(patch["repos"], {"r": {"stars": 12, "forks": 2}})
        self.assertEqual(patch["psgallery"], {"TestModule": {"downloads": 147}})
