import unittest
from datetime import datetime, timedelta, timezone

from activity_digest.domain.cutoff import compute_cutoff, format_timestamp, parse_timestamp
from activity_digest.domain.deltas import download_delta, entity_deltas
from activity_digest.domain.models import EntitySnapshot, PackageSnapshot


class TestEntityDeltas(unittest.TestCase):
    def test_first_observation_is_zero_delta(self) -> None:
        self.assertEqual(entity_deltas(None, 500, 40), (0, 0))

    def test_known_entry_gives_difference(self) -> None:
        self.assertEqual(entity_deltas(EntitySnapshot(stars=10, forks=2), 12, 1), (2, -1))

    def test_missing_sub_field_defaults_to_current(self) -> None:
        self.assertEqual(entity_deltas(EntitySnapshot(stars=8), 10, 4), (2, 0))
        self.assertEqual(entity_deltas(EntitySnapshot(forks=3), 10, 4), (0, 1))


class TestDownloadDelta(unittest.TestCase):
    def test_absent_entry_is_zero(self) -> None:
        self.assertEqual(download_delta(None, 147), 0)

    def test_recorded_value_gives_difference(self) -> None:
        self.assertEqual(download_delta(PackageSnapshot(downloads=100), 147), 47)

    def test_recorded_zero_is_a_real_baseline(self) -> None:
        self.assertEqual(download_delta(PackageSnapshot(downloads=0), 147), 147)

    def test_entry_without_downloads_is_zero(self) -> None:
        self.assertEqual(download_delta(PackageSnapshot(), 147), 0)


class TestCutoff(unittest.TestCase):
    def test_window_is_subtracted_and_truncated_to_seconds(self) -> None:
        now = datetime(2024, 6, 1, 12, 30, 15, 987654, tzinfo=timezone.utc)

        cutoff = compute_cutoff(24, now=now)

        self.assertEqual(cutoff, datetime(2024, 5, 31, 12, 30, 15, tzinfo=timezone.utc))
        self.assertEqual(format_timestamp(cutoff), "2024-05-31T12:30:15Z")

    def test_explicit_cutoff_wins(self) -> None:
        explicit = datetime(2024, 1, 1, tzinfo=timezone.utc)

        self.assertEqual(compute_cutoff(24, now=datetime.now(timezone.utc), explicit=explicit), explicit)

    def test_out_of_range_window_is_rejected(self) -> None:
        for hours in (0, 721):
            with self.assertRaises(ValueError):
                compute_cutoff(hours)

    def test_default_now_is_recent(self) -> None:
        cutoff = compute_cutoff(1)
        expected = datetime.now(timezone.utc) - timedelta(hours=1)

        self.assertLess(abs((expected - cutoff).total_seconds()), 5)

    def test_parse_timestamp(self) -> None:
        self.assertEqual(parse_timestamp("2024-01-02T03:04:05Z"), datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc))
        self.assertEqual(parse_timestamp("2024-01-02T03:04:05").tzinfo, timezone.utc)
        self.assertIsNone(parse_timestamp("yesterday"))
        self.assertIsNone(parse_timestamp(None))
