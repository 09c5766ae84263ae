import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from activity_digest.application.digest_aggregator import summarize
from activity_digest.domain.models import ActivityRecord, Comment, FetchFailure, Issue, PackageStat
from activity_digest.infrastructure.report_renderer import ReportRenderer

CUTOFF = datetime(2024, 5, 31, 12, 0, 0, tzinfo=timezone.utc)


class TestReportRenderer(unittest.TestCase):
    def setUp(self) -> None:
        self.renderer = ReportRenderer("octocat")

    def test_html_escapes_user_content(self) -> None:
        record = ActivityRecord(
            name="r",
            url="https://github.com/octocat/r",
            new_issues=(Issue(number=1, title="<script>alert(1)</script>", author="eve"),),
            new_comments=(Comment(number=1, title="Comment on #1", preview_text="a & b"),),
        )

        page = self.renderer.render_html(summarize([record]), CUTOFF, [record])

        self.assertNotIn("<script>", page)
        self.assertIn("&lt;script&gt;", page)
        self.assertIn("a &amp; b", page)
        self.assertIn("2024-05-31T12:00:00Z", page)

    def test_html_empty_state(self) -> None:
        page = self.renderer.render_html(summarize([]), CUTOFF, [ActivityRecord(name="quiet")])

        self.assertIn("No repository activity in this window.", page)
        self.assertNotIn("quiet", page)

    def test_html_lists_packages_and_failures(self) -> None:
        stat = PackageStat(name="TestModule", version="1.2.0", total_downloads=147, download_delta=47)
        failure = FetchFailure(source="github", name="broken", error_kind="transient", message="Bad gateway.")

        page = self.renderer.render_html(summarize([], [stat], [failure]), CUTOFF, [], [stat], [failure])

        self.assertIn("TestModule", page)
        self.assertIn("+47", page)
        self.assertIn("Could not fetch", page)
        self.assertIn("broken", page)

    def test_console_marks_failures_and_skips_quiet_repositories(self) -> None:
        records = [ActivityRecord(name="active-repo", stars_now=12, stars_delta=2), ActivityRecord(name="quiet-repo")]
        failure = FetchFailure(source="github", name="private", error_kind="forbidden", message="Forbidden.")

        text = self.renderer.render_console(summarize(records, failures=[failure]), records, failures=[failure])

        self.assertIn("active-repo: stars 12 (+2)", text)
        self.assertNotIn("quiet-repo", text)
        self.assertIn("FAILED github:private [forbidden]", text)

    def test_subject_names_owner_and_cutoff(self) -> None:
        subject = self.renderer.subject(summarize([]), CUTOFF)

        self.assertIn("octocat", subject)
        self.assertIn("2024-05-31T12:00:00Z", subject)

    def test_write_html_creates_directories(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            target = Path(tmp) / "out" / "digest.html"

            written = ReportRenderer.write_html(target, "<p>hi</p>")

            self.assertEqual(written, target)
            self.assertEqual(target.read_text(encoding="utf-8"), "<p>hi</p>")
