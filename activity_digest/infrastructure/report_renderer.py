import html
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Sequence

from activity_digest.domain.cutoff import format_timestamp
from activity_digest.domain.models import (
    ActivityRecord,
    FetchFailure,
    PackageStat,
    Summary,
)

logger = logging.getLogger(__name__)


def _signed(value: int) -> str:
    return f"+{value}" if value > 0 else str(value)


class ReportRenderer:
    """Turns a run's summary, records and package stats into console text or an HTML page."""

    def __init__(self, owner: str):
        self.owner = owner

    def subject(self, summary: Summary, cutoff: datetime) -> str:
        return (
            f"Activity digest for {self.owner}: {summary.active_count} active repositories "
            f"since {format_timestamp(cutoff)}"
        )

    def render_console(
        self,
        summary: Summary,
        records: Sequence[ActivityRecord],
        stats: Sequence[PackageStat] = (),
        failures: Sequence[FetchFailure] = (),
    ) -> str:
        lines: List[str] = [
            f"Activity for {self.owner}: {summary.active_count} active repositories, "
            f"{summary.new_issues} new issues, {summary.new_comments} new comments, "
            f"{summary.new_pull_requests} new pull requests, {_signed(summary.stars_gained)} stars.",
        ]

        for record in records:
            if not record.has_activity:
                continue
            lines.append(
                f"  {record.name}: stars {record.stars_now} ({_signed(record.stars_delta)}), "
                f"forks {record.forks_now} ({_signed(record.forks_delta)}), "
                f"issues {len(record.new_issues)} new / {len(record.updated_issues)} updated, "
                f"comments {len(record.new_comments)}, pull requests {len(record.new_pull_requests)}"
            )

        if stats:
            lines.append(
                f"Packages: {summary.active_packages} with new downloads, "
                f"{_signed(summary.downloads_gained)} downloads."
            )
            for stat in stats:
                if stat.has_new_downloads:
                    lines.append(
                        f"  {stat.name} {stat.version}: {stat.total_downloads} downloads "
                        f"({_signed(stat.download_delta)})"
                    )

        for failure in failures:
            lines.append(f"  FAILED {failure.source}:{failure.name} [{failure.error_kind}] {failure.message}")

        return "\n".join(lines)

    def render_html(
        self,
        summary: Summary,
        cutoff: datetime,
        records: Sequence[ActivityRecord],
        stats: Sequence[PackageStat] = (),
        failures: Sequence[FetchFailure] = (),
    ) -> str:
        active = [record for record in records if record.has_activity]
        repo_sections = "".join(self._repo_section(record) for record in active)
        if not active:
            repo_sections = '<p class="empty-state">No repository activity in this window.</p>'

        package_rows = "".join(
            f"""
                <tr>
                    <td><a href="{html.escape(stat.url)}">{html.escape(stat.name)}</a></td>
                    <td>{html.escape(stat.version)}</td>
                    <td>{stat.total_downloads}</td>
                    <td>{_signed(stat.download_delta)}</td>
                </tr>"""
            for stat in stats
        )
        package_section = ""
        if stats:
            package_section = f"""
        <section class="packages">
            <h2>Packages</h2>
            <table>
                <tr><th>Package</th><th>Version</th><th>Downloads</th><th>Change</th></tr>{package_rows}
            </table>
        </section>"""

        failure_section = ""
        if failures:
            items = "".join(
                f"<li>{html.escape(failure.source)}: {html.escape(failure.name)} "
                f"({html.escape(failure.error_kind)}) {html.escape(failure.message)}</li>"
                for failure in failures
            )
            failure_section = f"""
        <section class="failures">
            <h2>Could not fetch</h2>
            <ul>{items}</ul>
        </section>"""

        title = html.escape(f"Activity digest for {self.owner}")
        return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>{title}</title>
</head>
<body>
    <header>
        <h1>{title}</h1>
        <p>Since {html.escape(format_timestamp(cutoff))}</p>
        <p class="summary">
            {summary.active_count} active repositories |
            {summary.new_issues} new issues |
            {summary.new_comments} new comments |
            {summary.new_pull_requests} new pull requests |
            {_signed(summary.stars_gained)} stars |
            {_signed(summary.downloads_gained)} downloads
        </p>
    </header>
    <main>
        <section class="repos">
{repo_sections}
        </section>{package_section}{failure_section}
    </main>
</body>
</html>
"""

    @staticmethod
    def _repo_section(record: ActivityRecord) -> str:
        def items(entries, with_preview=False) -> str:
            rendered = ""
            for entry in entries:
                number = f"#{entry.number} " if entry.number is not None else ""
                preview = f" <q>{html.escape(entry.preview_text)}</q>" if with_preview and entry.preview_text else ""
                rendered += (
                    f'<li><a href="{html.escape(entry.url)}">{html.escape(number + entry.title)}</a>'
                    f" by {html.escape(entry.author or 'unknown')}{preview}</li>"
                )
            return rendered

        lists = ""
        for heading, entries, with_preview in (
            ("New issues", record.new_issues, False),
            ("Updated issues", record.updated_issues, False),
            ("New pull requests", record.new_pull_requests, False),
            ("New comments", record.new_comments, True),
        ):
            if entries:
                lists += f"<h4>{heading}</h4><ul>{items(entries, with_preview)}</ul>"

        return f"""
            <section class="repo">
                <h3><a href="{html.escape(record.url)}">{html.escape(record.name)}</a></h3>
                <p class="meta">
                    Stars {record.stars_now} ({_signed(record.stars_delta)}) |
                    Forks {record.forks_now} ({_signed(record.forks_delta)})
                </p>
                {lists}
            </section>
"""

    @staticmethod
    def write_html(path, content: str) -> Path:
        """Writes the page, creating parent directories."""
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        logger.info(f"Saved HTML digest to {target}.")
        return target
