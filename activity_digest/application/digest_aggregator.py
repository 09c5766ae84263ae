from typing import Iterable

from activity_digest.domain.models import ActivityRecord, FetchFailure, PackageStat, Summary


def summarize(
    records: Iterable[ActivityRecord],
    stats: Iterable[PackageStat] = (),
    failures: Iterable[FetchFailure] = (),
) -> Summary:
    """
    Folds one run's results into totals for reporting.
    Only active repositories and packages with new downloads contribute.
    """
    active = [record for record in records if record.has_activity]
    downloading = [stat for stat in stats if stat.has_new_downloads]

    return Summary(
        active_count=len(active),
        active_packages=len(downloading),
        failed_count=sum(1 for _ in failures),
        new_issues=sum(len(record.new_issues) for record in active),
        new_comments=sum(len(record.new_comments) for record in active),
        new_pull_requests=sum(len(record.new_pull_requests) for record in active),
        stars_gained=sum(record.stars_delta for record in active),
        downloads_gained=sum(stat.download_delta for stat in downloading),
    )
