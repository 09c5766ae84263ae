from typing import Optional, Tuple

from activity_digest.domain.models import EntitySnapshot, PackageSnapshot


def entity_deltas(entry: Optional[EntitySnapshot], stars: int, forks: int) -> Tuple[int, int]:
    """
    Computes (stars_delta, forks_delta) for a repository.

    An absent entry means the repository was never observed, so the baseline is the
    current value. A present entry with a missing sub-field falls back to the current
    value for that field only.
    """
    if entry is None:
        return 0, 0

    prev_stars = entry.stars if entry.stars is not None else stars
    prev_forks = entry.forks if entry.forks is not None else forks
    return stars - prev_stars, forks - prev_forks


def download_delta(entry: Optional[PackageSnapshot], downloads: int) -> int:
    """
    Computes the download delta for a package.

    Absent entry or missing downloads field: 0. A recorded value, including 0, is a
    real baseline.
    """
    if entry is None or entry.downloads is None:
        return 0
    return downloads - entry.downloads
