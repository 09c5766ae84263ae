import re
from typing import Any, Dict, Optional

from activity_digest.domain.cutoff import parse_timestamp
from activity_digest.domain.models import (
    Comment,
    Issue,
    PackageInfo,
    PullRequest,
    RepositoryDescriptor,
)

PREVIEW_LENGTH = 100
ISSUE_NUMBER_PATTERN = re.compile(r"/issues/(\d+)$")
GALLERY_PACKAGE_URL = "https://www.powershellgallery.com/packages/{name}/{version}"


def build_preview(body: Optional[str], limit: int = PREVIEW_LENGTH) -> str:
    """Collapses all whitespace runs to single spaces and truncates to `limit` chars plus '...'."""
    text = " ".join((body or "").split())
    if len(text) > limit:
        return text[:limit] + "..."
    return text


def extract_issue_number(issue_url: Optional[str]) -> Optional[int]:
    """Reads the owning issue number from a URL ending in /issues/<digits>."""
    if not issue_url:
        return None
    match = ISSUE_NUMBER_PATTERN.search(issue_url.rstrip("/"))
    return int(match.group(1)) if match else None


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _optional_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _login(raw: Dict[str, Any]) -> str:
    user = raw.get("user")
    if not isinstance(user, dict):
        return ""
    return str(user.get("login") or "")


class GitHubTranslator:
    """
    Anti-corruption layer that translates raw GitHub REST JSON payloads into domain value types.
    Every field is optional on the wire; missing ones fall back to neutral defaults.
    """

    @staticmethod
    def to_repository(raw: Dict[str, Any], owner: str = "") -> RepositoryDescriptor:
        """
        Transforms a repository listing item into a RepositoryDescriptor.

        Args:
            raw (Dict[str, Any]): One item of GET /users/{owner}/repos.
            owner (str): Fallback owner login when the payload carries no full_name.

        Returns:
            RepositoryDescriptor: The repository with its current star and fork counts.
        """
        name = raw.get("name", "")
        full_name = raw.get("full_name") or (f"{owner}/{name}" if owner else name)

        return RepositoryDescriptor(
            name=name,
            full_name=full_name,
            url=raw.get("html_url") or "",
            description=raw.get("description") or "",
            stars=max(_as_int(raw.get("stargazers_count")), 0),
            forks=max(_as_int(raw.get("forks_count")), 0),
            is_fork=bool(raw.get("fork", False)),
            is_archived=bool(raw.get("archived", False)),
            pushed_at=parse_timestamp(raw.get("pushed_at")),
        )

    @staticmethod
    def is_pull_request(raw: Dict[str, Any]) -> bool:
        """The issues endpoint also lists pull requests; those carry a `pull_request` key."""
        return raw.get("pull_request") is not None

    @staticmethod
    def to_issue(raw: Dict[str, Any]) -> Issue:
        return Issue(
            number=_optional_int(raw.get("number")),
            title=raw.get("title") or "",
            author=_login(raw),
            created_at=parse_timestamp(raw.get("created_at")),
            url=raw.get("html_url") or "",
        )

    @staticmethod
    def to_comment(raw: Dict[str, Any]) -> Comment:
        """
        Transforms an issue comment into a Comment with its owning issue number and a body preview.
        """
        number = extract_issue_number(raw.get("issue_url"))
        return Comment(
            number=number,
            title=f"Comment on #{number}" if number is not None else "Comment",
            author=_login(raw),
            created_at=parse_timestamp(raw.get("created_at")),
            url=raw.get("html_url") or "",
            preview_text=build_preview(raw.get("body")),
        )

    @staticmethod
    def to_pull_request(raw: Dict[str, Any]) -> PullRequest:
        return PullRequest(
            number=_optional_int(raw.get("number")),
            title=raw.get("title") or "",
            author=_login(raw),
            created_at=parse_timestamp(raw.get("created_at")),
            url=raw.get("html_url") or "",
        )


class PSGalleryTranslator:
    """Translates flattened PSGallery feed entries into PackageInfo."""

    @staticmethod
    def to_package_info(entry: Dict[str, str]) -> PackageInfo:
        name = entry.get("Id") or entry.get("title") or ""
        version = entry.get("NormalizedVersion") or entry.get("Version") or ""
        url = entry.get("GalleryDetailsUrl") or GALLERY_PACKAGE_URL.format(name=name, version=version)

        return PackageInfo(
            name=name,
            version=version,
            total_downloads=max(_as_int(entry.get("DownloadCount")), 0),
            published_date=parse_timestamp(entry.get("Published")),
            url=url,
            description=entry.get("Description") or "",
        )
