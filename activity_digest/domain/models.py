from datetime import datetime
from typing import Dict, Optional, Tuple
from pydantic import BaseModel, Field, ConfigDict, computed_field


class EntitySnapshot(BaseModel):
    """
    Last known counters for one repository.
    A missing sub-field means the entry was written before that field was tracked.
    """
    model_config = ConfigDict(frozen=True)

    stars: Optional[int] = Field(default=None, description="Stargazer count at the last check")
    forks: Optional[int] = Field(default=None, description="Fork count at the last check")


class PackageSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    downloads: Optional[int] = Field(default=None, description="Total downloads at the last check")


class Snapshot(BaseModel):
    """
    Persisted last-known state for a single owner.
    Owned by the state store; everything else only ever sees frozen copies.
    """
    model_config = ConfigDict(frozen=True)

    last_check: Optional[datetime] = Field(default=None, description="When the previous run completed")
    entities: Dict[str, EntitySnapshot] = Field(default_factory=dict)
    packages: Dict[str, PackageSnapshot] = Field(default_factory=dict)


class RepositoryDescriptor(BaseModel):
    """A repository as returned by the owner listing, with its current counters."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Short repository name, used as the snapshot key")
    full_name: str = Field(..., description="owner/name path used for API calls")
    url: str = Field(default="", description="Browser URL of the repository")
    description: str = Field(default="")
    stars: int = Field(default=0, ge=0)
    forks: int = Field(default=0, ge=0)
    is_fork: bool = Field(default=False)
    is_archived: bool = Field(default=False)
    pushed_at: Optional[datetime] = Field(default=None)


class Issue(BaseModel):
    model_config = ConfigDict(frozen=True)

    number: Optional[int] = None
    title: str = ""
    author: str = ""
    created_at: Optional[datetime] = None
    url: str = ""


class Comment(BaseModel):
    """An issue or pull request comment. `number` is the owning issue number."""
    model_config = ConfigDict(frozen=True)

    number: Optional[int] = None
    title: str = ""
    author: str = ""
    created_at: Optional[datetime] = None
    url: str = ""
    preview_text: str = Field(default="", description="Whitespace-collapsed body, at most 100 chars plus '...'")


class PullRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    number: Optional[int] = None
    title: str = ""
    author: str = ""
    created_at: Optional[datetime] = None
    url: str = ""


class ActivityRecord(BaseModel):
    """
    Everything that changed on one repository since the cutoff.
    Built once per run by the resolver and never mutated afterwards.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    url: str = ""
    stars_now: int = 0
    stars_delta: int = 0
    forks_now: int = 0
    forks_delta: int = 0
    new_issues: Tuple[Issue, ...] = ()
    new_comments: Tuple[Comment, ...] = ()
    new_pull_requests: Tuple[PullRequest, ...] = ()
    updated_issues: Tuple[Issue, ...] = ()

    @computed_field
    @property
    def has_activity(self) -> bool:
        return bool(
            self.new_issues
            or self.new_comments
            or self.new_pull_requests
            or self.updated_issues
            or self.stars_delta != 0
            or self.forks_delta != 0
        )


class PackageInfo(BaseModel):
    """One registry observation of a published package (latest version)."""
    model_config = ConfigDict(frozen=True)

    name: str
    version: str = ""
    total_downloads: int = 0
    published_date: Optional[datetime] = None
    url: str = ""
    description: str = ""


class PackageStat(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    version: str = ""
    total_downloads: int = 0
    download_delta: int = 0
    published_date: Optional[datetime] = None
    url: str = ""
    description: str = ""

    @computed_field
    @property
    def has_new_downloads(self) -> bool:
        return self.download_delta > 0


class FetchFailure(BaseModel):
    """
    A repository or package query that could not be fetched.
    Reported separately so a failure never looks like a quiet repository.
    """
    model_config = ConfigDict(frozen=True)

    source: str = Field(..., description="'github' or 'psgallery'")
    name: str = Field(..., description="Repository name or package query that failed")
    error_kind: str = Field(..., description="rate_limit, forbidden, transient or skipped")
    message: str = ""
    status: Optional[int] = None


class ActivityBatch(BaseModel):
    model_config = ConfigDict(frozen=True)

    records: Tuple[ActivityRecord, ...] = ()
    failures: Tuple[FetchFailure, ...] = ()
    aborted: bool = Field(default=False, description="True when a rate limit stopped the run early")


class PackageBatch(BaseModel):
    model_config = ConfigDict(frozen=True)

    stats: Tuple[PackageStat, ...] = ()
    failures: Tuple[FetchFailure, ...] = ()


class Summary(BaseModel):
    model_config = ConfigDict(frozen=True)

    active_count: int = 0
    active_packages: int = 0
    failed_count: int = 0
    new_issues: int = 0
    new_comments: int = 0
    new_pull_requests: int = 0
    stars_gained: int = 0
    downloads_gained: int = 0


class DigestResult(BaseModel):
    """Everything one run produced, handed to the renderer and mailer."""
    model_config = ConfigDict(frozen=True)

    owner: str
    cutoff: datetime
    summary: Summary
    activity: ActivityBatch = Field(default_factory=ActivityBatch)
    packages: PackageBatch = Field(default_factory=PackageBatch)

    @property
    def failures(self) -> Tuple[FetchFailure, ...]:
        return self.activity.failures + self.packages.failures
