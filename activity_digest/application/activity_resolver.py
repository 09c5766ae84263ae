import asyncio
import logging
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Union

import aiohttp

from activity_digest.domain.cutoff import format_timestamp
from activity_digest.domain.deltas import entity_deltas
from activity_digest.domain.exceptions import (
    ApiError,
    AuthError,
    ForbiddenError,
    RateLimitError,
)
from activity_digest.domain.models import (
    ActivityBatch,
    ActivityRecord,
    FetchFailure,
    Issue,
    RepositoryDescriptor,
    Snapshot,
)
from activity_digest.infrastructure.acl import GitHubTranslator
from activity_digest.infrastructure.github_client import GitHubRestClient

logger = logging.getLogger(__name__)

PER_PAGE = 100


def classify_error(error: ApiError) -> str:
    if isinstance(error, RateLimitError):
        return "rate_limit"
    if isinstance(error, ForbiddenError):
        return "forbidden"
    return "transient"


def _is_new(created_at: Optional[datetime], cutoff: datetime) -> bool:
    return created_at is not None and created_at >= cutoff


class RepositoryActivityResolver:
    """
    Computes per-repository activity for one owner.

    For every repository it diffs the current star/fork counts against the snapshot and
    collects the issues, comments and pull requests touched since the cutoff.
    """

    def __init__(self, github_client: GitHubRestClient, owner: str):
        self.github_client = github_client
        self.owner = owner

    async def list_repositories(
        self,
        session: aiohttp.ClientSession,
        include_forks: bool = False,
        include_archived: bool = False,
        names: Optional[Iterable[str]] = None,
    ) -> List[RepositoryDescriptor]:
        """Lists the owner's repositories in server order, dropping forks and archived ones unless asked."""
        raw_repos = await self.github_client.fetch(
            session, f"/users/{self.owner}/repos?type=owner&sort=full_name&per_page={PER_PAGE}"
        )
        wanted = set(names) if names else None

        repos = []
        for raw in raw_repos:
            repo = GitHubTranslator.to_repository(raw, self.owner)
            if not repo.name:
                continue
            if wanted is not None and repo.name not in wanted:
                continue
            if repo.is_fork and not include_forks:
                continue
            if repo.is_archived and not include_archived:
                continue
            repos.append(repo)

        if not repos:
            logger.warning(f"No repositories to monitor for '{self.owner}'.")
        else:
            logger.info(f"Monitoring {len(repos)} repositories for '{self.owner}'.")
        return repos

    async def resolve(
        self,
        session: aiohttp.ClientSession,
        repo: RepositoryDescriptor,
        snapshot: Snapshot,
        cutoff: datetime,
    ) -> ActivityRecord:
        """Builds the ActivityRecord of one repository. API errors propagate to the caller."""
        stars_delta, forks_delta = entity_deltas(snapshot.entities.get(repo.name), repo.stars, repo.forks)
        since = format_timestamp(cutoff)
        base = f"/repos/{repo.full_name}"

        raw_issues = await self.github_client.fetch(
            session, f"{base}/issues?state=all&since={since}&per_page={PER_PAGE}"
        )
        new_issues: List[Issue] = []
        updated_issues: List[Issue] = []
        for raw in raw_issues:
            if GitHubTranslator.is_pull_request(raw):
                continue
            issue = GitHubTranslator.to_issue(raw)
            if _is_new(issue.created_at, cutoff):
                new_issues.append(issue)
            else:
                updated_issues.append(issue)

        raw_comments = await self.github_client.fetch(
            session, f"{base}/issues/comments?since={since}&per_page={PER_PAGE}"
        )
        new_comments = [GitHubTranslator.to_comment(raw) for raw in raw_comments]

        # Sorted newest first, so paging stops at the first pull request older than the cutoff.
        new_pull_requests = []
        pulls = self.github_client.paginate(
            session, f"{base}/pulls?state=all&sort=created&direction=desc&per_page={PER_PAGE}"
        )
        async for raw in pulls:
            pull_request = GitHubTranslator.to_pull_request(raw)
            if pull_request.created_at is not None and pull_request.created_at < cutoff:
                break
            if _is_new(pull_request.created_at, cutoff):
                new_pull_requests.append(pull_request)

        record = ActivityRecord(
            name=repo.name,
            url=repo.url,
            stars_now=repo.stars,
            stars_delta=stars_delta,
            forks_now=repo.forks,
            forks_delta=forks_delta,
            new_issues=tuple(new_issues),
            new_comments=tuple(new_comments),
            new_pull_requests=tuple(new_pull_requests),
            updated_issues=tuple(updated_issues),
        )
        logger.debug(
            f"[{repo.name}] stars {_signed(stars_delta)}, forks {_signed(forks_delta)}, "
            f"{len(new_issues)} new issues, {len(updated_issues)} updated, "
            f"{len(new_comments)} comments, {len(new_pull_requests)} pull requests."
        )
        return record

    async def resolve_all(
        self,
        session: aiohttp.ClientSession,
        repos: Sequence[RepositoryDescriptor],
        snapshot: Snapshot,
        cutoff: datetime,
        concurrency: int = 1,
    ) -> ActivityBatch:
        """
        Resolves every repository, keeping the input order.

        AuthError aborts the whole run. Any other API error becomes a FetchFailure for that
        repository; a rate limit additionally marks the batch aborted and skips the rest.
        """
        halted = asyncio.Event()
        semaphore = asyncio.Semaphore(max(concurrency, 1))

        async def guarded(repo: RepositoryDescriptor) -> Union[ActivityRecord, FetchFailure]:
            async with semaphore:
                if halted.is_set():
                    return FetchFailure(
                        source="github", name=repo.name, error_kind="skipped",
                        message="Skipped after the rate limit was exhausted.",
                    )
                try:
                    return await self.resolve(session, repo, snapshot, cutoff)
                except AuthError:
                    raise
                except RateLimitError as e:
                    halted.set()
                    logger.error(f"[{repo.name}] Rate limit exhausted: {e}. Skipping remaining repositories.")
                    return self._failure(repo, e)
                except ApiError as e:
                    logger.error(f"[{repo.name}] Could not fetch activity: {e}")
                    return self._failure(repo, e)

        if concurrency <= 1:
            results = [await guarded(repo) for repo in repos]
        else:
            results = await asyncio.gather(*(guarded(repo) for repo in repos), return_exceptions=True)
            for result in results:
                if isinstance(result, BaseException):
                    raise result

        records = tuple(result for result in results if isinstance(result, ActivityRecord))
        failures = tuple(result for result in results if isinstance(result, FetchFailure))
        logger.info(
            f"Resolved {len(records)} repositories "
            f"({sum(1 for record in records if record.has_activity)} active, {len(failures)} failed)."
        )
        return ActivityBatch(records=records, failures=failures, aborted=halted.is_set())

    @staticmethod
    def _failure(repo: RepositoryDescriptor, error: ApiError) -> FetchFailure:
        return FetchFailure(
            source="github",
            name=repo.name,
            error_kind=classify_error(error),
            message=error.message,
            status=error.status,
        )


def _signed(value: int) -> str:
    return f"+{value}" if value > 0 else str(value)
