import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

import aiohttp

from activity_digest.application.activity_resolver import RepositoryActivityResolver
from activity_digest.application.digest_aggregator import summarize
from activity_digest.application.package_resolver import PackageResolver
from activity_digest.domain.cutoff import compute_cutoff, format_timestamp
from activity_digest.domain.exceptions import DeliveryError
from activity_digest.domain.models import DigestResult, PackageBatch, Snapshot
from activity_digest.infrastructure.database import ActivityHistoryRepository
from activity_digest.infrastructure.github_client import GitHubRestClient
from activity_digest.infrastructure.mailer import SmtpMailer
from activity_digest.infrastructure.psgallery_client import PSGalleryClient
from activity_digest.infrastructure.report_renderer import ReportRenderer
from activity_digest.infrastructure.settings import DigestSettings
from activity_digest.infrastructure.state_store import JsonStateStore, build_patch

logger = logging.getLogger(__name__)

# Limit concurrent connections to avoid overwhelming the APIs
CONNECTOR_LIMIT = 10


def _default_session() -> aiohttp.ClientSession:
    return aiohttp.ClientSession(connector=aiohttp.TCPConnector(limit=CONNECTOR_LIMIT))


class DigestService:
    """
    Runs one polling cycle for a single owner.

    The snapshot is loaded once before any resolver work and saved once after the report
    has been delivered, so a run never leaves per-repository partial writes behind.
    """

    def __init__(
        self,
        settings: DigestSettings,
        github_client: GitHubRestClient,
        state_store: JsonStateStore,
        psgallery_client: Optional[PSGalleryClient] = None,
        renderer: Optional[ReportRenderer] = None,
        mailer: Optional[SmtpMailer] = None,
        history: Optional[ActivityHistoryRepository] = None,
        session_factory: Callable[[], aiohttp.ClientSession] = _default_session,
    ):
        self.settings = settings
        self.state_store = state_store
        self.repo_resolver = RepositoryActivityResolver(github_client, settings.owner)
        self.package_resolver = PackageResolver(psgallery_client) if psgallery_client is not None else None
        self.renderer = renderer or ReportRenderer(settings.owner)
        self.mailer = mailer
        self.history = history
        self.session_factory = session_factory

    def resolve_cutoff(self, snapshot: Snapshot, now: datetime) -> datetime:
        if self.settings.cutoff is not None:
            return compute_cutoff(self.settings.since_hours, explicit=self.settings.cutoff)
        if self.settings.use_last_check and snapshot.last_check is not None:
            return compute_cutoff(self.settings.since_hours, explicit=snapshot.last_check)
        return compute_cutoff(self.settings.since_hours, now=now)

    async def run(self, now: Optional[datetime] = None) -> DigestResult:
        settings = self.settings
        now = (now or datetime.now(timezone.utc)).replace(microsecond=0)

        snapshot = self.state_store.load(settings.owner)
        cutoff = self.resolve_cutoff(snapshot, now)
        logger.info(f"Starting digest for '{settings.owner}' since {format_timestamp(cutoff)}.")

        async with self.session_factory() as session:
            repos = await self.repo_resolver.list_repositories(
                session,
                include_forks=settings.include_forks,
                include_archived=settings.include_archived,
                names=settings.repo_names or None,
            )
            activity = await self.repo_resolver.resolve_all(
                session, repos, snapshot, cutoff, concurrency=settings.concurrency
            )

            packages = PackageBatch()
            if self.package_resolver is not None and settings.monitors_packages and not activity.aborted:
                packages = await self.package_resolver.resolve_all(
                    session, snapshot, author=settings.psgallery_author, names=settings.package_names
                )

        result = DigestResult(
            owner=settings.owner,
            cutoff=cutoff,
            summary=summarize(activity.records, packages.stats, activity.failures + packages.failures),
            activity=activity,
            packages=packages,
        )

        await self.deliver(result)

        if settings.save_state:
            last_check = now
            if result.failures:
                # last_check only advances after a run without failures
                last_check = snapshot.last_check
                logger.warning("Some fetches failed; keeping the previous last_check.")
            self.state_store.save(build_patch(settings.owner, last_check, activity.records, packages.stats))
        else:
            logger.info("State saving disabled; snapshot left unchanged.")

        if self.history is not None:
            await self.history.record_run(settings.owner, now, activity.records, packages.stats)

        logger.info(
            f"Digest completed: {result.summary.active_count} active repositories, "
            f"{result.summary.failed_count} failures."
        )
        return result

    async def deliver(self, result: DigestResult) -> None:
        renderer = self.renderer
        records, stats = result.activity.records, result.packages.stats

        logger.info(renderer.render_console(result.summary, records, stats, result.failures))

        if self.settings.output == "console":
            return

        page = renderer.render_html(result.summary, result.cutoff, records, stats, result.failures)
        if self.settings.output == "html":
            renderer.write_html(self.settings.html_path, page)
            return

        if self.mailer is None:
            raise DeliveryError("Email output requested but no mailer is configured.")
        await asyncio.to_thread(
            self.mailer.send, self.settings.email_to, renderer.subject(result.summary, result.cutoff), page
        )
