import logging
from typing import Dict, List, Optional, Sequence

import aiohttp

from activity_digest.application.activity_resolver import classify_error
from activity_digest.domain.deltas import download_delta
from activity_digest.domain.exceptions import ApiError, AuthError
from activity_digest.domain.models import (
    FetchFailure,
    PackageBatch,
    PackageInfo,
    PackageStat,
    Snapshot,
)
from activity_digest.infrastructure.acl import PSGalleryTranslator
from activity_digest.infrastructure.psgallery_client import PSGalleryClient

logger = logging.getLogger(__name__)


class PackageResolver:
    """
    Computes download deltas for PSGallery packages.

    Packages come from an author search, an explicit name list, or both. A failed query
    is reported as a FetchFailure instead of being treated as "no packages".
    """

    def __init__(self, psgallery_client: PSGalleryClient):
        self.psgallery_client = psgallery_client

    async def list_packages(
        self,
        session: aiohttp.ClientSession,
        author: Optional[str] = None,
        names: Sequence[str] = (),
    ):
        """Returns (packages, failures); packages are de-duplicated by name in first-seen order."""
        found: Dict[str, PackageInfo] = {}
        failures: List[FetchFailure] = []

        if author:
            try:
                for entry in await self.psgallery_client.search_by_author(session, author):
                    info = PSGalleryTranslator.to_package_info(entry)
                    if info.name:
                        found.setdefault(info.name, info)
            except AuthError:
                raise
            except ApiError as e:
                logger.error(f"PSGallery author search for '{author}' failed: {e}")
                failures.append(self._failure(f"author:{author}", e))

        for name in names:
            if name in found:
                continue
            try:
                entry = await self.psgallery_client.find_package(session, name)
            except AuthError:
                raise
            except ApiError as e:
                logger.error(f"PSGallery lookup for '{name}' failed: {e}")
                failures.append(self._failure(name, e))
                continue

            if entry is None:
                logger.warning(f"Package '{name}' was not found on PSGallery.")
                continue
            info = PSGalleryTranslator.to_package_info(entry)
            found.setdefault(info.name or name, info)

        return list(found.values()), failures

    @staticmethod
    def to_stat(info: PackageInfo, snapshot: Snapshot) -> PackageStat:
        return PackageStat(
            name=info.name,
            version=info.version,
            total_downloads=info.total_downloads,
            download_delta=download_delta(snapshot.packages.get(info.name), info.total_downloads),
            published_date=info.published_date,
            url=info.url,
            description=info.description,
        )

    async def resolve_all(
        self,
        session: aiohttp.ClientSession,
        snapshot: Snapshot,
        author: Optional[str] = None,
        names: Sequence[str] = (),
    ) -> PackageBatch:
        packages, failures = await self.list_packages(session, author, names)
        stats = tuple(self.to_stat(info, snapshot) for info in packages)

        logger.info(
            f"Resolved {len(stats)} packages "
            f"({sum(1 for stat in stats if stat.has_new_downloads)} with new downloads, {len(failures)} failed)."
        )
        return PackageBatch(stats=stats, failures=tuple(failures))

    @staticmethod
    def _failure(name: str, error: ApiError) -> FetchFailure:
        return FetchFailure(
            source="psgallery",
            name=name,
            error_kind=classify_error(error),
            message=error.message,
            status=error.status,
        )
