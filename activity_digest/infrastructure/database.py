from datetime import datetime
from typing import Any, Dict, List, Sequence
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy import Table, Column, String, Integer, DateTime, MetaData, text

from activity_digest.domain.models import ActivityRecord, PackageStat

# SQLAlchemy core Table definition
metadata = MetaData()
history_table = Table(
    'activity_history', metadata,
    Column('owner', String, primary_key=True),
    Column('kind', String, primary_key=True),
    Column('name', String, primary_key=True),
    Column('observed_at', DateTime(timezone=True), primary_key=True),
    Column('stars', Integer),
    Column('forks', Integer),
    Column('downloads', Integer),
    Column('stars_delta', Integer, nullable=False, server_default=text('0')),
    Column('forks_delta', Integer, nullable=False, server_default=text('0')),
    Column('downloads_delta', Integer, nullable=False, server_default=text('0')),
    Column('new_issues', Integer, nullable=False, server_default=text('0')),
    Column('new_comments', Integer, nullable=False, server_default=text('0')),
    Column('new_pull_requests', Integer, nullable=False, server_default=text('0')),
    Column('recorded_at', DateTime(timezone=True), server_default=text('NOW()')),
)


class ActivityHistoryRepository:
    """
    Optional trend history: one row per repository and package per run.
    The JSON state store stays the source of truth for deltas; this table only accumulates.
    """

    def __init__(self, db_url: str):
        self.engine = create_async_engine(db_url, echo=False)

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    @staticmethod
    def build_rows(
        owner: str,
        observed_at: datetime,
        records: Sequence[ActivityRecord],
        stats: Sequence[PackageStat],
    ) -> List[Dict[str, Any]]:
        rows = [
            {   'owner': owner,
                'kind': 'repository',
                'name': record.name,
                'observed_at': observed_at,
                'stars': record.stars_now,
                'forks': record.forks_now,
                'downloads': None,
                'stars_delta': record.stars_delta,
                'forks_delta': record.forks_delta,
                'downloads_delta': 0,
                'new_issues': len(record.new_issues),
                'new_comments': len(record.new_comments),
                'new_pull_requests': len(record.new_pull_requests),
            } for record in records
        ]
        rows.extend(
            {   'owner': owner,
                'kind': 'package',
                'name': stat.name,
                'observed_at': observed_at,
                'stars': None,
                'forks': None,
                'downloads': stat.total_downloads,
                'stars_delta': 0,
                'forks_delta': 0,
                'downloads_delta': stat.download_delta,
                'new_issues': 0,
                'new_comments': 0,
                'new_pull_requests': 0,
            } for stat in stats
        )
        return rows

    async def record_run(
        self,
        owner: str,
        observed_at: datetime,
        records: Sequence[ActivityRecord],
        stats: Sequence[PackageStat] = (),
    ) -> None:
        """
        Inserts one run's observations in a single batch operation.

        Args:
            owner (str): Account the run was made for.
            observed_at (datetime): Run timestamp; part of the primary key.
            records (Sequence[ActivityRecord]): Resolved repositories.
            stats (Sequence[PackageStat]): Resolved packages.
        """
        values = self.build_rows(owner, observed_at, records, stats)
        if not values:
            return  # Nothing observed this run

        async with self.engine.begin() as conn:
            stmt = insert(history_table).values(values)

            # Re-running for the same timestamp replaces the counters rather than failing.
            upsert_stmt = stmt.on_conflict_do_update(
                index_elements=['owner', 'kind', 'name', 'observed_at'],
                set_={
                    'stars': stmt.excluded.stars,
                    'forks': stmt.excluded.forks,
                    'downloads': stmt.excluded.downloads,
                    'stars_delta': stmt.excluded.stars_delta,
                    'forks_delta': stmt.excluded.forks_delta,
                    'downloads_delta': stmt.excluded.downloads_delta,
                    'new_issues': stmt.excluded.new_issues,
                    'new_comments': stmt.excluded.new_comments,
                    'new_pull_requests': stmt.excluded.new_pull_requests,
                    'recorded_at': text('NOW()'),
                },
            )

            await conn.execute(upsert_stmt)
