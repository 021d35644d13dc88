import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
    select,
    text,
    update,
)

from src.domain.exceptions import DatabaseException
from src.domain.models import (
    CommitRecord,
    GalaxyCoordinates,
    GalaxyStar,
    PullRequestRecord,
    RepositoryRecord,
    Star,
    StarKind,
)

logger = logging.getLogger(__name__)

# SQLAlchemy core Table definitions
metadata = MetaData()
repositories_table = Table(
    'galaxy_repositories', metadata,
    Column('id', BigInteger, primary_key=True),
    Column('name', String, nullable=False),
    Column('owner', String, nullable=False),
    Column('account_id', BigInteger, nullable=False, index=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Column('last_synced_at', DateTime(timezone=True), nullable=True),
    Column('galaxy_x', Float, nullable=True),
    Column('galaxy_y', Float, nullable=True),
    Column('galaxy_z', Float, nullable=True),
    Column('galaxy_size', Float, nullable=True),
)

commits_table = Table(
    'galaxy_commits', metadata,
    Column('sha', String, primary_key=True),
    Column('repository_id', BigInteger, ForeignKey('galaxy_repositories.id'), nullable=False, index=True),
    Column('message', Text, nullable=False),
    Column('authored_at', DateTime(timezone=True), nullable=False),
)

pull_requests_table = Table(
    'galaxy_pull_requests', metadata,
    Column('id', BigInteger, primary_key=True),
    Column('repository_id', BigInteger, ForeignKey('galaxy_repositories.id'), nullable=False, index=True),
    Column('number', BigInteger, nullable=True),
    Column('title', Text, nullable=True),
    Column('url', String, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
)

stars_table = Table(
    'galaxy_stars', metadata,
    Column('id', BigInteger, primary_key=True, autoincrement=True),
    Column('kind', SAEnum(StarKind, name='star_kind'), nullable=False),
    Column('repository_id', BigInteger, ForeignKey('galaxy_repositories.id'), nullable=False),
    Column('entity_id', String, nullable=False),
    Column('x', Float, nullable=False),
    Column('y', Float, nullable=False),
    Column('z', Float, nullable=False),
    Column('size', Float, nullable=False),
    Column('color', String, nullable=False),
    Column('commit_sha', String, ForeignKey('galaxy_commits.sha'), nullable=True),
    Column('pull_request_id', BigInteger, ForeignKey('galaxy_pull_requests.id'), nullable=True),
    Column('updated_at', DateTime(timezone=True), server_default=text('NOW()')),
    UniqueConstraint('repository_id', 'kind', 'entity_id', name='uq_galaxy_stars_entity'),
    CheckConstraint('(commit_sha IS NULL) <> (pull_request_id IS NULL)', name='ck_galaxy_stars_single_reference'),
)


def _repository_from_row(row: Any) -> RepositoryRecord:
    galaxy = None
    if row.galaxy_x is not None:
        galaxy = GalaxyCoordinates(x=row.galaxy_x, y=row.galaxy_y, z=row.galaxy_z, size=row.galaxy_size)
    return RepositoryRecord(
        id=row.id,
        name=row.name,
        owner=row.owner,
        account_id=row.account_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_synced_at=row.last_synced_at,
        galaxy=galaxy,
    )


def _galaxy_star_from_row(row: Any) -> GalaxyStar:
    commit = None
    if row.commit_sha is not None and row.commit_authored_at is not None:
        commit = CommitRecord(
            sha=row.commit_sha,
            repository_id=row.repository_id,
            message=row.commit_message or "",
            authored_at=row.commit_authored_at,
        )
    pull_request = None
    if row.pull_request_id is not None and row.pull_request_created_at is not None:
        pull_request = PullRequestRecord(
            id=row.pull_request_id,
            repository_id=row.repository_id,
            number=row.pull_request_number,
            title=row.pull_request_title,
            url=row.pull_request_url,
            created_at=row.pull_request_created_at,
        )
    star = Star(
        kind=row.kind,
        repository_id=row.repository_id,
        entity_id=row.entity_id,
        x=row.x,
        y=row.y,
        z=row.z,
        size=row.size,
        color=row.color,
        commit_sha=row.commit_sha,
        pull_request_id=row.pull_request_id,
    )
    return GalaxyStar(star=star, commit=commit, pull_request=pull_request)


def _repository_values(record: RepositoryRecord) -> Dict[str, Any]:
    galaxy = record.galaxy
    return {
        'id': record.id,
        'name': record.name,
        'owner': record.owner,
        'account_id': record.account_id,
        'created_at': record.created_at,
        'updated_at': record.updated_at,
        'galaxy_x': galaxy.x if galaxy else None,
        'galaxy_y': galaxy.y if galaxy else None,
        'galaxy_z': galaxy.z if galaxy else None,
        'galaxy_size': galaxy.size if galaxy else None,
    }


class PostgresRepository:
    """
    GalaxyStore backed by PostgreSQL.
    Every write is an INSERT ... ON CONFLICT DO UPDATE keyed on the GitHub identifier,
    so concurrent syncs of the same repository collide without duplicating rows.
    """

    def __init__(self, db_url: str):
        self.engine = create_async_engine(db_url, echo=False)

    async def create_schema(self) -> None:
        """Creates the galaxy tables if they don't exist."""
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(metadata.create_all)
        except SQLAlchemyError as e:
            raise DatabaseException(f"Failed to create schema: {e}") from e

    async def dispose(self) -> None:
        await self.engine.dispose()

    async def _execute(self, stmt, action: str):
        try:
            async with self.engine.begin() as conn:
                return await conn.execute(stmt)
        except SQLAlchemyError as e:
            logger.error(f"Database error while trying to {action}: {e}")
            raise DatabaseException(f"Failed to {action}.") from e

    async def get_repository(self, repository_id: int) -> Optional[RepositoryRecord]:
        stmt = select(repositories_table).where(repositories_table.c.id == repository_id)
        result = await self._execute(stmt, f"load repository {repository_id}")
        row = result.first()
        return _repository_from_row(row) if row is not None else None

    async def get_repositories(self, repository_ids: Sequence[int]) -> Dict[int, RepositoryRecord]:
        if not repository_ids:
            return {}
        stmt = select(repositories_table).where(repositories_table.c.id.in_(list(repository_ids)))
        result = await self._execute(stmt, "load repositories")
        return {row.id: _repository_from_row(row) for row in result}

    async def list_repositories(self, account_id: int) -> List[RepositoryRecord]:
        stmt = (
            select(repositories_table)
            .where(repositories_table.c.account_id == account_id)
            .order_by(repositories_table.c.updated_at.desc())
        )
        result = await self._execute(stmt, f"list repositories of account {account_id}")
        return [_repository_from_row(row) for row in result]

    async def upsert_repository(self, record: RepositoryRecord) -> RepositoryRecord:
        """
        Inserts or updates a repository keyed on its GitHub id.
        last_synced_at is owned by mark_synced and never touched here.
        """
        stmt = insert(repositories_table).values(_repository_values(record))
        upsert_stmt = stmt.on_conflict_do_update(
            index_elements=['id'],
            set_={
                'name': stmt.excluded.name,
                'owner': stmt.excluded.owner,
                'account_id': stmt.excluded.account_id,
                'created_at': stmt.excluded.created_at,
                'updated_at': stmt.excluded.updated_at,
                'galaxy_x': stmt.excluded.galaxy_x,
                'galaxy_y': stmt.excluded.galaxy_y,
                'galaxy_z': stmt.excluded.galaxy_z,
                'galaxy_size': stmt.excluded.galaxy_size,
            },
        ).returning(repositories_table)

        result = await self._execute(upsert_stmt, f"upsert repository {record.id}")
        return _repository_from_row(result.one())

    async def upsert_commit(self, record: CommitRecord) -> CommitRecord:
        stmt = insert(commits_table).values(
            sha=record.sha,
            repository_id=record.repository_id,
            message=record.message,
            authored_at=record.authored_at,
        )
        # The owning repository of a sha never changes.
        upsert_stmt = stmt.on_conflict_do_update(
            index_elements=['sha'],
            set_={
                'message': stmt.excluded.message,
                'authored_at': stmt.excluded.authored_at,
            },
        ).returning(commits_table)

        result = await self._execute(upsert_stmt, f"upsert commit {record.sha}")
        row = result.one()
        return CommitRecord(sha=row.sha, repository_id=row.repository_id, message=row.message, authored_at=row.authored_at)

    async def upsert_pull_request(self, record: PullRequestRecord) -> PullRequestRecord:
        stmt = insert(pull_requests_table).values(
            id=record.id,
            repository_id=record.repository_id,
            number=record.number,
            title=record.title,
            url=record.url,
            created_at=record.created_at,
        )
        upsert_stmt = stmt.on_conflict_do_update(
            index_elements=['id'],
            set_={
                'number': stmt.excluded.number,
                'title': stmt.excluded.title,
                'url': stmt.excluded.url,
                'created_at': stmt.excluded.created_at,
            },
        )

        await self._execute(upsert_stmt, f"upsert pull request {record.id}")
        return record

    async def upsert_star(self, star: Star) -> Star:
        """Writes the star for (repository_id, kind, entity_id), updating it in place if present."""
        stmt = insert(stars_table).values(
            kind=star.kind,
            repository_id=star.repository_id,
            entity_id=star.entity_id,
            x=star.x,
            y=star.y,
            z=star.z,
            size=star.size,
            color=star.color,
            commit_sha=star.commit_sha,
            pull_request_id=star.pull_request_id,
        )
        upsert_stmt = stmt.on_conflict_do_update(
            constraint='uq_galaxy_stars_entity',
            set_={
                'x': stmt.excluded.x,
                'y': stmt.excluded.y,
                'z': stmt.excluded.z,
                'size': stmt.excluded.size,
                'color': stmt.excluded.color,
                'updated_at': text('NOW()'),
            },
            where=(
                stars_table.c.x.is_distinct_from(stmt.excluded.x)
                | stars_table.c.y.is_distinct_from(stmt.excluded.y)
                | stars_table.c.z.is_distinct_from(stmt.excluded.z)
                | stars_table.c.color.is_distinct_from(stmt.excluded.color)
            ),
        )

        await self._execute(upsert_stmt, f"upsert {star.kind.value} star {star.entity_id}")
        return star

    async def list_commits(self, repository_id: int) -> List[CommitRecord]:
        stmt = (
            select(commits_table)
            .where(commits_table.c.repository_id == repository_id)
            .order_by(commits_table.c.authored_at.desc())
        )
        result = await self._execute(stmt, f"list commits of repository {repository_id}")
        return [
            CommitRecord(sha=row.sha, repository_id=row.repository_id, message=row.message, authored_at=row.authored_at)
            for row in result
        ]

    async def count_commits_by_repository(
            self, repository_ids: Sequence[int], since: Optional[datetime] = None
    ) -> Dict[int, int]:
        if not repository_ids:
            return {}
        stmt = (
            select(commits_table.c.repository_id, func.count().label('commit_count'))
            .where(commits_table.c.repository_id.in_(list(repository_ids)))
            .group_by(commits_table.c.repository_id)
        )
        if since is not None:
            stmt = stmt.where(commits_table.c.authored_at >= since)
        result = await self._execute(stmt, "count commits by repository")
        return {row.repository_id: row.commit_count for row in result}

    async def list_stars(
            self,
            repository_id: int,
            kinds: Sequence[StarKind],
            start: Optional[datetime] = None,
            end: Optional[datetime] = None,
    ) -> List[GalaxyStar]:
        """
        Loads the stars of a repository joined with their commit or pull request, newest star first.
        start and end bound the commit date of commit stars and the creation date of PR stars.
        """
        if not kinds:
            return []
        joined = stars_table.outerjoin(
            commits_table, stars_table.c.commit_sha == commits_table.c.sha
        ).outerjoin(
            pull_requests_table, stars_table.c.pull_request_id == pull_requests_table.c.id
        )
        stmt = (
            select(
                stars_table,
                commits_table.c.message.label('commit_message'),
                commits_table.c.authored_at.label('commit_authored_at'),
                pull_requests_table.c.number.label('pull_request_number'),
                pull_requests_table.c.title.label('pull_request_title'),
                pull_requests_table.c.url.label('pull_request_url'),
                pull_requests_table.c.created_at.label('pull_request_created_at'),
            )
            .select_from(joined)
            .where(stars_table.c.repository_id == repository_id)
            .where(stars_table.c.kind.in_(list(kinds)))
            .order_by(stars_table.c.id.desc())
        )
        entity_date = func.coalesce(commits_table.c.authored_at, pull_requests_table.c.created_at)
        if start is not None:
            stmt = stmt.where(entity_date >= start)
        if end is not None:
            stmt = stmt.where(entity_date <= end)

        result = await self._execute(stmt, f"list stars of repository {repository_id}")
        return [_galaxy_star_from_row(row) for row in result]

    async def mark_synced(self, repository_id: int, synced_at: datetime) -> None:
        stmt = (
            update(repositories_table)
            .where(repositories_table.c.id == repository_id)
            .values(last_synced_at=synced_at)
        )
        await self._execute(stmt, f"mark repository {repository_id} as synced")
