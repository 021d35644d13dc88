from datetime import datetime
from typing import Dict, List, Optional, Protocol, Sequence

from src.domain.models import CommitRecord, GalaxyStar, PullRequestRecord, RepositoryRecord, Star, StarKind


class GalaxyStore(Protocol):
    """
    Persistence contract used by the sync and query services.
    Every write is an upsert keyed by a stable external identifier.
    """

    async def get_repository(self, repository_id: int) -> Optional[RepositoryRecord]: ...

    async def get_repositories(self, repository_ids: Sequence[int]) -> Dict[int, RepositoryRecord]: ...

    async def list_repositories(self, account_id: int) -> List[RepositoryRecord]: ...

    async def upsert_repository(self, record: RepositoryRecord) -> RepositoryRecord: ...

    async def upsert_commit(self, record: CommitRecord) -> CommitRecord: ...

    async def upsert_pull_request(self, record: PullRequestRecord) -> PullRequestRecord: ...

    async def upsert_star(self, star: Star) -> Star: ...

    async def list_commits(self, repository_id: int) -> List[CommitRecord]: ...

    async def count_commits_by_repository(
            self, repository_ids: Sequence[int], since: Optional[datetime] = None
    ) -> Dict[int, int]: ...

    async def list_stars(
            self,
            repository_id: int,
            kinds: Sequence[StarKind],
            start: Optional[datetime] = None,
            end: Optional[datetime] = None,
    ) -> List[GalaxyStar]: ...

    async def mark_synced(self, repository_id: int, synced_at: datetime) -> None: ...
