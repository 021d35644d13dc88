import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Tuple

from src.domain.exceptions import (
    DatabaseException,
    GalaxyException,
    InvalidCredential,
    RateLimited,
    RepositoryNotFound,
    UpstreamError,
)
from src.domain.layout import DEFAULT_GALAXY, LayoutEngine, age_ratio, time_bounds
from src.domain.models import (
    CommitRecord,
    CommitSyncResult,
    GalaxyCoordinates,
    PullRequestRecord,
    RepositoryRecord,
    Star,
    StarKind,
    SyncFailure,
    UniverseSyncReport,
)
from src.domain.store import GalaxyStore
from src.infrastructure.acl import GitHubTranslator
from src.infrastructure.github_client import GitHubRestClient

logger = logging.getLogger(__name__)

# Number of repositories whose commits and pull requests are synced concurrently
MAX_CONCURRENT_REPOSITORIES = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncService:
    """
    Service responsible for synchronizing a GitHub account into its galaxy:
    repositories get a position in the universe, commits and pull requests
    become stars around their repository.

    Every write is an upsert keyed by a GitHub identifier, and coordinates are
    derived from those identifiers, so re-running a sync over unchanged data
    rewrites identical rows.
    """

    def __init__(
            self,
            github_client: GitHubRestClient,
            store: GalaxyStore,
            layout_engine: Optional[LayoutEngine] = None,
            max_concurrent_repositories: int = MAX_CONCURRENT_REPOSITORIES,
            clock: Callable[[], datetime] = _utcnow,
    ):
        self.github_client = github_client
        self.store = store
        self.layout_engine = layout_engine or LayoutEngine()
        self.max_concurrent_repositories = max(1, max_concurrent_repositories)
        self._clock = clock

    async def sync_repositories(self, credential: str, relayout: bool = False) -> List[RepositoryRecord]:
        """
        Fetches the account's repositories and upserts the active ones.

        Galaxy coordinates are computed only for repositories that have none yet,
        unless relayout is requested. Placement ranks repositories by creation
        time, so a new repository can shift where later ones would land; persisted
        coordinates are kept to avoid reshuffling the universe.
        """
        raw_user = await self.github_client.get_authenticated_user(credential)
        try:
            account = GitHubTranslator.to_account(raw_user)
        except (ValueError, AttributeError) as e:
            raise UpstreamError(url="/user", detail=f"Malformed account payload: {e}") from e

        raw_repos = await self.github_client.list_repositories(credential)

        active: List[RepositoryRecord] = []
        for raw_repo in raw_repos:
            if not isinstance(raw_repo, dict) or raw_repo.get('archived') or raw_repo.get('disabled'):
                continue
            try:
                active.append(GitHubTranslator.to_repository(raw_repo, account.id))
            except ValueError as e:
                logger.warning(f"Skipping malformed repository payload {raw_repo.get('id')}: {e}")

        if not active:
            logger.info(f"No active repositories for {account.login}.")
            return []

        existing = await self.store.get_repositories([repo.id for repo in active])
        unplaced = {
            repo.id for repo in active
            if relayout or repo.id not in existing or existing[repo.id].galaxy is None
        }
        placements = self.layout_engine.place_repositories(active, seed_base=account.id) if unplaced else {}

        records: List[RepositoryRecord] = []
        for repo in active:
            persisted = existing.get(repo.id)
            galaxy = placements[repo.id] if repo.id in unplaced else persisted.galaxy
            record = repo.model_copy(update={
                'galaxy': galaxy,
                'last_synced_at': persisted.last_synced_at if persisted else None,
            })
            records.append(await self.store.upsert_repository(record))

        logger.info(
            f"Synced {len(records)} repositories for {account.login} "
            f"({len(unplaced)} placed, {len(raw_repos) - len(active)} skipped)."
        )
        return records

    async def sync_commits_and_prs(
            self, repository_id: int, credential: str, force_sync: bool = False
    ) -> CommitSyncResult:
        """
        Syncs the most recent commits and pull requests of a repository into stars.

        A repository that was already synced is served from the store unless
        force_sync is set. last_synced_at is written only once both the commit
        and the pull request pages were fetched; an item that fails to store is
        reported in the result without aborting the pass.
        """
        repository = await self.store.get_repository(repository_id)
        if repository is None:
            raise RepositoryNotFound(repository_id)

        full_name = f"{repository.owner}/{repository.name}"

        if not force_sync and repository.last_synced_at is not None:
            logger.info(f"{full_name} already synced at {repository.last_synced_at.isoformat()}. Serving stored commits.")
            commits = await self.store.list_commits(repository.id)
            return CommitSyncResult(
                repository_id=repository.id,
                commits=commits,
                from_store=True,
                synced_at=repository.last_synced_at,
            )

        center = repository.galaxy
        if center is None:
            logger.warning(f"{full_name} has no galaxy coordinates. Using the universe centre.")
            center = DEFAULT_GALAXY

        raw_commits = await self.github_client.list_commits(repository.owner, repository.name, credential)
        commits, commit_stars, failures = await self._sync_commits(repository, center, raw_commits)

        raw_pulls = await self.github_client.list_pull_requests(repository.owner, repository.name, credential)
        pull_requests, pr_stars, pr_failures = await self._sync_pull_requests(repository, center, raw_pulls)
        failures.extend(pr_failures)

        synced_at = self._clock()
        await self.store.mark_synced(repository.id, synced_at)

        logger.info(
            f"[{full_name}] Synced {len(commits)} commits and {len(pull_requests)} pull requests "
            f"({commit_stars + pr_stars} stars, {len(failures)} failures)."
        )

        return CommitSyncResult(
            repository_id=repository.id,
            commits=commits,
            pull_requests=pull_requests,
            stars_written=commit_stars + pr_stars,
            failures=failures,
            synced_at=synced_at,
        )

    async def sync_universe(
            self,
            credential: str,
            force_sync: bool = False,
            relayout: bool = False,
            repository_ids: Optional[Sequence[int]] = None,
    ) -> UniverseSyncReport:
        """
        Syncs repositories, then commits and pull requests of each of them
        (or only of repository_ids) with a bounded number of concurrent repositories.

        Rate limiting and credential errors stop the run: they are re-raised once
        the running batch settles. Other errors are recorded per repository.
        """
        repositories = await self.sync_repositories(credential, relayout=relayout)
        errors: Dict[int, str] = {}
        targets = repositories

        if repository_ids is not None:
            wanted = set(repository_ids)
            targets = [repo for repo in repositories if repo.id in wanted]
            for missing in wanted - {repo.id for repo in targets}:
                errors[missing] = str(RepositoryNotFound(missing))

        results: Dict[int, CommitSyncResult] = {}
        pending: Deque[RepositoryRecord] = deque(targets)

        logger.info(f"Starting commit sync for {len(targets)} repositories.")

        while pending:
            # Launch up to max_concurrent_repositories workers at once
            batch: List[RepositoryRecord] = []
            while pending and len(batch) < self.max_concurrent_repositories:
                batch.append(pending.popleft())

            outcomes = await asyncio.gather(
                *(self.sync_commits_and_prs(repo.id, credential, force_sync) for repo in batch),
                return_exceptions=True,
            )

            fatal: Optional[BaseException] = None
            for repo, outcome in zip(batch, outcomes):
                if isinstance(outcome, CommitSyncResult):
                    results[repo.id] = outcome
                elif isinstance(outcome, (RateLimited, InvalidCredential)):
                    errors[repo.id] = str(outcome)
                    fatal = fatal or outcome
                elif isinstance(outcome, GalaxyException):
                    logger.error(f"Failed to sync {repo.owner}/{repo.name}: {outcome}")
                    errors[repo.id] = str(outcome)
                else:
                    raise outcome

            if fatal is not None:
                logger.warning(f"Stopping sync with {len(pending)} repositories left: {fatal}")
                raise fatal

        logger.info(f"Commit sync completed. {len(results)} synced, {len(errors)} failed.")
        return UniverseSyncReport(repositories=repositories, results=results, errors=errors)

    async def _sync_commits(
            self, repository: RepositoryRecord, center: GalaxyCoordinates, raw_commits: List[Any]
    ) -> Tuple[List[CommitRecord], int, List[SyncFailure]]:
        failures: List[SyncFailure] = []
        parsed: List[CommitRecord] = []
        for raw_commit in raw_commits:
            try:
                parsed.append(GitHubTranslator.to_commit(raw_commit, repository.id))
            except (ValueError, AttributeError) as e:
                failures.append(_failure(StarKind.COMMIT, _raw_key(raw_commit, 'sha'), e))

        bounds = time_bounds(commit.authored_at for commit in parsed)
        stored: List[CommitRecord] = []
        stars = 0

        for commit in parsed:
            try:
                stored.append(await self.store.upsert_commit(commit))
                ratio = age_ratio(commit.authored_at, *bounds)
                placement = self.layout_engine.place_commit(center, repository.id, commit.sha, commit.message, ratio)
                await self.store.upsert_star(Star(
                    kind=StarKind.COMMIT,
                    repository_id=repository.id,
                    entity_id=commit.sha,
                    x=placement.coordinates.x,
                    y=placement.coordinates.y,
                    z=placement.coordinates.z,
                    size=placement.size,
                    color=placement.color,
                    commit_sha=commit.sha,
                ))
                stars += 1
            except DatabaseException as e:
                failures.append(_failure(StarKind.COMMIT, commit.sha, e))

        return stored, stars, failures

    async def _sync_pull_requests(
            self, repository: RepositoryRecord, center: GalaxyCoordinates, raw_pulls: List[Any]
    ) -> Tuple[List[PullRequestRecord], int, List[SyncFailure]]:
        failures: List[SyncFailure] = []
        parsed: List[PullRequestRecord] = []
        for raw_pull in raw_pulls:
            try:
                parsed.append(GitHubTranslator.to_pull_request(raw_pull, repository.id))
            except (ValueError, AttributeError) as e:
                failures.append(_failure(StarKind.PR, _raw_key(raw_pull, 'id'), e))

        bounds = time_bounds(pull.created_at for pull in parsed)
        stored: List[PullRequestRecord] = []
        stars = 0

        for pull in parsed:
            try:
                stored.append(await self.store.upsert_pull_request(pull))
                ratio = age_ratio(pull.created_at, *bounds)
                placement = self.layout_engine.place_pull_request(center, pull.id, ratio)
                await self.store.upsert_star(Star(
                    kind=StarKind.PR,
                    repository_id=repository.id,
                    entity_id=str(pull.id),
                    x=placement.coordinates.x,
                    y=placement.coordinates.y,
                    z=placement.coordinates.z,
                    size=placement.size,
                    color=placement.color,
                    pull_request_id=pull.id,
                ))
                stars += 1
            except DatabaseException as e:
                failures.append(_failure(StarKind.PR, str(pull.id), e))

        return stored, stars, failures


def _raw_key(raw: Any, field: str) -> str:
    if isinstance(raw, dict) and raw.get(field) is not None:
        return str(raw[field])
    return '?'


def _failure(kind: StarKind, entity_id: str, error: Exception) -> SyncFailure:
    logger.error(f"Failed to store {kind.value} {entity_id}: {error}")
    return SyncFailure(kind=kind, entity_id=entity_id, reason=str(error))
