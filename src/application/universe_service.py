import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional, Union

from src.domain.exceptions import RepositoryNotFound
from src.domain.models import GalaxySummary, GalaxyView, StarKind, UniverseSummary
from src.domain.store import GalaxyStore

logger = logging.getLogger(__name__)

DEFAULT_STAR_KINDS = (StarKind.COMMIT,)

_KIND_NAMES = {
    "commit": StarKind.COMMIT,
    "pr": StarKind.PR,
}

# "30d" or "30"
_RANGE_PATTERN = re.compile(r"^\s*(\d+)\s*d?\s*$", re.IGNORECASE)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_kinds(kinds: Union[None, str, Iterable[Union[str, StarKind]]]) -> List[StarKind]:
    """
    Parses requested star kinds, either "commit,pr" or an iterable of names / StarKind values.
    Unknown names are ignored; nothing recognised falls back to commit stars only.
    """
    if kinds is None:
        return list(DEFAULT_STAR_KINDS)
    if isinstance(kinds, str):
        kinds = kinds.split(',')

    parsed: List[StarKind] = []
    for kind in kinds:
        if isinstance(kind, StarKind):
            value = kind
        else:
            value = _KIND_NAMES.get(str(kind).strip().lower())
        if value is not None and value not in parsed:
            parsed.append(value)

    return parsed or list(DEFAULT_STAR_KINDS)


def parse_range(range_value: Optional[str], now: datetime) -> Optional[datetime]:
    """Turns a day range such as "30d" into the earliest instant it covers; unparseable ranges mean no bound."""
    if not range_value:
        return None
    match = _RANGE_PATTERN.match(range_value)
    if match is None:
        logger.debug(f"Ignoring unparseable range {range_value!r}.")
        return None
    return now - timedelta(days=int(match.group(1)))


def parse_instant(value: Union[None, str, datetime]) -> Optional[datetime]:
    """Parses an ISO-8601 bound; invalid values mean no bound and naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            logger.debug(f"Ignoring unparseable date bound {value!r}.")
            return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


class UniverseQueryService:
    """
    Read side over the persisted universe: per-account commit summaries and
    the stars of a single galaxy. Never calls GitHub.
    """

    def __init__(self, store: GalaxyStore, clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self._clock = clock

    async def summary(
            self,
            account_id: int,
            range_value: Optional[str] = None,
            kinds: Union[None, str, Iterable[Union[str, StarKind]]] = None,
    ) -> UniverseSummary:
        """
        Commit counts for every repository of the account, optionally limited to
        the last N days. The total is reported only when commit stars are requested.
        """
        repositories = await self.store.list_repositories(account_id)
        since = parse_range(range_value, self._clock())
        counts = await self.store.count_commits_by_repository([repo.id for repo in repositories], since)

        galaxies = [
            GalaxySummary(repository_id=repo.id, name=repo.name, commit_count=counts.get(repo.id, 0))
            for repo in repositories
        ]
        synced = [repo.last_synced_at for repo in repositories if repo.last_synced_at is not None]
        include_commits = StarKind.COMMIT in parse_kinds(kinds)

        return UniverseSummary(
            galaxies=galaxies,
            total_commits=sum(counts.values()) if include_commits else 0,
            last_synced_at=max(synced) if synced else None,
        )

    async def galaxy(
            self,
            account_id: int,
            repository_id: int,
            start: Union[None, str, datetime] = None,
            end: Union[None, str, datetime] = None,
            kinds: Union[None, str, Iterable[Union[str, StarKind]]] = None,
    ) -> GalaxyView:
        """
        Stars of one repository of the account, filtered by kind (commit stars by
        default) and by an inclusive date window.

        Raises:
            RepositoryNotFound: The repository is unknown or belongs to another account.
        """
        repository = await self.store.get_repository(repository_id)
        if repository is None or repository.account_id != account_id:
            raise RepositoryNotFound(repository_id)

        stars = await self.store.list_stars(
            repository.id,
            parse_kinds(kinds),
            start=parse_instant(start),
            end=parse_instant(end),
        )

        return GalaxyView(
            repository_id=repository.id,
            name=repository.name,
            stars=stars,
            commit_count=sum(1 for item in stars if item.star.kind is StarKind.COMMIT),
            pull_request_count=sum(1 for item in stars if item.star.kind is StarKind.PR),
        )
