from datetime import datetime
from typing import Any, Dict, Optional
from src.domain.models import CommitRecord, GitHubAccount, PullRequestRecord, RepositoryRecord


def parse_timestamp(raw_date: Optional[str], field: str) -> datetime:
    if not raw_date:
        raise ValueError(f"{field} is required.")
    return datetime.fromisoformat(raw_date.replace("Z", "+00:00"))


class GitHubTranslator:
    """
    Anti-corruption layer that translates raw GitHub REST JSON payloads into domain records.
    """

    @staticmethod
    def to_account(raw_user: Dict[str, Any]) -> GitHubAccount:
        """
        Transforms the /user payload into a GitHubAccount.

        Args:
            raw_user (Dict[str, Any]): The raw JSON body of GET /user.

        Returns:
            GitHubAccount: The authenticated account.
        """
        if raw_user.get('id') is None or not raw_user.get('login'):
            raise ValueError("id and login are required to build GitHubAccount.")

        return GitHubAccount(
            id=raw_user['id'],
            login=raw_user['login'],
            name=raw_user.get('name'),
            avatar_url=raw_user.get('avatar_url'),
            public_repos=raw_user.get('public_repos') or 0,
        )

    @staticmethod
    def to_repository(raw_repo: Dict[str, Any], account_id: int) -> RepositoryRecord:
        """
        Transforms one entry of GET /user/repos into a RepositoryRecord without coordinates.

        Args:
            raw_repo (Dict[str, Any]): The raw repository JSON.
            account_id (int): GitHub id of the account whose galaxy this repository joins.

        Returns:
            RepositoryRecord: The domain record; galaxy and last_synced_at are left unset.
        """
        owner_data = raw_repo.get('owner') or {}
        if raw_repo.get('id') is None:
            raise ValueError("id is required to build RepositoryRecord.")

        created_at = parse_timestamp(raw_repo.get('created_at'), 'created_at')
        updated_at = parse_timestamp(
            raw_repo.get('updated_at') or raw_repo.get('pushed_at') or raw_repo.get('created_at'),
            'updated_at',
        )

        return RepositoryRecord(
            id=raw_repo['id'],
            name=raw_repo.get('name', ''),
            owner=owner_data.get('login', ''),
            account_id=account_id,
            created_at=created_at,
            updated_at=updated_at,
        )

    @staticmethod
    def to_commit(raw_commit: Dict[str, Any], repository_id: int) -> CommitRecord:
        """Transforms one entry of GET /repos/{owner}/{repo}/commits into a CommitRecord."""
        commit_data = raw_commit.get('commit') or {}
        author_data = commit_data.get('author') or {}
        committer_data = commit_data.get('committer') or {}

        return CommitRecord(
            sha=raw_commit.get('sha', ''),
            repository_id=repository_id,
            message=commit_data.get('message') or '',
            authored_at=parse_timestamp(author_data.get('date') or committer_data.get('date'), 'commit.author.date'),
        )

    @staticmethod
    def to_pull_request(raw_pull: Dict[str, Any], repository_id: int) -> PullRequestRecord:
        """Transforms one entry of GET /repos/{owner}/{repo}/pulls into a PullRequestRecord."""
        if raw_pull.get('id') is None:
            raise ValueError("id is required to build PullRequestRecord.")

        return PullRequestRecord(
            id=raw_pull['id'],
            repository_id=repository_id,
            number=raw_pull.get('number'),
            title=raw_pull.get('title'),
            url=raw_pull.get('html_url'),
            created_at=parse_timestamp(raw_pull.get('created_at'), 'created_at'),
        )
