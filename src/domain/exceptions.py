from enum import Enum
from typing import Optional


class GalaxyException(Exception):
    """Base exception for all galaxy-sync errors."""
    pass


class GitHubErrorKind(str, Enum):
    INVALID_CREDENTIAL = "invalid_credential"
    PERMISSION_DENIED = "permission_denied"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    UPSTREAM = "upstream"


class GitHubClientError(GalaxyException):
    """A classified failure talking to the GitHub REST API."""
    kind: GitHubErrorKind = GitHubErrorKind.UPSTREAM

    def __init__(self, message: str, status: Optional[int] = None, url: Optional[str] = None):
        self.status = status
        self.url = url
        super().__init__(message)


class InvalidCredential(GitHubClientError):
    """The token was rejected (HTTP 401). Not retryable."""
    kind = GitHubErrorKind.INVALID_CREDENTIAL

    def __init__(self, url: Optional[str] = None):
        super().__init__("GitHub token is invalid.", status=401, url=url)


class PermissionDenied(GitHubClientError):
    """The token lacks the scope required for the resource (HTTP 403)."""
    kind = GitHubErrorKind.PERMISSION_DENIED

    def __init__(self, url: Optional[str] = None):
        super().__init__("GitHub access denied. Check token scopes.", status=403, url=url)


class RateLimited(GitHubClientError):
    """Raised when the GitHub rate limit is exhausted or a cooldown is active."""
    kind = GitHubErrorKind.RATE_LIMITED

    def __init__(self, retry_after: float, reset_at: Optional[float] = None,
                 status: Optional[int] = None, url: Optional[str] = None):
        self.retry_after = max(retry_after, 0.0)
        self.reset_at = reset_at
        super().__init__(
            f"GitHub API rate limit exceeded. Retry after {self.retry_after:.0f}s.",
            status=status,
            url=url,
        )


class ResourceNotFound(GitHubClientError):
    """The resource does not exist or is private (HTTP 404)."""
    kind = GitHubErrorKind.NOT_FOUND

    def __init__(self, url: Optional[str] = None):
        super().__init__("GitHub resource not found or private.", status=404, url=url)


class UpstreamError(GitHubClientError):
    """Any other upstream failure; status is None for transport errors and timeouts."""
    kind = GitHubErrorKind.UPSTREAM

    def __init__(self, status: Optional[int] = None, url: Optional[str] = None, detail: str = ""):
        message = f"GitHub API error (status={status})."
        if detail:
            message = f"{message} {detail}"
        super().__init__(message, status=status, url=url)


class RepositoryNotFound(GalaxyException):
    """Raised when a repository is not known to the store."""
    def __init__(self, repository_id: int):
        self.repository_id = repository_id
        super().__init__(f"Repository {repository_id} has not been synced.")


class DatabaseException(GalaxyException):
    """Raised when a database operation fails."""
    pass


class ConfigurationError(GalaxyException):
    """Raised when required settings are missing or invalid."""
    pass
