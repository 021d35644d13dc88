from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

from src.domain.commit_types import classify_commit

MIN_COORDINATE = 0.02
MAX_COORDINATE = 0.98


class StarKind(str, Enum):
    COMMIT = "COMMIT"
    PR = "PR"


class GitHubAccount(BaseModel):
    """The authenticated GitHub account that owns a galaxy."""
    model_config = ConfigDict(frozen=True)

    id: int = Field(..., description="Numeric GitHub user id")
    login: str = Field(..., description="Login handle of the account")
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    public_repos: int = Field(0, ge=0)


class GalaxyCoordinates(BaseModel):
    """Placement of a repository inside the universe, in normalized space."""
    model_config = ConfigDict(frozen=True)

    x: float = Field(..., ge=MIN_COORDINATE, le=MAX_COORDINATE)
    y: float = Field(..., ge=MIN_COORDINATE, le=MAX_COORDINATE)
    z: float = Field(..., ge=MIN_COORDINATE, le=MAX_COORDINATE)
    size: float = Field(..., gt=0)


class StarCoordinates(BaseModel):
    """Placement of a single commit or pull request around its galaxy centre."""
    model_config = ConfigDict(frozen=True)

    x: float = Field(..., ge=MIN_COORDINATE, le=MAX_COORDINATE)
    y: float = Field(..., ge=MIN_COORDINATE, le=MAX_COORDINATE)
    z: float = Field(..., ge=MIN_COORDINATE, le=MAX_COORDINATE)


class RepositoryRecord(BaseModel):
    """
    Immutable domain model representing a GitHub repository and its galaxy.
    Coordinates are assigned once and kept across syncs.
    """
    model_config = ConfigDict(frozen=True)

    id: int = Field(..., description="Numeric GitHub repository id (stable)")
    name: str = Field(..., description="Name of the repository")
    owner: str = Field(..., description="Login of the repository owner, used to build API paths")
    account_id: int = Field(..., description="GitHub id of the account the galaxy belongs to")
    created_at: datetime
    updated_at: datetime = Field(..., description="Timestamp of the last activity")
    last_synced_at: Optional[datetime] = None
    galaxy: Optional[GalaxyCoordinates] = None


class CommitRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    sha: str = Field(..., min_length=1)
    repository_id: int
    message: str = ""
    authored_at: datetime

    @computed_field
    @property
    def commit_type(self) -> str:
        return classify_commit(self.message)


class PullRequestRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    repository_id: int
    number: Optional[int] = None
    title: Optional[str] = None
    url: Optional[str] = None
    created_at: datetime


class Star(BaseModel):
    """
    Visual placement of one commit or pull request.
    Exactly one of commit_sha / pull_request_id is set, matching the kind.
    """
    model_config = ConfigDict(frozen=True)

    kind: StarKind
    repository_id: int
    entity_id: str = Field(..., description="Commit sha or pull request id")
    x: float = Field(..., ge=MIN_COORDINATE, le=MAX_COORDINATE)
    y: float = Field(..., ge=MIN_COORDINATE, le=MAX_COORDINATE)
    z: float = Field(..., ge=MIN_COORDINATE, le=MAX_COORDINATE)
    size: float = Field(..., gt=0)
    color: str
    commit_sha: Optional[str] = None
    pull_request_id: Optional[int] = None

    @model_validator(mode="after")
    def _check_reference(self) -> "Star":
        if self.kind is StarKind.COMMIT:
            if self.commit_sha is None or self.pull_request_id is not None:
                raise ValueError("COMMIT stars reference exactly one commit.")
        elif self.pull_request_id is None or self.commit_sha is not None:
            raise ValueError("PR stars reference exactly one pull request.")
        return self

    @property
    def key(self) -> tuple:
        return (self.repository_id, self.kind, self.entity_id)


class SyncFailure(BaseModel):
    """An item that could not be stored during a sync pass."""
    model_config = ConfigDict(frozen=True)

    kind: StarKind
    entity_id: str
    reason: str


class CommitSyncResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    repository_id: int
    commits: List[CommitRecord] = Field(default_factory=list)
    pull_requests: List[PullRequestRecord] = Field(default_factory=list)
    stars_written: int = 0
    failures: List[SyncFailure] = Field(default_factory=list)
    from_store: bool = Field(False, description="True when served from persisted state without calling GitHub")
    synced_at: Optional[datetime] = None


class UniverseSyncReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    repositories: List[RepositoryRecord] = Field(default_factory=list)
    results: Dict[int, CommitSyncResult] = Field(default_factory=dict)
    errors: Dict[int, str] = Field(default_factory=dict)


class GalaxyStar(BaseModel):
    """A stored star joined with the commit or pull request it stands for."""
    model_config = ConfigDict(frozen=True)

    star: Star
    commit: Optional[CommitRecord] = None
    pull_request: Optional[PullRequestRecord] = None


class GalaxyView(BaseModel):
    """Stars of one repository, newest first, with per-kind counts."""
    model_config = ConfigDict(frozen=True)

    repository_id: int
    name: str
    stars: List[GalaxyStar] = Field(default_factory=list)
    commit_count: int = 0
    pull_request_count: int = 0


class GalaxySummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    repository_id: int
    name: str
    commit_count: int = 0


class UniverseSummary(BaseModel):
    """Commit counts per repository of an account, most recently updated repository first."""
    model_config = ConfigDict(frozen=True)

    galaxies: List[GalaxySummary] = Field(default_factory=list)
    total_commits: int = 0
    last_synced_at: Optional[datetime] = None
