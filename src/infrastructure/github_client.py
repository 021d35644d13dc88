import aiohttp
import asyncio
import logging
import re
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import quote, urlsplit

from cachetools import TTLCache

from src.domain.exceptions import (
    GitHubClientError,
    InvalidCredential,
    PermissionDenied,
    RateLimited,
    ResourceNotFound,
    UpstreamError,
)

logger = logging.getLogger(__name__)

API_BASE_URL = "https://api.github.com"

LIST_CACHE_TTL = 300  # seconds
RESOURCE_CACHE_TTL = 60
CACHE_MAX_ENTRIES = 1024
# Cooldown applied when GitHub does not say when the limit resets
RATE_LIMIT_COOLDOWN = 60
REQUEST_TIMEOUT_SECONDS = 30
CONNECTOR_LIMIT = 10

REPOSITORY_PAGE_SIZE = 100
COMMIT_PAGE_SIZE = 30
PULL_REQUEST_PAGE_SIZE = 30

# GitHub answers 409 when listing commits of an empty repository
EMPTY_REPOSITORY_STATUS = 409

_LIST_PATHS = (
    re.compile(r"^/user/repos$"),
    re.compile(r"^/users/[^/]+/repos$"),
    re.compile(r"^/repos/[^/]+/[^/]+/(commits|pulls)$"),
)
_RESOURCE_PATHS = (
    re.compile(r"^/user$"),
    re.compile(r"^/users/[^/]+$"),
    re.compile(r"^/repos/[^/]+/[^/]+$"),
)

_MISSING = object()


class EndpointKind(str, Enum):
    LIST = "list"
    RESOURCE = "resource"
    UNCACHED = "uncached"


def classify_endpoint(url: str) -> EndpointKind:
    """Decides which cache (if any) a GitHub REST URL belongs to."""
    path = urlsplit(url).path.rstrip("/")
    if any(pattern.match(path) for pattern in _LIST_PATHS):
        return EndpointKind.LIST
    if any(pattern.match(path) for pattern in _RESOURCE_PATHS):
        return EndpointKind.RESOURCE
    return EndpointKind.UNCACHED


def _parse_seconds(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class GitHubRestClient:
    """
    Client for the GitHub REST API.
    Caches list and single-resource responses per credential, tracks a rate-limit
    cooldown per credential and classifies every failure into a typed error.

    Cache and cooldown state belong to the instance; build one client at startup
    and share it between sync requests.
    """

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        base_url: str = API_BASE_URL,
        list_ttl: float = LIST_CACHE_TTL,
        resource_ttl: float = RESOURCE_CACHE_TTL,
        cooldown_seconds: float = RATE_LIMIT_COOLDOWN,
        request_timeout: float = REQUEST_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.base_url = base_url.rstrip("/")
        self.cooldown_seconds = cooldown_seconds
        self.timeout = aiohttp.ClientTimeout(total=request_timeout, connect=min(10, request_timeout))
        self._session = session
        self._owns_session = session is None
        self._clock = clock
        self._caches: Dict[EndpointKind, TTLCache] = {
            EndpointKind.LIST: TTLCache(maxsize=CACHE_MAX_ENTRIES, ttl=list_ttl, timer=clock),
            EndpointKind.RESOURCE: TTLCache(maxsize=CACHE_MAX_ENTRIES, ttl=resource_ttl, timer=clock),
        }
        self._cooldown_until: Dict[str, float] = {}
        self._lock = asyncio.Lock()
        # One fetch per (credential, url) at a time; waiters then read the cache.
        self._fetch_locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._fetch_waiters: Dict[Tuple[str, str], int] = {}

    async def __aenter__(self) -> "GitHubRestClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        await self.close()
        return False

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    @staticmethod
    def headers(credential: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {credential}",
            "Accept": "application/vnd.github+json",
            "User-Agent": "galaxy-sync",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    def resolve(self, url: str) -> str:
        if url.startswith("http://") or url.startswith("https://"):
            return url
        return f"{self.base_url}/{url.lstrip('/')}"

    def cooldown_remaining(self, credential: str) -> float:
        """Seconds left before requests for this credential reach the network again."""
        until = self._cooldown_until.get(credential)
        if until is None:
            return 0.0
        return max(until - self._clock(), 0.0)

    async def get(self, url: str, credential: str) -> Any:
        """
        Fetches a GitHub REST resource as parsed JSON.

        Raises:
            RateLimited: The credential is cooling down (no request is sent) or GitHub reported exhaustion.
            InvalidCredential, PermissionDenied, ResourceNotFound, UpstreamError: Classified failures.
        """
        url = self.resolve(url)
        kind = classify_endpoint(url)
        key: Tuple[str, str] = (credential, url)

        async with self._lock:
            self._check_cooldown(credential, url)
            cached = self._cached(kind, key, url)
            if cached is not _MISSING:
                return cached
            fetch_lock = self._fetch_locks.setdefault(key, asyncio.Lock())
            self._fetch_waiters[key] = self._fetch_waiters.get(key, 0) + 1

        try:
            async with fetch_lock:
                async with self._lock:
                    self._check_cooldown(credential, url)
                    cached = self._cached(kind, key, url)
                    if cached is not _MISSING:
                        return cached

                data = await self._fetch(url, credential)

                if kind in self._caches:
                    async with self._lock:
                        self._caches[kind][key] = data

                return data
        finally:
            self._fetch_waiters[key] -= 1
            if not self._fetch_waiters[key]:
                del self._fetch_waiters[key]
                del self._fetch_locks[key]

    def _cached(self, kind: EndpointKind, key: Tuple[str, str], url: str) -> Any:
        cache = self._caches.get(kind)
        if cache is None:
            return _MISSING
        cached = cache.get(key, _MISSING)
        if cached is not _MISSING:
            logger.debug(f"Cache hit for {url}.")
        return cached

    def _check_cooldown(self, credential: str, url: str) -> None:
        until = self._cooldown_until.get(credential)
        if until is None:
            return
        now = self._clock()
        if now < until:
            logger.warning(f"Rate limit cooldown active for {until - now:.0f}s more. Skipping {url}.")
            raise RateLimited(retry_after=until - now, reset_at=until, url=url)
        del self._cooldown_until[credential]

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(connector=aiohttp.TCPConnector(limit=CONNECTOR_LIMIT))
            self._owns_session = True
        return self._session

    async def _fetch(self, url: str, credential: str) -> Any:
        session = self._get_session()
        try:
            async with session.get(url, headers=self.headers(credential), timeout=self.timeout) as response:
                if response.status >= 400:
                    raise await self._classify(response, credential, url)
                return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Request to {url} failed: {e!r}")
            raise UpstreamError(url=url, detail=str(e)) from e

    async def _classify(self, response: aiohttp.ClientResponse, credential: str, url: str) -> GitHubClientError:
        status = response.status

        if status == 401:
            return InvalidCredential(url)

        if status in (403, 429):
            headers = response.headers
            exhausted = headers.get("X-RateLimit-Remaining") == "0"
            retry_after = headers.get("Retry-After")
            if exhausted or retry_after is not None or status == 429:
                now = self._clock()
                until = self._cooldown_deadline(headers, now)
                async with self._lock:
                    self._cooldown_until[credential] = max(until, self._cooldown_until.get(credential, until))
                logger.warning(f"GitHub rate limit hit ({status}) for {url}. Cooling down for {until - now:.0f}s.")
                return RateLimited(retry_after=until - now, reset_at=until, status=status, url=url)
            return PermissionDenied(url)

        if status == 404:
            return ResourceNotFound(url)

        return UpstreamError(status=status, url=url)

    def _cooldown_deadline(self, headers: Mapping[str, str], now: float) -> float:
        if headers.get("X-RateLimit-Remaining") == "0":
            reset_at = _parse_seconds(headers.get("X-RateLimit-Reset"))
            if reset_at is not None and reset_at > now:
                return reset_at
        retry_after = _parse_seconds(headers.get("Retry-After"))
        if retry_after is not None:
            return now + retry_after
        return now + self.cooldown_seconds

    async def get_authenticated_user(self, credential: str) -> Dict[str, Any]:
        return await self.get("/user", credential)

    async def list_repositories(self, credential: str) -> List[Dict[str, Any]]:
        data = await self.get(f"/user/repos?sort=updated&per_page={REPOSITORY_PAGE_SIZE}", credential)
        return data if isinstance(data, list) else []

    async def list_commits(self, owner: str, repo: str, credential: str) -> List[Dict[str, Any]]:
        """Most recent page of commits; an empty repository yields an empty list."""
        url = f"/repos/{quote(owner)}/{quote(repo)}/commits?per_page={COMMIT_PAGE_SIZE}"
        try:
            data = await self.get(url, credential)
        except UpstreamError as e:
            if e.status != EMPTY_REPOSITORY_STATUS:
                raise
            logger.info(f"Repository {owner}/{repo} is empty.")
            return []
        return data if isinstance(data, list) else []

    async def list_pull_requests(self, owner: str, repo: str, credential: str) -> List[Dict[str, Any]]:
        url = f"/repos/{quote(owner)}/{quote(repo)}/pulls?state=all&per_page={PULL_REQUEST_PAGE_SIZE}"
        data = await self.get(url, credential)
        return data if isinstance(data, list) else []
