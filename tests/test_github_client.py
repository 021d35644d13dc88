import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock

import aiohttp

from src.domain.exceptions import (
    GitHubErrorKind,
    InvalidCredential,
    PermissionDenied,
    RateLimited,
    ResourceNotFound,
    UpstreamError,
)
from src.infrastructure.github_client import EndpointKind, GitHubRestClient, classify_endpoint

REPOS_URL = "/user/repos?sort=updated&per_page=100"


class _FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _response(status: int, payload=None, headers=None):
    resp = AsyncMock()
    resp.status = status
    resp.headers = headers or {}
    resp.json = AsyncMock(return_value=payload)
    resp.__aenter__ = AsyncMock(return_value=resp)
    resp.__aexit__ = AsyncMock(return_value=False)
    return resp


def _session(*responses):
    session = AsyncMock()
    session.get = MagicMock(side_effect=list(responses))
    return session


class TestGitHubRestClientHeaders(unittest.TestCase):
    def test_headers_are_dict(self) -> None:
        headers = GitHubRestClient.headers("test-token")

        self.assertIsInstance(headers, dict)
        self.assertEqual(headers["Authorization"], "Bearer test-token")

    def test_headers_include_user_agent(self) -> None:
        headers = GitHubRestClient.headers("t")
        self.assertIn("User-Agent", headers)
        self.assertIn("Accept", headers)

    def test_relative_urls_are_resolved(self) -> None:
        client = GitHubRestClient(session=MagicMock())

        self.assertEqual(client.resolve("/user"), "https://api.github.com/user")
        self.assertEqual(client.resolve("https://example.com/x"), "https://example.com/x")


class TestClassifyEndpoint(unittest.TestCase):
    def test_list_endpoints(self) -> None:
        self.assertEqual(classify_endpoint("https://api.github.com/user/repos?per_page=100"), EndpointKind.LIST)
        self.assertEqual(classify_endpoint("https://api.github.com/repos/o/r/commits?per_page=30"), EndpointKind.LIST)
        self.assertEqual(classify_endpoint("https://api.github.com/repos/o/r/pulls"), EndpointKind.LIST)

    def test_resource_endpoints(self) -> None:
        self.assertEqual(classify_endpoint("https://api.github.com/user"), EndpointKind.RESOURCE)
        self.assertEqual(classify_endpoint("https://api.github.com/repos/o/r"), EndpointKind.RESOURCE)

    def test_other_endpoints_are_uncached(self) -> None:
        self.assertEqual(classify_endpoint("https://api.github.com/rate_limit"), EndpointKind.UNCACHED)
        self.assertEqual(classify_endpoint("https://api.github.com/repos/o/r/issues"), EndpointKind.UNCACHED)


class TestResponseCache(unittest.IsolatedAsyncioTestCase):
    async def test_second_call_within_ttl_hits_cache(self) -> None:
        clock = _FakeClock()
        session = _session(_response(200, [{"id": 1}]))
        client = GitHubRestClient(session=session, clock=clock)

        first = await client.get(REPOS_URL, "token")
        clock.now += 299
        second = await client.get(REPOS_URL, "token")

        self.assertEqual(first, [{"id": 1}])
        self.assertEqual(second, first)
        self.assertEqual(session.get.call_count, 1)

    async def test_call_after_ttl_goes_to_network(self) -> None:
        clock = _FakeClock()
        session = _session(_response(200, [{"id": 1}]), _response(200, [{"id": 2}]))
        client = GitHubRestClient(session=session, clock=clock)

        await client.get(REPOS_URL, "token")
        clock.now += 301
        refreshed = await client.get(REPOS_URL, "token")

        self.assertEqual(refreshed, [{"id": 2}])
        self.assertEqual(session.get.call_count, 2)

    async def test_single_resource_ttl_is_shorter(self) -> None:
        clock = _FakeClock()
        session = _session(_response(200, {"login": "a"}), _response(200, {"login": "b"}))
        client = GitHubRestClient(session=session, clock=clock)

        await client.get("/user", "token")
        clock.now += 30
        cached = await client.get("/user", "token")
        clock.now += 31
        refreshed = await client.get("/user", "token")

        self.assertEqual(cached, {"login": "a"})
        self.assertEqual(refreshed, {"login": "b"})
        self.assertEqual(session.get.call_count, 2)

    async def test_uncached_endpoint_always_fetches(self) -> None:
        session = _session(_response(200, {}), _response(200, {}))
        client = GitHubRestClient(session=session, clock=_FakeClock())

        await client.get("/rate_limit", "token")
        await client.get("/rate_limit", "token")

        self.assertEqual(session.get.call_count, 2)

    async def test_cache_is_keyed_by_credential(self) -> None:
        session = _session(_response(200, [{"id": 1}]), _response(200, [{"id": 9}]))
        client = GitHubRestClient(session=session, clock=_FakeClock())

        await client.get(REPOS_URL, "token-a")
        other = await client.get(REPOS_URL, "token-b")

        self.assertEqual(other, [{"id": 9}])
        self.assertEqual(session.get.call_count, 2)

    async def test_concurrent_misses_share_one_fetch(self) -> None:
        async def _slow_json():
            await asyncio.sleep(0.01)
            return [{"id": 1}]

        resp = _response(200)
        resp.json = AsyncMock(side_effect=_slow_json)
        session = _session(resp, _response(200, [{"id": 2}]))
        client = GitHubRestClient(session=session, clock=_FakeClock())

        first, second = await asyncio.gather(
            client.get(REPOS_URL, "token"),
            client.get(REPOS_URL, "token"),
        )

        self.assertEqual(first, [{"id": 1}])
        self.assertEqual(second, [{"id": 1}])
        self.assertEqual(session.get.call_count, 1)

    async def test_concurrent_misses_after_failure_retry(self) -> None:
        session = _session(_response(502), _response(200, {"id": 1}))
        client = GitHubRestClient(session=session, clock=_FakeClock())

        outcomes = await asyncio.gather(
            client.get("/repos/o/r", "token"),
            client.get("/repos/o/r", "token"),
            return_exceptions=True,
        )

        self.assertIsInstance(outcomes[0], UpstreamError)
        self.assertEqual(outcomes[1], {"id": 1})
        self.assertEqual(session.get.call_count, 2)

    async def test_bearer_header_and_timeout_are_sent(self) -> None:
        session = _session(_response(200, {"login": "a"}))
        client = GitHubRestClient(session=session, clock=_FakeClock(), request_timeout=5)

        await client.get("/user", "secret")

        _, kwargs = session.get.call_args
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer secret")
        self.assertEqual(kwargs["timeout"].total, 5)


class TestRateLimitCooldown(unittest.IsolatedAsyncioTestCase):
    async def test_exhausted_limit_short_circuits_until_reset(self) -> None:
        clock = _FakeClock()
        reset_at = clock.now + 120
        session = _session(
            _response(403, headers={"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": str(int(reset_at))}),
            _response(200, {"login": "octocat"}),
        )
        client = GitHubRestClient(session=session, clock=clock)

        with self.assertRaises(RateLimited) as first:
            await client.get("/user", "token")
        self.assertEqual(first.exception.kind, GitHubErrorKind.RATE_LIMITED)
        self.assertAlmostEqual(first.exception.retry_after, 120)

        clock.now += 60
        with self.assertRaises(RateLimited) as second:
            await client.get(REPOS_URL, "token")
        self.assertAlmostEqual(second.exception.retry_after, 60)
        self.assertEqual(session.get.call_count, 1)

        clock.now += 61
        data = await client.get("/user", "token")
        self.assertEqual(data, {"login": "octocat"})
        self.assertEqual(session.get.call_count, 2)

    async def test_cooldown_is_per_credential(self) -> None:
        session = _session(
            _response(403, headers={"X-RateLimit-Remaining": "0"}),
            _response(200, {"login": "other"}),
        )
        client = GitHubRestClient(session=session, clock=_FakeClock())

        with self.assertRaises(RateLimited):
            await client.get("/user", "token-a")
        data = await client.get("/user", "token-b")

        self.assertEqual(data, {"login": "other"})
        self.assertGreater(client.cooldown_remaining("token-a"), 0)
        self.assertEqual(client.cooldown_remaining("token-b"), 0)

    async def test_missing_reset_header_uses_fallback_window(self) -> None:
        session = _session(_response(429, headers={"X-RateLimit-Remaining": "0"}))
        client = GitHubRestClient(session=session, clock=_FakeClock(), cooldown_seconds=45)

        with self.assertRaises(RateLimited) as ctx:
            await client.get("/user", "token")

        self.assertAlmostEqual(ctx.exception.retry_after, 45)
        self.assertAlmostEqual(client.cooldown_remaining("token"), 45)

    async def test_secondary_limit_respects_retry_after(self) -> None:
        session = _session(_response(403, headers={"Retry-After": "30"}))
        client = GitHubRestClient(session=session, clock=_FakeClock())

        with self.assertRaises(RateLimited) as ctx:
            await client.get("/user", "token")

        self.assertAlmostEqual(ctx.exception.retry_after, 30)


class TestErrorClassification(unittest.IsolatedAsyncioTestCase):
    async def _assert_raises(self, status: int, error_type, headers=None):
        session = _session(_response(status, headers=headers))
        client = GitHubRestClient(session=session, clock=_FakeClock())

        with self.assertRaises(error_type) as ctx:
            await client.get("/repos/o/r", "token")
        return ctx.exception, client

    async def test_401_is_invalid_credential(self) -> None:
        error, _ = await self._assert_raises(401, InvalidCredential)
        self.assertEqual(error.kind, GitHubErrorKind.INVALID_CREDENTIAL)

    async def test_403_with_remaining_quota_is_permission_denied(self) -> None:
        error, client = await self._assert_raises(403, PermissionDenied, headers={"X-RateLimit-Remaining": "12"})
        self.assertEqual(error.status, 403)
        self.assertEqual(client.cooldown_remaining("token"), 0)

    async def test_404_is_not_found(self) -> None:
        error, _ = await self._assert_raises(404, ResourceNotFound)
        self.assertEqual(error.kind, GitHubErrorKind.NOT_FOUND)

    async def test_other_status_is_upstream_error(self) -> None:
        error, _ = await self._assert_raises(502, UpstreamError)
        self.assertEqual(error.status, 502)

    async def test_errors_are_not_cached(self) -> None:
        session = _session(_response(500), _response(200, {"id": 1}))
        client = GitHubRestClient(session=session, clock=_FakeClock())

        with self.assertRaises(UpstreamError):
            await client.get("/repos/o/r", "token")
        data = await client.get("/repos/o/r", "token")

        self.assertEqual(data, {"id": 1})

    async def test_transport_failure_is_upstream_error_without_status(self) -> None:
        session = AsyncMock()
        session.get = MagicMock(side_effect=aiohttp.ClientConnectionError("connection reset"))
        client = GitHubRestClient(session=session, clock=_FakeClock())

        with self.assertRaises(UpstreamError) as ctx:
            await client.get("/user", "token")

        self.assertIsNone(ctx.exception.status)


class TestTypedHelpers(unittest.IsolatedAsyncioTestCase):
    async def test_empty_repository_has_no_commits(self) -> None:
        session = _session(_response(409))
        client = GitHubRestClient(session=session, clock=_FakeClock())

        commits = await client.list_commits("octocat", "empty", "token")

        self.assertEqual(commits, [])
        url = session.get.call_args[0][0]
        self.assertEqual(url, "https://api.github.com/repos/octocat/empty/commits?per_page=30")

    async def test_pull_requests_include_closed_ones(self) -> None:
        session = _session(_response(200, [{"id": 5}]))
        client = GitHubRestClient(session=session, clock=_FakeClock())

        pulls = await client.list_pull_requests("octocat", "hello", "token")

        self.assertEqual(pulls, [{"id": 5}])
        self.assertIn("state=all", session.get.call_args[0][0])

    async def test_non_list_payload_yields_empty_list(self) -> None:
        session = _session(_response(200, {"message": "unexpected"}))
        client = GitHubRestClient(session=session, clock=_FakeClock())

        self.assertEqual(await client.list_repositories("token"), [])
