"""Tests for the disposable domain cache."""

import hashlib
import json

import httpx
import pytest

from mailcheck.validation.disposable import (
    DISPOSABLE_LISTS,
    CacheState,
    DisposableDomainCache,
    combine_lists,
    get_domain,
)

GENERIC_URL = DISPOSABLE_LISTS["generic"]
MX_URL = DISPOSABLE_LISTS["with_mx"]
SHA1_URL = DISPOSABLE_LISTS["sha1"]


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeLists:
    """httpx transport serving canned list payloads and counting requests."""

    def __init__(self, payloads: dict[str, object] | None = None):
        self.payloads = payloads if payloads is not None else {
            GENERIC_URL: ["tempmail.com", "Mailinator.com"],
            MX_URL: ["guerrillamail.com", "tempmail.com"],
            SHA1_URL: [hashlib.sha1(b"hashed-only.net").hexdigest()],
        }
        self.requests: list[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        payload = self.payloads.get(url)
        if isinstance(payload, int):
            return httpx.Response(payload)
        if isinstance(payload, Exception):
            raise payload
        if isinstance(payload, str):
            return httpx.Response(200, text=payload)
        return httpx.Response(200, json=payload)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def lists():
    return FakeLists()


@pytest.fixture
def cache_path(tmp_path):
    return tmp_path / "cache" / "disposable.json"


def make_cache(lists, clock, cache_path=None, **kwargs):
    return DisposableDomainCache(
        cache_path=cache_path,
        clock=clock,
        transport=lists.transport,
        **kwargs,
    )


# =============================================================================
# Helpers
# =============================================================================


class TestHelpers:
    """Tests for combine_lists and get_domain."""

    def test_combine_lowercases_and_dedupes(self):
        combined = combine_lists([["A.com", "b.com"], ["a.com", " c.com "]])
        assert combined == frozenset({"a.com", "b.com", "c.com"})

    def test_combine_drops_non_strings(self):
        assert combine_lists([["a.com", 3, None, ""]]) == frozenset({"a.com"})

    def test_get_domain(self):
        assert get_domain("User@Example.COM") == "example.com"

    @pytest.mark.parametrize("address", ["no-at-sign", "a@b@c.com", "user@", None, 5])
    def test_get_domain_malformed(self, address):
        assert get_domain(address) is None


# =============================================================================
# Lookups
# =============================================================================


class TestIsDisposable:
    """Tests for DisposableDomainCache.is_disposable."""

    @pytest.mark.asyncio
    async def test_domain_from_any_list(self, lists, clock):
        """Domains from every list are matched, case-insensitively."""
        cache = make_cache(lists, clock)

        assert await cache.is_disposable("x@tempmail.com") is True
        assert await cache.is_disposable("x@MAILINATOR.com") is True
        assert await cache.is_disposable("x@guerrillamail.com") is True
        assert await cache.is_disposable("x@gmail.com") is False

    @pytest.mark.asyncio
    async def test_hashed_list_matches_by_digest(self, lists, clock):
        """Domains only published as SHA-1 hashes are still detected."""
        cache = make_cache(lists, clock)
        assert await cache.is_disposable("x@hashed-only.net") is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("address", ["tempmail.com", "a@b@tempmail.com", ""])
    async def test_malformed_address_is_not_disposable(self, lists, clock, address):
        """Addresses without exactly one '@' return False without a fetch."""
        cache = make_cache(lists, clock)
        assert await cache.is_disposable(address) is False
        assert lists.requests == []

    @pytest.mark.asyncio
    async def test_override_skips_network(self, lists, clock):
        """A configured override is used and nothing is fetched."""
        cache = make_cache(lists, clock, override=["tempmail.com"])

        assert await cache.is_disposable("user@tempmail.com") is True
        assert await cache.is_disposable("user@mailinator.com") is False
        clock.advance(10 * 24 * 3600)
        assert await cache.is_disposable("user@tempmail.com") is True
        assert lists.requests == []
        assert cache.state == CacheState.WARM


# =============================================================================
# Freshness
# =============================================================================


class TestFreshness:
    """Tests for TTL handling across the memory, disk and network tiers."""

    @pytest.mark.asyncio
    async def test_cold_cache_fetches_once(self, lists, clock):
        """Within the TTL the network is hit only for the first lookup."""
        cache = make_cache(lists, clock)
        assert cache.state == CacheState.COLD

        await cache.get_domains()
        await cache.get_domains()
        clock.advance(3600)
        await cache.get_domains()

        assert len(lists.requests) == 3  # one per list
        assert cache.state == CacheState.WARM

    @pytest.mark.asyncio
    async def test_refetches_after_ttl(self, lists, clock):
        """Once the TTL passes the next lookup refreshes."""
        cache = make_cache(lists, clock, ttl_seconds=60)
        await cache.get_domains()
        clock.advance(61)
        assert cache.state == CacheState.STALE

        await cache.get_domains()

        assert len(lists.requests) == 6
        assert cache.state == CacheState.WARM

    @pytest.mark.asyncio
    async def test_force_refresh_ignores_ttl(self, lists, clock):
        cache = make_cache(lists, clock)
        await cache.get_domains()
        await cache.force_refresh()
        assert len(lists.requests) == 6

    @pytest.mark.asyncio
    async def test_persists_and_reloads_from_disk(self, lists, clock, cache_path):
        """A fresh disk copy is used by a new process instead of the network."""
        first = make_cache(lists, clock, cache_path)
        await first.get_domains()
        assert cache_path.exists()

        saved = json.loads(cache_path.read_text())
        assert saved["fetched_at"] == clock.now
        assert set(saved["lists"]) == {"generic", "with_mx", "sha1"}

        second_lists = FakeLists()
        second = make_cache(second_lists, clock, cache_path)
        assert await second.is_disposable("x@tempmail.com") is True
        assert second_lists.requests == []
        assert second.fetched_at == first.fetched_at

    @pytest.mark.asyncio
    async def test_stale_disk_copy_is_ignored(self, lists, clock, cache_path):
        """A disk copy older than the TTL triggers a network refresh."""
        await make_cache(lists, clock, cache_path, ttl_seconds=60).get_domains()
        clock.advance(120)

        second_lists = FakeLists()
        second = make_cache(second_lists, clock, cache_path, ttl_seconds=60)
        await second.get_domains()

        assert len(second_lists.requests) == 3

    @pytest.mark.asyncio
    async def test_corrupt_disk_copy_is_ignored(self, lists, clock, cache_path):
        """Unreadable cache files fall through to the network."""
        cache_path.parent.mkdir(parents=True)
        cache_path.write_text("{not json")

        cache = make_cache(lists, clock, cache_path)
        assert await cache.is_disposable("x@tempmail.com") is True
        assert len(lists.requests) == 3

    @pytest.mark.asyncio
    async def test_malformed_disk_lists_are_ignored(self, lists, clock, cache_path):
        cache_path.parent.mkdir(parents=True)
        payload = {"fetched_at": clock.now, "lists": {"generic": "x"}}
        cache_path.write_text(json.dumps(payload))

        cache = make_cache(lists, clock, cache_path)
        await cache.get_domains()
        assert len(lists.requests) == 3


# =============================================================================
# Failure handling
# =============================================================================


class TestFetchFailures:
    """A failing source contributes nothing and never raises."""

    @pytest.mark.asyncio
    async def test_http_error_source_is_empty(self, clock):
        lists = FakeLists(
            {
                GENERIC_URL: 503,
                MX_URL: ["guerrillamail.com"],
                SHA1_URL: [],
            }
        )
        cache = make_cache(lists, clock)

        assert await cache.is_disposable("x@guerrillamail.com") is True
        assert await cache.is_disposable("x@tempmail.com") is False

    @pytest.mark.asyncio
    async def test_network_error_and_bad_payloads(self, clock):
        lists = FakeLists(
            {
                GENERIC_URL: httpx.ConnectError("boom"),
                MX_URL: "not json at all",
                SHA1_URL: {"not": "a list"},
            }
        )
        cache = make_cache(lists, clock)

        assert await cache.get_domains() == frozenset()
        assert await cache.is_disposable("x@tempmail.com") is False

    @pytest.mark.asyncio
    async def test_unwritable_cache_path_is_not_fatal(self, lists, clock, tmp_path):
        """Failing to persist the lists is logged, not raised."""
        blocker = tmp_path / "blocker"
        blocker.write_text("file, not a directory")

        cache = make_cache(lists, clock, blocker / "disposable.json")
        assert await cache.is_disposable("x@tempmail.com") is True

    @pytest.mark.asyncio
    async def test_all_lists_empty_keeps_previous_set(self, lists, clock, cache_path):
        """An outage on every source keeps the old set and its disk copy."""
        cache = make_cache(lists, clock, cache_path, ttl_seconds=60, retry_seconds=30)
        await cache.get_domains()
        saved = cache_path.read_text()

        lists.payloads = {GENERIC_URL: 503, MX_URL: 503, SHA1_URL: 503}
        clock.advance(61)

        assert await cache.is_disposable("x@tempmail.com") is True
        assert cache_path.read_text() == saved
        assert cache.state == CacheState.WARM

        await cache.get_domains()
        assert len(lists.requests) == 6

        lists.payloads = FakeLists().payloads
        clock.advance(31)
        await cache.get_domains()

        assert len(lists.requests) == 9
        assert cache.fetched_at == clock.now

    @pytest.mark.asyncio
    async def test_all_lists_empty_on_cold_start(self, clock, cache_path):
        lists = FakeLists({GENERIC_URL: 503, MX_URL: 503, SHA1_URL: 503})
        cache = make_cache(lists, clock, cache_path, retry_seconds=30)

        assert await cache.get_domains() == frozenset()
        assert not cache_path.exists()

        await cache.get_domains()
        assert len(lists.requests) == 3

        clock.advance(31)
        await cache.get_domains()
        assert len(lists.requests) == 6
