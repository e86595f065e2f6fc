"""Disposable email domain detection.

Keeps a combined set of known throwaway-mailbox domains built from three
public lists. The set is served from memory, then from a JSON file on disk,
and only re-fetched over the network once both are older than the TTL.
"""

import asyncio
import hashlib
import json
import logging
import time
from collections.abc import Callable, Iterable
from enum import Enum
from pathlib import Path

import httpx

logger = logging.getLogger("mailcheck-disposable")

# Lists published by the disposable-email-domains project
DISPOSABLE_LISTS = {
    "generic": "https://disposable.github.io/disposable-email-domains/domains.json",
    "with_mx": "https://disposable.github.io/disposable-email-domains/domains_mx.json",
    "sha1": "https://disposable.github.io/disposable-email-domains/domains_sha1.json",
}

CACHE_TTL_SECONDS = 24 * 60 * 60
FETCH_TIMEOUT_SECONDS = 10.0
FAILED_REFRESH_RETRY_SECONDS = 5 * 60


class CacheState(str, Enum):
    """Lifecycle of the in-memory domain set."""

    COLD = "cold"  # Nothing loaded yet
    WARM = "warm"  # Loaded and younger than the TTL
    STALE = "stale"  # Loaded but past the TTL


def combine_lists(lists: Iterable[Iterable[object]]) -> frozenset[str]:
    """Union of all lists, lowercased. Non-string entries are dropped."""
    return frozenset(
        entry.strip().lower()
        for entries in lists
        for entry in entries
        if isinstance(entry, str) and entry.strip()
    )


def get_domain(address: object) -> str | None:
    """Domain part of an address, or None if there isn't exactly one '@'."""
    if not isinstance(address, str):
        return None
    parts = address.split("@")
    if len(parts) != 2 or not parts[1]:
        return None
    return parts[1].strip().lower()


class DisposableDomainCache:
    """Process-wide disposable domain set with memory and disk tiers.

    Build one at startup and hand it to the validation engine. There is no
    lock: if several requests hit an expired cache together they may all
    refresh, which is wasteful but ends in the same state.
    """

    def __init__(
        self,
        cache_path: Path | str | None = None,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        override: Iterable[str] | None = None,
        fetch_timeout: float = FETCH_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
        transport: httpx.AsyncBaseTransport | None = None,
        sources: dict[str, str] | None = None,
        retry_seconds: float = FAILED_REFRESH_RETRY_SECONDS,
    ):
        """Initialize the cache.

        Args:
            cache_path: JSON file used as the persistent tier. None disables it.
            ttl_seconds: Maximum age of memory and disk copies.
            override: Fixed domain list replacing every other source (tests,
                offline mode). Always considered fresh.
            fetch_timeout: Per-list HTTP timeout in seconds.
            clock: Returns the current time in epoch seconds.
            transport: Optional httpx transport (used to fake the network).
            sources: Mapping of list name to URL.
            retry_seconds: How long to wait before trying again after a
                refresh in which every list came back empty.
        """
        self.cache_path = Path(cache_path) if cache_path else None
        self.ttl_seconds = ttl_seconds
        self.override = combine_lists([override]) if override is not None else None
        self.fetch_timeout = fetch_timeout
        self.clock = clock
        self.transport = transport
        self.sources = sources or DISPOSABLE_LISTS
        self.retry_seconds = retry_seconds

        self._domains: frozenset[str] = frozenset()
        self._fetched_at: float | None = None
        self._expires_at: float | None = None

    @property
    def state(self) -> CacheState:
        if self._fetched_at is None:
            return CacheState.COLD
        if self.override is not None or self.clock() < self._expires_at:
            return CacheState.WARM
        return CacheState.STALE

    @property
    def fetched_at(self) -> float | None:
        return self._fetched_at

    def _is_fresh(self, fetched_at: float) -> bool:
        return (self.clock() - fetched_at) < self.ttl_seconds

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def get_domains(self) -> frozenset[str]:
        """Current domain set, loading or refreshing it if needed."""
        if self.override is not None:
            if self._fetched_at is None:
                self._promote(self.override)
            return self._domains

        if self.state == CacheState.WARM:
            return self._domains

        from_disk = await self._load_from_disk()
        if from_disk is not None:
            lists, fetched_at = from_disk
            self._promote(combine_lists(lists.values()), fetched_at)
            logger.info(
                f"Loaded {len(self._domains)} disposable domains from {self.cache_path}"
            )
            return self._domains

        await self.force_refresh()
        return self._domains

    async def is_disposable(self, address: str) -> bool:
        """Check whether an address uses a known disposable domain.

        Malformed addresses (no '@' or more than one) return False.
        """
        domain = get_domain(address)
        if not domain:
            return False

        domains = await self.get_domains()
        if domain in domains:
            return True
        # The sha1 list publishes hashes instead of names
        return hashlib.sha1(domain.encode()).hexdigest() in domains

    async def force_refresh(self) -> None:
        """Re-fetch every list now, ignoring the TTL."""
        if self.override is not None:
            self._promote(self.override)
            return

        logger.info("Refreshing disposable domain lists")
        lists = await self.fetch_all()
        domains = combine_lists(lists.values())
        if not domains:
            # Keep the current set (and the disk copy) until the lists are back
            logger.warning(
                f"Every disposable list came back empty; keeping "
                f"{len(self._domains)} domains, retrying in {self.retry_seconds:.0f}s"
            )
            self._hold(self.retry_seconds)
            return

        self._promote(domains)
        logger.info(f"Combined total: {len(self._domains)} unique disposable domains")
        await self._save_to_disk(lists)

    # -------------------------------------------------------------------------
    # Network tier
    # -------------------------------------------------------------------------

    async def fetch_all(self) -> dict[str, list]:
        """Fetch every source concurrently. Failed sources become empty."""
        async with httpx.AsyncClient(
            timeout=self.fetch_timeout,
            transport=self.transport,
            follow_redirects=True,
        ) as client:
            names = list(self.sources)
            results = await asyncio.gather(
                *(self._fetch_list(client, self.sources[name]) for name in names)
            )

        lists = dict(zip(names, results, strict=True))
        for name, entries in lists.items():
            logger.info(f"Fetched {len(entries)} entries from the {name} list")
        return lists

    async def _fetch_list(self, client: httpx.AsyncClient, url: str) -> list:
        try:
            response = await client.get(url)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Error fetching disposable list from {url}: {e}")
            return []

        if not isinstance(data, list):
            logger.warning(f"Unexpected payload from {url}: expected a JSON array")
            return []
        return data

    # -------------------------------------------------------------------------
    # Disk tier
    # -------------------------------------------------------------------------

    async def _load_from_disk(self) -> tuple[dict[str, list], float] | None:
        if self.cache_path is None:
            return None
        try:
            raw = await asyncio.to_thread(self.cache_path.read_text, encoding="utf-8")
            payload = json.loads(raw)
            fetched_at = float(payload["fetched_at"])
            lists = payload["lists"]
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable disposable cache {self.cache_path}: {e}")
            return None

        if not isinstance(lists, dict) or not all(
            isinstance(entries, list) for entries in lists.values()
        ):
            logger.warning(f"Ignoring malformed disposable cache {self.cache_path}")
            return None
        if not self._is_fresh(fetched_at):
            return None
        return lists, fetched_at

    async def _save_to_disk(self, lists: dict[str, list]) -> None:
        if self.cache_path is None:
            return
        payload = json.dumps({"fetched_at": self._fetched_at, "lists": lists})
        try:
            await asyncio.to_thread(self._write_atomically, payload)
        except OSError as e:
            logger.warning(f"Could not persist disposable cache to {self.cache_path}: {e}")

    def _write_atomically(self, payload: str) -> None:
        self.cache_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.cache_path.with_suffix(self.cache_path.suffix + ".tmp")
        tmp_path.write_text(payload, encoding="utf-8")
        tmp_path.replace(self.cache_path)

    def _promote(self, domains: frozenset[str], fetched_at: float | None = None) -> None:
        self._domains = domains
        self._fetched_at = self.clock() if fetched_at is None else fetched_at
        self._expires_at = self._fetched_at + self.ttl_seconds

    def _hold(self, seconds: float) -> None:
        now = self.clock()
        if self._fetched_at is None:
            self._fetched_at = now
        self._expires_at = now + min(seconds, self.ttl_seconds)
