# edgefeed/storage/fetch_cache.py

import asyncio
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Union
from urllib.parse import urlencode

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from edgefeed.config.settings import settings
from edgefeed.scrapers.base_scraper import NetworkError
from edgefeed.utils.cancellation import CancellationToken, run_cancellable
from edgefeed.utils.events import EventEmitter, Subscription

Loader = Callable[[CancellationToken], Awaitable[Any]]
TtlPolicy = Union[int, Callable[[Any], int], None]


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, NetworkError) and exc.retryable


def _parse_commence(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


class CacheEntry:
    """One cached payload plus its freshness bookkeeping."""

    def __init__(self, key: str):
        self.key = key
        self.payload: Any = None
        self.fetched_at: Optional[float] = None  # cache clock, ms
        self.ttl_ms: int = 0
        self.stale_ms: int = 0
        self.flight: Optional["_Flight"] = None
        self.subscribers: EventEmitter[Any] = EventEmitter(name=f"cache:{key}")
        self.generation = 0
        self.access_count = 0

    @property
    def has_payload(self) -> bool:
        return self.fetched_at is not None

    @property
    def in_flight(self) -> bool:
        return self.flight is not None

    def age_ms(self, now: float) -> Optional[float]:
        if self.fetched_at is None:
            return None
        return now - self.fetched_at

    def is_fresh(self, now: float) -> bool:
        return self.has_payload and now - self.fetched_at < self.ttl_ms

    def is_usable(self, now: float, max_stale_ms: Optional[float] = None) -> bool:
        bound = self.stale_ms if max_stale_ms is None else max_stale_ms
        return self.has_payload and now - self.fetched_at < bound

    @property
    def idle(self) -> bool:
        return self.flight is None and len(self.subscribers) == 0

    def __repr__(self) -> str:
        return (
            f"CacheEntry(key='{self.key}', generation={self.generation}, "
            f"fetched_at={self.fetched_at}, ttl_ms={self.ttl_ms}, in_flight={self.in_flight})"
        )


class FetchResult:
    """What a fetch produced.

    ``payload`` is None only when nothing usable exists. ``error`` carries the
    NetworkError that forced a stale (or empty) answer.
    """

    def __init__(
        self,
        payload: Any,
        stale: bool = False,
        error: Optional[NetworkError] = None,
        from_cache: bool = False,
        fetched_at: Optional[float] = None,
    ):
        self.payload = payload
        self.stale = stale
        self.error = error
        self.from_cache = from_cache
        self.fetched_at = fetched_at

    @property
    def ok(self) -> bool:
        return self.error is None

    def __repr__(self):
        return (
            f"FetchResult(stale={self.stale}, from_cache={self.from_cache}, "
            f"error={self.error!r}, has_payload={self.payload is not None})"
        )


class _Flight:
    """A single in-progress load shared by every coalesced caller."""

    def __init__(self, generation: int):
        self.generation = generation
        self.token = CancellationToken()
        self.task: Optional[asyncio.Task] = None
        self.waiters = 0


class FetchCache:
    """TTL keyed store with stale-while-revalidate and request coalescing.

    One instance is created at startup and injected into every feed that
    should share data. Mutations notify the key's subscribers before
    returning. For each key the most recently *initiated* write wins: a load
    that was started before a later ``set``/``delete`` or load is not written.
    """

    def __init__(
        self,
        clock: Optional[Callable[[], float]] = None,
        max_entries: Optional[int] = None,
        default_ttl_ms: Optional[int] = None,
        stale_ms: Optional[int] = None,
        error_stale_ms: Optional[int] = None,
        retry_attempts: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        retry_max_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._clock = clock or (lambda: time.monotonic() * 1000)
        self.max_entries = max_entries or settings.cache_max_entries
        self.default_ttl_ms = default_ttl_ms or settings.cache_default_ttl_ms
        self.stale_ms = stale_ms or settings.cache_stale_ms
        self.error_stale_ms = error_stale_ms or settings.cache_error_stale_ms
        self.retry_attempts = (
            settings.retry_attempts if retry_attempts is None else retry_attempts
        )
        self.retry_base_delay = (
            settings.retry_base_delay if retry_base_delay is None else retry_base_delay
        )
        self.retry_max_delay = (
            settings.retry_max_delay if retry_max_delay is None else retry_max_delay
        )
        self._sleep = sleep
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._stats: Dict[str, int] = {
            "hits": 0,
            "misses": 0,
            "stale_hits": 0,
            "network_calls": 0,
            "coalesced": 0,
            "errors": 0,
            "evictions": 0,
        }
        logger.info(
            f"FetchCache initialized (max_entries={self.max_entries}, ttl={self.default_ttl_ms}ms)"
        )

    # --- keys ---

    @staticmethod
    def generate_key(url: str, params: Optional[Dict[str, Any]] = None) -> str:
        """Stable key from an endpoint and its query parameters (order-insensitive)."""
        if not params:
            return url
        items = sorted(
            (str(k), "" if v is None else str(v)) for k, v in params.items()
        )
        return f"{url}?{urlencode(items)}"

    # --- synchronous store ---

    def _now(self) -> float:
        return self._clock()

    def _entry(self, key: str, create: bool = False) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None and create:
            entry = CacheEntry(key)
            self._entries[key] = entry
            self._evict_overflow()
        return entry

    def _evict_overflow(self) -> None:
        # Least recently written idle entries go first; busy entries are never evicted
        while len(self._entries) > self.max_entries:
            victim = next((e for e in self._entries.values() if e.idle), None)
            if victim is None:
                logger.warning(
                    f"FetchCache over capacity ({len(self._entries)}) with no idle entries"
                )
                return
            del self._entries[victim.key]
            self._stats["evictions"] += 1
            logger.debug(f"Evicted cache entry {victim.key}")

    def _drop_if_unused(self, entry: CacheEntry) -> None:
        if entry.idle and not entry.has_payload and self._entries.get(entry.key) is entry:
            del self._entries[entry.key]

    def get(self, key: str) -> Any:
        """Payload if it is still within its ttl, otherwise None."""
        entry = self._entries.get(key)
        if entry is None or not entry.is_fresh(self._now()):
            self._stats["misses"] += 1
            return None
        entry.access_count += 1
        self._stats["hits"] += 1
        return entry.payload

    def get_with_stale_fallback(self, key: str, max_stale_ms: Optional[float] = None) -> Any:
        """Payload if it is younger than ``max_stale_ms`` (the entry's own bound by default)."""
        entry = self._entries.get(key)
        if entry is None or not entry.is_usable(self._now(), max_stale_ms):
            return None
        entry.access_count += 1
        if not entry.is_fresh(self._now()):
            self._stats["stale_hits"] += 1
        return entry.payload

    def expired_payload(self, key: str) -> Any:
        """Payload past its ttl but within its stale bound, otherwise None. Leaves stats alone."""
        entry = self._entries.get(key)
        now = self._now()
        if entry is None or entry.is_fresh(now) or not entry.is_usable(now):
            return None
        return entry.payload

    def _write(
        self,
        entry: CacheEntry,
        payload: Any,
        ttl_ms: Optional[int],
        stale_ms: Optional[int],
    ) -> None:
        entry.payload = payload
        entry.fetched_at = self._now()
        entry.ttl_ms = ttl_ms if ttl_ms is not None else self.default_ttl_ms
        entry.stale_ms = max(stale_ms if stale_ms is not None else self.stale_ms, entry.ttl_ms)
        if self._entries.get(entry.key) is not entry:
            self._entries[entry.key] = entry
        self._entries.move_to_end(entry.key)
        self._evict_overflow()
        entry.subscribers.emit(payload)

    def set(
        self,
        key: str,
        payload: Any,
        ttl_ms: Optional[int] = None,
        stale_ms: Optional[int] = None,
    ) -> None:
        """Overwrite ``key`` and notify its subscribers before returning."""
        entry = self._entry(key, create=True)
        entry.generation += 1
        self._write(entry, payload, ttl_ms, stale_ms)

    def delete(self, key: str) -> bool:
        """Invalidate ``key``. Subscribers are notified with None."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        entry.generation += 1
        had_payload = entry.has_payload
        entry.payload = None
        entry.fetched_at = None
        if entry.idle:
            del self._entries[key]
        entry.subscribers.emit(None)
        return had_payload

    def subscribe(self, key: str, callback: Callable[[Any], None]) -> Subscription:
        """Call ``callback(payload)`` on every write to ``key``; None means deleted."""
        entry = self._entry(key, create=True)
        inner = entry.subscribers.subscribe(callback)

        def release() -> None:
            inner.unsubscribe()
            self._drop_if_unused(entry)

        return Subscription(release)

    def clear(self) -> None:
        for key in list(self._entries):
            self.delete(key)
        logger.info("FetchCache cleared")

    def cleanup(self) -> int:
        """Drop idle entries past their staleness bound. Returns how many were removed."""
        now = self._now()
        expired = [
            e.key
            for e in self._entries.values()
            if e.idle and e.has_payload and not e.is_usable(now)
        ]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"FetchCache cleanup removed {len(expired)} entries")
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        now = self._now()
        entries = list(self._entries.values())
        return {
            **self._stats,
            "entries": len(entries),
            "max_entries": self.max_entries,
            "fresh": sum(1 for e in entries if e.is_fresh(now)),
            "stale": sum(1 for e in entries if e.is_usable(now) and not e.is_fresh(now)),
            "in_flight": sum(1 for e in entries if e.in_flight),
            "subscribers": sum(len(e.subscribers) for e in entries),
        }

    def entry(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    # --- TTL policy ---

    def smart_ttl_ms(self, events: Iterable[Any], now: Optional[datetime] = None) -> int:
        """TTL for an odds payload based on how soon its events start.

        Live events refresh fastest; a start within one hour gets 10s, within
        two hours 20s, otherwise the default ttl applies.
        """
        now = now or datetime.now(timezone.utc)
        soonest: Optional[float] = None
        for event in events or []:
            if isinstance(event, dict):
                commence = _parse_commence(event.get("commence_time"))
                completed = bool(event.get("completed"))
            else:
                commence = _parse_commence(getattr(event, "commence_time", None))
                completed = bool(getattr(event, "completed", False))
            if commence is None or completed:
                continue
            seconds = (commence - now).total_seconds()
            if seconds <= 0:
                return settings.live_ttl_ms
            soonest = seconds if soonest is None else min(soonest, seconds)

        if soonest is not None and soonest <= 3600:
            return 10_000
        if soonest is not None and soonest <= 7200:
            return 20_000
        return self.default_ttl_ms

    # --- async fetch ---

    def _log_retry(self, key: str) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            wait = retry_state.next_action.sleep if retry_state.next_action else 0
            logger.warning(
                f"Fetch for {key} failed (attempt {retry_state.attempt_number}): {exc}. Retrying in {wait:.1f}s"
            )

        return before_sleep

    async def _load_with_retry(
        self, key: str, loader: Loader, token: CancellationToken
    ) -> Any:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts + 1),
            wait=wait_exponential(
                multiplier=self.retry_base_delay, max=self.retry_max_delay
            ),
            retry=retry_if_exception(_is_retryable),
            before_sleep=self._log_retry(key),
            sleep=self._sleep,
            reraise=True,
        )

        async def attempt() -> Any:
            token.raise_if_cancelled()
            self._stats["network_calls"] += 1
            return await loader(token)

        return await retrying(attempt)

    def _resolve_ttl(self, ttl_ms: TtlPolicy, payload: Any) -> Optional[int]:
        if callable(ttl_ms):
            return ttl_ms(payload)
        return ttl_ms

    async def _run_flight(
        self,
        entry: CacheEntry,
        flight: _Flight,
        loader: Loader,
        ttl_ms: TtlPolicy,
        stale_ms: Optional[int],
    ) -> FetchResult:
        try:
            try:
                payload = await self._load_with_retry(entry.key, loader, flight.token)
            except NetworkError as e:
                self._stats["errors"] += 1
                fallback = self.get_with_stale_fallback(entry.key, self.error_stale_ms)
                if fallback is not None:
                    logger.warning(
                        f"Serving stale data for {entry.key} after network failure: {e}"
                    )
                else:
                    logger.error(f"Fetch for {entry.key} failed with no usable data: {e}")
                return FetchResult(
                    fallback,
                    stale=fallback is not None,
                    error=e,
                    from_cache=fallback is not None,
                    fetched_at=entry.fetched_at if fallback is not None else None,
                )

            if flight.generation != entry.generation:
                # A newer write or load was initiated while this one was running
                logger.debug(
                    f"Discarding superseded result for {entry.key} (generation {flight.generation} < {entry.generation})"
                )
                if entry.has_payload:
                    return FetchResult(
                        entry.payload, from_cache=True, fetched_at=entry.fetched_at
                    )
                return FetchResult(payload)

            self._write(entry, payload, self._resolve_ttl(ttl_ms, payload), stale_ms)
            return FetchResult(payload, fetched_at=entry.fetched_at)
        finally:
            if entry.flight is flight:
                entry.flight = None

    def _start_flight(
        self,
        entry: CacheEntry,
        loader: Loader,
        ttl_ms: TtlPolicy,
        stale_ms: Optional[int],
    ) -> _Flight:
        entry.generation += 1
        flight = _Flight(entry.generation)
        entry.flight = flight
        flight.task = asyncio.ensure_future(
            self._run_flight(entry, flight, loader, ttl_ms, stale_ms)
        )
        flight.task.add_done_callback(self._flight_done(entry.key))
        return flight

    @staticmethod
    def _flight_done(key: str) -> Callable[[asyncio.Task], None]:
        def done(task: asyncio.Task) -> None:
            # Retrieve the exception so an abandoned flight does not warn at shutdown
            if not task.cancelled() and task.exception() is not None:
                logger.debug(f"Flight for {key} ended with {task.exception()!r}")

        return done

    def _detach(self, entry: CacheEntry, flight: _Flight) -> None:
        flight.waiters -= 1
        if flight.waiters > 0 or flight.task is None or flight.task.done():
            return
        logger.debug(f"Last waiter left {entry.key}; cancelling its request")
        flight.token.cancel("no remaining waiters")
        flight.task.cancel()
        if entry.flight is flight:
            entry.flight = None
        self._drop_if_unused(entry)

    async def fetch(
        self,
        key: str,
        loader: Loader,
        ttl_ms: TtlPolicy = None,
        stale_ms: Optional[int] = None,
        force: bool = False,
        token: Optional[CancellationToken] = None,
    ) -> FetchResult:
        """Return cached data for ``key`` or load it once for all concurrent callers.

        Args:
            key: Cache key, usually from :meth:`generate_key`.
            loader: ``async (token) -> payload``; raises NetworkError on failure.
            ttl_ms: Fixed ttl, or a callable computing it from the payload.
            stale_ms: Staleness bound stored with the new payload.
            force: Skip the fresh-cache check. Still joins a load in progress.
            token: Cancels this caller's wait only; the shared load stops when
                its last caller has gone.

        Returns:
            A FetchResult. Network failures after retries are reported in
            ``error`` next to the best stale payload instead of being raised.

        Raises:
            RequestCancelledError: If ``token`` fires before the result arrives.
        """
        if token is not None:
            token.raise_if_cancelled()

        entry = self._entry(key, create=True)
        entry.access_count += 1
        if not force and entry.is_fresh(self._now()):
            self._stats["hits"] += 1
            return FetchResult(entry.payload, from_cache=True, fetched_at=entry.fetched_at)

        flight = entry.flight
        if flight is None:
            self._stats["misses"] += 1
            flight = self._start_flight(entry, loader, ttl_ms, stale_ms)
        else:
            self._stats["coalesced"] += 1
            logger.debug(f"Joining in-flight request for {key}")

        flight.waiters += 1
        try:
            return await run_cancellable(asyncio.shield(flight.task), token)
        finally:
            self._detach(entry, flight)
