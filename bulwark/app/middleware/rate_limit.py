"""Rate limiting middleware.

Per-client fixed window counters kept in an in-memory registry. A window
opens on a client's first request and resets on the first request after it
has expired; a burst straddling a window boundary is not smoothed.

Clients are identified by their API key when one is presented, otherwise by
their resolved address. Idle entries are evicted by a periodic sweep.
"""

import asyncio
import dataclasses
import threading
import time
from typing import Callable, Dict, List, Optional

from fastapi import Request

from bulwark.app.core.logging import get_log_context, get_logger
from bulwark.app.core.utils import resolve_client_ip
from bulwark.app.exceptions import ConfigurationError
from bulwark.app.middleware.base import InterceptorMiddleware
from bulwark.app.middleware.models import ClientState, Outcome, RateLimitResult

logger = get_logger(__name__)

DEFAULT_GRACE_SECONDS = 300.0


class ClientRegistry:
    """Shared store of per-client window state.

    Updates for one identity are serialized by a lock chosen from a fixed
    pool of stripes, so unrelated clients never contend on a global mutex.
    Critical sections never suspend, which makes the stripes safe under both
    asyncio and threaded dispatch.
    """

    DEFAULT_STRIPES = 64

    def __init__(self, stripes: int = DEFAULT_STRIPES):
        if stripes < 1:
            raise ConfigurationError("stripes must be at least 1")
        self._clients: Dict[str, ClientState] = {}
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(stripes)]

    def _lock_for(self, identity: str) -> threading.Lock:
        return self._locks[hash(identity) % len(self._locks)]

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, identity: str) -> bool:
        return identity in self._clients

    def get(self, identity: str) -> Optional[ClientState]:
        """Return a snapshot of a client's state."""
        with self._lock_for(identity):
            state = self._clients.get(identity)
            return dataclasses.replace(state) if state else None

    def record_hit(self, identity: str, now: float, window_seconds: float) -> ClientState:
        """Count one request for identity and return a snapshot.

        Opens a window with count 1 for a new identity, resets to 1 when the
        current window has expired, and increments otherwise.
        """
        with self._lock_for(identity):
            state = self._clients.get(identity)
            if state is None:
                state = ClientState(
                    identity=identity, window_start=now, request_count=1, last_seen=now
                )
                self._clients[identity] = state
            elif now - state.window_start > window_seconds:
                state.window_start = now
                state.request_count = 1
            else:
                state.request_count += 1
            state.last_seen = now
            return dataclasses.replace(state)

    def evict_idle(self, cutoff: float) -> int:
        """Remove entries last seen before cutoff.

        Staleness is re-checked under the identity's stripe, so a request
        arriving concurrently either refreshes the entry first or recreates
        it afterwards with a fresh window.
        """
        removed = 0
        for identity in list(self._clients):
            with self._lock_for(identity):
                state = self._clients.get(identity)
                if state is not None and state.last_seen < cutoff:
                    del self._clients[identity]
                    removed += 1
        return removed

    def clear(self) -> None:
        for lock in self._locks:
            lock.acquire()
        try:
            self._clients.clear()
        finally:
            for lock in self._locks:
                lock.release()


class FixedWindowRateLimiter:
    """Reset-on-expiry fixed window rate limiter.

    The (max_requests + 1)-th request inside a window is rejected; a request
    arriving after the window has elapsed starts a new window at count 1.

    Owns a background sweep that evicts clients idle for longer than the
    window plus a grace period. The sweep must be started and stopped
    explicitly (see `start` / `stop`), typically from the app lifespan.

    Usage:
        limiter = FixedWindowRateLimiter(ClientRegistry(), max_requests=100)
        await limiter.start()
        result = limiter.check("ip:10.0.0.1")
        await limiter.stop()
    """

    def __init__(
        self,
        registry: Optional[ClientRegistry] = None,
        max_requests: int = 100,
        window_seconds: float = 60.0,
        cleanup_interval: float = 60.0,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        api_key_header: str = "X-API-Key",
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the rate limiter.

        Args:
            registry: Shared client state store (a fresh one if omitted)
            max_requests: Maximum accepted requests per window
            window_seconds: Window duration in seconds
            cleanup_interval: Seconds between background sweeps
            grace_seconds: Idle time past the window before eviction
            api_key_header: Header whose value identifies a client
            clock: Wall clock returning Unix seconds
        """
        if max_requests < 1:
            raise ConfigurationError("max_requests must be at least 1")
        if window_seconds <= 0 or cleanup_interval <= 0:
            raise ConfigurationError("window and cleanup interval must be positive")

        self.registry = registry if registry is not None else ClientRegistry()
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.cleanup_interval = cleanup_interval
        self.grace_seconds = grace_seconds
        self.api_key_header = api_key_header
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    def get_client_identity(self, request: Request) -> str:
        """Get the rate limit key for a request.

        A presented API key is used verbatim (it is only a map key and is
        never logged); otherwise the resolved client address.
        """
        api_key = request.headers.get(self.api_key_header)
        if api_key is not None:
            return f"key:{api_key}"
        return f"ip:{resolve_client_ip(request)}"

    def check(self, identity: str) -> RateLimitResult:
        """Count a request for identity and decide whether it is allowed."""
        state = self.registry.record_hit(identity, self._clock(), self.window_seconds)
        return RateLimitResult(
            allowed=state.request_count <= self.max_requests,
            limit=self.max_requests,
            remaining=max(0, self.max_requests - state.request_count),
            reset_time=int(state.window_start + self.window_seconds),
            request_count=state.request_count,
        )

    async def evaluate(self, request: Request) -> Outcome:
        identity = self.get_client_identity(request)
        result = self.check(identity)

        if not result.allowed:
            logger.warning(
                "Rate limit exceeded - %d requests in window",
                result.request_count,
                extra=get_log_context(
                    request_id=getattr(request.state, "request_id", None),
                    client_ip=resolve_client_ip(request),
                    reason_code="rate_limited",
                ),
            )
            return Outcome.reject(
                429,
                "rate_limited",
                "Rate limit exceeded",
                message="Rate limit exceeded. Please try again later.",
                headers={
                    "X-RateLimit-Limit": str(result.limit),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(result.reset_time),
                },
            )

        return Outcome.accept(
            headers={
                "X-RateLimit-Limit": str(result.limit),
                "X-RateLimit-Remaining": str(result.remaining),
            }
        )

    def sweep(self) -> int:
        """Evict clients idle for longer than window + grace period."""
        cutoff = self._clock() - self.window_seconds - self.grace_seconds
        removed = self.registry.evict_idle(cutoff)
        if removed:
            logger.debug(f"Cleaned up {removed} old rate limiter entries")
        return removed

    @property
    def running(self) -> bool:
        return self._task is not None

    async def start(self) -> None:
        """Start the background sweep task."""
        if self._task is not None:
            logger.debug("Rate limiter sweep already running")
            return

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_sweeps())
        logger.info(f"Started rate limiter sweep (interval: {self.cleanup_interval}s)")

    async def stop(self) -> None:
        """Stop the background sweep task."""
        if self._task is None:
            return

        self._stop_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("Rate limiter sweep did not stop gracefully, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
            logger.info("Stopped rate limiter sweep")

    async def _run_sweeps(self) -> None:
        stop_event = self._stop_event
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(
                    stop_event.wait(),
                    timeout=self.cleanup_interval
                )
            except asyncio.TimeoutError:
                # Normal case: interval elapsed
                pass
            else:
                break

            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Error during rate limiter sweep: {e}")


class RateLimitMiddleware(InterceptorMiddleware):
    """Middleware to enforce per-client rate limits.

    Rejected requests get HTTP 429 with X-RateLimit-Limit,
    X-RateLimit-Remaining and X-RateLimit-Reset; accepted responses carry
    X-RateLimit-Limit and X-RateLimit-Remaining.
    """

    logger = logger

    def __init__(self, app, limiter: Optional[FixedWindowRateLimiter] = None):
        super().__init__(app)
        self.limiter = limiter or FixedWindowRateLimiter()

    def log_rejection(self, request: Request, outcome: Outcome) -> None:
        # Already logged with the request count by the limiter
        pass

    async def inspect(self, request: Request) -> Outcome:
        return await self.limiter.evaluate(request)
