import asyncio
from typing import Awaitable, Callable, Iterable, Optional

from fastapi import Request

from bulwark.app.core.logging import get_logger
from bulwark.app.core.security import CredentialSet
from bulwark.app.exceptions import ConfigurationError
from bulwark.app.middleware.base import InterceptorMiddleware
from bulwark.app.middleware.models import Outcome

logger = get_logger(__name__)


def path_is_excluded(path: str, excluded_paths: Iterable[str]) -> bool:
    """Check whether path equals or lies under one of the excluded paths.

    Matching is case-insensitive and segment-aware: "/health" covers
    "/health" and "/health/live" but not "/healthz".
    """
    path = path.lower()
    for excluded in excluded_paths:
        prefix = excluded.lower().rstrip("/")
        if not prefix:
            # "/" excludes everything
            return True
        if path == prefix or path.startswith(prefix + "/"):
            return True
    return False


class ApiKeyAuthenticator:
    """Pre-shared API key authentication.

    Requests to excluded paths pass. A missing key header is rejected at
    once with a WWW-Authenticate challenge. A wrong key is rejected only
    after `failure_delay` seconds to damp brute-force probing; the delay is
    a plain asyncio sleep and holds no lock.

    Args:
        credentials: Accepted key digests, built once at startup
        header_name: Request header carrying the key
        excluded_paths: Path prefixes that skip authentication
        failure_delay: Seconds to wait before rejecting a wrong key
        sleep: Awaitable sleep, injectable for tests
    """

    def __init__(
        self,
        credentials: CredentialSet,
        header_name: str = "X-API-Key",
        excluded_paths: Iterable[str] = ("/health",),
        failure_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if failure_delay < 0:
            raise ConfigurationError("failure_delay must not be negative")
        if not header_name:
            raise ConfigurationError("header_name must not be empty")
        if not credentials:
            logger.warning("No API keys configured - every protected request will be rejected")

        self.credentials = credentials
        self.header_name = header_name
        self.excluded_paths = tuple(excluded_paths)
        self.failure_delay = failure_delay
        self._sleep = sleep

    async def authenticate(self, request: Request) -> Outcome:
        if path_is_excluded(request.url.path, self.excluded_paths):
            return Outcome.accept()

        provided = request.headers.get(self.header_name)
        if provided is None:
            return Outcome.reject(
                401,
                "missing_api_key",
                "No API key provided",
                message="API key is required",
                headers={"WWW-Authenticate": "ApiKey"},
            )

        if not self.credentials.matches(provided):
            await self._sleep(self.failure_delay)
            return Outcome.reject(
                401,
                "invalid_api_key",
                "Invalid API key",
            )

        request.state.authenticated = True
        request.state.auth_method = "ApiKey"
        return Outcome.accept()


def is_authenticated(request: Request) -> bool:
    """Whether the authentication stage accepted a key for this request."""
    return bool(getattr(request.state, "authenticated", False))


class ApiKeyAuthMiddleware(InterceptorMiddleware):
    """Middleware requiring a valid API key on non-excluded paths.

    Returns HTTP 401 for missing or invalid keys.
    """

    logger = logger

    def __init__(self, app, authenticator: Optional[ApiKeyAuthenticator] = None):
        super().__init__(app)
        self.authenticator = authenticator or ApiKeyAuthenticator(CredentialSet())

    async def inspect(self, request: Request) -> Outcome:
        return await self.authenticator.authenticate(request)
