"""Pipeline data models.

This module contains the dataclasses shared by the pipeline stages: the
tagged accept/reject outcome, rate limit results and per-client state.
"""

from dataclasses import dataclass, field
from typing import Mapping, Optional

from starlette.responses import PlainTextResponse, Response


@dataclass(frozen=True)
class Outcome:
    """Result of a pipeline stage: accepted, or rejected with a reason.

    Attributes:
        accepted: Whether the request may continue down the chain
        status_code: HTTP status of the terminal response when rejected
        code: Structured reason code for logs (e.g. "path_traversal")
        reason: Short human readable reason
        message: Plain-text body sent to the client (defaults to reason)
        headers: Extra response headers, applied on both branches
    """
    accepted: bool
    status_code: int = 200
    code: Optional[str] = None
    reason: Optional[str] = None
    message: Optional[str] = None
    headers: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def accept(cls, headers: Optional[Mapping[str, str]] = None) -> "Outcome":
        return cls(accepted=True, headers=dict(headers or {}))

    @classmethod
    def reject(
        cls,
        status_code: int,
        code: str,
        reason: str,
        message: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> "Outcome":
        return cls(
            accepted=False,
            status_code=status_code,
            code=code,
            reason=reason,
            message=message,
            headers=dict(headers or {}),
        )

    @property
    def rejected(self) -> bool:
        return not self.accepted

    def to_response(self) -> Response:
        """Build the plain-text terminal response for a rejection."""
        return PlainTextResponse(
            self.message or self.reason or "",
            status_code=self.status_code,
            headers=dict(self.headers),
        )


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    limit: int
    remaining: int
    reset_time: int
    request_count: int


@dataclass
class ClientState:
    """Fixed window counter for one client identity."""
    identity: str
    window_start: float
    request_count: int
    last_seen: float
