"""Security headers middleware.

Adds protective response headers and strips headers that reveal the hosting
stack. Runs for every response, including responses produced by a rejecting
stage further down the chain.
"""

import uuid
from typing import Optional

from fastapi import Request, Response
from starlette.datastructures import MutableHeaders
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from bulwark.app.core.config import DEFAULT_PERMISSIONS_POLICY

REQUEST_ID_HEADER = "X-Request-Id"

FINGERPRINT_HEADERS = (
    "Server",
    "X-Powered-By",
    "X-AspNet-Version",
    "X-AspNetCore-Version",
)


def get_request_id(request: Request) -> str:
    """Get the request id for a request, allocating one if none exists yet."""
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = uuid.uuid4().hex
        request.state.request_id = request_id
    return request_id


class SecurityHeaders:
    """Response hardening policy.

    Args:
        frame_options: X-Frame-Options value (clickjacking)
        referrer_policy: Referrer-Policy value
        enable_hsts: Add Strict-Transport-Security
        hsts_max_age: HSTS max-age in seconds
        content_security_policy: CSP value, omitted when empty
        permissions_policy: Permissions-Policy value
        prevent_caching: Add Cache-Control/Pragma/Expires suppression
    """

    def __init__(
        self,
        frame_options: str = "DENY",
        referrer_policy: str = "strict-origin-when-cross-origin",
        enable_hsts: bool = True,
        hsts_max_age: int = 31_536_000,
        content_security_policy: str = "default-src 'none'; frame-ancestors 'none';",
        permissions_policy: str = DEFAULT_PERMISSIONS_POLICY,
        prevent_caching: bool = False,
    ):
        self.frame_options = frame_options
        self.referrer_policy = referrer_policy
        self.enable_hsts = enable_hsts
        self.hsts_max_age = hsts_max_age
        self.content_security_policy = content_security_policy
        self.permissions_policy = permissions_policy
        self.prevent_caching = prevent_caching

    def header_set(self) -> dict[str, str]:
        """The headers this policy adds, in order."""
        headers = {
            "X-Frame-Options": self.frame_options,
            "X-Content-Type-Options": "nosniff",
            "X-XSS-Protection": "1; mode=block",
            "Referrer-Policy": self.referrer_policy,
        }
        if self.enable_hsts:
            headers["Strict-Transport-Security"] = (
                f"max-age={self.hsts_max_age}; includeSubDomains; preload"
            )
        if self.content_security_policy:
            headers["Content-Security-Policy"] = self.content_security_policy
        headers["Permissions-Policy"] = self.permissions_policy
        if self.prevent_caching:
            headers["Cache-Control"] = "no-store, no-cache, must-revalidate, private"
            headers["Pragma"] = "no-cache"
            headers["Expires"] = "0"
        return headers

    def apply(self, headers: MutableHeaders, request_id: Optional[str] = None) -> None:
        """Harden a response's headers in place.

        Existing values set by the application are kept.
        """
        for name, value in self.header_set().items():
            if name not in headers:
                headers[name] = value

        for name in FINGERPRINT_HEADERS:
            if name in headers:
                del headers[name]

        if request_id and REQUEST_ID_HEADER not in headers:
            headers[REQUEST_ID_HEADER] = request_id


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware applying a SecurityHeaders policy to every response."""

    def __init__(self, app, policy: Optional[SecurityHeaders] = None):
        super().__init__(app)
        self.policy = policy or SecurityHeaders()

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = get_request_id(request)
        response = await call_next(request)
        self.policy.apply(response.headers, request_id)
        return response
