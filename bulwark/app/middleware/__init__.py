"""Middleware package: the request-defense pipeline stages."""

from bulwark.app.middleware.audit import AuditRecord, SecurityAuditMiddleware, SecurityAuditor
from bulwark.app.middleware.auth import ApiKeyAuthenticator, ApiKeyAuthMiddleware, is_authenticated
from bulwark.app.middleware.models import ClientState, Outcome, RateLimitResult
from bulwark.app.middleware.pipeline import (
    SecurityPipeline,
    build_security_pipeline,
    install_security_pipeline,
)
from bulwark.app.middleware.rate_limit import (
    ClientRegistry,
    FixedWindowRateLimiter,
    RateLimitMiddleware,
)
from bulwark.app.middleware.request_validation import (
    RequestValidationMiddleware,
    RequestValidator,
)
from bulwark.app.middleware.security_headers import (
    SecurityHeaders,
    SecurityHeadersMiddleware,
    get_request_id,
)

__all__ = [
    "AuditRecord",
    "SecurityAuditor",
    "SecurityAuditMiddleware",
    "ApiKeyAuthenticator",
    "ApiKeyAuthMiddleware",
    "is_authenticated",
    "ClientState",
    "Outcome",
    "RateLimitResult",
    "SecurityPipeline",
    "build_security_pipeline",
    "install_security_pipeline",
    "ClientRegistry",
    "FixedWindowRateLimiter",
    "RateLimitMiddleware",
    "RequestValidator",
    "RequestValidationMiddleware",
    "SecurityHeaders",
    "SecurityHeadersMiddleware",
    "get_request_id",
]
