"""Assembly of the request-defense pipeline.

Order of execution for every request:

    Audit -> Headers -> Validation -> Rate limit -> API key -> application

Starlette runs the last added middleware first, so the stages are added
innermost first.
"""

from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import FastAPI

from bulwark.app.core.config import Settings
from bulwark.app.core.security import CredentialSet
from bulwark.app.middleware.audit import AuditRecord, SecurityAuditMiddleware, SecurityAuditor
from bulwark.app.middleware.auth import ApiKeyAuthenticator, ApiKeyAuthMiddleware
from bulwark.app.middleware.rate_limit import (
    ClientRegistry,
    FixedWindowRateLimiter,
    RateLimitMiddleware,
)
from bulwark.app.middleware.request_validation import (
    RequestValidationMiddleware,
    RequestValidator,
)
from bulwark.app.middleware.security_headers import SecurityHeaders, SecurityHeadersMiddleware


@dataclass
class SecurityPipeline:
    """Handles on the components installed into an application."""
    auditor: SecurityAuditor
    headers: SecurityHeaders
    validator: RequestValidator
    limiter: FixedWindowRateLimiter
    authenticator: ApiKeyAuthenticator

    async def start(self) -> None:
        await self.limiter.start()

    async def stop(self) -> None:
        await self.limiter.stop()


def build_security_pipeline(
    settings: Settings,
    *,
    registry: Optional[ClientRegistry] = None,
    credentials: Optional[CredentialSet] = None,
    audit_sink: Optional[Callable[[AuditRecord], None]] = None,
) -> SecurityPipeline:
    """Construct every stage from settings.

    Args:
        settings: Configuration to read limits and policies from
        registry: Shared client store for the limiter (fresh if omitted)
        credentials: Accepted keys (digested from settings.api_keys if omitted)
        audit_sink: Optional callable receiving every audit record
    """
    if credentials is None:
        credentials = CredentialSet.from_secrets(settings.api_keys)

    return SecurityPipeline(
        auditor=SecurityAuditor(
            log_successful_requests=settings.log_successful_requests,
            log_request_headers=settings.audit_log_request_headers,
            log_request_body=settings.audit_log_request_body,
            max_body_size=settings.audit_max_body_size,
            sensitive_headers=settings.audit_sensitive_headers,
            sink=audit_sink,
        ),
        headers=SecurityHeaders(
            frame_options=settings.headers_frame_options,
            referrer_policy=settings.headers_referrer_policy,
            enable_hsts=settings.enable_hsts,
            hsts_max_age=settings.headers_hsts_max_age,
            content_security_policy=settings.headers_content_security_policy,
            permissions_policy=settings.headers_permissions_policy,
            prevent_caching=settings.headers_prevent_caching,
        ),
        validator=RequestValidator(
            max_request_size=settings.max_request_size,
            max_url_length=settings.max_url_length,
            max_header_value_length=settings.max_header_value_length,
            max_json_depth=settings.max_json_depth,
        ),
        limiter=FixedWindowRateLimiter(
            registry=registry,
            max_requests=settings.rate_limit_max_requests,
            window_seconds=settings.rate_limit_window_seconds,
            cleanup_interval=settings.rate_limit_cleanup_interval_seconds,
            grace_seconds=settings.rate_limit_grace_seconds,
            api_key_header=settings.api_key_header,
        ),
        authenticator=ApiKeyAuthenticator(
            credentials,
            header_name=settings.api_key_header,
            excluded_paths=settings.auth_excluded_paths,
            failure_delay=settings.auth_failure_delay_seconds,
        ),
    )


def install_security_pipeline(
    app: FastAPI,
    settings: Settings,
    pipeline: Optional[SecurityPipeline] = None,
    **kwargs,
) -> SecurityPipeline:
    """Add the five defense stages to app in their fixed order.

    Extra keyword arguments are passed to `build_security_pipeline`.
    """
    if pipeline is None:
        pipeline = build_security_pipeline(settings, **kwargs)

    # Innermost first: last added = first executed
    app.add_middleware(ApiKeyAuthMiddleware, authenticator=pipeline.authenticator)
    app.add_middleware(RateLimitMiddleware, limiter=pipeline.limiter)
    app.add_middleware(RequestValidationMiddleware, validator=pipeline.validator)
    app.add_middleware(SecurityHeadersMiddleware, policy=pipeline.headers)
    app.add_middleware(
        SecurityAuditMiddleware,
        auditor=pipeline.auditor,
        header_policy=pipeline.headers,
    )

    app.state.security_pipeline = pipeline
    return pipeline
