"""Shared Starlette adapter for pipeline stages that may reject a request."""

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from bulwark.app.core.logging import get_log_context, get_logger
from bulwark.app.core.utils import resolve_client_ip
from bulwark.app.middleware.models import Outcome


class InterceptorMiddleware(BaseHTTPMiddleware):
    """Run a stage's inspection and honor its verdict.

    A rejected outcome terminates the request with its plain-text response.
    An accepted outcome lets the request through; its headers are copied
    onto the downstream response.
    """

    logger = get_logger(__name__)

    async def inspect(self, request: Request) -> Outcome:
        """Inspect the request and return the stage outcome."""
        raise NotImplementedError

    def log_rejection(self, request: Request, outcome: Outcome) -> None:
        self.logger.warning(
            "Request rejected - %s from %s",
            outcome.reason,
            resolve_client_ip(request),
            extra=get_log_context(
                request_id=getattr(request.state, "request_id", None),
                client_ip=resolve_client_ip(request),
                reason_code=outcome.code,
                status_code=outcome.status_code,
            ),
        )

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        outcome = await self.inspect(request)
        if outcome.rejected:
            self.log_rejection(request, outcome)
            return outcome.to_response()

        response = await call_next(request)
        for name, value in outcome.headers.items():
            response.headers[name] = value
        return response
