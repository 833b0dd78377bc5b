"""Security audit middleware.

Wraps the whole pipeline. Every request gets a fresh request id, stamped on
the request state, the logging context and the X-Request-Id response header.
When the chain completes an `AuditRecord` is finalized and handed to the
audit log; a separate lightweight scan raises a SECURITY ALERT for
well-known attack substrings.

Unexpected exceptions from the application are converted here into a
generic 500 response. The detail stays in the server-side log only.
"""

import json
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional
from urllib.parse import unquote

from fastapi import Request, Response
from starlette.datastructures import Headers
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import PlainTextResponse

from bulwark.app.core.config import DEFAULT_SENSITIVE_HEADERS
from bulwark.app.core.context import set_current_request_id
from bulwark.app.core.logging import get_log_context, get_logger
from bulwark.app.core.utils import is_text_content, read_body_prefix, resolve_client_ip
from bulwark.app.middleware.auth import is_authenticated
from bulwark.app.middleware.security_headers import REQUEST_ID_HEADER, SecurityHeaders

logger = get_logger(__name__)

TRUNCATION_MARKER = "...[truncated]"
FAULT_MESSAGE = "An error occurred processing your request."

SQL_INJECTION_MARKERS = ("' or ", "1=1", "drop table", "union select", "exec(", "execute(")
PATH_TRAVERSAL_MARKERS = ("../", "..\\")
SCRIPT_MARKERS = ("<script", "javascript:", "onerror=", "onclick=", "alert(")


@dataclass
class AuditRecord:
    """Structured per-request observation for the audit log."""
    request_id: str
    timestamp: str
    method: str
    path: str
    query: str
    client_ip: str
    user_agent: str
    authenticated: bool = False
    request_headers: Optional[Dict[str, str]] = None
    request_body: Optional[str] = None
    body_truncated: bool = False
    status_code: int = 0
    success: bool = False
    duration_ms: float = 0.0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def sanitize_error(exc: BaseException, max_length: int = 500) -> str:
    """Render an exception as a single bounded log line."""
    message = " ".join(str(exc).split())
    if len(message) > max_length:
        message = message[:max_length] + TRUNCATION_MARKER
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


class SecurityAuditor:
    """Builds, logs and scans audit records.

    Args:
        log_successful_requests: Log requests with status < 400 at INFO
        log_request_headers: Snapshot request headers (minus sensitive ones)
        log_request_body: Snapshot textual request bodies
        max_body_size: Bytes of body read for the snapshot
        sensitive_headers: Header names never written to the audit log
        sink: Optional callable receiving every finalized record
    """

    def __init__(
        self,
        log_successful_requests: bool = False,
        log_request_headers: bool = True,
        log_request_body: bool = True,
        max_body_size: int = 4096,
        sensitive_headers: Iterable[str] = DEFAULT_SENSITIVE_HEADERS,
        sink: Optional[Callable[[AuditRecord], None]] = None,
    ):
        self.log_successful_requests = log_successful_requests
        self.log_request_headers = log_request_headers
        self.log_request_body = log_request_body
        self.max_body_size = max_body_size
        self.sensitive_headers = frozenset(h.lower() for h in sensitive_headers)
        self.sink = sink

    def safe_headers(self, headers: Headers) -> Dict[str, str]:
        """Copy request headers, dropping every sensitive one."""
        safe: Dict[str, str] = {}
        for name, value in headers.items():
            if name.lower() in self.sensitive_headers:
                continue
            safe[name] = f"{safe[name]},{value}" if name in safe else value
        return safe

    def truncate_body(self, body: str) -> tuple[str, bool]:
        if len(body) > self.max_body_size:
            return body[: self.max_body_size] + TRUNCATION_MARKER, True
        return body, False

    async def capture_body(self, request: Request) -> tuple[Optional[str], bool]:
        """Snapshot a textual body.

        Reading stops once more than max_body_size bytes have arrived; the
        rest of the body is left for the stages further down the chain.
        """
        if not is_text_content(request.headers.get("content-type")):
            return None, False

        declared = request.headers.get("content-length")
        if declared is None and "transfer-encoding" not in request.headers:
            return None, False
        if declared is not None and declared.strip() == "0":
            return None, False

        body, complete = await read_body_prefix(request, self.max_body_size)
        if not body:
            return None, False
        text = body.decode("utf-8", errors="replace")
        if complete:
            return self.truncate_body(text)
        return text[: self.max_body_size] + TRUNCATION_MARKER, True

    def start_record(self, request: Request, request_id: str) -> AuditRecord:
        record = AuditRecord(
            request_id=request_id,
            timestamp=datetime.now(timezone.utc).isoformat(),
            method=request.method,
            path=request.url.path,
            query=request.url.query,
            client_ip=resolve_client_ip(request),
            user_agent=request.headers.get("user-agent", ""),
        )
        if self.log_request_headers:
            record.request_headers = self.safe_headers(request.headers)
        return record

    def detect_suspicious(self, record: AuditRecord) -> List[str]:
        """Scan path, query and body for well-known attack substrings."""
        raw = f"{record.path}{record.query}{record.request_body or ''}".lower()
        text = raw + "\n" + unquote(raw)

        suspicious = []
        if any(marker in text for marker in SQL_INJECTION_MARKERS):
            suspicious.append("Possible SQL injection attempt")
        if any(marker in text for marker in PATH_TRAVERSAL_MARKERS):
            suspicious.append("Possible path traversal attempt")
        if any(marker in text for marker in SCRIPT_MARKERS):
            suspicious.append("Possible script injection attempt")
        if record.body_truncated:
            suspicious.append("Unusually large request body")
        return suspicious

    def emit(self, record: AuditRecord) -> None:
        """Log a finalized record and hand it to the sink."""
        context = get_log_context(
            request_id=record.request_id,
            client_ip=record.client_ip,
            method=record.method,
            path=record.path,
            status_code=record.status_code,
            duration_ms=record.duration_ms,
        )
        payload = json.dumps(record.to_dict(), default=str, ensure_ascii=False)

        if record.success:
            if self.log_successful_requests:
                logger.info("Security Audit: %s", payload, extra=context)
        elif record.status_code >= 500:
            logger.error("Security Alert: Failed request %s", payload, extra=context)
        else:
            logger.warning("Security Alert: Failed request %s", payload, extra=context)

        suspicious = self.detect_suspicious(record)
        if suspicious:
            logger.warning(
                "SECURITY ALERT - Suspicious activity detected: %s for request %s from %s",
                ", ".join(suspicious),
                record.request_id,
                record.client_ip,
                extra=get_log_context(
                    request_id=record.request_id,
                    client_ip=record.client_ip,
                    reason_code="suspicious_activity",
                ),
            )

        if self.sink is not None:
            self.sink(record)


class SecurityAuditMiddleware(BaseHTTPMiddleware):
    """Outermost pipeline stage: request ids, audit records, fault barrier.

    Args:
        app: The ASGI application
        auditor: Audit policy and sink
        header_policy: Hardening applied to the 500 produced for faults,
            which never passes through the header stage
    """

    def __init__(
        self,
        app,
        auditor: Optional[SecurityAuditor] = None,
        header_policy: Optional[SecurityHeaders] = None,
    ):
        super().__init__(app)
        self.auditor = auditor or SecurityAuditor()
        self.header_policy = header_policy

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = uuid.uuid4().hex
        request.state.request_id = request_id
        set_current_request_id(request_id)

        started = time.perf_counter()
        record = self.auditor.start_record(request, request_id)
        if self.auditor.log_request_body:
            record.request_body, record.body_truncated = await self.auditor.capture_body(
                request
            )

        try:
            response = await call_next(request)
        except Exception as exc:
            record.error = sanitize_error(exc)
            logger.exception(
                f"Unhandled exception for request {request_id}",
                extra=get_log_context(
                    request_id=request_id,
                    client_ip=record.client_ip,
                    exception_type=type(exc).__name__,
                ),
            )
            # Internal detail never reaches the client
            response = PlainTextResponse(FAULT_MESSAGE, status_code=500)
            if self.header_policy is not None:
                self.header_policy.apply(response.headers, request_id)

        record.status_code = response.status_code
        record.success = response.status_code < 400
        record.authenticated = is_authenticated(request)
        record.duration_ms = round((time.perf_counter() - started) * 1000, 3)
        response.headers[REQUEST_ID_HEADER] = request_id

        self.auditor.emit(record)
        return response
