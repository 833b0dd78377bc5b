"""Request validation middleware.

Rejects oversized, malformed or malicious requests before they can reach
the rate limiter, the authenticator or the application. Checks run in a
fixed priority order and the first failure wins:

1. declared body size (413)
2. request target length, NUL bytes, path traversal, encoded attacks (400)
3. header value length, injection signatures, CRLF (400)
4. body injection signatures and JSON nesting depth (400)

All signatures are precompiled case-insensitive regular expressions.
"""

import re
from typing import Iterable, Optional, Tuple
from urllib.parse import unquote

from fastapi import Request

from bulwark.app.core.logging import get_logger
from bulwark.app.core.utils import get_request_target, is_json_content, read_body_prefix
from bulwark.app.exceptions import ConfigurationError
from bulwark.app.middleware.base import InterceptorMiddleware
from bulwark.app.middleware.models import Outcome

logger = get_logger(__name__)

BODY_METHODS = frozenset(("POST", "PUT", "PATCH"))

# Quote-terminated boolean tautologies, stacked queries, comment-terminated
# quotes and DDL/DML keyword pairs.
SQL_INJECTION_PATTERN = re.compile(
    r"'\s*(?:or|and)\s+'?\w+'?\s*(?:=|<|>|like\b)"
    r"|\bor\s+\d+\s*=\s*\d+"
    r"|\bunion\s+(?:all\s+)?select\b"
    r"|\binsert\s+into\b"
    r"|\bdelete\s+from\b"
    r"|\bdrop\s+(?:table|database|schema)\b"
    r"|\b(?:alter|create|truncate)\s+table\b"
    r"|\bupdate\s+\w+\s+set\b"
    r"|\bexec(?:ute)?\s*\("
    r"|;\s*(?:select|insert|update|delete|drop|alter|create|exec|shutdown)\b"
    r"|'\s*(?:--|#|/\*)",
    re.IGNORECASE,
)

XSS_PATTERN = re.compile(
    r"<\s*/?\s*(?:script|iframe|object|embed|form|input|button|textarea|svg)\b"
    r"|\bon(?:error|load|click|dblclick|mouseover|mouseout|mouseenter|focus|blur"
    r"|submit|change|input|keydown|keyup|keypress|toggle|animationstart)\s*="
    r"|javascript\s*:",
    re.IGNORECASE,
)

PATH_TRAVERSAL_PATTERN = re.compile(
    r"(?:\.|%2e|%252e){2}(?:/|\\|%2f|%5c|%252f|%255c|%c0%af|%c1%9c)"
    r"|(?:%252e){2}",
    re.IGNORECASE,
)

COMMAND_INJECTION_PATTERN = re.compile(
    r"[;&|]\s*(?:cmd|powershell|bash|sh|zsh|nc|netcat|curl|wget|rm|cat|ls|id"
    r"|chmod|whoami|uname|python|perl)(?=\s|$)"
    r"|\$\([^)\n]*\)"
    r"|`[^`\n]+`",
    re.IGNORECASE,
)


def exceeds_json_depth(text: str, max_depth: int) -> bool:
    """Check whether JSON text nests objects/arrays deeper than max_depth.

    Brackets inside string literals are ignored; the scan tracks string and
    escape state so it never needs to parse the document.
    """
    depth = 0
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
        elif char == '"':
            in_string = True
        elif char == "{" or char == "[":
            depth += 1
            if depth > max_depth:
                return True
        elif char == "}" or char == "]":
            depth -= 1
    return False


def _declared_length(request: Request) -> Optional[int]:
    raw = request.headers.get("content-length")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


class RequestValidator:
    """Input validation for request target, headers and body.

    Args:
        max_request_size: Maximum body size in bytes (413 above it)
        max_url_length: Maximum length of path plus query
        max_header_value_length: Maximum length of any header value
        max_json_depth: Maximum object/array nesting for JSON bodies
    """

    def __init__(
        self,
        max_request_size: int = 1_048_576,
        max_url_length: int = 2048,
        max_header_value_length: int = 4096,
        max_json_depth: int = 32,
    ):
        for name, value in (
            ("max_request_size", max_request_size),
            ("max_url_length", max_url_length),
            ("max_header_value_length", max_header_value_length),
            ("max_json_depth", max_json_depth),
        ):
            if value < 1:
                raise ConfigurationError(f"{name} must be at least 1")
        self.max_request_size = max_request_size
        self.max_url_length = max_url_length
        self.max_header_value_length = max_header_value_length
        self.max_json_depth = max_json_depth

    def _too_large(self) -> Outcome:
        return Outcome.reject(
            413,
            "body_too_large",
            f"Request body exceeds {self.max_request_size} bytes",
            message="Request body too large",
        )

    @staticmethod
    def _invalid_url(code: str, reason: str) -> Outcome:
        return Outcome.reject(400, code, reason, message=f"Invalid request: {reason}")

    @staticmethod
    def _invalid_header(code: str, reason: str) -> Outcome:
        return Outcome.reject(400, code, reason, message=f"Invalid headers: {reason}")

    @staticmethod
    def _invalid_body(code: str, reason: str) -> Outcome:
        return Outcome.reject(400, code, reason, message=f"Invalid request body: {reason}")

    def check_size(self, declared_length: Optional[int]) -> Outcome:
        if declared_length is not None and declared_length > self.max_request_size:
            return self._too_large()
        return Outcome.accept()

    def check_url(self, target: str) -> Outcome:
        """Validate the raw path plus query string."""
        if len(target) > self.max_url_length:
            return self._invalid_url("url_too_long", "URL too long")

        decoded = unquote(target)
        if "\x00" in target or "\x00" in decoded:
            return self._invalid_url("null_byte", "Null bytes not allowed")

        if PATH_TRAVERSAL_PATTERN.search(target):
            return self._invalid_url("path_traversal", "Path traversal detected")

        if decoded != target and (
            SQL_INJECTION_PATTERN.search(decoded) or XSS_PATTERN.search(decoded)
        ):
            return self._invalid_url("encoded_attack", "Encoded attack pattern detected")

        return Outcome.accept()

    def check_headers(self, headers: Iterable[Tuple[str, str]]) -> Outcome:
        """Validate every header value, naming the first offending header."""
        for name, value in headers:
            if len(value) > self.max_header_value_length:
                return self._invalid_header(
                    "header_too_long", f"Header '{name}' value too long"
                )
            if SQL_INJECTION_PATTERN.search(value):
                return self._invalid_header(
                    "header_sql_injection", f"SQL injection pattern in header '{name}'"
                )
            if COMMAND_INJECTION_PATTERN.search(value):
                return self._invalid_header(
                    "header_command_injection",
                    f"Command injection pattern in header '{name}'",
                )
            if "\r" in value or "\n" in value:
                return self._invalid_header(
                    "header_crlf", f"CRLF injection in header '{name}'"
                )
        return Outcome.accept()

    def check_body(self, body: str, content_type: Optional[str] = None) -> Outcome:
        """Validate a decoded request body."""
        if not body:
            return Outcome.accept()

        if SQL_INJECTION_PATTERN.search(body):
            return self._invalid_body("body_sql_injection", "SQL injection pattern detected")

        if XSS_PATTERN.search(body):
            return self._invalid_body("body_xss", "XSS pattern detected")

        if COMMAND_INJECTION_PATTERN.search(body):
            return self._invalid_body(
                "body_command_injection", "Command injection pattern detected"
            )

        if is_json_content(content_type) and exceeds_json_depth(body, self.max_json_depth):
            return self._invalid_body(
                "json_too_deep", f"JSON depth exceeds maximum of {self.max_json_depth}"
            )

        return Outcome.accept()

    async def validate(self, request: Request) -> Outcome:
        """Run every check against a request; the first failure wins.

        The body is read at most one chunk past max_request_size and is
        cached on the request, so handlers further down the chain can still
        read it from the start.
        """
        declared = _declared_length(request)
        outcome = self.check_size(declared)
        if outcome.rejected:
            return outcome

        outcome = self.check_url(get_request_target(request))
        if outcome.rejected:
            return outcome

        outcome = self.check_headers(
            (name.decode("latin-1"), value.decode("latin-1"))
            for name, value in request.headers.raw
        )
        if outcome.rejected:
            return outcome

        if request.method.upper() not in BODY_METHODS or declared == 0:
            return Outcome.accept()

        # Stops pulling once the ceiling is passed, chunked uploads included
        body, within_limit = await read_body_prefix(request, self.max_request_size)
        if not within_limit:
            return self._too_large()

        return self.check_body(
            body.decode("utf-8", errors="replace"),
            request.headers.get("content-type"),
        )


class RequestValidationMiddleware(InterceptorMiddleware):
    """Middleware rejecting malformed or malicious requests.

    Returns HTTP 413 for oversized bodies and HTTP 400 for everything else,
    with a plain-text reason.
    """

    logger = logger

    def __init__(self, app, validator: Optional[RequestValidator] = None):
        super().__init__(app)
        self.validator = validator or RequestValidator()

    async def inspect(self, request: Request) -> Outcome:
        return await self.validator.validate(request)
