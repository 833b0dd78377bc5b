"""Request helpers shared by the pipeline stages."""

from typing import List

from fastapi import Request
from starlette.types import Message, Receive

UNKNOWN_CLIENT = "unknown"


def resolve_client_ip(request: Request) -> str:
    """Resolve the originating client address.

    Precedence: first entry of X-Forwarded-For, then X-Real-IP, then the
    transport peer address, then the "unknown" sentinel.

    Note:
        Forwarding headers are trusted as sent. Clients behind a shared
        proxy or NAT collapse to a single address.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = request.headers.get("X-Real-IP")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    if request.client and request.client.host:
        return request.client.host
    return UNKNOWN_CLIENT


def get_request_target(request: Request) -> str:
    """Return the raw (still percent-encoded) path plus query string.

    Starlette decodes `request.url.path`, which would hide encoded attack
    patterns, so the raw ASGI path is used when the server provides it.
    """
    raw_path = request.scope.get("raw_path")
    if raw_path:
        # Some servers include the query in raw_path
        target = raw_path.split(b"?", 1)[0].decode("latin-1")
    else:
        target = request.scope.get("path", "")

    query = request.scope.get("query_string", b"")
    if query:
        target += "?" + query.decode("latin-1")
    return target


def _media_type(content_type: str | None) -> str:
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


def is_json_content(content_type: str | None) -> bool:
    """application/json and structured-syntax types such as application/problem+json."""
    media_type = _media_type(content_type)
    return media_type == "application/json" or media_type.endswith("+json")


def is_text_content(content_type: str | None) -> bool:
    media_type = _media_type(content_type)
    return (
        media_type.startswith("text/")
        or media_type == "application/xml"
        or media_type.endswith("+xml")
        or is_json_content(media_type)
    )


def _replay(messages: List[Message], receive: Receive) -> Receive:
    pending = list(messages)

    async def replay() -> Message:
        if pending:
            return pending.pop(0)
        return await receive()

    return replay


async def read_body_prefix(request: Request, limit: int) -> tuple[bytes, bool]:
    """Read the request body, pulling no more than needed to pass limit bytes.

    Returns the bytes read and whether the whole body fit within limit.
    A body read to its end is cached on the request like `request.body()`
    does. When reading stops early, the messages already pulled are put back
    in front of the remaining stream, so later readers still get the body
    from the start.
    """
    cached = getattr(request, "_body", None)
    if cached is not None:
        return cached, len(cached) <= limit

    receive = request.receive
    pulled: List[Message] = []
    chunks: List[bytes] = []
    total = 0
    while True:
        message = await receive()
        pulled.append(message)
        if message["type"] != "http.request":
            break
        chunk = message.get("body", b"")
        chunks.append(chunk)
        total += len(chunk)
        if not message.get("more_body", False):
            body = b"".join(chunks)
            request._body = body
            return body, total <= limit
        if total > limit:
            break

    request._receive = _replay(pulled, receive)
    return b"".join(chunks), False
