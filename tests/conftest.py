"""Shared fixtures for pipeline tests."""

from typing import Callable, List

import pytest
from fastapi import FastAPI, Request, Response
from starlette.requests import Request as StarletteRequest

from bulwark.app.core.config import Settings
from bulwark.app.middleware.audit import AuditRecord
from bulwark.app.middleware.pipeline import install_security_pipeline

VALID_KEYS = ["test-key-alpha", "test-key-bravo"]


class FakeClock:
    """Controllable wall clock for window arithmetic."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_request(
    path: str = "/",
    method: str = "GET",
    headers: dict | None = None,
    client: tuple | None = ("203.0.113.7", 50000),
    query_string: bytes = b"",
    receive=None,
) -> StarletteRequest:
    """Build a bare Starlette request from an ASGI scope."""
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "raw_path": path.encode("latin-1"),
        "query_string": query_string,
        "headers": [
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in (headers or {}).items()
        ],
        "client": client,
        "server": ("testserver", 80),
        "scheme": "http",
    }
    if receive is None:
        return StarletteRequest(scope)
    return StarletteRequest(scope, receive)


class ChunkedBody:
    """ASGI receive callable sending a body in fixed-size chunks.

    Counts how many messages have been pulled.
    """

    def __init__(self, chunk: bytes, count: int):
        self.chunk = chunk
        self.count = count
        self.pulled = 0

    @property
    def bytes_pulled(self) -> int:
        return self.pulled * len(self.chunk)

    async def __call__(self) -> dict:
        self.pulled += 1
        return {
            "type": "http.request",
            "body": self.chunk,
            "more_body": self.pulled < self.count,
        }


def make_settings(**overrides) -> Settings:
    values = {
        "api_keys": VALID_KEYS,
        "auth_failure_delay_seconds": 0.0,
        "environment": "production",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def build_app(settings: Settings, **pipeline_kwargs) -> FastAPI:
    """A small application protected by the full pipeline."""
    app = FastAPI()
    install_security_pipeline(app, settings, **pipeline_kwargs)

    @app.get("/health")
    async def health() -> Response:
        return Response(status_code=200)

    @app.get("/api/items")
    async def list_items() -> dict:
        return {"items": []}

    @app.post("/api/items")
    async def create_item(request: Request) -> dict:
        return {"received": await request.json()}

    @app.get("/api/fingerprinted")
    async def fingerprinted() -> Response:
        return Response(
            "ok",
            headers={"Server": "Kestrel", "X-Powered-By": "PHP/8.1", "X-Frame-Options": "SAMEORIGIN"},
        )

    @app.get("/api/boom")
    async def boom() -> dict:
        raise RuntimeError("connection to db://admin:hunter2@10.0.0.5 failed")

    return app


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def audit_records() -> List[AuditRecord]:
    return []


@pytest.fixture
def app_factory(audit_records) -> Callable[..., FastAPI]:
    def _factory(**overrides) -> FastAPI:
        pipeline_kwargs = {
            key: overrides.pop(key)
            for key in ("registry", "credentials", "pipeline")
            if key in overrides
        }
        return build_app(
            make_settings(**overrides),
            audit_sink=audit_records.append,
            **pipeline_kwargs,
        )

    return _factory


@pytest.fixture
def api_headers() -> dict:
    return {"X-API-Key": VALID_KEYS[0]}
