from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from bulwark.app.core.config import Settings, settings as default_settings
from bulwark.app.core.logging import get_logger, setup_logging
from bulwark.app.middleware.pipeline import install_security_pipeline


def create_app(settings: Optional[Settings] = None, **pipeline_kwargs) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Configuration (defaults to the environment-loaded settings)
        **pipeline_kwargs: Injected stores passed to the pipeline builder
            (registry, credentials, audit_sink)

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or default_settings

    setup_logging(settings)
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Start the rate limiter sweep on startup, stop it on shutdown."""
        pipeline = app.state.security_pipeline
        await pipeline.start()
        logger.info(
            "Application startup complete",
            extra={
                "environment": settings.environment,
                "api_keys_configured": len(pipeline.authenticator.credentials),
                "hsts_enabled": pipeline.headers.enable_hsts,
            },
        )

        yield

        await pipeline.stop()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Bulwark",
        description="Request-defense pipeline: audit, hardening, validation, rate limiting and API key authentication",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.is_development else None,
        redoc_url=None,
        openapi_url="/openapi.json" if settings.is_development else None,
    )

    install_security_pipeline(app, settings, **pipeline_kwargs)

    @app.get("/health")
    async def health() -> Response:
        """Liveness check: 200 with an empty body."""
        return Response(status_code=200)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> PlainTextResponse:
        """Plain-text error bodies, consistent with pipeline rejections."""
        if exc.status_code == 404:
            detail = "Not found"
        else:
            detail = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return PlainTextResponse(
            detail,
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    return app


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    # Server header disabled so the stack is not fingerprinted
    uvicorn.run(
        "bulwark.app.main:app",
        host=default_settings.host,
        port=default_settings.port,
        reload=default_settings.debug,
        server_header=False,
        log_config=None,
    )
