from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from crmlink.core.config import get_settings
from crmlink.core.middleware import install_request_middleware
from crmlink.routers.health import router as health_router
from crmlink.routers.integration import router as integration_router


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(
        title="SuiteCRM Integration API",
        version=settings.VERSION,
        docs_url=None if settings.APP_ENV == "prod" else "/docs",
        redoc_url=None,
    )

    origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["*"],
    )
    install_request_middleware(app, settings=settings)

    if settings.ENABLE_PROMETHEUS_METRICS:

        @app.get(settings.PROMETHEUS_METRICS_PATH, include_in_schema=False)
        def metrics() -> Response:
            return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(health_router)
    app.include_router(integration_router)
    return app


app = create_app()
