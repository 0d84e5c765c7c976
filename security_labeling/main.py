"""Security Labeling Service FastAPI application.

Classifies FHIR resources for sensitive content: topic-source ValueSets are
compiled into code → topic rules, and submitted Bundles come back with
confidentiality and sensitive-topic security labels plus a ``lastSourceSync``
marker so unchanged records are not rescanned until the rules change.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from security_labeling.core.config import settings
from security_labeling.routers import health, labeling
from security_labeling.scripts.startup_bootstrap import bootstrap
from security_labeling.services.rule_store import RuleStore


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    bootstrap(app.state.rule_store)
    yield


def create_app(*, run_bootstrap: bool = True) -> FastAPI:
    app = FastAPI(
        title="Security Labeling Service",
        version="1.0.0",
        description="Sensitive-topic security labeling for FHIR resources.",
        lifespan=_lifespan if run_bootstrap else None,
    )
    app.state.rule_store = RuleStore()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router)
    app.include_router(labeling.router)

    return app


app = create_app()
