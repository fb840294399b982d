"""
FastAPI application factory.
create_app() is the single entry point for building the app.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import sentry_sdk
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pymongo.asynchronous.mongo_client import AsyncMongoClient

from config import AppSettings
from errors import register_error_handlers
from infrastructure.cache.redis_client import create_redis_client
from infrastructure.cache.resolution_cache import ResolutionCache
from infrastructure.geoip import GeoIPService
from infrastructure.queue.local import LocalEvaluationQueue
from repositories import ClickAggregateRepository, ensure_indexes
from repositories.indexes import CLICK_AGGREGATES
from routes.analytics_routes import router as analytics_router
from routes.health_routes import router as health_router
from routes.link_event_routes import router as link_event_router
from routes.redirect_routes import router as redirect_router
from services.click_aggregator import ClickAggregatorRegistry
from services.evaluation.runtime import (
    build_evaluation_queue,
    build_evaluation_runtime,
    build_repositories,
)
from services.evaluation.sweeper import StalenessSweeper
from services.link_events import LinkEventService
from services.resolver import RedirectResolver
from shared.logging import get_logger, setup_logging
from shared.rate_limit import TokenBucket

log = get_logger(__name__)


def init_sentry(settings: AppSettings) -> None:
    if settings.sentry.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry.sentry_dsn,
            send_default_pii=settings.sentry.sentry_send_pii,
            traces_sample_rate=settings.sentry.sentry_traces_sample_rate,
            profiles_sample_rate=settings.sentry.sentry_profile_sample_rate,
            environment=settings.env,
        )


def create_app(settings: Optional[AppSettings] = None) -> FastAPI:
    """Create and return a fully configured FastAPI application."""
    if settings is None:
        settings = AppSettings()

    setup_logging(settings.logging, production=settings.is_production)
    # Initialise Sentry before anything else so it captures startup errors
    init_sentry(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # ── Startup ──────────────────────────────────────────────────────────
        mongo_client: AsyncMongoClient = AsyncMongoClient(settings.db.mongodb_uri)
        db = mongo_client[settings.db.db_name]
        app.state.mongo_client = mongo_client
        app.state.db = db
        app.state.settings = settings
        await ensure_indexes(db)

        # Redis is optional; without it every redirect reads MongoDB
        redis_client = await create_redis_client(settings.redis.redis_uri)
        app.state.redis = redis_client
        cache = ResolutionCache(redis_client, settings.redis.resolution_cache_ttl_seconds)

        geoip = GeoIPService(settings.geoip_country_db)
        app.state.geoip = geoip

        links, evaluations = build_repositories(db)
        click_aggregates = ClickAggregateRepository(db[CLICK_AGGREGATES])
        aggregators = ClickAggregatorRegistry(click_aggregates, settings.aggregator)
        app.state.click_aggregates = click_aggregates
        app.state.aggregators = aggregators
        app.state.resolver = RedirectResolver(
            links,
            evaluations,
            aggregators.dispatch,
            cache,
            block_on_dead=settings.block_on_dead,
        )

        queue = await build_evaluation_queue(settings.queue)
        app.state.evaluation_queue = queue
        app.state.link_events = LinkEventService(links, queue, cache)

        # Without RabbitMQ there is no separate worker: evaluate in-process
        runtime = None
        sweeper_task = None
        stop_sweeper = asyncio.Event()
        if isinstance(queue, LocalEvaluationQueue):
            runtime = build_evaluation_runtime(db, settings)
            await queue.start(runtime.handler)
            sweeper = StalenessSweeper(
                evaluations,
                queue,
                TokenBucket(
                    settings.evaluation.sweep_rate_per_second,
                    settings.evaluation.sweep_burst,
                ),
                settings.evaluation,
            )
            sweeper_task = asyncio.create_task(
                sweeper.run_forever(stop_sweeper), name="staleness-sweeper"
            )

        log.info(
            "app_started",
            env=settings.env,
            redis=redis_client is not None,
            queue=type(queue).__name__,
        )

        yield

        # ── Shutdown ─────────────────────────────────────────────────────────
        await aggregators.shutdown()
        stop_sweeper.set()
        if sweeper_task is not None:
            await sweeper_task
        await queue.close()
        if runtime is not None:
            await runtime.aclose()
        geoip.close()
        await mongo_client.close()
        if redis_client is not None:
            await redis_client.aclose()
        log.info("app_stopped")

    app = FastAPI(
        title=settings.app_name,
        version="1.0.0",
        docs_url=settings.docs_url,
        redoc_url=None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)
    app.include_router(health_router)
    app.include_router(link_event_router)
    app.include_router(analytics_router)
    # Catch-all /{short_code}; must stay last
    app.include_router(redirect_router)

    return app
