"""
FastAPI application factory.
"""

import asyncio
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .core.config import get_settings
from .core.database import init_db, close_db, get_session_factory
from .core.redis import close_redis
from .api.router import router

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="kbsync",
        description="Knowledge document ingestion & reconciliation",
        version="1.0.0",
        docs_url="/docs" if settings.env == "development" else None,
        redoc_url="/redoc" if settings.env == "development" else None,
    )

    # ── CORS ─────────────────────────────────────────────────────
    origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Startup ──────────────────────────────────────────────────
    @app.on_event("startup")
    async def on_startup():
        logging.basicConfig(
            level=getattr(logging, settings.log_level.upper(), logging.INFO),
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
        logger.info("Starting kbsync (env=%s)", settings.env)

        await init_db()

        from .core.flags import get_flags
        flags = get_flags()
        logger.info(
            "Flags: auth0=%s s3=%s redis=%s sweeper=%s",
            flags.use_auth0, flags.use_s3, flags.use_redis, flags.use_sweeper,
        )
        if not settings.webhook_secret:
            logger.warning("WEBHOOK_SECRET is not set; the ingestion webhook is unauthenticated")

        if flags.use_sweeper:
            from .core.cache import get_cache_store
            from .services.cache import CacheInvalidator
            from .services.rag_client import get_rag_client
            from .services.sweeper import run_forever

            app.state.sweeper_task = asyncio.create_task(
                run_forever(
                    get_session_factory(),
                    get_rag_client(),
                    CacheInvalidator(get_cache_store()),
                    interval_seconds=settings.sweep_interval_seconds,
                    concurrency=settings.sweep_concurrency,
                    unsubmitted_grace_seconds=settings.unsubmitted_grace_seconds,
                )
            )

        logger.info("kbsync is ready")

    # ── Shutdown ─────────────────────────────────────────────────
    @app.on_event("shutdown")
    async def on_shutdown():
        task = getattr(app.state, "sweeper_task", None)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        from .services.rag_client import close_client
        await close_client()
        await close_db()
        await close_redis()
        logger.info("kbsync shut down")

    # ── Routes ───────────────────────────────────────────────────
    app.include_router(router)

    return app
