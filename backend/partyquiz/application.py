from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from partyquiz.api.router import api_router
from partyquiz.config import settings
from partyquiz.database import close_db, init_db
from partyquiz.redis_cache import close_redis, init_redis
from partyquiz.runtime import runtime


def create_app() -> FastAPI:
    app = FastAPI(title="PartyQuiz Backend", version="1.0.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router)

    @app.on_event("startup")
    async def on_startup() -> None:
        await init_db()
        await init_redis()
        await runtime.startup()

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        await runtime.shutdown()
        await close_redis()
        await close_db()

    return app


app = create_app()
