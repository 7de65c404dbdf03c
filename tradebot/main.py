"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tradebot.config import settings
from tradebot.database import create_db_and_tables
from tradebot.utils.logging import setup_logging
from tradebot.api import system


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    setup_logging()
    create_db_and_tables()

    from tradebot.engine.bootstrap import build_engine
    from tradebot.engine.scheduler import set_controller

    engine = await build_engine()
    set_controller(engine.controller)
    if settings.autostart:
        engine.controller.start()

    yield

    set_controller(None)
    await engine.close()


app = FastAPI(
    title="Tradebot",
    description="AI-assisted Binance trading engine with a control API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(system.router)
