"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from order_executor.config import settings
from order_executor.database import create_db_and_tables
from order_executor.utils.logging import setup_logging
from order_executor.api import accounts, auth, news, orders, signals, system


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    setup_logging()
    create_db_and_tables()
    # Resolve orders left pending by a crash before any tick runs
    from order_executor.engine.position_sync import reconcile_orders_on_startup
    await reconcile_orders_on_startup()
    from order_executor.engine.scheduler import start_scheduler, stop_scheduler
    start_scheduler()

    telegram_bot = None
    if settings.telegram_bot_token:
        from order_executor.services.telegram_bot import init_bot
        telegram_bot = init_bot()
        telegram_bot.start()

    yield

    if telegram_bot:
        telegram_bot.stop()
    stop_scheduler()


app = FastAPI(
    title="Order Executor",
    description="Signal-driven order execution with session sizing, news gate and trailing stops",
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

app.include_router(auth.router)
app.include_router(accounts.router)
app.include_router(orders.router)
app.include_router(signals.router)
app.include_router(news.router)
app.include_router(system.router)
