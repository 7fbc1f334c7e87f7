"""FastAPI application entry point for the rental booking engine API."""

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from rental_engine.app.config import get_settings
from rental_engine.app.exception_handlers import register_exception_handlers
from rental_engine.app.routes.deps import build_payment_orchestrator
from rental_engine.infra.database import async_session, init_db
from rental_engine.services.booking_monitor import run_booking_monitor

logger = logging.getLogger(__name__)


async def booking_monitor_loop():
    """Expire stale Pending bookings, end elapsed rentals, retry refunds and deposit releases."""
    settings = get_settings()
    while True:
        try:
            async with async_session() as db:
                counts = await run_booking_monitor(db, settings, payments=build_payment_orchestrator(db))
                if any(counts.values()):
                    logger.info("Booking monitor: %s", counts)
        except Exception as e:
            logger.error("Booking monitor error: %s", e)
        await asyncio.sleep(settings.monitor_interval_minutes * 60)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: initialize database and start the monitor."""
    await init_db()
    monitor = asyncio.create_task(booking_monitor_loop())
    yield
    monitor.cancel()


settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.debug else logging.WARNING,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)

app = FastAPI(
    title="Rental Booking Engine API",
    lifespan=lifespan,
    debug=settings.debug,
)

_cors_origins = settings.cors_origins_list
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=("*" not in _cors_origins),
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# ---------------------------------------------------------------------------
# Route includes
# ---------------------------------------------------------------------------
from rental_engine.app.routes.availability import router as availability_router
from rental_engine.app.routes.bookings import router as bookings_router, admin_router as refunds_admin_router
from rental_engine.app.routes.bookings import deposits_router
from rental_engine.app.routes.payments import router as payments_router
from rental_engine.app.routes.quotes import router as quotes_router

app.include_router(quotes_router)
app.include_router(availability_router)
app.include_router(bookings_router)
app.include_router(refunds_admin_router)
app.include_router(deposits_router)
app.include_router(payments_router)


@app.get("/health", tags=["health"])
async def health_check():
    """Return service health status."""
    return {"status": "ok", "service": "rental-engine"}


def run() -> None:
    """Run the application with uvicorn (used by project.scripts entry point)."""
    uvicorn.run(
        "rental_engine.app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
