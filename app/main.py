from __future__ import annotations
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from app.api import router
from logging_config import configure_logging
from services.payments import build_default_payment_service
from services.stations import build_default_station_service


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    station_service = build_default_station_service()
    payment_service = build_default_payment_service()
    try:
        yield
    finally:
        station_service.shutdown()
        payment_service.shutdown()
        build_default_station_service.cache_clear()
        build_default_payment_service.cache_clear()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(
        title="Spark Station Aggregator",
        description=(
            "Finds EV charging stations from several sources, ranks them by distance "
            "and runs mock UPI payments that earn Spark Coins."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(router)
    return app

app = create_app()
