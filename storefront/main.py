import logging
import threading

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import config
from .database import engine
from .models import Base
from .routers import admin_router, api_router, webhook_router
from .sweeper import start_sweeper_in_thread

logging.basicConfig(
    level=config.get_log_level(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(
    title="Storefront Orders",
    description="Catalog, checkout and payment settlement for a small storefront",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.get_cors_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

app.include_router(api_router.router)
app.include_router(webhook_router.router)
app.include_router(admin_router.router)


_sweeper_stop = threading.Event()


@app.on_event("startup")
def _startup() -> None:
    Base.metadata.create_all(bind=engine)
    _sweeper_stop.clear()
    # None unless RESERVATION_SWEEP_INTERVAL_SECONDS is set
    app.state.sweeper = start_sweeper_in_thread(stop_event=_sweeper_stop)


@app.on_event("shutdown")
def _shutdown() -> None:
    _sweeper_stop.set()
    sweeper = getattr(app.state, "sweeper", None)
    if sweeper is not None:
        sweeper.join(timeout=5)


@app.get("/")
def root():
    return {
        "service": "Storefront Orders",
        "status": "running",
        "version": "0.1.0",
    }


@app.get("/health")
def health_check():
    return {
        "status": "healthy",
        "service": "storefront-orders",
    }
