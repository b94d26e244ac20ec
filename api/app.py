from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.config import Settings, get_settings
from core.logging_core import configure_logging, get_logger
from ledger.api import router as accounts_router
from orders.api import router as orders_router
from payments.api import router as payments_router
from referrals.api import router as referrals_router

from .services import Services

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    services: Services = app.state.services
    if services.settings.run_workers:
        services.start_workers()
    try:
        yield
    finally:
        services.stop_workers()


def create_app(
    settings: Optional[Settings] = None, services: Optional[Services] = None, root_path: str = ""
) -> FastAPI:
    settings = settings or (services.settings if services else get_settings())
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Peace Market Referral API",
        description="Multi-level referral commissions, wallet settlement and delivery credits",
        version="1.0.0",
        root_path=root_path,
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.services = services or Services(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(accounts_router)
    app.include_router(referrals_router)
    app.include_router(payments_router)
    app.include_router(orders_router)

    @app.get("/health", tags=["System"])
    def health_check():
        return {
            "status": "healthy",
            "service": "peace-market-referrals",
            "workers": {w.name: w.is_running for w in app.state.services.workers},
        }

    logger.info("Application created (workers %s)", "enabled" if settings.run_workers else "disabled")
    return app
