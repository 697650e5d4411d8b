import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pricing_api.core.config import settings
from pricing_api.core.database import SessionLocal, init_db
from pricing_api.core.errors import setup_exception_handlers
from pricing_api.core.logging_config import configure_logging
from pricing_api.routes.health import router as health_router
from pricing_api.routes.movements import router as movements_router
from pricing_api.services.seed import seed_demo


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging(settings.log_level)
    app = FastAPI(title="Pricing API", version="0.1.0")

    origins = settings.cors_origins
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    setup_exception_handlers(app)

    app.include_router(health_router, tags=["health"])
    app.include_router(movements_router, prefix="/movements", tags=["movements"])

    return app


app = create_app()

# Only seed in development or when explicitly requested
if settings.env == "dev" or os.getenv("FORCE_SEED") == "true":
    try:
        init_db()
        with SessionLocal() as db:
            seed_demo(db)
    except Exception:
        logger.exception("demo seed skipped")
