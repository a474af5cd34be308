import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.config import Settings, load_settings
from core.database import create_db_and_tables, create_db_engine
from core.exceptions import register_exception_handlers
from core.rate_limit import build_rate_limiter
from core.security import TokenService
from routes.auth import router as auth_router
from routes.payment import router as payment_router
from routes.portal import router as portal_router
from routes.zip_change import router as zip_change_router
from services.crm_registry import AirtableRegistry
from services.email_service import EmailService
from services.payment_service import build_stripe_gateway

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# =========================================
# 🏁 Lifespan (DB initialization + client shutdown)
# =========================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    create_db_and_tables(app.state.engine)
    logger.info("✅ Database tables created on startup.")
    yield
    app.state.http_client.close()
    app.state.engine.dispose()
    logger.info("✅ Application shutting down.")


# =========================================
#  ✅ FastAPI App factory
# =========================================
def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Builds config and every external client once, then wires the routers."""
    settings = settings or load_settings()

    app = FastAPI(lifespan=lifespan, title="LeadZone Backend", debug=settings.DEBUG)

    app.state.settings = settings
    app.state.engine = create_db_engine(settings.DATABASE_URL)
    app.state.token_service = TokenService.from_settings(settings)
    app.state.rate_limiter = build_rate_limiter(settings)
    app.state.http_client = httpx.Client(timeout=settings.AIRTABLE_TIMEOUT_SECONDS)
    app.state.crm_registry = AirtableRegistry.from_settings(settings, app.state.http_client)
    app.state.stripe_gateway = build_stripe_gateway(settings)
    app.state.email_service = EmailService.from_settings(settings)

    allowed_origins = [settings.FRONTEND_URL]
    if not settings.IS_PRODUCTION:
        allowed_origins += ["http://localhost:3000", "http://127.0.0.1:3000"]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    # =========================================
    # 📦 Routers
    # =========================================
    app.include_router(auth_router)
    app.include_router(zip_change_router)
    app.include_router(portal_router)
    app.include_router(payment_router)

    # =========================================
    # 🩺 Health Check
    # =========================================
    @app.get("/health")
    def health_check():
        return {"status": "ok", "message": "Backend is running"}

    return app


app = create_app()
