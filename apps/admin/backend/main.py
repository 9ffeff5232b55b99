import logging
from contextlib import asynccontextmanager

from aiogram import Bot
from fastapi import FastAPI, Depends, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from shared.config.database import init_db
from shared.config.settings import settings
from apps.bot.services.factory import build_services
from apps.admin.backend.routers import payments_router, join_requests_router

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Services may be provided up front (tests); only build and close our own
    owned = None
    if getattr(app.state, "services", None) is None:
        await init_db()
        bot = Bot(token=settings.bot_token)
        owned = build_services(bot, settings)
        app.state.services = owned
        logger.info(f"Webhook gateways enabled: {', '.join(owned.gateways)}")
    try:
        yield
    finally:
        if owned is not None:
            await owned.close()
            await owned.notifier.bot.session.close()
            app.state.services = None


app = FastAPI(
    title="Channel Paywall Admin API",
    description="Payment webhooks and private channel join request moderation",
    version="1.0.0",
    lifespan=lifespan
)

allowed_origins = [origin.strip() for origin in settings.admin_cors_origins.split(",") if origin.strip()]

# CORS middleware for the admin frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

security = HTTPBearer()


def verify_admin_token(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Simple admin authentication"""
    if credentials.credentials != settings.admin_secret:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin token"
        )
    return credentials.credentials


app.include_router(
    join_requests_router.router,
    prefix="/api/join-requests",
    tags=["Join requests"],
    dependencies=[Depends(verify_admin_token)]
)

# Payment webhooks (no auth required for external webhooks, signatures are checked instead)
app.include_router(
    payments_router.router,
    prefix="/webhook",
    tags=["Payments"]
)


@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "service": "paywall-api"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
