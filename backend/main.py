import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.config import get_settings
from backend.database import get_session_factory
from backend.app.routes import bank_connections
from backend.app.bank_integration.scheduler import start_scheduler, shutdown_scheduler

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.scheduler_enabled:
        start_scheduler(settings, get_session_factory())
    yield
    shutdown_scheduler()


app = FastAPI(
    title="Family Finance API",
    description="Family finance backend with bank-data sync from GoCardless and Plaid",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(bank_connections.router, prefix="/api")


@app.get("/api/health")
def health_check():
    return {"status": "healthy"}
