import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.core.database import get_prisma
from src.core.settings import settings
from src.domains.crm_integrations.routes import router as crm_integrations_router
from src.domains.crm_integrations.routes import sync_router as crm_sync_router

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    prisma = get_prisma()
    await prisma.connect()
    yield
    # Shutdown
    await prisma.disconnect()


app = FastAPI(
    title="CRM Sync API",
    description="API for pushing invoices to external CRM systems",
    version="0.1.0",
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(crm_integrations_router, prefix="/api/v1")
app.include_router(crm_sync_router, prefix="/api/v1")


@app.get("/")
async def root() -> dict[str, str]:
    return {"message": "CRM Sync API is running"}


@app.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}
