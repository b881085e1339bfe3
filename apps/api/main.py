"""
Bible Sketch Core API - FastAPI Backend
Coloring-page normalization and credit/download ledger endpoints.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    auth,
    account,
    billing,
    images,
    downloads,
)
from routers.dependencies import build_ledger


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Bible Sketch Core API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    app.state.ledger = build_ledger()
    yield
    # Shutdown
    app.state.ledger = None
    await engine.dispose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Bible Sketch Core API",
    description="Print-ready coloring pages with credit and download accounting",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(account.router, prefix="/account", tags=["Account"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(images.router, prefix="/images", tags=["Images"])
app.include_router(downloads.router, prefix="/downloads", tags=["Downloads"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Bible Sketch Core API",
        "version": "0.1.0",
        "status": "running"
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=settings.API_HOST, port=settings.API_PORT)
