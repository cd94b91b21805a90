"""
Lifecycle Engine - FastAPI Application

Main entry point for the lifecycle marketing automation backend.

Architecture:
- Trigger Event → Scheduler → LifecycleExecution (PENDING)
- LifecycleExecution → Executor → SENT | FAILED | SKIPPED
- Sent message → AttributionCalculator → revenue (computed on read)
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .routers import (
    cron_router,
    analytics_router,
    rules_router,
    consent_router,
    webhooks_router,
)
from .database import init_db

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    yield

# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Lifecycle Engine",
    description="""
    Lifecycle Engine - Marketing Automation & Attribution

    Watches business events (completed services, completed purchases),
    schedules delayed consent-gated SMS follow-ups, and attributes later
    revenue to the messages that preceded it.

    ## Tick
    1. **Scheduler**: new trigger events → pending executions
    2. **Executor**: due executions → consent check → render → send

    ## Key Principles
    - Every execution reaches exactly one terminal status
    - Re-running a tick never double-schedules or double-sends
    - No message without current consent
    - Attribution is computed on read, never stored
    """,
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(cron_router)
app.include_router(analytics_router)
app.include_router(rules_router)
app.include_router(consent_router)
app.include_router(webhooks_router)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Lifecycle Engine",
        "version": VERSION,
        "description": "Marketing Automation & Attribution",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": VERSION}


# For running with: python -m lifecycle_engine.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
