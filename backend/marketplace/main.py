"""
POS Marketplace - Lifecycle Engine API

Internal FastAPI application for the application lifecycle engine.

Architecture:
- TransitionMonitor → decide() → TransitionExecutor (status + audit + ledger)
- StatusReconciler → inline on every status read, batch in the 5-minute sweep
- RevenueMonitor → timeouts, retries, verification, analytics, anomalies
- BackgroundJobManager → owns the periodic tasks and the health loop
"""
from contextlib import asynccontextmanager
from fastapi import FastAPI

from .database import init_db
from .routers import internal_router
from .runtime import build_runtime


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database and wire the engine on startup."""
    init_db()
    runtime = build_runtime()
    app.state.engine = runtime
    if runtime.config.run_background_jobs:
        runtime.start()
    yield
    if runtime.config.run_background_jobs:
        runtime.stop()


# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="POS Marketplace Lifecycle Engine",
    description="""
    Application Lifecycle Engine for the POS-financing marketplace.

    ## Lifecycle
    - **live_auction**: banks may purchase and make offers (48h window)
    - **completed**: offers or purchases received, business selecting (24h window)
    - **ignored**: auction ended with no offers

    ## Key Principles
    - Offer presence always outranks a timeout
    - Status reads are reconciled before they are returned
    - Every status change is written to the append-only audit log
    - One fee obligation per bank purchase, verified against a fixed fee
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Include routers
app.include_router(internal_router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


# For running with: python -m marketplace.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
