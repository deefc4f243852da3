"""
Pricing Estimate API
Serves customer price-range estimates from pricing priors in PostgreSQL (DATABASE_URL).
Without a database the estimate endpoint answers with a null estimate.
"""
from fastapi import FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
import logging
import os
import sys

from dotenv import load_dotenv
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from starlette.requests import Request

load_dotenv()

import database as db
from pricing_estimate import LoggingObserver, get_pricing_estimate

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "message": "%(message)s"}',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger(__name__)

DEBUG_ESTIMATES = os.environ.get("PRICING_ESTIMATE_DEBUG", "").lower() in ("1", "true", "yes")

prior_store = db.PostgresPriorStore()
estimate_observer = LoggingObserver() if DEBUG_ESTIMATES else None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle - startup and shutdown."""
    if db.DATABASE_URL:
        logger.info("Initializing PostgreSQL connection pool...")
        await db.get_pool()
    else:
        logger.warning("No DATABASE_URL configured - pricing estimates unavailable")

    yield  # Application runs here

    logger.info("Shutting down, closing database pool...")
    await db.close_pool()


app = FastAPI(title="Pricing Estimate API", description="Price range estimates from historical priors", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring."""
    db_status = "disconnected"
    if db.DATABASE_URL:
        try:
            pool = await db.get_pool()
            if pool:
                db_status = "connected"
        except Exception:
            db_status = "error"

    return {
        "status": "ok",
        "timestamp": datetime.now().isoformat(),
        "database": db_status
    }


@app.get("/api/pricing-estimate")
@limiter.limit("60/minute")
async def pricing_estimate(
    request: Request,
    technology: Optional[str] = Query(None, max_length=100, description="Manufacturing technology (e.g., CNC)"),
    material: Optional[str] = Query(None, max_length=200, description="Canonical material (e.g., Aluminum 6061)"),
    parts_count: Optional[int] = Query(None, ge=0, le=1000000, description="Number of parts in the job")
):
    """Estimate a p10/p50/p90 price range. A null estimate means no data is available."""
    estimate = await get_pricing_estimate(
        technology,
        material,
        parts_count,
        store=prior_store,
        observer=estimate_observer,
    )
    return {"estimate": estimate.to_dict() if estimate else None}


@app.get("/")
def read_root():
    return {
        "status": "ok",
        "message": "Pricing Estimate API",
        "database": "PostgreSQL" if db.DATABASE_URL else "Unavailable",
        "endpoints": ["/api/pricing-estimate", "/health"]
    }
