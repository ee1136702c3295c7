import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from . import models  # noqa: F401 - register tables
from .database import Base, engine
from .domain.billing.router import router as billing_router
from .domain.payments import TransbankGateway

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info("Database tables created successfully")
    except Exception as e:
        # Ignore "already exists" errors from race conditions between workers
        error_msg = str(e)
        if "already exists" in error_msg or "duplicate key" in error_msg:
            logger.info("Database tables already exist (created by another worker)")
        else:
            logger.error(f"Failed to create database tables: {e}")

    # Configure the payment gateway once per process
    if getattr(app.state, "gateway", None) is None:
        app.state.gateway = TransbankGateway.from_config()
        owns_gateway = True
    else:
        owns_gateway = False

    yield

    logger.info("Application shutting down...")
    if owns_gateway:
        await app.state.gateway.aclose()
        app.state.gateway = None


app = FastAPI(title="BookFlow Billing API", version="1.0.0", lifespan=lifespan)

app.include_router(billing_router)


@app.get("/health")
async def health():
    return {"status": "ok"}
