import os
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from dotenv import load_dotenv

from app.database import Database
from app.core.scheduler import setup_scheduler, start_scheduler, stop_scheduler, get_scheduler_status
from app.routes.payment.payment_routes import router as payment_router
from app.routes.payment.webhook_routes import router as webhook_router
from app.routes.payment.admin_payment_routes import router as admin_payment_router
from app.routes.payment.redeem_code_routes import router as redeem_code_router
from app.utils.response import serialize_value

# Load environment variables
load_dotenv()

# Get environment variables
APP_NAME = os.getenv("APP_NAME", "Clinic Payments")
APP_VERSION = os.getenv("APP_VERSION", "1.0.0")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan events for the application"""
    # Startup
    await Database.connect_db()

    if SCHEDULER_ENABLED:
        setup_scheduler()
        start_scheduler()

    yield
    # Shutdown
    stop_scheduler()
    await Database.close_db()


app = FastAPI(
    title=APP_NAME,
    version=APP_VERSION,
    description="Virtual appointment payments with PhonePe, redeem codes and reconciliation",
    lifespan=lifespan
)

# CORS middleware
# In development, allow all origins for easier testing
DEBUG = os.getenv("DEBUG", "True").lower() == "true"

cors_origins = [
    FRONTEND_URL,
    "http://localhost:3000",
    "http://localhost:5173",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins if not DEBUG else ["*"],
    allow_credentials=not DEBUG,  # Can't use credentials with wildcard origin
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers with /api prefix
app.include_router(admin_payment_router, prefix="/api")
app.include_router(payment_router, prefix="/api")
app.include_router(webhook_router, prefix="/api")  # PhonePe callbacks
app.include_router(redeem_code_router, prefix="/api")


@app.get("/")
async def read_root():
    """Root endpoint"""
    return {
        "message": f"Welcome to {APP_NAME} API",
        "version": APP_VERSION,
        "docs": "/docs"
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}


@app.get("/scheduler/status")
async def scheduler_status():
    """Reconciler jobs and their last results"""
    return serialize_value(get_scheduler_status())
