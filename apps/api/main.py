from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from dotenv import load_dotenv
import os
import logging

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Load environment variables from .env file FIRST
load_dotenv()

from database import create_db_and_tables
import models  # Import models to register them with SQLModel
from exceptions import AppError
from routers import auth, notifications, events, payments, billing, jobs
from middleware.activity_logger import ActivityLoggingMiddleware
from middleware.security_headers import SecurityHeadersMiddleware
from services.connection_registry import InMemoryConnectionRegistry
from services.payment_providers import build_provider_adapters
from utils.notification_channels import default_channels
from validators.business_rules import get_billing_rules
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

@asynccontextmanager
async def lifespan(app: FastAPI):
    create_db_and_tables()
    logger.info("CareLink API started")
    yield

# Initialize rate limiter
limiter = Limiter(key_func=get_remote_address)

app = FastAPI(
    title="CareLink HMS API",
    description="Notifications and payment lifecycle API for the CareLink hospital management system",
    version="0.1.0",
    lifespan=lifespan
)

# Process-wide collaborators; one live push registry per server process
app.state.limiter = limiter
app.state.registry = InMemoryConnectionRegistry(send_timeout=get_billing_rules().PUSH_SEND_TIMEOUT_SECONDS)
app.state.notification_channels = default_channels()
app.state.payment_providers = build_provider_adapters(timeout=get_billing_rules().PROVIDER_TIMEOUT_SECONDS)


# ==================== ERROR HANDLERS ====================
# Every error leaves the API as {"message": ..., "details": ...}

@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))

@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": str(exc.detail)}, headers=getattr(exc, "headers", None))

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={"message": "Invalid request", "details": jsonable_encoder(exc.errors())},
    )

@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(status_code=429, content={"message": "Rate limit exceeded", "details": str(exc.detail)})

@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"message": "Internal server error"})


# CORS configuration - SECURE for production
origins = [
    "http://localhost:5173",  # Development frontend (Vite)
    "http://localhost:3000",
    os.getenv("FRONTEND_URL", "http://localhost:5173"),  # Production frontend from env
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With", "Accept", "Origin", "X-Admin-Secret"],
)

# Add activity logging middleware
app.add_middleware(ActivityLoggingMiddleware)

# Add security headers middleware (should be first to apply to all responses)
app.add_middleware(SecurityHeadersMiddleware)

# Include routers
app.include_router(auth.router)
app.include_router(notifications.router)
app.include_router(events.router)
app.include_router(payments.router)
app.include_router(payments.webhook_router)
app.include_router(billing.router)
app.include_router(jobs.router)

@app.get("/")
def read_root():
    return {"message": "Welcome to CareLink HMS API"}

@app.get("/api/health")
def health_check():
    return {"status": "healthy", "live_connections": app.state.registry.online_count()}
