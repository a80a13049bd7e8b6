"""
Clinic Dispensary Backend: prescription dispensing engine.

ARCHITECTURE:
- FastAPI: thin HTTP surface, tenant and actor forwarded by the gateway
- Services: dispensing coordinator, stock ledger, interaction gate, refills
- SQL database: source of truth, row locks and constraints

SAFETY MODEL:
- Every dispense checks state, refill quota, stock and interactions first
- Stock decrements, status change and fill counter commit together or not at all
- SEVERE interactions always block; MODERATE per MODERATE_INTERACTION_POLICY
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dispensary.api.routes import interactions, inventory, prescriptions
from dispensary.core.config import settings
from dispensary.core.errors import DispensingError
from dispensary.core.exceptions import BusinessError
from dispensary.db.init_db import init_db

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: create tables. Nothing to tear down."""
    logger.info("Initializing database...")
    init_db()
    logger.info(f"Database initialized ({settings.ENVIRONMENT})")
    yield


app = FastAPI(
    title="Clinic Dispensary API",
    description="Prescription lifecycle, stock ledger and drug-interaction gate.",
    version="0.1.0",
    lifespan=lifespan,
)

# SECURITY: Restrict CORS to specific methods and headers (not wildcards)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Accept",
        "Origin",
        "X-Tenant-ID",
        "X-Actor-ID",
    ],
    max_age=600,
    expose_headers=["Content-Type", "Retry-After"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(DispensingError)
async def dispensing_error_handler(request: Request, exc: DispensingError):
    http_exc = BusinessError.from_domain(exc)
    return JSONResponse(
        status_code=http_exc.status_code,
        content={"detail": http_exc.detail},
        headers=http_exc.headers,
    )


app.include_router(prescriptions.router, prefix="/prescriptions", tags=["prescriptions"])
app.include_router(inventory.router, prefix="/inventory", tags=["inventory"])
app.include_router(interactions.router, prefix="/interactions", tags=["interactions"])


@app.get("/health")
def health():
    return {"status": "ok", "moderate_interaction_policy": settings.MODERATE_INTERACTION_POLICY}
