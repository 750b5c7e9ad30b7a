from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from config import settings
from database import init_db
from exceptions import DomainError
from finance_api import router as finance_router

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)

app = FastAPI(title=settings.APP_NAME, version="1.0.0")

# Setup logging
logger = logging.getLogger(__name__)

# CORS configuration - strip whitespace from each origin to prevent configuration errors
CORS_ORIGINS = [origin.strip() for origin in settings.CORS_ORIGINS.split(",") if origin.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=3600,  # Cache preflight responses for 1 hour
)

# ==================== CUSTOM EXCEPTION HANDLERS ====================

def _with_cors(request: Request, response: JSONResponse) -> JSONResponse:
    origin = request.headers.get('origin')
    if origin and origin in CORS_ORIGINS:
        response.headers['Access-Control-Allow-Origin'] = origin
        response.headers['Access-Control-Allow-Credentials'] = 'true'
    return response


@app.exception_handler(DomainError)
async def domain_exception_handler(request: Request, exc: DomainError):
    """
    Business rule failures: stable code, readable reason, retryable flag.
    Persistence errors keep their detail in the server log only.
    """
    response = JSONResponse(status_code=exc.status_code, content=exc.to_dict())
    return _with_cors(request, response)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """
    Catch-all exception handler for unexpected errors (including invariant violations).
    Ensures CORS headers are present even on 500 errors.
    """
    logger.error(f"Unexpected error: {exc}", exc_info=True)

    response = JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "code": "internal_error", "retryable": False}
    )
    return _with_cors(request, response)

# ==================== END EXCEPTION HANDLERS ====================

# Include finance routes
app.include_router(finance_router)


@app.on_event("startup")
async def startup_event():
    """Initialize database on startup"""
    logger.info("=" * 60)
    logger.info("Starting application initialization...")
    logger.info("=" * 60)

    try:
        await init_db()
        logger.info("Database initialization successful!")
    except ConnectionRefusedError as e:
        logger.error("=" * 60)
        logger.error("CRITICAL: Database connection refused!")
        logger.error(f"Error: {e}")
        logger.error("=" * 60)
        raise

    if settings.EXPIRY_SWEEP_ENABLED:
        # Start subscription scheduler for daily expiry sweep
        try:
            from subscription_scheduler import start_subscription_scheduler
            app.state.scheduler = start_subscription_scheduler()
            logger.info("✅ Subscription scheduler started successfully")
        except Exception as e:
            logger.error(f"⚠️ Failed to start subscription scheduler: {e}")
            # Don't fail startup if scheduler fails


@app.on_event("shutdown")
async def shutdown_event():
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        scheduler.shutdown(wait=False)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "service": "api"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
