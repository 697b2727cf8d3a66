from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
import logging
import time

from datamocker import config
from datamocker.database import engine, SessionLocal
from datamocker.models import Base
from datamocker.errors import InvalidCredential, InvalidInput, MockerError, StorageUnavailable
from datamocker.schemas import validation_details
from datamocker.client import provider_client
from datamocker.counter_store import create_counter_store
from datamocker.quota import QuotaLedger
from datamocker.routers import generate, keys, usage

# Setup logging
logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(message)s",
    handlers=[
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

API_TITLE = "Mock Data API"
API_VERSION = "1.0.0"
API_DESCRIPTION = "AI-generated mock data with API key access and daily usage limits"

app = FastAPI(title=API_TITLE, description=API_DESCRIPTION, version=API_VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    started = time.time()
    response = await call_next(request)
    response.headers["X-Process-Time"] = str(time.time() - started)
    return response

@app.exception_handler(MockerError)
async def mocker_error_handler(request: Request, exc: MockerError):
    """Render service errors as {success: false, error, details?}"""
    headers = None
    if isinstance(exc, InvalidCredential):
        headers = {"WWW-Authenticate": f'Bearer realm="{API_TITLE}"'}
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=headers)

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Framework-level validation failures use the same 400 body as InvalidInput"""
    return await mocker_error_handler(
        request, InvalidInput("Invalid request data", details=validation_details(exc))
    )

app.include_router(generate.router)
app.include_router(keys.router)
app.include_router(usage.router)

@app.on_event("startup")
async def startup_event():
    """Run on startup - create tables and pick the quota counter store"""
    logger.info(f"Starting {API_TITLE}")
    Base.metadata.create_all(bind=engine)

    store = create_counter_store(config.COUNTER_STORE, SessionLocal)
    try:
        removed = store.purge_expired()
        logger.info(f"Purged {removed} expired quota counters")
    except StorageUnavailable:
        logger.warning("Could not purge expired quota counters at startup")
    app.state.quota_ledger = QuotaLedger(store)
    logger.info(f"Daily quota counters kept in the {config.COUNTER_STORE} store")

    if not config.get_provider_defaults()["api_key"]:
        logger.warning("OPENAI_API_KEY is not set; only callers bringing their own apiKey can generate")

@app.on_event("shutdown")
async def shutdown_event():
    """Run on shutdown - close the shared provider HTTP client"""
    logger.info(f"Stopping {API_TITLE}")
    await provider_client.aclose()

@app.get("/health")
async def health_check():
    """Health check endpoint"""
    database = "ok"
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Health check could not reach the database: {e}")
        database = "unavailable"
    return {
        "status": "ok" if database == "ok" else "degraded",
        "database": database,
        "counter_store": config.COUNTER_STORE,
    }

@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {"name": API_TITLE, "version": API_VERSION, "description": API_DESCRIPTION}

if __name__ == "__main__":
    import uvicorn
    import argparse

    parser = argparse.ArgumentParser(description=f"Run {API_TITLE}")
    parser.add_argument("--host", type=str, default="0.0.0.0", help="Interface to bind")
    parser.add_argument("--port", type=int, default=8000, help="Port to run the server on")
    parser.add_argument("--reload", action="store_true", help="Reload on code changes")
    args = parser.parse_args()

    print(f"Starting server on {args.host}:{args.port}")
    uvicorn.run("datamocker.main:app", host=args.host, port=args.port, reload=args.reload)
