from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from datetime import datetime
import logging

from config import get_config, is_test_environment
from database import close_database, get_database
from epic.router import router as epic_router
from epic.services import reset_epic_services
from exceptions import DatabaseError, EpicIntegrationError, handle_epic_exception
from http_client import close_http_client, get_http_stats
from logging_config import setup_logging

logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"

# Initialize FastAPI app
app = FastAPI(title="Epic Case Import", version=APP_VERSION)

# Add middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().app.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware, minimum_size=500)

app.include_router(epic_router)

@app.on_event("startup")
async def _startup():
    setup_logging(enable_console=not is_test_environment())
    db = get_database()
    logger.info(f"Epic case import service started (database: {db.db_path})")

@app.on_event("shutdown")
async def _shutdown():
    await close_http_client()
    reset_epic_services()
    close_database()
    logger.info("Epic case import service stopped")

@app.exception_handler(EpicIntegrationError)
async def epic_exception_handler(request: Request, exc: EpicIntegrationError):
    http_exc = handle_epic_exception(exc)
    if http_exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=http_exc.status_code, content={"detail": http_exc.detail})

@app.get("/")
def read_root():
    return {
        "message": "Epic case import service is running",
        "version": APP_VERSION,
        "default_fhir_base_url": get_config().epic.default_fhir_base_url,
    }

@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring and Docker health checks"""
    db_healthy = True
    try:
        get_database().execute_single("SELECT 1 AS ok")
    except DatabaseError as e:
        db_healthy = False
        logger.error(f"Database health check failed: {e.message}")

    return {
        "status": "healthy" if db_healthy else "unhealthy",
        "timestamp": datetime.now().isoformat(),
        "services": {
            "database": "healthy" if db_healthy else "unhealthy"
        },
        "http": get_http_stats(),
        "version": APP_VERSION
    }

if __name__ == "__main__":
    import uvicorn

    config = get_config()
    uvicorn.run("main:app", host=config.app.host, port=config.app.port, reload=config.app.debug)
