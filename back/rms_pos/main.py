import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .bill_routes import router as bill_router
from .db import check_db_connection, create_db_and_tables
from .errors import DatabaseError, POSError
from .kot_routes import router as kot_router
from .order_routes import router as order_router
from .settings import settings
from .table_routes import router as table_router

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


app = FastAPI(
    title="Restaurant POS API",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Parse CORS origins from environment (comma-separated)
cors_origins_list = [
    origin.strip()
    for origin in settings.cors_origins.split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(order_router, prefix="/orders", tags=["Orders"])
app.include_router(table_router, prefix="/tables", tags=["Tables"])
app.include_router(bill_router, prefix="/bills", tags=["Bills"])
app.include_router(kot_router, prefix="/kots", tags=["KOTs"])


def _error_response(status_code: int, code: str, message: str, details=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({
            "success": False,
            "error": code,
            "message": message,
            "details": details,
        }),
    )


@app.exception_handler(POSError)
async def pos_error_handler(request: Request, exc: POSError) -> JSONResponse:
    if isinstance(exc, DatabaseError):
        logger.error(f"{request.method} {request.url.path}: {exc.message} ({exc.details})")
    else:
        logger.warning(f"{request.method} {request.url.path}: {exc.code} {exc.message}")
    return _error_response(exc.status_code, exc.code, exc.message, exc.details)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning(f"{request.method} {request.url.path}: invalid request body")
    return _error_response(400, "VALIDATION_ERROR", "Validation failed", exc.errors())


@app.on_event("startup")
def on_startup() -> None:
    logger.info("Starting application...")
    create_db_and_tables()


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/health/db")
def health_db() -> JSONResponse:
    """Check database connection."""
    if check_db_connection():
        return JSONResponse({"status": "ok", "database": "connected"})
    return JSONResponse(status_code=503, content={"status": "error", "database": "unreachable"})
