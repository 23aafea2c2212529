import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic_core import _pydantic_core
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request

from api.shared.dtos import HealthCheckResponse
from core.logger import configure_logging
from core.settings import SETTINGS, Settings
from di.container import ApplicationContainer as DependencyContainer

logger = logging.getLogger("rag")


class CustomFastAPI(FastAPI):
    container: DependencyContainer
    settings: Settings


@asynccontextmanager
async def lifespan(_app: CustomFastAPI):
    logger.info("Starting application initialization...")
    start_time = time.time()
    settings = _app.settings
    uses_database = settings.APP.STORAGE_BACKEND == "postgres"

    try:
        if uses_database:
            logger.info("Initializing database connection...")
            db_start = time.time()
            db_resource = _app.container.infrastructure.database()
            await db_resource.init()
            await db_resource.ping()
            if settings.DATABASE.AUTO_CREATE_SCHEMA:
                from api.shared.entities.registry import BaseEntity

                await db_resource.create_schema(BaseEntity.metadata)
            logger.info(
                f"Database connection established in {time.time() - db_start:.2f}s"
            )
        else:
            logger.info("Using in-memory chat storage")

        logger.info(
            f"Application startup completed in {time.time() - start_time:.2f}s"
        )
    except Exception as e:
        logger.exception(f"Failed to initialize application: {str(e)}")
        raise

    yield

    try:
        _app.container.services.session_registry().close_all()
        if uses_database:
            db_resource = _app.container.infrastructure.database()
            await db_resource.shutdown()
        logger.info("Application shutdown complete")
    except Exception:
        logger.exception("Error during shutdown")


def register_exception_handlers(_app: FastAPI) -> None:
    @_app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        detail = exc.detail
        if exc.status_code == 404 and isinstance(detail, str):
            detail = f"{detail} : {request.url}"
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": _error_title(exc.status_code), "detail": detail,
                     "status_code": exc.status_code},
        )

    @_app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content={"error": "Validation Error", "detail": str(exc), "status_code": 422},
        )

    @_app.exception_handler(_pydantic_core.ValidationError)
    async def pydantic_validation_handler(
        request: Request, exc: _pydantic_core.ValidationError
    ):
        return JSONResponse(
            status_code=422,
            content={"error": "Validation Error", "detail": str(exc), "status_code": 422},
        )

    @_app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception")
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal Server Error",
                "detail": "An unexpected error occurred",
                "status_code": 500,
            },
        )


def _error_title(status_code: int) -> str:
    return {
        401: "Unauthorized",
        404: "Not Found",
        409: "Conflict",
        422: "Validation Error",
    }.get(status_code, "Internal Server Error" if status_code >= 500 else "Error")


def create_fastapi_app(settings: Optional[Settings] = None) -> CustomFastAPI:
    settings = settings or SETTINGS
    configure_logging(settings.APP)

    origins = {
        "*",
        "http://localhost",
        "http://localhost:*",
        "http://localhost:3000",
        "http://localhost:8000",
    }

    _app = CustomFastAPI(
        title="RAG Chat API",
        description="Profile-scoped chat over indexed documents with cited sources",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    _app.settings = settings

    # Initialize dependency container
    _app.container = DependencyContainer()
    _app.container.config.from_dict(settings.model_dump(mode="json"))
    _app.container.wire()

    # Add CORS middleware
    _app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include feature routers
    from api.features.conversation.router import router as conversation_router

    _app.include_router(conversation_router, prefix="/api/v1", tags=["Conversation"])

    @_app.get("/")
    async def root():
        return {"message": "RAG Chat API is running", "status": "ok"}

    @_app.get("/health")
    async def health():
        return {"status": "ok"}

    @_app.get("/ready", response_model=HealthCheckResponse)
    async def ready():
        if settings.APP.STORAGE_BACKEND != "postgres":
            return HealthCheckResponse(status="ok", dependencies={"storage": "memory"})
        db_resource = _app.container.infrastructure.database()
        try:
            await db_resource.ping()
        except (OSError, RuntimeError, SQLAlchemyError) as e:
            logger.warning(f"Readiness check failed: {e}")
            body = HealthCheckResponse(status="unavailable", dependencies={"database": "down"})
            return JSONResponse(status_code=503, content=body.model_dump(mode="json"))
        return HealthCheckResponse(status="ok", dependencies={"database": "ok"})

    register_exception_handlers(_app)
    return _app


app = create_fastapi_app()
