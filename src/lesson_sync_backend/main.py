'''
Application entry point: lifespan, middleware, error mapping and routers.
'''
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from contextlib import asynccontextmanager

from .database import engine as db_engine
from .database.engine import create_all_tables, create_db_engine_and_session_factory, dispose_db_engine
from .common.exceptions import ConflictError, FatalError, LessonSyncError, NotFoundError, StateError, TransientStorageError
from .common.logger import log
from .common.config import settings
from .models.enums import JobType
from .services import job_processor as job_processor_module
from .services.job_handlers import build_job_handlers
from .services.job_processor import BackgroundJobProcessor
from .api import schedule, consistency, cascade


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Handles application startup and shutdown events.
    """
    # --- On App Startup ---
    log.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}...")
    create_db_engine_and_session_factory()
    if settings.DB_CREATE_ALL:
        await create_all_tables()

    processor = BackgroundJobProcessor(build_job_handlers(db_engine.AsyncSessionLocal))
    job_processor_module.job_processor = processor
    await processor.start()
    processor.schedule_periodic(JobType.ORPHAN_CLEANUP, settings.ORPHAN_CLEANUP_INTERVAL_SECONDS)
    processor.schedule_periodic(JobType.RECONCILIATION, settings.RECONCILIATION_INTERVAL_SECONDS)

    yield # --- Application is now running ---

    # --- On App Shutdown ---
    log.info("Application lifespan shutdown...")
    await processor.stop()
    job_processor_module.job_processor = None
    await dispose_db_engine()


# ---- CREATING THE APP ----
app = FastAPI(
    title=settings.APP_NAME,
    description=settings.APP_DESCRIPTION,
    version=settings.APP_VERSION,
    lifespan=lifespan
)

# --- Add CORS Middleware ---
origins = [
    "http://localhost",
    "http://localhost:3000",
]

# Extend with environment-specific origins
origins.extend(settings.BACKEND_CORS_ORIGINS)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],)
# --- End of CORS Middleware ---


# --- Domain error mapping ---
_STATUS_BY_ERROR = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (StateError, status.HTTP_409_CONFLICT),
    (TransientStorageError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (FatalError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


@app.exception_handler(LessonSyncError)
async def lesson_sync_error_handler(request: Request, exc: LessonSyncError):
    status_code = next(
        (code for error_type, code in _STATUS_BY_ERROR if isinstance(exc, error_type)),
        status.HTTP_400_BAD_REQUEST
    )
    if status_code >= 500:
        log.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "error": exc.__class__.__name__})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": exc.errors(include_url=False, include_context=False)})


@app.get("/")
async def health_check():
    return {"status": "ok", "message": f"{settings.APP_NAME} is running"}

app.include_router(schedule.router)
app.include_router(consistency.router)
app.include_router(cascade.router)
