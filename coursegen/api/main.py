"""
FastAPI application for the course generation pipeline.

Sets up the admin routes, error handlers and the queue/worker lifecycle.
In DEV_MODE an in-process stage worker runs alongside the API; in
production the worker runs as its own process (coursegen.jobs.run_worker).
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from coursegen import __version__
from coursegen.config import config
from coursegen.errors import NotFoundError, ValidationError
from coursegen.jobs.queue import close_queue, get_queue
from coursegen.routes.admin import router as admin_router
from coursegen.utils.logging import api_logger as logger, configure_logging

app = FastAPI(
    title="Course Generation API",
    description="Job pipeline for AI-generated course outlines, articles and quizzes",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(admin_router)


# ===== Health Check =====

@app.get("/health")
async def health_check():
    """Health check endpoint - must be fast and reliable."""
    return {"status": "healthy", "version": __version__}


# ===== Error Handlers =====

@app.exception_handler(ValidationError)
async def validation_error_handler(request, exc: ValidationError):
    return JSONResponse(status_code=400, content=exc.to_dict())


@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc: NotFoundError):
    return JSONResponse(status_code=404, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Global exception handler."""
    logger.error("Unhandled API error", path=request.url.path,
                 error_type=type(exc).__name__, error=str(exc))
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc) if config.DEV_MODE else "An error occurred",
            "type": type(exc).__name__
        }
    )


# ===== Startup / Shutdown =====

@app.on_event("startup")
async def startup_event():
    """Open the job queue and, in DEV_MODE, start an in-process worker."""
    configure_logging(config.LOG_LEVEL)
    queue = await get_queue()
    logger.info(
        "Course generation API starting",
        environment=config.ENVIRONMENT,
        job_db=config.job_db_path,
        supabase=config.supabase_configured,
        generation=config.generation_configured,
        email=config.email_configured,
    )

    if config.DEV_MODE:
        from coursegen.jobs.worker import start_stage_worker

        await start_stage_worker(queue)
        logger.info("In-process stage worker started (DEV_MODE)")


@app.on_event("shutdown")
async def shutdown_event():
    if config.DEV_MODE:
        from coursegen.jobs.worker import stop_stage_worker

        stop_stage_worker()
    await close_queue()
    logger.info("Course generation API stopped")
