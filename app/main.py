"""
Fleet Ops Manager - Main Application Entry Point
"""
import sys
import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.config import settings

# Setup logging FIRST
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger(__name__)

from core.errors import NotFoundError, ValidationError
from api import alerts, reprice, scheduler as scheduler_api, statements


app = FastAPI(
    title="Fleet Ops Manager",
    description="Scheduled jobs, alerting, statements and repricing for a rentable device fleet",
    version="1.0.0"
)


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        return response


app.add_middleware(RequestIdMiddleware)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "detail": str(exc),
            "field": exc.field,
            "request_id": getattr(request.state, "request_id", "unknown")
        }
    )


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(
        status_code=404,
        content={
            "detail": str(exc),
            "request_id": getattr(request.state, "request_id", "unknown")
        }
    )


@app.on_event("startup")
async def startup_event():
    """Application startup"""
    logger.info("Starting Fleet Ops Manager on port %s", settings.WEB_PORT)

    if getattr(app.state, "fleet_ops", None) is not None:
        logger.info("Fleet ops service already provided, starting scheduler only")
        app.state.fleet_ops.start()
        return

    try:
        logger.info("Initializing database...")
        from core.database import init_db
        await init_db()

        from core.service import build_sql_fleet_ops
        app.state.fleet_ops = build_sql_fleet_ops()

        logger.info("Starting scheduler...")
        app.state.fleet_ops.start()
        logger.info(
            "Scheduler started with jobs: %s",
            ", ".join(app.state.fleet_ops.scheduler.job_names())
        )
    except Exception as e:
        logger.exception("Startup error: %s", e)
        raise


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown"""
    logger.info("Shutting down Fleet Ops Manager")
    fleet_ops = getattr(app.state, "fleet_ops", None)
    if fleet_ops is not None:
        await fleet_ops.stop()


# Include API routes
app.include_router(scheduler_api.router, prefix="/api/scheduler", tags=["scheduler"])
app.include_router(alerts.router, prefix="/api/alerts", tags=["alerts"])
app.include_router(statements.router, prefix="/api/statements", tags=["statements"])
app.include_router(reprice.router, prefix="/api/reprice", tags=["reprice"])


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    fleet_ops = getattr(app.state, "fleet_ops", None)
    return {
        "status": "healthy",
        "version": "1.0.0",
        "scheduler_running": bool(fleet_ops and fleet_ops.scheduler.running)
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.WEB_PORT,
        reload=False
    )
