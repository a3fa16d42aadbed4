from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from ledgerline.modules.billing.api.v1.subscriptions import router as subscriptions_router
from ledgerline.modules.billing.api.v1.webhooks import router as webhooks_router
from ledgerline.modules.billing.domain.orchestrator import BillingSchedulerOrchestrator
from ledgerline.shared.core.config import get_settings
from ledgerline.shared.core.exceptions import LedgerlineException
from ledgerline.shared.core.logging import setup_logging
from ledgerline.shared.db.session import async_session_maker


# Configure logging
setup_logging()

# Get logger
logger = structlog.get_logger()

# This runs BEFORE the app starts (setup) and AFTER it stops (teardown).
@asynccontextmanager
async def lifespan(app: FastAPI):
  settings = get_settings()
  logger.info("app_starting", app=settings.APP_NAME, environment=settings.ENVIRONMENT)

  scheduler = None
  if settings.SCHEDULER_ENABLED and not settings.TESTING:
    scheduler = BillingSchedulerOrchestrator(async_session_maker)
    scheduler.start()
  app.state.scheduler = scheduler # Store scheduler in app state for health checks

  yield

  logger.info("app_stopping", app=settings.APP_NAME)
  if scheduler:
    scheduler.stop()

settings = get_settings()

app = FastAPI(
  title=settings.APP_NAME,
  version=settings.VERSION,
  lifespan=lifespan)

# Initialize Prometheus Metrics
Instrumentator().instrument(app).expose(app)


@app.exception_handler(LedgerlineException)
async def ledgerline_exception_handler(request: Request, exc: LedgerlineException):
  if exc.status_code >= 500:
    logger.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
  else:
    logger.info("request_rejected", path=request.url.path, code=exc.code, status_code=exc.status_code)
  return JSONResponse(
    status_code=exc.status_code,
    content={"error": exc.code, "message": exc.message, "details": exc.details},
  )


# Include routers
app.include_router(subscriptions_router, prefix="/api/v1/billing")
app.include_router(webhooks_router, prefix="/api/v1/billing")

@app.get("/health")
async def health_check():
  scheduler = getattr(app.state, "scheduler", None)
  return {
    "status": "active",
    "app": settings.APP_NAME,
    "version": settings.VERSION,
    "scheduler": scheduler.get_status() if scheduler else {"running": False},
  }
