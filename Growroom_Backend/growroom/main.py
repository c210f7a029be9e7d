from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn
import logging
from contextlib import asynccontextmanager

from growroom.api.v1.router import api_router
from growroom.core import config
from growroom.core.api_response import fail, fail_from
from growroom.core.errors import AutomationError
from growroom.core.logging_config import configure_logging
from growroom.db.base import Base
from growroom.db.migrations import run_migrations
from growroom.db.session import engine, SessionLocal
from growroom.drivers.manager import GatewayManager
from growroom.middleware.request_context import RequestContextMiddleware
from growroom.middleware.response_wrapper import ResponseWrapperMiddleware
from growroom.services.job_processor import JobProcessor
from growroom.services.trigger_dispatcher import AutomationScheduler, TriggerDispatcher

logger = logging.getLogger(__name__)


def build_scheduler() -> AutomationScheduler:
    gateway = GatewayManager.get_gateway()
    dispatcher = TriggerDispatcher(SessionLocal, gateway)
    return AutomationScheduler(dispatcher, job_processor=JobProcessor(SessionLocal, gateway))


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    Base.metadata.create_all(bind=engine)
    run_migrations(engine)

    scheduler = None
    if config.AUTOMATION_SCHEDULER_MODE == "thread":
        scheduler = build_scheduler()
        scheduler.start()
    else:
        # "celery": beat drives evaluate_automations / process_scheduled_jobs
        logger.info("in-process automation scheduler disabled (mode=%s)", config.AUTOMATION_SCHEDULER_MODE)
    app.state.scheduler = scheduler

    yield

    if scheduler is not None:
        scheduler.stop()


app = FastAPI(
    title=config.PROJECT_NAME,
    description="Rule engine for grow room devices: schedules, sensor conditions, actions and their history",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(ResponseWrapperMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AutomationError)
async def automation_error_handler(request: Request, exc: AutomationError):
    if exc.status_code >= 500:
        logger.warning("%s: %s", exc.code, exc.message)
    return fail_from(exc)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return fail(status_code=422, code="REQUEST_INVALID", message="Request validation failed", details=jsonable_encoder(exc.errors()))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    response = fail(status_code=exc.status_code, code="HTTP_ERROR", message=str(exc.detail))
    for k, v in (exc.headers or {}).items():
        response.headers[k] = v
    return response


app.include_router(api_router, prefix="/api/v1")


@app.get("/health")
def health():
    scheduler = getattr(app.state, "scheduler", None)
    return {
        "status": "ok",
        "scheduler_mode": config.AUTOMATION_SCHEDULER_MODE,
        "scheduler": scheduler.status() if scheduler is not None else None,
    }


if __name__ == "__main__":
    uvicorn.run("growroom.main:app", host="0.0.0.0", port=8000, reload=True)
