import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tasksync.adapters.messaging import HttpMessagingTransport, MessagingTransport
from tasksync.api import all_routers
from tasksync.core.config import settings
from tasksync.core.database import create_tables, dispose_engine, get_session_factory
from tasksync.core.exceptions import BusinessException
from tasksync.core.middleware import LoggingMiddleware
from tasksync.repositories.base import Persistence
from tasksync.repositories.sql import SqlPersistence
from tasksync.services.background import BackgroundDispatcher
from tasksync.services.cache import CacheInvalidator, ViewCache
from tasksync.services.feed import ChangeFeed
from tasksync.services.notifier import AssignmentNotifier
from tasksync.services.orchestrator import MutationOrchestrator
from tasksync.services.state import SessionState
from tasksync.services.views import ViewLoader

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def wire_services(
    app: FastAPI, store: Persistence, transport: MessagingTransport, feed: Optional[ChangeFeed] = None,
) -> MutationOrchestrator:
    """Build the mutation core around a store and transport and attach it to app.state."""
    view_cache = ViewCache()
    dispatcher = BackgroundDispatcher()
    notifier = AssignmentNotifier(
        store, transport, settings.APP_BASE_URL, enabled=settings.NOTIFICATIONS_ENABLED,
    )
    orchestrator = MutationOrchestrator(
        store=store,
        state=SessionState(),
        notifier=notifier,
        invalidator=CacheInvalidator(view_cache),
        dispatcher=dispatcher,
        demote_attempts=settings.TRANSFER_DEMOTE_ATTEMPTS,
        demote_wait_seconds=settings.TRANSFER_DEMOTE_WAIT_SECONDS,
    )
    app.state.store = store
    app.state.feed = feed or ChangeFeed()
    app.state.view_cache = view_cache
    app.state.view_loader = ViewLoader(store, view_cache)
    app.state.dispatcher = dispatcher
    app.state.orchestrator = orchestrator
    return orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI):
    await create_tables()
    feed = ChangeFeed()
    store = SqlPersistence(get_session_factory(), feed=feed)
    transport = HttpMessagingTransport(
        settings.NOTIFICATION_SERVICE_URL,
        settings.EMAIL_SERVICE_URL,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    )
    wire_services(app, store, transport, feed=feed)
    logger.info(f"{settings.PROJECT_NAME} started (env={settings.ENV})")
    try:
        yield
    finally:
        # let in-flight notifications finish before the engine goes away
        await app.state.dispatcher.drain()
        await dispose_engine()
        logger.info(f"{settings.PROJECT_NAME} stopped")


app = FastAPI(
    title="TaskSync API",
    description="""
    ## Role-gated task and project synchronization

    - **Mutations**: every change runs through one authorize, persist, cascade, notify, invalidate pipeline
    - **Views**: cached task, project and user views with explicit stale markers
    - **Notifications**: in-app inbox for task assignments, pushed live over `/notifications/stream`
    """,
    version="1.0.0",
    lifespan=lifespan,
)

# 1. CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
    allow_headers=["*"],
)

# 2. request logging
app.add_middleware(LoggingMiddleware)

# 3. routers
for router, prefix, tag in all_routers:
    app.include_router(router, prefix=prefix, tags=[tag])


@app.exception_handler(BusinessException)
async def business_exception_handler(request: Request, exc: BusinessException):
    return JSONResponse(
        status_code=exc.error_code.http_status,
        content={
            "success": False,
            "code": exc.error_code.biz_code,
            "message": exc.message,
            "data": None,
        },
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "code": "REQ_422",
            "message": "Request validation failed",
            "data": [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()],
        },
    )


@app.get("/health")
async def health_check():
    return {"status": "healthy", "message": "API is working"}
