from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

import config
import database
from auth.routes import router as auth_router
from auth.token_invalidation import start_sweeper, stop_sweeper, token_blacklist
from broker import create_broker
from errors import register_error_handlers
from notification_service import register_notification_handlers
from realtime.manager import manager
from realtime.routes import router as realtime_router
from routers.notifications import router as notifications_router
from routers.tasks import router as tasks_router
from routers.users import router as users_router
from task_service import register_task_handlers
from responses import envelope

# Configure logging
logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan: wire the services to the broker and start the
    revoked-token sweep; tear both down on shutdown.
    """
    if config.CREATE_TABLES:
        # Development convenience; production schemas are managed outside the app
        database.Base.metadata.create_all(bind=database.engine)
        logger.info("Database tables ensured")

    broker = create_broker()
    register_task_handlers(broker)
    register_notification_handlers(broker, manager)
    await broker.start()
    app.state.broker = broker

    sweeper = start_sweeper(config.TOKEN_SWEEP_INTERVAL_SECONDS)
    logger.info(f"TaskFlow API started (environment={config.ENVIRONMENT}, broker={config.BROKER_BACKEND})")

    yield

    await stop_sweeper(sweeper)
    await broker.stop()
    logger.info("TaskFlow API stopped")


app = FastAPI(
    title="TaskFlow API",
    description="Task management with JWT auth and real-time notifications",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

app.include_router(auth_router)
app.include_router(users_router)
app.include_router(tasks_router)
app.include_router(notifications_router)
app.include_router(realtime_router)


@app.get("/health")
def health_check(request: Request):
    return envelope({
        "status": "healthy",
        "broker": type(request.app.state.broker).__name__,
        "websocket_connections": manager.connection_count,
        "token_blacklist": token_blacklist.get_stats(),
    })


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000)
