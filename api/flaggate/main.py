import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from flaggate.dependencies import build_source, feature_manager, settings
from flaggate.exceptions import ReloadError
from flaggate.logs import boot_logging
from flaggate.metrics import setup_metrics
from flaggate.pubsub import UpdateSubscriber, get_redis
from flaggate.routers.echo import router as echo_router
from flaggate.routers.flags import router as flags_router
from flaggate.routers.health import router as health_router
from flaggate.services.poller import RefreshPoller

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    boot_logging(settings.log_level)
    source = build_source(settings)
    app.state.flag_source = source
    workers = []
    if source is not None:
        try:
            feature_manager.refresh(source)
        except ReloadError as exc:
            # start with whatever is published (empty store: every flag off)
            logger.warning("initial flag load from %r failed: %s", source, exc)
        if settings.refresh_seconds > 0:
            workers.append(RefreshPoller(feature_manager, source, settings.refresh_seconds))
        if settings.subscribe and settings.redis_url:
            workers.append(UpdateSubscriber(feature_manager, source, get_redis(settings.redis_url)))
    for worker in workers:
        worker.start()
    try:
        yield
    finally:
        for worker in workers:
            worker.stop()
        feature_manager.close()
        if hasattr(source, "close"):
            source.close()
        app.state.flag_source = None


app = FastAPI(title="flaggate", version="0.1.0", lifespan=lifespan)

# CORS (adjust as needed)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(health_router, prefix="")
app.include_router(flags_router, prefix="")
app.include_router(echo_router, prefix="")

# Metrics endpoint
setup_metrics(app)
