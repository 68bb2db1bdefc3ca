import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from blogapp.cache import cache
from blogapp.config import settings
from blogapp.exceptions import install_error_handlers
from blogapp.middleware import TimingMiddleware
from blogapp.routers import categories, comments, posts, reactions, roles, users
from blogapp.scheduler import purge_scheduler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    await cache.connect()  # App works without Redis
    if settings.PURGE_ENABLED:
        purge_scheduler.start()
    yield
    # Shutdown
    purge_scheduler.shutdown()
    await cache.disconnect()


app = FastAPI(
    title="Blog API",
    description="Blog API with reactions, attachments and a retention purge",
    version="1.0.0",
    lifespan=lifespan,
)

# Middleware
app.add_middleware(TimingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

install_error_handlers(app)

# Routers
app.include_router(users.router)
app.include_router(posts.router)
app.include_router(comments.router)
app.include_router(reactions.router)
app.include_router(categories.router)
app.include_router(roles.router)


@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "version": "1.0.0",
        "cache": cache.stats,
        "purge_scheduled": purge_scheduler.running,
    }
