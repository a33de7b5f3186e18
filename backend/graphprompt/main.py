import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.routes import api_router
from .config import Settings
from .context import AppContext

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifespan: build the context on startup, release the
    backend client on shutdown.
    """
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level)
    logger.info("Starting graphprompt (backend: %s)", settings.backend_url)

    context = AppContext(settings)
    try:
        await context.setup()
    except httpx.HTTPError as e:
        # The backend may start later; node defs can be refreshed on demand.
        logger.warning("Backend unavailable during setup: %s", e)
    app.state.context = context
    logger.info("Application startup complete")

    yield

    logger.info("Shutting down graphprompt")
    await context.cleanup()


app = FastAPI(
    title="graphprompt",
    description="Compiles node-graph workflows into backend prompts and queues them for execution.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[],
    allow_origin_regex=r"^http:\/\/localhost:\d+$|^http:\/\/127\.0\.0\.1:\d+$",
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(api_router)
