import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from budgetsync.api.routes import router
from budgetsync.config import CORS_ORIGINS, DB_BUSY_TIMEOUT_SECONDS, DB_URL, LOG_LEVEL, SERVER_TOKEN
from budgetsync.core.exceptions import register_exception_handlers
from budgetsync.db import open_connection
from budgetsync.store import FileStore

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger("budgetsync")


@asynccontextmanager
async def lifespan(app: FastAPI):
    with open_connection(DB_URL, busy_timeout=DB_BUSY_TIMEOUT_SECONDS) as conn:
        app.state.connection = conn
        app.state.file_store = FileStore(conn)
        if not SERVER_TOKEN:
            logger.warning("SERVER_TOKEN is not set; /sync endpoints will reject every request.")
        yield


app = FastAPI(title="budgetsync", version="0.1.0", lifespan=lifespan)

origins = [origin.strip() for origin in CORS_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)
register_exception_handlers(app)
