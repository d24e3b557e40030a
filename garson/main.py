import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from garson.core.config import CORS_ORIGINS, DATABASE_URL
from garson.core.database import Base, engine
from garson.core.logging_setup import configure_logging
from garson.core.startup_checks import prepare_database
from garson.fsm.engine import ConversationEngine
from garson.middleware.observability import ObservabilityMiddleware
import garson.models  # registers the models before create_all
from garson.routers.admin import router as admin_router
from garson.routers.internal_metrics import router as internal_metrics_router
from garson.routers.payments import router as payments_router
from garson.routers.simulator import router as simulator_router
from garson.routers.webhook import router as webhook_router
from garson.services.session_store import SessionStore
from garson.whatsapp.service import WhatsAppService

configure_logging()

logger = logging.getLogger(__name__)
STARTUP_PREFIX = "[STARTUP]"
REPO_ROOT = Path(__file__).resolve().parents[1]
ALEMBIC_CONFIG_PATH = Path(
    os.getenv("ALEMBIC_CONFIG", str(REPO_ROOT / "alembic.ini"))
)


def _startup_tasks() -> None:
    try:
        prepare_database(
            engine=engine,
            metadata=Base.metadata,
            alembic_config_path=ALEMBIC_CONFIG_PATH,
            database_url=DATABASE_URL,
        )
    except Exception:
        logger.exception("%s ERROR startup failed", STARTUP_PREFIX)
        raise


@asynccontextmanager
async def lifespan(app: FastAPI):
    _startup_tasks()
    session_store = SessionStore()
    app.state.session_store = session_store
    app.state.engine = ConversationEngine(session_store=session_store)
    app.state.whatsapp = WhatsAppService()
    logger.info("%s conversation engine ready", STARTUP_PREFIX)
    try:
        yield
    finally:
        session_store.close()
        logger.info("%s session store closed", STARTUP_PREFIX)


app = FastAPI(
    title="Garson Order Engine",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(ObservabilityMiddleware)

# Routers
app.include_router(webhook_router)
app.include_router(payments_router)
app.include_router(simulator_router)
app.include_router(admin_router)
app.include_router(internal_metrics_router)


@app.get("/")
def root():
    return {"status": "ok"}


@app.get("/health")
def health():
    return {"status": "healthy"}
