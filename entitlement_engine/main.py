import logging

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI

from . import app_context
from .app.routes.entitlements import router as entitlements_router
from .config import EngineConfig, load_engine_config


load_dotenv()

ENGINE_CONFIG: EngineConfig = load_engine_config()

logging.basicConfig(
    level=getattr(logging, ENGINE_CONFIG.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("entitlements")


def get_conn():
    return psycopg2.connect(**ENGINE_CONFIG.db_settings)


app_context.configure(get_conn=get_conn)

app = FastAPI(title="Entitlement Engine API")

app.include_router(entitlements_router)


@app.on_event("startup")
def log_startup() -> None:
    logger.info(
        "Entitlement engine started service=%s db=%s:%s/%s events_enabled=%s",
        ENGINE_CONFIG.service_name,
        ENGINE_CONFIG.db_host,
        ENGINE_CONFIG.db_port,
        ENGINE_CONFIG.db_name,
        ENGINE_CONFIG.events_enabled,
    )


@app.get("/api/health")
def health() -> dict:
    return {"status": "ok", "service": ENGINE_CONFIG.service_name}
