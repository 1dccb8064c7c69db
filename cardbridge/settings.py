# cardbridge/settings.py

import logging
import os

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

load_dotenv()

LOG_LEVEL = os.getenv("BRIDGE_LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n"
)

logger = logging.getLogger("cardbridge")

# --- Configuration ---
DATABASE_URL        = os.getenv("DATABASE_URL", "")

DB_HOST             = os.environ.get("DB_HOST", "localhost")
DB_PORT             = int(os.environ.get("DB_PORT", "5432"))
DB_NAME             = os.environ.get("DB_NAME", "")
DB_USER             = os.environ.get("DB_USER", "")
DB_PASSWORD         = os.environ.get("DB_PASSWORD", "")

SCHEDULE_TZ         = os.getenv("BRIDGE_SCHEDULE_TZ", "UTC")

WORKER_POLL_INTERVAL = float(os.getenv("WORKER_POLL_INTERVAL", "1.0"))
CONCURRENT_INSTANCES = int(os.getenv("CONCURRENT_INSTANCES", "4"))
HANDLERS_MODULE      = os.getenv("BRIDGE_HANDLERS", "")


def get_database_url() -> str:
    if DATABASE_URL:
        return DATABASE_URL

    if not DB_NAME:
        raise RuntimeError("No DATABASE_URL and no DB_NAME configured")

    return f"postgresql+pg8000://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}"


def get_db_engine(url: str | None = None):
    url = url or get_database_url()
    logger.info(f"[DB] Connecting to {url.split('@')[-1]}")

    if url.startswith("sqlite"):
        return create_engine(url, future=True, connect_args={"check_same_thread": False})

    # pg8000 supports 'timeout' in seconds
    return create_engine(
        url,
        future=True,
        pool_pre_ping=True,
        connect_args={"timeout": 10},  # fail in 10s instead of hanging forever
    )


def create_session_factory(engine=None) -> sessionmaker:
    engine = engine or get_db_engine()
    return sessionmaker(bind=engine, autoflush=False, future=True, expire_on_commit=False)
