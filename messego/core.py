import os
import asyncio
import logging

from prometheus_client import Counter, start_http_server
from pythonjsonlogger import jsonlogger
from sqlalchemy import text

logger = logging.getLogger(__name__)

METRICS_PORT = int(os.getenv('METRICS_PORT', '8001'))

MESSAGES_SENT = Counter('messego_messages_sent_total', 'Messages sent', ['type'])
MESSAGES_DELETED = Counter('messego_messages_deleted_total', 'Messages soft-deleted')
LOGINS = Counter('messego_logins_total', 'Login attempts', ['result'])


def setup_logging(level: str = None) -> logging.Logger:
    """Structured JSON logging for the whole messego package."""
    root = logging.getLogger('messego')
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(jsonlogger.JsonFormatter('%(asctime)s %(levelname)s %(name)s %(message)s'))
        root.addHandler(handler)
    root.setLevel(level or os.getenv('LOG_LEVEL', 'INFO'))
    return root


def init_metrics(port: int = METRICS_PORT):
    """Initialize Prometheus metrics server"""
    try:
        start_http_server(port)
        logger.info(f"Prometheus metrics server started on port {port}")
    except OSError as e:
        logger.warning(f'Prometheus start failed: {e}')


async def db_startup():
    """Check the database is reachable, retrying while it comes up"""
    from .models import Base, engine

    max_retries = 3
    retry_delay = 3  # seconds

    for attempt in range(max_retries):
        try:
            async with engine.begin() as conn:
                await conn.execute(text('SELECT 1'))
                if os.getenv('DB_CREATE_ALL', '').lower() in ('1', 'true', 'yes'):
                    await conn.run_sync(Base.metadata.create_all)
            logger.info("Database connected successfully")
            return
        except Exception as e:
            logger.warning(f'Database startup attempt {attempt + 1} failed: {e}')
            if attempt < max_retries - 1:
                logger.info(f"Retrying database connection in {retry_delay} seconds...")
                await asyncio.sleep(retry_delay)
    logger.error("Failed to connect to the database after all retries")


async def shutdown_connections():
    """Return pooled connections on shutdown"""
    from .models import engine

    logger.info("Shutting down connections...")
    await engine.dispose()
    logger.info("Database pool disposed")
