"""
Dependencies for database sessions and pricing sync components.
"""
from typing import AsyncGenerator, Generator
from sqlalchemy.orm import Session
from pricing_sync.database import SessionLocal
from pricing_sync.integrations.justtcg import BatchPricingClient
from pricing_sync.utils import get_logger

logger = get_logger(__name__)

def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.
    Ensures proper session lifecycle management with automatic cleanup.

    Yields:
        Session: SQLAlchemy database session
    """
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error("Database session error", error=str(e), exc_info=True)
        db.rollback()
        raise
    finally:
        db.close()

async def get_pricing_client() -> AsyncGenerator[BatchPricingClient, None]:
    """
    Upstream pricing client dependency.
    One client (and one rate-limit window) per invocation; the HTTP session is
    closed when the request finishes.
    """
    client = BatchPricingClient()
    try:
        yield client
    finally:
        await client.close()
