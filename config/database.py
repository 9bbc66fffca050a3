"""
Catalog store connection.

One Supabase client per process, created lazily on first use so the service
starts (and imports stay usable) when the store is down or unconfigured.
"""

from supabase import create_client, Client
from functools import lru_cache
import structlog

from config.settings import settings

logger = structlog.get_logger(__name__)


class StoreConnectionError(Exception):
    """Catalog store is not configured or cannot be reached."""
    pass


@lru_cache()
def get_supabase_client() -> Client:
    """
    Get the shared Supabase client.

    Failures are not cached; the next call tries again.

    Raises:
        StoreConnectionError: Store not configured or client creation failed
    """
    if not settings.catalog_store_configured:
        logger.warning("catalog_store_not_configured")
        raise StoreConnectionError("Supabase URL and key are not configured")

    try:
        client = create_client(
            settings.supabase_url,
            settings.supabase_service_key or settings.supabase_key
        )
    except Exception as e:
        logger.error(
            "catalog_store_connection_failed",
            error=str(e),
            error_type=type(e).__name__
        )
        raise StoreConnectionError(f"Failed to connect to Supabase: {e}") from e

    logger.info("catalog_store_client_created", table=settings.catalog_table)
    return client


def check_connection() -> dict:
    """
    Check that the catalog table answers.

    Returns:
        dict: status ("healthy"/"unhealthy"), table, and catalog_count or error
    """
    try:
        result = (
            get_supabase_client()
            .table(settings.catalog_table)
            .select("id", count="exact")
            .limit(1)
            .execute()
        )
    except Exception as e:
        return {
            "status": "unhealthy",
            "table": settings.catalog_table,
            "error": str(e)
        }

    return {
        "status": "healthy",
        "table": settings.catalog_table,
        "catalog_count": result.count,
    }
