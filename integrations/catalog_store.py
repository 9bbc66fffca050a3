"""
Catalog store adapter.

The import executor only needs a generic create/update/delete interface.
SupabaseCatalogStore writes to the configured catalog table.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional
import structlog

from config import settings, get_supabase_client
from config.database import StoreConnectionError
from exceptions import CatalogStoreError, CatalogStoreUnavailableError

logger = structlog.get_logger(__name__)


class CatalogStore(ABC):
    """Generic catalog persistence interface."""

    @abstractmethod
    def create_many(self, records: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Insert records, all or nothing. Returns the stored rows."""

    @abstractmethod
    def update(self, record_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        """Apply changes to one stored record."""

    @abstractmethod
    def delete(self, record_id: str) -> None:
        """Remove one stored record."""

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the store can currently accept writes."""


class SupabaseCatalogStore(CatalogStore):
    """Catalog store backed by a Supabase table."""

    def __init__(self, client=None, table: Optional[str] = None):
        self._client = client
        self.table = table or settings.catalog_table

    @property
    def db(self):
        if self._client is None:
            try:
                self._client = get_supabase_client()
            except StoreConnectionError as e:
                raise CatalogStoreUnavailableError(str(e))
        return self._client

    def create_many(self, records: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if not records:
            return []

        logger.debug("inserting_catalog_records", table=self.table, count=len(records))

        try:
            result = self.db.table(self.table).insert(records).execute()
        except CatalogStoreError:
            raise
        except OSError as e:
            logger.error("catalog_store_unreachable", error=str(e))
            raise CatalogStoreUnavailableError(f"Catalog store unreachable: {e}")
        except Exception as e:
            logger.error("catalog_insert_failed", table=self.table, count=len(records), error=str(e))
            raise CatalogStoreError(f"Insert failed: {e}", details={"records": len(records)})

        return result.data or []

    def update(self, record_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        logger.debug("updating_catalog_record", table=self.table, record_id=record_id)

        try:
            result = (
                self.db.table(self.table)
                .update(changes)
                .eq("id", record_id)
                .execute()
            )
        except CatalogStoreError:
            raise
        except Exception as e:
            logger.error("catalog_update_failed", record_id=record_id, error=str(e))
            raise CatalogStoreError(f"Update failed: {e}", details={"record_id": record_id})

        if not result.data:
            raise CatalogStoreError("Record not found", details={"record_id": record_id})

        return result.data[0]

    def delete(self, record_id: str) -> None:
        logger.debug("deleting_catalog_record", table=self.table, record_id=record_id)

        try:
            self.db.table(self.table).delete().eq("id", record_id).execute()
        except CatalogStoreError:
            raise
        except Exception as e:
            logger.error("catalog_delete_failed", record_id=record_id, error=str(e))
            raise CatalogStoreError(f"Delete failed: {e}", details={"record_id": record_id})

    def is_available(self) -> bool:
        if self._client is None and not settings.catalog_store_configured:
            return False
        try:
            return self.db is not None
        except CatalogStoreUnavailableError:
            return False


# Singleton instance for convenience
_catalog_store: Optional[CatalogStore] = None

def get_catalog_store() -> CatalogStore:
    """Get or create the catalog store."""
    global _catalog_store
    if _catalog_store is None:
        _catalog_store = SupabaseCatalogStore()
    return _catalog_store
