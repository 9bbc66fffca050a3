"""
Shared test fixtures.

Services are wired with in-memory fakes: no network, no Supabase project.
"""

import sys
from pathlib import Path

# Add project root to Python path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

import pytest
from unittest.mock import patch
from datetime import datetime
from typing import Generator, Optional

from services.field_mapper_service import FieldMapperService
from services.import_executor_service import ImportExecutorService
from services.import_session_service import ImportSessionService, SessionStore
from services.progress_broadcaster import ProgressBroadcaster
from services.recovery_service import RecoveryService
from tests.fakes import FakeCatalogStore


# ===================
# MOCK SUPABASE CLIENT
# ===================

class MockSupabaseResponse:
    """Mock Supabase query response."""

    def __init__(self, data: list = None, count: int = None):
        self.data = data or []
        self.count = count if count is not None else len(self.data)


class MockSupabaseQuery:
    """Mock Supabase query builder with chainable methods."""

    def __init__(self, client: "MockSupabaseClient", table_name: str):
        self._client = client
        self._table = table_name
        self._pending_insert: Optional[list] = None
        self._pending_update: Optional[dict] = None
        self._filters: list[tuple[str, object]] = []
        self._delete = False

    def select(self, *args, **kwargs):
        return self

    def insert(self, data):
        if isinstance(data, dict):
            data = [data]
        self._pending_insert = [dict(item) for item in data]
        return self

    def update(self, data):
        self._pending_update = dict(data)
        return self

    def delete(self):
        self._delete = True
        return self

    def eq(self, column, value):
        self._filters.append((column, value))
        return self

    def limit(self, count):
        return self

    def _matches(self, row: dict) -> bool:
        return all(row.get(column) == value for column, value in self._filters)

    def execute(self) -> MockSupabaseResponse:
        if self._client.error:
            raise self._client.error

        rows = self._client.tables.setdefault(self._table, [])

        if self._pending_insert is not None:
            now = datetime.utcnow().isoformat() + "Z"
            for item in self._pending_insert:
                item.setdefault("id", f"row-{len(rows) + 1}")
                item["created_at"] = now
            rows.extend(self._pending_insert)
            return MockSupabaseResponse(data=self._pending_insert)

        if self._pending_update is not None:
            updated = []
            for row in rows:
                if self._matches(row):
                    row.update(self._pending_update)
                    updated.append(row)
            return MockSupabaseResponse(data=updated)

        if self._delete:
            kept = [row for row in rows if not self._matches(row)]
            removed = len(rows) - len(kept)
            self._client.tables[self._table] = kept
            return MockSupabaseResponse(data=[], count=removed)

        return MockSupabaseResponse(data=[row for row in rows if self._matches(row)])


class MockSupabaseClient:
    """Mock Supabase client backed by in-memory tables."""

    def __init__(self):
        self.tables: dict[str, list] = {}
        self.error: Optional[Exception] = None

    def set_table_data(self, table_name: str, data: list):
        """Configure mock data for a table."""
        self.tables[table_name] = list(data)

    def table(self, name: str) -> MockSupabaseQuery:
        return MockSupabaseQuery(self, name)


# ===================
# FIXTURES
# ===================

@pytest.fixture
def mock_supabase() -> MockSupabaseClient:
    """
    Create a mock Supabase client.

    Usage:
        def test_something(mock_supabase):
            mock_supabase.set_table_data("products", [{"id": "1", "sku": "A-1"}])
    """
    return MockSupabaseClient()


@pytest.fixture
def mock_db(mock_supabase) -> Generator:
    """Patch the database client with mock."""
    with patch("config.database.get_supabase_client", return_value=mock_supabase):
        with patch("integrations.catalog_store.get_supabase_client", return_value=mock_supabase):
            yield mock_supabase


@pytest.fixture
def broadcaster() -> ProgressBroadcaster:
    return ProgressBroadcaster(queue_size=50)


@pytest.fixture
def session_store() -> SessionStore:
    return SessionStore(ttl_minutes=60)


@pytest.fixture
def mapper() -> FieldMapperService:
    """Mapper with no suggestion service."""
    return FieldMapperService(suggester=None, fuzzy_threshold=80, sample_rows=20, suggestion_timeout=1.0)


@pytest.fixture
def session_service(session_store, mapper, broadcaster) -> ImportSessionService:
    return ImportSessionService(store=session_store, mapper=mapper, broadcaster=broadcaster)


@pytest.fixture
def recovery_service(session_service) -> RecoveryService:
    return RecoveryService(sessions=session_service)


@pytest.fixture
def catalog_store() -> FakeCatalogStore:
    return FakeCatalogStore()


@pytest.fixture
def executor(session_service, catalog_store) -> ImportExecutorService:
    return ImportExecutorService(
        sessions=session_service,
        store=catalog_store,
        batch_size=2,
        batch_timeout=1.0
    )


# ===================
# API TEST CLIENT
# ===================

@pytest.fixture
def test_client(session_service, recovery_service, executor, broadcaster):
    """
    FastAPI test client wired to the fixture services.

    Usage:
        def test_endpoint(test_client):
            response = test_client.get("/api/imports")
            assert response.status_code == 200
    """
    from fastapi.testclient import TestClient
    from main import app

    with patch("routes.imports.get_import_session_service", return_value=session_service):
        with patch("routes.imports.get_recovery_service", return_value=recovery_service):
            with patch("routes.imports.get_import_executor_service", return_value=executor):
                with patch("routes.imports.get_progress_broadcaster", return_value=broadcaster):
                    yield TestClient(app)
