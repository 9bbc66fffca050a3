"""
Test data factories.

Uses factory pattern to generate consistent catalog rows and upload files.
"""

import csv
from io import BytesIO, StringIO
from typing import Optional

import pandas as pd

from models.import_session import ImportRecord

DEFAULT_HEADERS = ["name", "sku", "price", "stock"]


class CatalogRowFactory:
    """
    Factory for creating uploaded catalog rows.

    Usage:
        # Create with defaults
        row = CatalogRowFactory.create()

        # Create with overrides
        row = CatalogRowFactory.create(price="$12.99", name=None)

        # Create multiple
        rows = CatalogRowFactory.create_batch(5)
    """

    _counter = 0

    @classmethod
    def _next_counter(cls) -> int:
        cls._counter += 1
        return cls._counter

    @classmethod
    def create(cls, **overrides) -> dict:
        """
        Create a single row dict with string values.

        Keys default to DEFAULT_HEADERS; pass a key with None for an empty cell.
        """
        n = cls._next_counter()
        row = {
            "name": f"Product {n}",
            "sku": f"SKU-{n:05d}",
            "price": f"{10 + n}.50",
            "stock": str(n * 10),
        }
        row.update(overrides)
        return row

    @classmethod
    def create_batch(cls, count: int, **overrides) -> list[dict]:
        """Create multiple rows."""
        return [cls.create(**overrides) for _ in range(count)]


# ===================
# FILE BUILDERS
# ===================

def csv_bytes(
    rows: list[dict],
    headers: Optional[list[str]] = None,
    delimiter: str = ",",
    encoding: str = "utf-8",
) -> bytes:
    """Render rows as a delimited file."""
    headers = headers or list(rows[0].keys())
    buffer = StringIO()
    writer = csv.writer(buffer, delimiter=delimiter, lineterminator="\n")
    writer.writerow(headers)
    for row in rows:
        writer.writerow(["" if row.get(h) is None else row.get(h) for h in headers])
    return buffer.getvalue().encode(encoding)


def xlsx_bytes(rows: list[dict], headers: Optional[list[str]] = None, sheet_name: str = "Products") -> bytes:
    """Render rows as an Excel workbook."""
    headers = headers or list(rows[0].keys())
    df = pd.DataFrame(rows, columns=headers)
    buffer = BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        df.to_excel(writer, sheet_name=sheet_name, index=False)
    return buffer.getvalue()


def make_records(rows: list[dict]) -> list[ImportRecord]:
    """Records whose raw and resolved values are the given rows."""
    return [
        ImportRecord(index=i, raw=dict(row), resolved=dict(row))
        for i, row in enumerate(rows)
    ]


def three_record_csv() -> bytes:
    """One valid row, one row missing its name, one row with a formatted price."""
    return csv_bytes(
        [
            {"name": None, "sku": "SKU-1", "price": "10.00"},
            {"name": "Widget", "sku": "SKU-2", "price": "$12.99"},
            {"name": "Gadget", "sku": "SKU-3", "price": "5.50"},
        ],
        headers=["name", "sku", "price"],
    )
