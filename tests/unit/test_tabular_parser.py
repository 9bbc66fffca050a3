"""
Unit tests for the tabular upload parser.

Run with: pytest tests/unit/test_tabular_parser.py -v
"""

import json
import pytest

from parsers.tabular_parser import parse_upload, detect_format
from exceptions import FileParseError, ImportLimitExceededError
from tests.factories import CatalogRowFactory, csv_bytes, xlsx_bytes

MAX_ROWS = 100
MAX_BYTES = 1024 * 1024


def parse(content: bytes, filename: str = "products.csv", **kwargs):
    kwargs.setdefault("max_rows", MAX_ROWS)
    kwargs.setdefault("max_bytes", MAX_BYTES)
    return parse_upload(content, filename, **kwargs)


# ===================
# CSV
# ===================

class TestParseCsv:
    """Tests for delimited text uploads."""

    def test_parses_headers_and_rows(self):
        rows = CatalogRowFactory.create_batch(3)
        result = parse(csv_bytes(rows))

        assert result.file_format == "csv"
        assert result.headers == ["name", "sku", "price", "stock"]
        assert result.row_count == 3
        assert result.rows[0]["sku"] == rows[0]["sku"]
        assert result.warnings == []

    def test_detects_semicolon_delimiter(self):
        content = b"name;sku;price\nTile A;T-1;10.50\nTile B;T-2;11.00\n"
        result = parse(content)

        assert result.headers == ["name", "sku", "price"]
        assert result.rows[1] == {"name": "Tile B", "sku": "T-2", "price": "11.00"}

    def test_quoted_field_keeps_embedded_delimiter(self):
        content = b'name,sku,price\n"Tile, large",T-1,5\n"Tile, small",T-2,4\n'
        result = parse(content)

        assert result.rows[0]["name"] == "Tile, large"
        assert result.rows[1]["sku"] == "T-2"

    def test_strips_utf8_bom(self):
        content = "\ufeffname,sku\nTile,T-1\n".encode("utf-8")
        result = parse(content)

        assert result.headers == ["name", "sku"]

    def test_non_utf8_falls_back_with_warning(self):
        content = "name,sku\nCafé,T-1\n".encode("cp1252")
        result = parse(content)

        assert result.rows[0]["name"] == "Café"
        assert any("Windows-1252" in w.message for w in result.warnings)

    def test_utf16_with_bom(self):
        content = "name,sku\nTile,T-1\n".encode("utf-16")
        result = parse(content)

        assert result.rows == [{"name": "Tile", "sku": "T-1"}]

    def test_empty_cells_become_none(self):
        content = b"name,sku,price\n,T-1,\n"
        result = parse(content)

        assert result.rows[0] == {"name": None, "sku": "T-1", "price": None}


class TestRaggedRows:
    """Rows that do not match the header width."""

    def test_short_row_padded_with_warning(self):
        content = b"name,sku,price\nTile,T-1\nOther,T-2,3\n"
        result = parse(content)

        assert result.rows[0] == {"name": "Tile", "sku": "T-1", "price": None}
        assert result.warnings[0].row == 1
        assert "missing values" in result.warnings[0].message

    def test_long_row_truncated_with_warning(self):
        content = b"name,sku\nTile,T-1,surplus\nOther,T-2\n"
        result = parse(content)

        assert result.rows[0] == {"name": "Tile", "sku": "T-1"}
        assert result.warnings[0].row == 1
        assert "extra values dropped" in result.warnings[0].message

    def test_trailing_empty_cells_dropped_silently(self):
        content = b"name,sku\nTile,T-1,,\nOther,T-2\n"
        result = parse(content)

        assert result.rows[0] == {"name": "Tile", "sku": "T-1"}
        assert result.warnings == []

    def test_blank_lines_ignored(self):
        content = b"name,sku\n\nTile,T-1\n,\nOther,T-2\n"
        result = parse(content)

        assert result.row_count == 2


class TestHeaders:
    """Header cleanup."""

    def test_blank_header_renamed(self):
        content = b"name,,sku\nTile,x,T-1\n"
        result = parse(content)

        assert result.headers == ["name", "column_2", "sku"]
        assert any("column_2" in w.message for w in result.warnings)

    def test_duplicate_header_renamed(self):
        content = b"name,price,price\nTile,1,2\n"
        result = parse(content)

        assert result.headers == ["name", "price", "price_2"]
        assert result.rows[0]["price_2"] == "2"


# ===================
# FATAL ERRORS
# ===================

class TestParseErrors:
    """Uploads that cannot become a table."""

    def test_empty_file(self):
        with pytest.raises(FileParseError) as exc_info:
            parse(b"   \n")

        assert exc_info.value.code == "FILE_EMPTY"

    def test_header_without_rows(self):
        with pytest.raises(FileParseError) as exc_info:
            parse(b"name,sku\n")

        assert exc_info.value.code == "FILE_EMPTY"

    def test_binary_content(self):
        with pytest.raises(FileParseError) as exc_info:
            parse(b"\x00\x01\x02\x03binary\x00", filename="upload.bin")

        assert exc_info.value.code == "FILE_UNREADABLE"

    def test_file_too_large(self):
        content = csv_bytes(CatalogRowFactory.create_batch(20))

        with pytest.raises(ImportLimitExceededError) as exc_info:
            parse(content, max_bytes=100)

        assert exc_info.value.code == "FILE_TOO_LARGE"

    def test_too_many_rows(self):
        content = csv_bytes(CatalogRowFactory.create_batch(3))

        with pytest.raises(ImportLimitExceededError) as exc_info:
            parse(content, max_rows=2)

        assert exc_info.value.code == "TOO_MANY_ROWS"
        assert exc_info.value.details == {"limit": 2, "actual": 3}

    def test_rows_at_limit_accepted(self):
        content = csv_bytes(CatalogRowFactory.create_batch(2))

        assert parse(content, max_rows=2).row_count == 2


# ===================
# EXCEL
# ===================

class TestParseExcel:
    """Tests for XLSX uploads."""

    def test_parses_first_sheet(self):
        rows = [
            {"name": "Tile A", "sku": "T-1", "price": "10.50"},
            {"name": "Tile B", "sku": "T-2", "price": "11.00"},
        ]
        result = parse(xlsx_bytes(rows), filename="products.xlsx")

        assert result.file_format == "xlsx"
        assert result.headers == ["name", "sku", "price"]
        assert result.rows[1]["sku"] == "T-2"
        assert result.rows[0]["price"] == "10.50"

    def test_too_many_rows(self):
        content = xlsx_bytes(CatalogRowFactory.create_batch(5))

        with pytest.raises(ImportLimitExceededError) as exc_info:
            parse(content, filename="products.xlsx", max_rows=3)

        assert exc_info.value.code == "TOO_MANY_ROWS"

    def test_corrupt_workbook(self):
        with pytest.raises(FileParseError):
            parse(b"PK\x03\x04 not really a workbook", filename="products.xlsx")


# ===================
# JSON
# ===================

class TestParseJson:
    """Tests for JSON uploads."""

    def test_array_of_objects(self):
        content = json.dumps([
            {"name": "Tile A", "sku": "T-1", "price": 10.5},
            {"name": "Tile B", "sku": "T-2", "is_variant": True},
        ]).encode()
        result = parse(content, filename="products.json")

        assert result.file_format == "json"
        assert result.headers == ["name", "sku", "price", "is_variant"]
        assert result.rows[0]["price"] == "10.5"
        assert result.rows[0]["is_variant"] is None
        assert result.rows[1]["is_variant"] == "true"

    def test_non_object_entries_skipped_with_warning(self):
        content = json.dumps([{"name": "Tile"}, 42]).encode()
        result = parse(content, filename="products.json")

        assert result.row_count == 1
        assert result.warnings[0].row == 2

    def test_invalid_json(self):
        with pytest.raises(FileParseError):
            parse(b"[{\"name\": ", filename="products.json")


# ===================
# FORMAT DETECTION
# ===================

class TestDetectFormat:
    """Extension first, then content type, then content sniffing."""

    def test_extension_wins(self):
        assert detect_format("items.XLSX", "text/csv", b"name") == "xlsx"

    def test_content_type_when_no_extension(self):
        assert detect_format("upload", "application/json; charset=utf-8", b"x") == "json"

    def test_content_sniffing(self):
        assert detect_format("upload", None, b"PK\x03\x04rest") == "xlsx"
        assert detect_format("upload", None, b"  [{\"a\": 1}]") == "json"
        assert detect_format("upload", None, b"a,b\n1,2") == "csv"

    def test_sample_is_bounded(self):
        result = parse(csv_bytes(CatalogRowFactory.create_batch(10)))

        assert len(result.sample(3)) == 3
        assert result.sample(3)[0] == result.rows[0]
