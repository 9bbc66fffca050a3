"""
Tabular parser for catalog uploads.

Turns an uploaded byte stream (CSV/TSV, XLSX or JSON) into ordered header
names plus raw records (column -> string value). It knows nothing about the
catalog schema.

Tolerated without failing the batch:
- Ragged rows (padded or truncated, with a warning per row)
- Quoted fields containing the delimiter
- Byte-order marks and non-UTF-8 encodings (best-effort decoding)
- Blank or duplicate headers (renamed, with a warning)

Fatal (raises):
- FileParseError: content cannot be read as a table at all
- ImportLimitExceededError: byte or row ceiling exceeded, checked before any
  record is materialized
"""

import codecs
import csv
import json
from dataclasses import dataclass, field
from io import BytesIO, StringIO
from pathlib import PurePath
from typing import Iterable, Optional
import structlog

import pandas as pd
from openpyxl import load_workbook

from exceptions import FileParseError, ImportLimitExceededError
from models.import_session import ParseWarning

logger = structlog.get_logger(__name__)

RawRecord = dict[str, Optional[str]]

CSV_DELIMITERS = ",;\t|"
SNIFF_SAMPLE_CHARS = 64 * 1024
MAX_CONTROL_CHAR_RATIO = 0.1

EXTENSION_FORMATS = {
    ".csv": "csv",
    ".tsv": "csv",
    ".txt": "csv",
    ".xlsx": "xlsx",
    ".xlsm": "xlsx",
    ".json": "json",
}

CONTENT_TYPE_FORMATS = {
    "text/csv": "csv",
    "text/plain": "csv",
    "text/tab-separated-values": "csv",
    "application/vnd.ms-excel": "csv",  # browsers often label .csv this way
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
    "application/json": "json",
}


@dataclass
class TabularParseResult:
    """Result of parsing an uploaded file."""
    headers: list[str]
    rows: list[RawRecord] = field(default_factory=list)
    warnings: list[ParseWarning] = field(default_factory=list)
    file_format: str = "csv"

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def sample(self, size: int) -> list[RawRecord]:
        """First `size` rows, used as the mapper's bounded sample."""
        return self.rows[:size]


def parse_upload(
    content: bytes,
    filename: str,
    max_rows: int,
    max_bytes: int,
    content_type: Optional[str] = None,
) -> TabularParseResult:
    """
    Parse an uploaded file into headers and raw records.

    Args:
        content: Raw uploaded bytes
        filename: Original filename (extension drives format detection)
        max_rows: Largest accepted number of data rows
        max_bytes: Largest accepted size in bytes
        content_type: Declared content type, used when the extension is unknown

    Returns:
        TabularParseResult with headers, rows and non-fatal warnings

    Raises:
        ImportLimitExceededError: File exceeds max_bytes or max_rows
        FileParseError: File cannot be decoded as tabular data
    """
    logger.info(
        "parsing_upload",
        filename=filename,
        size_bytes=len(content),
        content_type=content_type
    )

    if len(content) > max_bytes:
        raise ImportLimitExceededError("FILE_TOO_LARGE", max_bytes, len(content))

    if not content or not content.strip():
        raise FileParseError("File is empty", code="FILE_EMPTY")

    file_format = detect_format(filename, content_type, content)
    warnings: list[ParseWarning] = []

    if file_format == "xlsx":
        raw_rows = _read_excel_rows(content, max_rows)
    elif file_format == "json":
        raw_rows = _read_json_rows(content, max_rows, warnings)
    else:
        raw_rows = _read_csv_rows(content, max_rows, warnings)

    headers, rows = _build_table(raw_rows, warnings)

    if not rows:
        raise FileParseError("File contains a header but no data rows", code="FILE_EMPTY")

    logger.info(
        "upload_parsed",
        filename=filename,
        file_format=file_format,
        columns=len(headers),
        rows=len(rows),
        warnings=len(warnings)
    )

    return TabularParseResult(
        headers=headers,
        rows=rows,
        warnings=warnings,
        file_format=file_format,
    )


def detect_format(filename: str, content_type: Optional[str], content: bytes) -> str:
    """Pick csv, xlsx or json from extension, then content type, then content."""
    suffix = PurePath(filename or "").suffix.lower()
    if suffix in EXTENSION_FORMATS:
        return EXTENSION_FORMATS[suffix]

    if content_type:
        base_type = content_type.split(";")[0].strip().lower()
        if base_type in CONTENT_TYPE_FORMATS:
            return CONTENT_TYPE_FORMATS[base_type]

    if content.startswith(b"PK\x03\x04"):
        return "xlsx"
    if content.lstrip()[:1] in (b"[", b"{"):
        return "json"
    return "csv"


# ===================
# CSV
# ===================

def _read_csv_rows(content: bytes, max_rows: int, warnings: list[ParseWarning]) -> list[list]:
    """Decode, sniff the dialect, enforce the row ceiling, then read rows."""
    text = _decode(content, warnings)
    dialect = _sniff_dialect(text)

    try:
        # Counting pass keeps nothing in memory
        data_rows = sum(
            1 for row in csv.reader(StringIO(text), dialect) if _has_values(row)
        ) - 1
        if data_rows > max_rows:
            raise ImportLimitExceededError("TOO_MANY_ROWS", max_rows, data_rows)

        return list(csv.reader(StringIO(text), dialect))
    except csv.Error as e:
        logger.error("csv_read_failed", error=str(e))
        raise FileParseError(
            message="File could not be read as delimited text",
            details={"original_error": str(e)}
        )


def _decode(content: bytes, warnings: list[ParseWarning]) -> str:
    """
    Best-effort decoding.

    UTF-16 with BOM, then UTF-8 (BOM stripped), then cp1252, then latin-1.
    """
    if content.startswith((codecs.BOM_UTF16_LE, codecs.BOM_UTF16_BE)):
        try:
            return content.decode("utf-16")
        except UnicodeDecodeError:
            warnings.append(ParseWarning(message="Invalid UTF-16 content, decoded with replacements"))
            return content.decode("utf-16", errors="replace")

    if b"\x00" in content:
        raise FileParseError("File is binary and not a supported spreadsheet", code="FILE_UNREADABLE")

    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError:
        try:
            text = content.decode("cp1252")
            warnings.append(ParseWarning(message="File is not UTF-8, decoded as Windows-1252"))
        except UnicodeDecodeError:
            text = content.decode("latin-1")
            warnings.append(ParseWarning(message="File is not UTF-8, decoded as Latin-1"))
        logger.warning("upload_not_utf8", fallback_warnings=len(warnings))

    control = sum(1 for c in text if ord(c) < 32 and c not in "\t\r\n")
    if text and control / len(text) > MAX_CONTROL_CHAR_RATIO:
        raise FileParseError("File does not contain readable text", code="FILE_UNREADABLE")

    return text


def _sniff_dialect(text: str) -> type[csv.Dialect]:
    """Detect the delimiter, defaulting to comma."""
    sample = text[:SNIFF_SAMPLE_CHARS]
    try:
        return csv.Sniffer().sniff(sample, delimiters=CSV_DELIMITERS)
    except csv.Error:
        return csv.excel


# ===================
# EXCEL
# ===================

def _read_excel_rows(content: bytes, max_rows: int) -> list[list]:
    """Read the first sheet with pandas/openpyxl after checking its size."""
    try:
        workbook = load_workbook(BytesIO(content), read_only=True, data_only=True)
        sheet = workbook.active
        max_row = sheet.max_row
        if max_row is None:
            max_row = sum(1 for _ in sheet.iter_rows(values_only=True))
        workbook.close()
    except Exception as e:
        logger.error("excel_read_failed", error=str(e))
        raise FileParseError(
            message="Failed to read Excel file",
            details={"original_error": str(e)}
        )

    # max_row counts the header row
    if max_row - 1 > max_rows:
        raise ImportLimitExceededError("TOO_MANY_ROWS", max_rows, max_row - 1)

    try:
        df = pd.read_excel(
            BytesIO(content),
            engine="openpyxl",
            header=None,
            dtype=str,
            keep_default_na=False,
        )
    except Exception as e:
        logger.error("excel_parse_failed", error=str(e))
        raise FileParseError(
            message="Failed to read Excel sheet",
            details={"original_error": str(e)}
        )

    return df.values.tolist()


# ===================
# JSON
# ===================

def _read_json_rows(content: bytes, max_rows: int, warnings: list[ParseWarning]) -> list[list]:
    """Read an array of objects (or one object) into header + value rows."""
    text = _decode(content, warnings)
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        raise FileParseError(
            message="File is not valid JSON",
            details={"original_error": str(e)}
        )

    items = parsed if isinstance(parsed, list) else [parsed]
    if len(items) > max_rows:
        raise ImportLimitExceededError("TOO_MANY_ROWS", max_rows, len(items))

    headers: list[str] = []
    seen: set[str] = set()
    objects = []
    for position, item in enumerate(items, start=1):
        if not isinstance(item, dict):
            warnings.append(ParseWarning(row=position, message="Entry is not an object and was ignored"))
            continue
        objects.append(item)
        for key in item:
            if key not in seen:
                seen.add(key)
                headers.append(key)

    if not headers:
        raise FileParseError("JSON contains no records", code="NO_HEADERS")

    rows = [headers]
    for item in objects:
        rows.append([_json_cell(item.get(key)) for key in headers])
    return rows


def _json_cell(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


# ===================
# HELPER FUNCTIONS
# ===================

def _build_table(raw_rows: Iterable[list], warnings: list[ParseWarning]) -> tuple[list[str], list[RawRecord]]:
    """Use the first non-blank row as headers and fit every other row to them."""
    headers: Optional[list[str]] = None
    rows: list[RawRecord] = []

    for raw in raw_rows:
        if not _has_values(raw):
            continue

        if headers is None:
            headers = _clean_headers(raw, warnings)
            continue

        row_number = len(rows) + 1
        values = [_cell(v) for v in raw]
        width = len(headers)

        if len(values) < width:
            warnings.append(ParseWarning(
                row=row_number,
                message=f"Row has {len(values)} columns, expected {width}; missing values left empty"
            ))
            values.extend([None] * (width - len(values)))
        elif len(values) > width:
            extra = [v for v in values[width:] if v is not None]
            if extra:
                warnings.append(ParseWarning(
                    row=row_number,
                    message=f"Row has {len(values)} columns, expected {width}; extra values dropped"
                ))
            values = values[:width]

        rows.append(dict(zip(headers, values)))

    if not headers:
        raise FileParseError("No header row found", code="NO_HEADERS")

    return headers, rows


def _clean_headers(raw: list, warnings: list[ParseWarning]) -> list[str]:
    """Name blank headers and disambiguate duplicates."""
    headers: list[str] = []
    counts: dict[str, int] = {}

    for position, value in enumerate(raw, start=1):
        name = (_cell(value) or "").strip()
        if not name:
            name = f"column_{position}"
            warnings.append(ParseWarning(message=f"Blank header in column {position} renamed to '{name}'"))

        if name in counts:
            counts[name] += 1
            renamed = f"{name}_{counts[name]}"
            warnings.append(ParseWarning(message=f"Duplicate header '{name}' renamed to '{renamed}'"))
            name = renamed
        else:
            counts[name] = 1
        headers.append(name)

    return headers


def _cell(value) -> Optional[str]:
    """Normalize a cell to a string, with empty cells as None."""
    if value is None:
        return None
    if isinstance(value, float) and pd.isna(value):
        return None
    text = str(value)
    return text if text.strip() != "" else None


def _has_values(row: list) -> bool:
    return any(_cell(v) is not None for v in row)
