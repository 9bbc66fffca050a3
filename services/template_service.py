"""
Import template service.

Builds a downloadable starter file whose headers are the catalog field names
in catalog order, with one example row. A template uploaded unchanged maps
every column exactly and validates clean.

Formats:
    csv  - header row + example row
    xlsx - "products" sheet like the CSV, plus a "fields" sheet describing
           each column
    json - list holding the example record
"""

from dataclasses import dataclass
from io import BytesIO
import json
import structlog

import pandas as pd
from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill

from models.catalog import CATALOG_FIELDS, CatalogField
from models.import_session import TemplateFormat

logger = structlog.get_logger(__name__)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

MEDIA_TYPES = {
    TemplateFormat.CSV: "text/csv",
    TemplateFormat.XLSX: XLSX_MEDIA_TYPE,
    TemplateFormat.JSON: "application/json",
}


@dataclass(frozen=True)
class ImportTemplate:
    """A rendered template ready to send."""
    content: bytes
    media_type: str
    filename: str


def example_record() -> dict[str, str]:
    """Example value per catalog field, in catalog order."""
    return {f.name: f.example or "" for f in CATALOG_FIELDS}


def _rules(f: CatalogField) -> str:
    parts = [f.type.value]
    if f.required:
        parts.append("required")
    if f.unique:
        parts.append("unique")
    if f.choices:
        parts.append("one of: " + ", ".join(f.choices))
    if f.pattern_hint:
        parts.append(f.pattern_hint)
    if f.max_length:
        parts.append(f"max {f.max_length} characters")
    return "; ".join(parts)


class TemplateService:
    """Renders the catalog import template."""

    def render(self, fmt: TemplateFormat) -> ImportTemplate:
        if fmt == TemplateFormat.CSV:
            content = pd.DataFrame([example_record()]).to_csv(index=False).encode("utf-8")
        elif fmt == TemplateFormat.XLSX:
            content = self._render_xlsx().getvalue()
        else:
            content = json.dumps([example_record()], indent=2).encode("utf-8")

        logger.info("import_template_rendered", format=fmt.value, bytes=len(content))
        return ImportTemplate(
            content=content,
            media_type=MEDIA_TYPES[fmt],
            filename=f"products-template.{fmt.value}"
        )

    def _render_xlsx(self) -> BytesIO:
        wb = Workbook()
        ws = wb.active
        ws.title = "products"

        bold_font = Font(bold=True)
        required_fill = PatternFill(start_color="FFF2CC", end_color="FFF2CC", fill_type="solid")

        record = example_record()
        for col, f in enumerate(CATALOG_FIELDS, start=1):
            header = ws.cell(row=1, column=col, value=f.name)
            header.font = bold_font
            if f.required:
                header.fill = required_fill
            # Text cells so leading zeros and dates survive a round trip
            example = ws.cell(row=2, column=col, value=record[f.name])
            example.number_format = "@"
            ws.column_dimensions[header.column_letter].width = max(12, len(f.name) + 2)

        ws.freeze_panes = "A2"

        fields = wb.create_sheet("fields")
        for col, title in enumerate(("field", "description", "rules", "example"), start=1):
            fields.cell(row=1, column=col, value=title).font = bold_font
        for row, f in enumerate(CATALOG_FIELDS, start=2):
            fields.cell(row=row, column=1, value=f.name)
            fields.cell(row=row, column=2, value=f.description)
            fields.cell(row=row, column=3, value=_rules(f))
            fields.cell(row=row, column=4, value=f.example)

        fields.column_dimensions["A"].width = 22
        fields.column_dimensions["B"].width = 40
        fields.column_dimensions["C"].width = 50
        fields.column_dimensions["D"].width = 30

        output = BytesIO()
        wb.save(output)
        output.seek(0)
        return output


# Singleton instance for convenience
_template_service = None

def get_template_service() -> TemplateService:
    """Get or create TemplateService instance."""
    global _template_service
    if _template_service is None:
        _template_service = TemplateService()
    return _template_service
