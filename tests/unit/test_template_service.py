"""
Unit tests for the import template.

Run with: pytest tests/unit/test_template_service.py -v
"""

from io import BytesIO
import json
import pytest

from openpyxl import load_workbook

from services.template_service import TemplateService, example_record
from models.catalog import CATALOG_FIELDS
from models.import_session import MappingMethod, SessionStatus, TemplateFormat

FIELD_NAMES = [f.name for f in CATALOG_FIELDS]


@pytest.fixture
def templates() -> TemplateService:
    return TemplateService()


class TestRender:
    """Template contents per format."""

    def test_csv(self, templates):
        template = templates.render(TemplateFormat.CSV)
        lines = template.content.decode("utf-8").splitlines()

        assert template.media_type == "text/csv"
        assert template.filename == "products-template.csv"
        assert lines[0].split(",") == FIELD_NAMES
        assert len(lines) == 2

    def test_json(self, templates):
        template = templates.render(TemplateFormat.JSON)

        assert json.loads(template.content) == [example_record()]

    def test_xlsx_sheets(self, templates):
        template = templates.render(TemplateFormat.XLSX)
        wb = load_workbook(BytesIO(template.content))

        assert wb.sheetnames == ["products", "fields"]
        products = wb["products"]
        assert [c.value for c in products[1]] == FIELD_NAMES
        assert products["A1"].font.bold
        fields = wb["fields"]
        assert fields.max_row == len(CATALOG_FIELDS) + 1
        assert "required" in fields["C2"].value

    def test_every_field_has_example(self):
        assert all(example_record()[name] for name in FIELD_NAMES)


class TestTemplateUpload:
    """A template uploaded as downloaded imports cleanly."""

    @pytest.mark.parametrize("fmt", list(TemplateFormat))
    def test_maps_exactly_and_validates_clean(self, templates, session_service, fmt):
        template = templates.render(fmt)

        session = session_service.upload(template.content, template.filename)
        assert session.status == SessionStatus.MAPPING_READY
        assert all(m.method == MappingMethod.EXACT for m in session.mapping)

        session_service.generate_preview(session.id)

        assert session.status == SessionStatus.AWAITING_APPROVAL
        assert session.issues == {}
