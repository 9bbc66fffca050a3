"""
Catalog target schema for imports.

Describes every product field an uploaded column can map onto, together with
the rules the validation engine applies to it and the header synonyms the
field mapper recognizes.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional


class FieldType(str, Enum):
    """Value types a catalog field can hold."""
    STRING = "string"
    INTEGER = "integer"
    DECIMAL = "decimal"
    BOOLEAN = "boolean"
    DATE = "date"
    ENUM = "enum"


@dataclass(frozen=True)
class CatalogField:
    """One target field of the product catalog."""
    name: str
    type: FieldType
    description: str
    required: bool = False
    unique: bool = False
    pattern: Optional[str] = None
    pattern_hint: Optional[str] = None
    min_value: Optional[Decimal] = None
    max_value: Optional[Decimal] = None
    max_length: Optional[int] = None
    choices: tuple[str, ...] = ()
    default: Optional[str] = None
    example: Optional[str] = None
    synonyms: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_numeric(self) -> bool:
        return self.type in (FieldType.INTEGER, FieldType.DECIMAL)

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        return {
            "name": self.name,
            "type": self.type.value,
            "description": self.description,
            "required": self.required,
            "unique": self.unique,
            "choices": list(self.choices),
            "example": self.example,
        }


PRODUCT_STATUSES = ("draft", "review", "live", "archived")

SKU_PATTERN = r"^[A-Za-z0-9_-]+$"
SLUG_PATTERN = r"^[a-z0-9]+(?:-[a-z0-9]+)*$"
GTIN_PATTERN = r"^\d{8,14}$"


# Order matters: issues and previews list fields in this order.
CATALOG_FIELDS: tuple[CatalogField, ...] = (
    CatalogField(
        name="name",
        type=FieldType.STRING,
        description="Product name",
        required=True,
        max_length=255,
        example="Nogal Cafe Porcelain Tile 60x60",
        synonyms=("product_name", "productname", "title", "product_title", "item_name", "nombre"),
    ),
    CatalogField(
        name="sku",
        type=FieldType.STRING,
        description="Stock keeping unit",
        required=True,
        unique=True,
        pattern=SKU_PATTERN,
        pattern_hint="letters, digits, '-' and '_' only",
        max_length=64,
        example="NOG-CAF-6060",
        synonyms=("product_code", "item_code", "part_number", "sku_code", "codigo", "model"),
    ),
    CatalogField(
        name="slug",
        type=FieldType.STRING,
        description="URL-friendly identifier",
        unique=True,
        pattern=SLUG_PATTERN,
        pattern_hint="lowercase words separated by '-'",
        max_length=255,
        example="nogal-cafe-porcelain-tile-60x60",
        synonyms=("url_key", "handle", "permalink"),
    ),
    CatalogField(
        name="gtin",
        type=FieldType.STRING,
        description="Global trade item number (barcode)",
        unique=True,
        pattern=GTIN_PATTERN,
        pattern_hint="8 to 14 digits",
        example="7401234567895",
        synonyms=("barcode", "upc", "ean", "ean13"),
    ),
    CatalogField(
        name="short_description",
        type=FieldType.STRING,
        description="Brief product description",
        max_length=500,
        example="Matte wood-look porcelain tile",
        synonyms=("description", "desc", "summary", "product_description"),
    ),
    CatalogField(
        name="long_description",
        type=FieldType.STRING,
        description="Detailed product description",
        max_length=5000,
        example="Rectified porcelain tile with a walnut grain finish for floors and walls",
        synonyms=("details", "long_desc", "full_description"),
    ),
    CatalogField(
        name="brand",
        type=FieldType.STRING,
        description="Brand name",
        max_length=255,
        example="Tarragona",
        synonyms=("brand_name", "manufacturer", "vendor", "marca"),
    ),
    CatalogField(
        name="price",
        type=FieldType.DECIMAL,
        description="Selling price",
        min_value=Decimal("0"),
        max_value=Decimal("10000000"),
        default="0",
        example="24.99",
        synonyms=("selling_price", "unit_price", "retail_price", "amount", "precio"),
    ),
    CatalogField(
        name="compare_at_price",
        type=FieldType.DECIMAL,
        description="Original or list price",
        min_value=Decimal("0"),
        max_value=Decimal("10000000"),
        default="0",
        example="29.99",
        synonyms=("msrp", "list_price", "original_price", "rrp"),
    ),
    CatalogField(
        name="cost_price",
        type=FieldType.DECIMAL,
        description="Unit cost",
        min_value=Decimal("0"),
        max_value=Decimal("10000000"),
        default="0",
        example="14.50",
        synonyms=("cost", "unit_cost", "wholesale_price", "costo"),
    ),
    CatalogField(
        name="stock",
        type=FieldType.INTEGER,
        description="Available stock quantity",
        min_value=Decimal("0"),
        default="0",
        example="150",
        synonyms=("inventory", "quantity", "qty", "available", "stock_quantity", "cantidad"),
    ),
    CatalogField(
        name="low_stock_threshold",
        type=FieldType.INTEGER,
        description="Low stock alert threshold",
        min_value=Decimal("0"),
        default="0",
        example="25",
        synonyms=("reorder_point", "min_stock", "reorder_level"),
    ),
    CatalogField(
        name="weight",
        type=FieldType.DECIMAL,
        description="Shipping weight in kg",
        min_value=Decimal("0"),
        default="0",
        example="22.5",
        synonyms=("weight_kg", "peso"),
    ),
    CatalogField(
        name="status",
        type=FieldType.ENUM,
        description="Publication status",
        choices=PRODUCT_STATUSES,
        example="draft",
        synonyms=("product_status", "state", "estado"),
    ),
    CatalogField(
        name="is_variant",
        type=FieldType.BOOLEAN,
        description="Whether the product is a variant",
        example="false",
        synonyms=("variant", "isvariant"),
    ),
    CatalogField(
        name="available_from",
        type=FieldType.DATE,
        description="Date the product becomes available",
        example="2025-01-15",
        synonyms=("launch_date", "release_date", "available_date"),
    ),
)

FIELDS_BY_NAME: dict[str, CatalogField] = {f.name: f for f in CATALOG_FIELDS}

FIELD_ORDER: dict[str, int] = {f.name: i for i, f in enumerate(CATALOG_FIELDS)}


def get_field(name: str) -> Optional[CatalogField]:
    """Look up a catalog field by name."""
    return FIELDS_BY_NAME.get(name)


def required_fields() -> list[str]:
    """Names of the fields every record must provide."""
    return [f.name for f in CATALOG_FIELDS if f.required]
