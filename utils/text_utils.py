"""
Text utilities for headers and identifiers.

Used by the field mapper to compare column headers and by the validation
engine to build slug and SKU repairs.
"""

import re
import unicodedata
from typing import Optional


def strip_accents(text: str) -> str:
    """
    Remove accent marks while keeping base characters.

    "Descripción" → "Descripcion"
    """
    # NFD decomposition separates base chars from accents
    normalized = unicodedata.normalize('NFD', text)
    return ''.join(c for c in normalized if unicodedata.category(c) != 'Mn')


def normalize_header(header: Optional[str]) -> str:
    """
    Normalize a column header for comparison.

    Handles case, accents, punctuation and camelCase:
    - "Product Name" → "product_name"
    - "compareAtPrice" → "compare_at_price"
    - "  Precio (USD) " → "precio_usd"
    - "Código" → "codigo"

    Args:
        header: Raw header text

    Returns:
        snake_case ASCII string, empty for blank input
    """
    if not header:
        return ""

    text = strip_accents(str(header).strip())
    # Split camelCase before lowering
    text = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "_", text)
    text = text.lower()
    text = re.sub(r"[^a-z0-9]+", "_", text)
    return text.strip("_")


def slugify(text: Optional[str]) -> str:
    """
    Build a URL slug.

    "Nogal Café 60x60" → "nogal-cafe-60x60"
    """
    if not text:
        return ""
    text = strip_accents(str(text)).lower()
    text = re.sub(r"[^a-z0-9]+", "-", text)
    return text.strip("-")


def clean_sku(value: Optional[str]) -> str:
    """
    Drop characters a SKU may not contain and uppercase the rest.

    " ab 12/x " → "AB12X"
    """
    if not value:
        return ""
    return re.sub(r"[^A-Za-z0-9_-]", "", strip_accents(str(value))).upper()
