"""
Base schemas shared by the import models.
"""

from pydantic import BaseModel, ConfigDict, Field


class BaseSchema(BaseModel):
    """
    Base for request bodies.

    Strings are trimmed and assignments re-validated, so a field name sent
    as " price " resolves the same as "price".
    """
    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True
    )


class PaginationParams(BaseModel):
    """Page window over an in-memory list."""
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=50, ge=1)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    def window(self, items: list) -> list:
        """Slice of items on this page."""
        return items[self.offset:self.offset + self.page_size]

    def total_pages(self, total: int) -> int:
        """Ceiling division of total by page size."""
        return (total + self.page_size - 1) // self.page_size
