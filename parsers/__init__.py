"""
Upload parsers module.
"""

from parsers.tabular_parser import (
    parse_upload,
    detect_format,
    TabularParseResult,
)

__all__ = [
    "parse_upload",
    "detect_format",
    "TabularParseResult",
]
