"""
Validation engine.

Pure functions over resolved record values: nothing here reads or writes a
session. Issues are data, never exceptions.

Per field the rules run in this order:
    required -> type -> format -> range
and uniqueness runs once over the whole batch. An empty value stops the
chain; a type failure stops format and range.

Auto-fixes are only attached for deterministic repairs (trim, number
cleaning, boolean words, enum case, date reformatting, SKU cleaning, slug
generation). Anything else leaves auto_fix unset.

Output is ordered by record index, then mapped-field order, then rule order,
so the same input always yields the same list.
"""

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Collection, Iterable, Optional, Sequence

from models.catalog import CatalogField, FieldType, get_field
from models.import_session import (
    AutoFix,
    ImportRecord,
    IssueRule,
    IssueSeverity,
    ValidationIssue,
    RULE_ORDER,
)
from utils.text_utils import clean_sku, slugify

Cell = tuple[int, str]
Checkpoint = Callable[[int], None]

TRUE_WORDS = {"true", "t", "yes", "y", "1", "on", "si", "sí", "x"}
FALSE_WORDS = {"false", "f", "no", "n", "0", "off"}

# Tried in order; day-first before month-first
DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%d/%m/%Y",
    "%m/%d/%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%d %b %Y",
    "%b %d %Y",
    "%b %d, %Y",
    "%B %d, %Y",
    "%d %B %Y",
)

CURRENCY_MARKS = re.compile(r"[\s$€£¥]|\b(?:USD|EUR|GBP|MXN|COP)\b", re.IGNORECASE)
NUMBER_TOKEN = re.compile(r"-?[0-9]+(?:[.,][0-9]+)?")
PLAIN_NUMBER = re.compile(r"[-+]?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)(?:[eE][-+]?[0-9]+)?")
THOUSANDS_COMMA = re.compile(r"^-?\d{1,3}(?:,\d{3})+$")

TRIM_CONFIDENCE = 1.0
NUMBER_CLEAN_CONFIDENCE = 0.95
NUMBER_EXTRACT_CONFIDENCE = 0.7
DEFAULT_VALUE_CONFIDENCE = 0.3
INTEGER_COERCE_CONFIDENCE = 0.95
BOOLEAN_CONFIDENCE = 1.0
ENUM_CASE_CONFIDENCE = 0.95
DATE_CONFIDENCE = 0.9
AMBIGUOUS_DATE_CONFIDENCE = 0.6
SKU_CLEAN_CONFIDENCE = 0.9
SLUG_CONFIDENCE = 0.9


# ===================
# PUBLIC API
# ===================

def validate_all(
    records: Sequence[ImportRecord],
    mapped_fields: Sequence[str],
    excluded: Collection[int] = (),
    checkpoint: Optional[Checkpoint] = None,
    checkpoint_every: int = 500,
) -> list[ValidationIssue]:
    """
    Validate every mapped field of every record.

    Args:
        records: Records with resolved values
        mapped_fields: Target fields in mapping order
        excluded: Skipped record indices; their errors come back ignored and
            they take no part in uniqueness
        checkpoint: Called with the number of rows done every
            `checkpoint_every` rows; may raise to stop validation
        checkpoint_every: Rows between checkpoint calls

    Returns:
        Ordered list of ValidationIssue
    """
    fields = _known_fields(mapped_fields)
    issues: list[ValidationIssue] = []

    for done, record in enumerate(records, start=1):
        for field_def in fields:
            issues.extend(validate_value(record.index, field_def, record.resolved.get(field_def.name)))
        if checkpoint and done % checkpoint_every == 0:
            checkpoint(done)

    issues.extend(check_uniqueness(records, [f for f in fields if f.unique], excluded))

    return _finalize(issues, mapped_fields, excluded)


def validate_cells(
    records: Sequence[ImportRecord],
    cells: Iterable[Cell],
    mapped_fields: Sequence[str],
    excluded: Collection[int] = (),
) -> list[ValidationIssue]:
    """
    Re-validate only the touched cells.

    Uniqueness of every touched unique field is re-checked across the whole
    batch, since changing one value can create or clear duplicates elsewhere.
    Use merge_scoped() to fold the result into existing issues.
    """
    by_index = {r.index: r for r in records}
    cells = set(cells)
    issues: list[ValidationIssue] = []
    touched_unique: dict[str, CatalogField] = {}

    for record_index, field_name in sorted(cells):
        field_def = get_field(field_name)
        record = by_index.get(record_index)
        if field_def is None or record is None or field_name not in mapped_fields:
            continue
        issues.extend(validate_value(record_index, field_def, record.resolved.get(field_name)))
        if field_def.unique:
            touched_unique[field_name] = field_def

    issues.extend(check_uniqueness(records, list(touched_unique.values()), excluded))

    return _finalize(issues, mapped_fields, excluded)


def merge_scoped(
    existing: dict[int, list[ValidationIssue]],
    fresh: list[ValidationIssue],
    cells: Iterable[Cell],
    mapped_fields: Sequence[str],
) -> dict[int, list[ValidationIssue]]:
    """
    Replace the issues of the touched cells with the fresh ones.

    Uniqueness issues of touched unique fields are replaced batch-wide.
    Untouched issues are kept as they were.
    """
    cells = set(cells)
    touched_unique = {field_name for _, field_name in cells if _is_unique(field_name)}

    kept = [
        issue
        for index in existing
        for issue in existing[index]
        if (issue.record_index, issue.field) not in cells
        and not (issue.rule == IssueRule.UNIQUE and issue.field in touched_unique)
    ]

    return group_by_record(sort_issues(kept + fresh, mapped_fields))


def validate_value(record_index: int, field_def: CatalogField, value: Optional[str]) -> list[ValidationIssue]:
    """Run required, type, format and range on one cell."""
    issue = _IssueBuilder(record_index, field_def, value)
    text = value.strip() if value is not None else ""

    if not text:
        if field_def.required:
            issue.error(IssueRule.REQUIRED, f"{_label(field_def)} is required",
                        suggestion="Provide a value or skip the record")
        return issue.issues

    if field_def.type == FieldType.DECIMAL:
        if not _check_decimal(issue, field_def, text):
            return issue.issues
    elif field_def.type == FieldType.INTEGER:
        if not _check_integer(issue, field_def, text):
            return issue.issues
    elif field_def.type == FieldType.BOOLEAN:
        if not _check_boolean(issue, field_def, text):
            return issue.issues
    elif field_def.type == FieldType.DATE:
        if not _check_date(issue, field_def, text):
            return issue.issues
    elif field_def.type == FieldType.ENUM:
        if not _check_enum(issue, field_def, text):
            return issue.issues

    _check_format(issue, field_def, text)
    _check_range(issue, field_def, text)

    if text != value and not issue.has_errors:
        issue.warning(IssueRule.FORMAT, "Value has leading or trailing whitespace",
                      fix=AutoFix(action="Trim whitespace", new_value=text, confidence=TRIM_CONFIDENCE))

    return issue.issues


def check_uniqueness(
    records: Sequence[ImportRecord],
    fields: Sequence[CatalogField],
    excluded: Collection[int] = (),
) -> list[ValidationIssue]:
    """Flag every record that shares a unique field's value with another."""
    issues = []
    for field_def in fields:
        groups: dict[str, list[ImportRecord]] = {}
        for record in records:
            if record.index in excluded:
                continue
            value = record.resolved.get(field_def.name)
            key = value.strip().casefold() if value else ""
            if key:
                groups.setdefault(key, []).append(record)

        for group in groups.values():
            if len(group) < 2:
                continue
            for record in group:
                others = [str(r.index + 1) for r in group if r.index != record.index]
                issues.append(ValidationIssue(
                    record_index=record.index,
                    field=field_def.name,
                    raw_value=record.resolved.get(field_def.name),
                    rule=IssueRule.UNIQUE,
                    severity=IssueSeverity.ERROR,
                    message=f"Duplicate {_label(field_def)} also used in row(s) {', '.join(others)}",
                    suggestion="Change the value or skip one of the rows",
                ))
    return issues


def coerce_record(resolved: dict[str, Optional[str]], mapped_fields: Sequence[str]) -> dict[str, Any]:
    """
    Typed payload for the catalog store.

    Only called for records without blocking issues. Empty values become
    None, or the field default for numeric fields.

    Raises:
        ValueError: A value cannot be converted to its field type
    """
    payload: dict[str, Any] = {}
    for field_def in _known_fields(mapped_fields):
        value = resolved.get(field_def.name)
        text = value.strip() if value is not None else ""

        if not text:
            payload[field_def.name] = (
                _convert(field_def, field_def.default)
                if field_def.is_numeric and field_def.default is not None
                else None
            )
            continue

        payload[field_def.name] = _convert(field_def, text)
    return payload


def sort_issues(issues: Iterable[ValidationIssue], mapped_fields: Sequence[str]) -> list[ValidationIssue]:
    """Order by record index, mapped-field position, then rule order."""
    positions = {name: i for i, name in enumerate(mapped_fields)}
    return sorted(
        issues,
        key=lambda i: (i.record_index, positions.get(i.field, len(positions)), RULE_ORDER[i.rule])
    )


def group_by_record(issues: Iterable[ValidationIssue]) -> dict[int, list[ValidationIssue]]:
    grouped: dict[int, list[ValidationIssue]] = {}
    for issue in issues:
        grouped.setdefault(issue.record_index, []).append(issue)
    return grouped


# ===================
# TYPE CHECKS
# ===================

def _check_decimal(issue: "_IssueBuilder", field_def: CatalogField, text: str) -> bool:
    if _parse_decimal(text) is not None:
        return True
    issue.error(
        IssueRule.TYPE,
        f"{_label(field_def)} must be a number",
        suggestion="Use digits with an optional decimal point, e.g. 1299.00",
        fix=_numeric_fix(field_def, text, integer=False)
    )
    return False


def _check_integer(issue: "_IssueBuilder", field_def: CatalogField, text: str) -> bool:
    number = _parse_decimal(text)
    if number is not None and re.fullmatch(r"-?[0-9]+", text):
        return True

    fix = None
    if number is not None and number == number.to_integral_value():
        fix = AutoFix(
            action="Convert to whole number",
            new_value=str(int(number)),
            confidence=INTEGER_COERCE_CONFIDENCE
        )
    elif number is None:
        fix = _numeric_fix(field_def, text, integer=True)

    issue.error(
        IssueRule.TYPE,
        f"{_label(field_def)} must be a whole number",
        suggestion="Use digits only, e.g. 12",
        fix=fix
    )
    return False


def _check_boolean(issue: "_IssueBuilder", field_def: CatalogField, text: str) -> bool:
    if text in ("true", "false"):
        return True

    word = text.casefold()
    if word in TRUE_WORDS or word in FALSE_WORDS:
        # Readable but not canonical
        canonical = "true" if word in TRUE_WORDS else "false"
        issue.warning(
            IssueRule.FORMAT,
            f"{_label(field_def)} written as '{text}'",
            fix=AutoFix(action="Normalize boolean", new_value=canonical, confidence=BOOLEAN_CONFIDENCE)
        )
        return True

    issue.error(
        IssueRule.TYPE,
        f"{_label(field_def)} must be true or false",
        suggestion="Use true/false, yes/no or 1/0"
    )
    return False


def _check_date(issue: "_IssueBuilder", field_def: CatalogField, text: str) -> bool:
    if re.fullmatch(r"\d{4}-\d{2}-\d{2}", text) and _parse_date(text, ("%Y-%m-%d",)):
        return True

    fix = None
    candidates = {parsed for parsed in (_parse_date(text, (fmt,)) for fmt in DATE_FORMATS) if parsed}
    if candidates:
        first = _parse_date(text, DATE_FORMATS)
        fix = AutoFix(
            action="Reformat date as YYYY-MM-DD",
            new_value=first.isoformat(),
            confidence=DATE_CONFIDENCE if len(candidates) == 1 else AMBIGUOUS_DATE_CONFIDENCE
        )

    issue.error(
        IssueRule.TYPE,
        f"{_label(field_def)} must be a date in YYYY-MM-DD format",
        suggestion="e.g. 2024-03-31",
        fix=fix
    )
    return False


def _check_enum(issue: "_IssueBuilder", field_def: CatalogField, text: str) -> bool:
    if text in field_def.choices:
        return True

    fix = None
    for choice in field_def.choices:
        if choice.casefold() == text.casefold():
            fix = AutoFix(action="Match allowed value", new_value=choice, confidence=ENUM_CASE_CONFIDENCE)
            break

    issue.error(
        IssueRule.FORMAT,
        f"{_label(field_def)} must be one of: {', '.join(field_def.choices)}",
        suggestion=f"Use one of {', '.join(field_def.choices)}",
        fix=fix
    )
    return False


# ===================
# FORMAT AND RANGE
# ===================

def _check_format(issue: "_IssueBuilder", field_def: CatalogField, text: str) -> None:
    if field_def.type != FieldType.STRING:
        return

    if field_def.pattern and not re.fullmatch(field_def.pattern, text):
        issue.error(
            IssueRule.FORMAT,
            f"{_label(field_def)} has an invalid format",
            suggestion=field_def.pattern_hint,
            fix=_format_fix(field_def, text)
        )

    if field_def.max_length and len(text) > field_def.max_length:
        issue.error(
            IssueRule.RANGE,
            f"{_label(field_def)} is longer than {field_def.max_length} characters",
            suggestion="Shorten the value"
        )


def _check_range(issue: "_IssueBuilder", field_def: CatalogField, text: str) -> None:
    if not field_def.is_numeric:
        return

    number = _parse_decimal(text)
    if number is None:
        return

    if field_def.min_value is not None and number < field_def.min_value:
        issue.error(
            IssueRule.RANGE,
            f"{_label(field_def)} must be at least {field_def.min_value}",
            suggestion=f"Use a value of {field_def.min_value} or more"
        )
    elif field_def.max_value is not None and number > field_def.max_value:
        issue.error(
            IssueRule.RANGE,
            f"{_label(field_def)} must be at most {field_def.max_value}",
            suggestion=f"Use a value of {field_def.max_value} or less"
        )


# ===================
# AUTO-FIXES
# ===================

def _numeric_fix(field_def: CatalogField, text: str, integer: bool) -> Optional[AutoFix]:
    """Cleaned number, then extracted number, then the field default."""
    cleaned = _clean_number(text)
    if cleaned is not None and (not integer or cleaned == cleaned.to_integral_value()):
        return AutoFix(
            action="Remove currency symbols and separators",
            new_value=_format_number(cleaned, integer),
            confidence=NUMBER_CLEAN_CONFIDENCE
        )

    tokens = NUMBER_TOKEN.findall(text)
    if len(tokens) == 1:
        extracted = _parse_decimal(tokens[0].replace(",", "."))
        if extracted is not None and (not integer or extracted == extracted.to_integral_value()):
            return AutoFix(
                action="Extract number from text",
                new_value=_format_number(extracted, integer),
                confidence=NUMBER_EXTRACT_CONFIDENCE
            )

    if field_def.default is not None:
        return AutoFix(
            action="Use default value",
            new_value=field_def.default,
            confidence=DEFAULT_VALUE_CONFIDENCE
        )

    return None


def _format_fix(field_def: CatalogField, text: str) -> Optional[AutoFix]:
    if field_def.name == "sku":
        candidate = clean_sku(text)
        action = "Remove invalid SKU characters"
        confidence = SKU_CLEAN_CONFIDENCE
    elif field_def.name == "slug":
        candidate = slugify(text)
        action = "Generate slug"
        confidence = SLUG_CONFIDENCE
    else:
        return None

    if candidate and re.fullmatch(field_def.pattern, candidate):
        return AutoFix(action=action, new_value=candidate, confidence=confidence)
    return None


# ===================
# HELPER FUNCTIONS
# ===================

class _IssueBuilder:
    """Collects issues for one cell."""

    def __init__(self, record_index: int, field_def: CatalogField, raw_value: Optional[str]):
        self.record_index = record_index
        self.field_def = field_def
        self.raw_value = raw_value
        self.issues: list[ValidationIssue] = []

    @property
    def has_errors(self) -> bool:
        return any(i.severity == IssueSeverity.ERROR for i in self.issues)

    def error(self, rule: IssueRule, message: str, suggestion: Optional[str] = None,
              fix: Optional[AutoFix] = None) -> None:
        self._add(rule, IssueSeverity.ERROR, message, suggestion, fix)

    def warning(self, rule: IssueRule, message: str, suggestion: Optional[str] = None,
                fix: Optional[AutoFix] = None) -> None:
        self._add(rule, IssueSeverity.WARNING, message, suggestion, fix)

    def _add(self, rule, severity, message, suggestion, fix) -> None:
        self.issues.append(ValidationIssue(
            record_index=self.record_index,
            field=self.field_def.name,
            raw_value=self.raw_value,
            rule=rule,
            severity=severity,
            message=message,
            suggestion=suggestion,
            auto_fix=fix,
        ))


def _finalize(
    issues: list[ValidationIssue],
    mapped_fields: Sequence[str],
    excluded: Collection[int],
) -> list[ValidationIssue]:
    """Mark errors of skipped records as ignored and sort."""
    for issue in issues:
        if issue.record_index in excluded and issue.severity == IssueSeverity.ERROR:
            issue.ignored = True
    return sort_issues(issues, mapped_fields)


def _known_fields(mapped_fields: Sequence[str]) -> list[CatalogField]:
    fields = []
    for name in mapped_fields:
        field_def = get_field(name)
        if field_def is not None:
            fields.append(field_def)
    return fields


def _is_unique(field_name: str) -> bool:
    field_def = get_field(field_name)
    return field_def is not None and field_def.unique


def _label(field_def: CatalogField) -> str:
    return field_def.name.replace("_", " ").capitalize()


def _parse_decimal(text: str) -> Optional[Decimal]:
    """ASCII digits with optional sign, point and exponent; nothing else."""
    text = text.strip()
    if not PLAIN_NUMBER.fullmatch(text):
        return None
    try:
        number = Decimal(text)
    except InvalidOperation:
        return None
    return number if number.is_finite() else None


def _clean_number(text: str) -> Optional[Decimal]:
    """
    Parse numbers written with currency marks and separators.

    "$1,299.00" -> 1299.00, "1.299,50 €" -> 1299.50, "12,5" -> 12.5, "1_000" -> 1000
    """
    stripped = CURRENCY_MARKS.sub("", text).replace("_", "")
    if not stripped or not re.fullmatch(r"-?[0-9.,]+", stripped):
        return None

    if "," in stripped and "." in stripped:
        if stripped.rfind(",") > stripped.rfind("."):
            stripped = stripped.replace(".", "").replace(",", ".")
        else:
            stripped = stripped.replace(",", "")
    elif "," in stripped:
        if THOUSANDS_COMMA.match(stripped):
            stripped = stripped.replace(",", "")
        else:
            stripped = stripped.replace(",", ".")

    return _parse_decimal(stripped)


def _format_number(number: Decimal, integer: bool) -> str:
    if integer:
        return str(int(number))
    return format(number, "f")


def _parse_date(text: str, formats: Iterable[str]) -> Optional[date]:
    for fmt in formats:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def _parse_boolean(text: str) -> bool:
    word = text.casefold()
    if word in TRUE_WORDS:
        return True
    if word in FALSE_WORDS:
        return False
    raise ValueError(f"Not a boolean: {text}")


def _convert(field_def: CatalogField, text: str) -> Any:
    if field_def.type == FieldType.DECIMAL:
        number = _parse_decimal(text)
        if number is None:
            raise ValueError(f"{field_def.name}: not a number: {text}")
        return float(number)
    if field_def.type == FieldType.INTEGER:
        number = _parse_decimal(text)
        if number is None or number != number.to_integral_value():
            raise ValueError(f"{field_def.name}: not a whole number: {text}")
        return int(number)
    if field_def.type == FieldType.BOOLEAN:
        return _parse_boolean(text)
    if field_def.type == FieldType.DATE:
        parsed = _parse_date(text, ("%Y-%m-%d",))
        if parsed is None:
            raise ValueError(f"{field_def.name}: not a date: {text}")
        return parsed.isoformat()
    if field_def.type == FieldType.ENUM:
        for choice in field_def.choices:
            if choice.casefold() == text.casefold():
                return choice
        raise ValueError(f"{field_def.name}: not an allowed value: {text}")
    return text
