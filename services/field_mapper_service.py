"""
Field mapper service.

Proposes a mapping from uploaded column headers to catalog fields.

Pass 1 is deterministic (HeuristicSuggester):
    - normalized header equals a field name -> exact, 1.0
    - normalized header equals a known synonym -> heuristic, 0.9
    - rapidfuzz token_sort_ratio >= threshold -> heuristic, 0.6

A header learned from an earlier import (MappingMemory) replaces a fuzzy or
missing match -> learned, up to 0.8.

Pass 2 sends every header still unmatched to the suggestion service in one
call, through GuardedSuggester so a slow or failing service only leaves those
columns unmapped.

Every target field is held by at most one source column.
"""

from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Optional, Protocol
import structlog

from rapidfuzz import fuzz

from config import settings
from integrations.suggestion_client import get_remote_suggester
from exceptions import (
    UnknownTargetFieldError,
    DuplicateTargetMappingError,
    ValidationError,
)
from models.catalog import CATALOG_FIELDS, get_field, required_fields
from models.import_session import (
    FieldMapping,
    MappingMethod,
    MappingOverride,
    ImportRecord,
)
from services.mapping_memory import LEARNED_CONFIDENCE, MappingMemory
from utils.deadline import DeadlineRunner
from utils.text_utils import normalize_header

logger = structlog.get_logger(__name__)

EXACT_CONFIDENCE = 1.0
SYNONYM_CONFIDENCE = 0.9
FUZZY_CONFIDENCE = 0.6


class Suggester(Protocol):
    """Anything that can propose mappings for a set of headers."""

    name: str

    def suggest(self, headers: list[str], sample: list[dict]) -> list[FieldMapping]:
        ...


class HeuristicSuggester:
    """Matches headers against catalog field names and synonyms."""

    name = "heuristic"

    def __init__(self, threshold: int = 80):
        self.threshold = threshold
        self._names = {normalize_header(f.name): f.name for f in CATALOG_FIELDS}
        self._synonyms: dict[str, str] = {}
        self._labels: list[tuple[str, str]] = []

        for f in CATALOG_FIELDS:
            self._labels.append((f.name.replace("_", " "), f.name))
            for synonym in f.synonyms:
                key = normalize_header(synonym)
                self._synonyms.setdefault(key, f.name)
                self._labels.append((key.replace("_", " "), f.name))

    def match(self, header: str) -> Optional[FieldMapping]:
        """Best deterministic match for one header, or None."""
        key = normalize_header(header)
        if not key:
            return None

        if key in self._names:
            return FieldMapping(
                source_column=header,
                target_field=self._names[key],
                confidence=EXACT_CONFIDENCE,
                method=MappingMethod.EXACT
            )

        if key in self._synonyms:
            return FieldMapping(
                source_column=header,
                target_field=self._synonyms[key],
                confidence=SYNONYM_CONFIDENCE,
                method=MappingMethod.HEURISTIC
            )

        words = key.replace("_", " ")
        best_score = 0.0
        best_field = None
        for label, field_name in self._labels:
            score = fuzz.token_sort_ratio(words, label)
            if score > best_score:
                best_score = score
                best_field = field_name

        if best_field and best_score >= self.threshold:
            return FieldMapping(
                source_column=header,
                target_field=best_field,
                confidence=FUZZY_CONFIDENCE,
                method=MappingMethod.HEURISTIC
            )

        return None

    def suggest(self, headers: list[str], sample: list[dict]) -> list[FieldMapping]:
        mappings = []
        for header in headers:
            mapping = self.match(header)
            if mapping:
                mappings.append(mapping)
        return mappings


class GuardedSuggester:
    """
    Runs another suggester under a hard deadline.

    Timeouts and failures are logged and produce no suggestions. Calls share
    one bounded pool, so a hung service holds at most `max_workers` threads.
    """

    def __init__(self, inner: Suggester, timeout: float, max_workers: Optional[int] = None):
        self.inner = inner
        self.timeout = timeout
        self.inner_name = getattr(inner, "name", type(inner).__name__)
        self.name = f"guarded_{self.inner_name}"
        self.runner = DeadlineRunner("mapping-suggester", max_workers or settings.suggestion_workers)

    def suggest(self, headers: list[str], sample: list[dict]) -> list[FieldMapping]:
        try:
            return self.runner.call(
                self.inner.suggest,
                headers,
                sample,
                timeout=self.timeout,
                context={"suggester": self.inner_name}
            )
        except FuturesTimeout:
            logger.warning(
                "mapping_suggestions_timed_out",
                suggester=self.inner_name,
                timeout=self.timeout,
                headers=len(headers)
            )
            return []
        except Exception as e:
            logger.warning(
                "mapping_suggestions_failed",
                suggester=self.inner_name,
                error=str(e),
                error_type=type(e).__name__
            )
            return []


class FieldMapperService:
    """
    Column mapping logic.

    Proposes mappings, applies manual overrides and projects raw rows onto
    the mapped catalog fields.
    """

    def __init__(
        self,
        suggester: Optional[Suggester] = None,
        fuzzy_threshold: Optional[int] = None,
        sample_rows: Optional[int] = None,
        suggestion_timeout: Optional[float] = None,
        memory: Optional[MappingMemory] = None,
    ):
        self.heuristic = HeuristicSuggester(fuzzy_threshold or settings.fuzzy_match_threshold)
        self.sample_rows = sample_rows or settings.import_sample_rows
        timeout = suggestion_timeout or settings.suggestion_timeout_seconds
        self.suggester = GuardedSuggester(suggester, timeout) if suggester else None
        self.memory = memory if memory is not None else MappingMemory()

    # ===================
    # PROPOSAL
    # ===================

    def propose(self, headers: list[str], sample_rows: list[dict]) -> list[FieldMapping]:
        """
        Propose one mapping per header, in header order.

        Args:
            headers: Column headers in file order
            sample_rows: Leading rows; only the first `sample_rows` are used

        Returns:
            List of FieldMapping, unmatched columns with target_field=None
        """
        sample = sample_rows[:self.sample_rows]
        proposals: dict[str, FieldMapping] = {}

        for header in headers:
            mapping = self.heuristic.match(header)
            if mapping is None or mapping.confidence < LEARNED_CONFIDENCE:
                mapping = self.memory.recall(header) or mapping
            if mapping:
                proposals[header] = mapping

        unmatched = [h for h in headers if h not in proposals]

        if unmatched and self.suggester:
            for mapping in self.suggester.suggest(unmatched, sample):
                accepted = self._accept_suggestion(mapping, unmatched, proposals)
                if accepted:
                    proposals[accepted.source_column] = accepted
        elif unmatched:
            logger.info("mapping_suggestions_unavailable", unmatched=len(unmatched))

        mapping = [proposals.get(h) or FieldMapping(source_column=h) for h in headers]
        mapping = resolve_conflicts(mapping)

        logger.info(
            "mapping_proposed",
            columns=len(headers),
            mapped=sum(1 for m in mapping if m.is_mapped),
            suggested=sum(1 for m in mapping if m.method == MappingMethod.SUGGESTED),
            learned=sum(1 for m in mapping if m.method == MappingMethod.LEARNED)
        )

        return mapping

    def _accept_suggestion(
        self,
        mapping: FieldMapping,
        unmatched: list[str],
        proposals: dict[str, FieldMapping]
    ) -> Optional[FieldMapping]:
        """Drop suggestions for unknown fields or columns that were not asked about."""
        if mapping.source_column not in unmatched or mapping.source_column in proposals:
            return None
        if not mapping.target_field:
            return None
        if get_field(mapping.target_field) is None:
            logger.warning(
                "suggested_target_unknown",
                source_column=mapping.source_column,
                target_field=mapping.target_field
            )
            return None

        return FieldMapping(
            source_column=mapping.source_column,
            target_field=mapping.target_field,
            confidence=mapping.confidence,
            method=MappingMethod.SUGGESTED
        )

    # ===================
    # OVERRIDES
    # ===================

    def apply_override(
        self,
        current: list[FieldMapping],
        overrides: list[MappingOverride]
    ) -> list[FieldMapping]:
        """
        Apply manual mapping choices.

        Overridden columns get method=manual. A column that is not part of
        the override and holds a target claimed by an override is unmapped.
        Each choice is remembered for later imports; clearing a column
        forgets what was learned for its header.

        Raises:
            ValidationError: Override names a column that is not in the file
            UnknownTargetFieldError: Target is not a catalog field
            DuplicateTargetMappingError: Two overrides claim the same target
        """
        columns = {m.source_column for m in current}
        requested: dict[str, Optional[str]] = {}

        for override in overrides:
            if override.source_column not in columns:
                raise ValidationError(
                    message=f"Unknown source column: {override.source_column}",
                    code="UNKNOWN_SOURCE_COLUMN",
                    details={"source_column": override.source_column}
                )
            if override.target_field and get_field(override.target_field) is None:
                raise UnknownTargetFieldError(override.target_field)
            requested[override.source_column] = override.target_field

        claimed: dict[str, list[str]] = {}
        for source, target in requested.items():
            if target:
                claimed.setdefault(target, []).append(source)
        for target, sources in claimed.items():
            if len(sources) > 1:
                raise DuplicateTargetMappingError(target, sources)

        updated = []
        for mapping in current:
            if mapping.source_column in requested:
                target = requested[mapping.source_column]
                updated.append(FieldMapping(
                    source_column=mapping.source_column,
                    target_field=target,
                    confidence=1.0 if target else 0.0,
                    method=MappingMethod.MANUAL
                ))
            elif mapping.target_field in claimed:
                logger.info(
                    "mapping_displaced_by_override",
                    source_column=mapping.source_column,
                    target_field=mapping.target_field
                )
                updated.append(FieldMapping(source_column=mapping.source_column))
            else:
                updated.append(mapping)

        for source, target in requested.items():
            if target:
                self.memory.remember(source, target, 1.0)
            else:
                self.memory.forget(source)

        return updated

    # ===================
    # HELPERS
    # ===================

    def unmapped_required(self, mapping: list[FieldMapping]) -> list[str]:
        """Required catalog fields with no source column."""
        mapped = {m.target_field for m in mapping if m.is_mapped}
        return [name for name in required_fields() if name not in mapped]

    def project(self, raw: dict[str, Optional[str]], mapping: list[FieldMapping]) -> dict[str, Optional[str]]:
        """Resolved values for one raw row: target field -> source value."""
        return {
            m.target_field: raw.get(m.source_column)
            for m in mapping
            if m.is_mapped
        }

    def project_records(self, records: list[ImportRecord], mapping: list[FieldMapping]) -> None:
        """Rebuild every record's resolved values from its raw values."""
        for record in records:
            record.resolved = self.project(record.raw, mapping)


def resolve_conflicts(mapping: list[FieldMapping]) -> list[FieldMapping]:
    """
    Keep one source column per target field.

    Highest confidence wins, earlier column on ties; losers are unmapped.
    """
    winners: dict[str, int] = {}
    for position, m in enumerate(mapping):
        if not m.is_mapped:
            continue
        held = winners.get(m.target_field)
        if held is None or m.confidence > mapping[held].confidence:
            winners[m.target_field] = position

    resolved = []
    for position, m in enumerate(mapping):
        if m.is_mapped and winners[m.target_field] != position:
            logger.info(
                "mapping_conflict_resolved",
                target_field=m.target_field,
                dropped_column=m.source_column,
                kept_column=mapping[winners[m.target_field]].source_column
            )
            resolved.append(FieldMapping(source_column=m.source_column))
        else:
            resolved.append(m)
    return resolved


# Singleton instance for convenience
_field_mapper_service: Optional[FieldMapperService] = None

def get_field_mapper_service() -> FieldMapperService:
    """Get or create FieldMapperService instance."""
    global _field_mapper_service
    if _field_mapper_service is None:
        _field_mapper_service = FieldMapperService(suggester=get_remote_suggester())
    return _field_mapper_service
