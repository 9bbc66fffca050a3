"""
Mapping memory.

Remembers which catalog field a source header was mapped to in earlier
imports, so the next file with the same header starts out mapped.

- Keyed by normalized header ("Art.-Nr." and "art nr" share an entry)
- Manual overrides are remembered when made; automatic mappings once the
  preview confirms them, and only at or above MIN_LEARN_CONFIDENCE
- Bounded: the least recently used entry is dropped when full
- In-process only; lost on restart
"""

from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
import threading
import structlog

from config import settings
from models.import_session import FieldMapping, MappingMethod
from utils.text_utils import normalize_header

logger = structlog.get_logger(__name__)

# Below synonyms, above fuzzy matches
LEARNED_CONFIDENCE = 0.8
MIN_LEARN_CONFIDENCE = 0.7

# Exact names match on every import; manual choices are remembered when made
NOT_LEARNED = frozenset({MappingMethod.EXACT, MappingMethod.MANUAL})


@dataclass
class RememberedMapping:
    """One learned header -> field pair."""
    target_field: str
    confidence: float
    uses: int
    last_used: datetime


class MappingMemory:
    """Thread-safe LRU of header -> field mappings."""

    def __init__(self, max_entries: Optional[int] = None):
        self.max_entries = max_entries or settings.mapping_memory_size
        self._entries: OrderedDict[str, RememberedMapping] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def recall(self, header: str) -> Optional[FieldMapping]:
        """Learned mapping for a header, or None."""
        key = normalize_header(header)
        if not key:
            return None

        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            self._entries.move_to_end(key)
            return FieldMapping(
                source_column=header,
                target_field=entry.target_field,
                confidence=min(entry.confidence, LEARNED_CONFIDENCE),
                method=MappingMethod.LEARNED
            )

    def remember(self, header: str, target_field: str, confidence: float) -> None:
        """
        Upsert one pair.

        The same pair again counts a use and keeps the higher confidence.
        A different field for a known header replaces the old one.
        """
        key = normalize_header(header)
        if not key:
            return

        now = datetime.now(timezone.utc)
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.target_field == target_field:
                entry.uses += 1
                entry.confidence = max(entry.confidence, confidence)
                entry.last_used = now
            else:
                if entry is not None:
                    logger.info(
                        "mapping_memory_replaced",
                        header=key,
                        old_target=entry.target_field,
                        new_target=target_field
                    )
                self._entries[key] = RememberedMapping(
                    target_field=target_field,
                    confidence=confidence,
                    uses=1,
                    last_used=now
                )
            self._entries.move_to_end(key)

            while len(self._entries) > self.max_entries:
                dropped, _ = self._entries.popitem(last=False)
                logger.debug("mapping_memory_evicted", header=dropped)

    def forget(self, header: str) -> None:
        with self._lock:
            self._entries.pop(normalize_header(header), None)

    def learn(self, mapping: list[FieldMapping]) -> int:
        """Remember the confirmed mappings worth keeping; returns how many."""
        learned = 0
        for m in mapping:
            if not m.is_mapped or m.method in NOT_LEARNED or m.confidence < MIN_LEARN_CONFIDENCE:
                continue
            self.remember(m.source_column, m.target_field, m.confidence)
            learned += 1

        if learned:
            logger.info("mapping_memory_learned", mappings=learned, entries=len(self))
        return learned

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
