"""
Mapping suggestion service client.

Sends the headers the deterministic pass could not match, a bounded sample of
rows and the catalog field list; receives proposed mappings with confidence
scores.

Request:
    {"headers": [...], "sample": [{...}], "target_fields": [{...}]}

Response:
    {"mappings": [{"source_column": "...", "target_field": "...", "confidence": 0.8}]}
"""

from typing import Optional
import requests
import structlog
from pydantic import ValidationError as PydanticValidationError

from config import settings
from exceptions import SuggestionServiceError
from models.catalog import CATALOG_FIELDS
from models.import_session import FieldMapping, MappingMethod

logger = structlog.get_logger(__name__)


class RemoteSuggester:
    """
    Suggester backed by the external HTTP service.

    Raises SuggestionServiceError on timeout, transport failure or a
    malformed response; the mapper treats that as "no suggestions".
    """

    name = "remote"

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def suggest(self, headers: list[str], sample: list[dict]) -> list[FieldMapping]:
        if not headers:
            return []

        payload = {
            "headers": headers,
            "sample": sample,
            "target_fields": [f.to_dict() for f in CATALOG_FIELDS],
        }
        request_headers = {"Content-Type": "application/json"}
        if self.api_key:
            request_headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            logger.info("requesting_mapping_suggestions", headers=len(headers), sample_rows=len(sample))

            response = self.session.post(
                self.url,
                json=payload,
                headers=request_headers,
                timeout=self.timeout
            )
            response.raise_for_status()
            body = response.json()

        except requests.exceptions.Timeout:
            logger.warning("suggestion_request_timeout", timeout=self.timeout)
            raise SuggestionServiceError(
                "Suggestion service timed out",
                details={"timeout_seconds": self.timeout}
            )
        except requests.exceptions.RequestException as e:
            logger.error("suggestion_request_failed", error=str(e))
            raise SuggestionServiceError(f"Suggestion request failed: {str(e)}")
        except ValueError as e:
            logger.error("suggestion_response_not_json", error=str(e))
            raise SuggestionServiceError("Suggestion service returned invalid JSON")

        if not isinstance(body, dict) or not isinstance(body.get("mappings"), list):
            raise SuggestionServiceError("Suggestion response has no mappings list")

        mappings = self._parse_mappings(body["mappings"], headers)
        logger.info("mapping_suggestions_received", proposed=len(mappings))
        return mappings

    def _parse_mappings(self, items: list, headers: list[str]) -> list[FieldMapping]:
        """Keep well-formed entries for columns that were asked about."""
        asked = set(headers)
        mappings = []

        for item in items:
            if not isinstance(item, dict) or item.get("source_column") not in asked:
                logger.debug("suggestion_entry_ignored", entry=str(item)[:200])
                continue
            try:
                mappings.append(FieldMapping(
                    source_column=item["source_column"],
                    target_field=item.get("target_field"),
                    confidence=item.get("confidence", 0.0),
                    method=MappingMethod.SUGGESTED,
                ))
            except PydanticValidationError:
                logger.warning(
                    "suggestion_entry_invalid",
                    source_column=item.get("source_column"),
                    confidence=item.get("confidence")
                )

        return mappings


def get_remote_suggester() -> Optional[RemoteSuggester]:
    """Build the remote suggester when the service is configured."""
    if not settings.suggestion_service_configured:
        logger.info("suggestion_service_not_configured")
        return None

    return RemoteSuggester(
        url=settings.suggestion_service_url,
        api_key=settings.suggestion_service_api_key,
        timeout=settings.suggestion_timeout_seconds,
    )
