"""
HTTP client for the duplicate search provider.

Transient failures and malformed answers are reported as a None response,
never as an empty match; retrying is left to RetrySearchDuplicatesService.
"""
import logging
from typing import Dict, Optional, Sequence

from identity_quality.clients.http_client import BaseAPIClient
from identity_quality.clients.identity_store import parse_identity
from identity_quality.core.errors import IdentityQualityError, NotFoundError, ProviderUnavailableError
from identity_quality.core.schemas import QualifiedIdentitySearchResult

logger = logging.getLogger(__name__)


class SearchProviderClient(BaseAPIClient):
    """Implements the DuplicateSearchProvider protocol over HTTP."""

    SOURCE_NAME = "search_provider"

    def find_duplicates(
        self,
        attributes: Dict[str, str],
        subject_id: Optional[str],
        rule_codes: Sequence[str],
        attribute_filter: Sequence[str],
    ) -> Optional[Dict[str, QualifiedIdentitySearchResult]]:
        try:
            data = self.post(
                "duplicates/search",
                json_body={
                    "attributes": dict(attributes),
                    "customer_id": subject_id,
                    "rule_codes": list(rule_codes),
                    "attribute_filter": list(attribute_filter),
                },
                resource_id=subject_id or ",".join(rule_codes),
            )
        except ProviderUnavailableError as e:
            logger.warning(f"Search provider unavailable: {e}")
            return None
        except NotFoundError:
            # 404 is the provider's way of saying "no duplicate"
            return {code: QualifiedIdentitySearchResult() for code in rule_codes}
        except IdentityQualityError as e:
            logger.warning(f"Search provider answer rejected for {subject_id}: {e}")
            return None

        raw_results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(raw_results, dict):
            logger.warning(f"Malformed search provider response for {subject_id}, treated as unavailable")
            return None

        results: Dict[str, QualifiedIdentitySearchResult] = {}
        for code, payload in raw_results.items():
            results[code] = QualifiedIdentitySearchResult(
                qualified_identities=[parse_identity(i) for i in payload.get("identities", [])],
                metadata=dict(payload.get("metadata") or {}),
            )
        return results
