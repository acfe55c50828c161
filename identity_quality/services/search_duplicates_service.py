"""
Duplicate search gateway.

SearchDuplicatesService is a thin, non-retrying front of the search
provider. RetrySearchDuplicatesService wraps it with a bounded retry policy
and turns every call into a SearchOutcome so callers cannot mistake an
outage for "no duplicates".
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from identity_quality.core.errors import (
    DuplicatesNotFoundError,
    ProviderUnavailableError,
    ValidationError,
)
from identity_quality.core.interfaces import DuplicateSearchProvider
from identity_quality.core.models import DuplicateRule
from identity_quality.core.schemas import (
    QualifiedIdentity,
    QualifiedIdentitySearchResult,
    SearchOutcome,
)

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    delay: float = 1.0  # Seconds before the second attempt
    backoff_factor: float = 1.0  # 1.0 keeps the delay fixed
    max_delay: float = 60.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (0-indexed) failed attempt."""
        return min(self.delay * (self.backoff_factor ** attempt), self.max_delay)


class SearchDuplicatesService:
    """Calls the search provider once per request; performs no retry."""

    def __init__(self, provider: DuplicateSearchProvider):
        self.provider = provider

    def find_duplicates(
        self,
        attributes: Dict[str, str],
        subject_id: Optional[str],
        rules: Sequence[DuplicateRule],
        attribute_filter: Sequence[str] = (),
        allow_empty: bool = True,
    ) -> Dict[str, QualifiedIdentitySearchResult]:
        """
        Find potential duplicates of an attribute set for the given rules.

        Args:
            attributes: Attribute values of the subject; blank values are dropped
            subject_id: Customer id of the subject, excluded from the candidates
            rules: Rules to evaluate (must not be empty)
            attribute_filter: Attribute keys to return on candidates (empty = all)
            allow_empty: When False, raise if no rule returns a candidate

        Returns:
            One result per rule code, each possibly empty

        Raises:
            ValidationError: If no rule is given
            ProviderUnavailableError: If the provider returned no response
            DuplicatesNotFoundError: If allow_empty is False and nothing matched
        """
        if not rules:
            raise ValidationError("At least one duplicate rule is required", source="search")

        rule_codes = [rule.code for rule in rules]
        clean_attributes = {
            key: value for key, value in attributes.items()
            if value is not None and str(value).strip()
        }

        response = self.provider.find_duplicates(
            clean_attributes, subject_id, rule_codes, list(attribute_filter)
        )
        if response is None:
            raise ProviderUnavailableError(
                f"No response for rules {','.join(rule_codes)}", source="search"
            )

        results: Dict[str, QualifiedIdentitySearchResult] = {}
        for code in rule_codes:
            result = response.get(code) or QualifiedIdentitySearchResult()
            results[code] = QualifiedIdentitySearchResult(
                qualified_identities=_without_subject(result.qualified_identities, subject_id),
                metadata=dict(result.metadata),
            )

        if not allow_empty and all(not r.qualified_identities for r in results.values()):
            raise DuplicatesNotFoundError(rule_codes)

        return results


class RetrySearchDuplicatesService:
    """Bounded, synchronous retry around SearchDuplicatesService."""

    def __init__(self, search_service: SearchDuplicatesService, policy: Optional[RetryPolicy] = None):
        self.search_service = search_service
        self.policy = policy or RetryPolicy()

    def find_duplicates(
        self,
        attributes: Dict[str, str],
        subject_id: Optional[str],
        rules: Sequence[DuplicateRule],
        attribute_filter: Sequence[str] = (),
    ) -> SearchOutcome:
        """
        Search with retry on provider unavailability.

        Only ProviderUnavailableError is retried; a valid empty answer is
        returned at once. Other errors propagate to the caller.

        Returns:
            SearchOutcome FOUND / EMPTY, or UNAVAILABLE once attempts are exhausted
        """
        for attempt in range(self.policy.max_attempts):
            try:
                results = self.search_service.find_duplicates(
                    attributes, subject_id, rules, attribute_filter, allow_empty=True
                )
                return SearchOutcome.from_results(results)
            except ProviderUnavailableError as e:
                remaining = self.policy.max_attempts - attempt - 1
                logger.warning(
                    f"Duplicate search failed for {subject_id or 'attributes'} "
                    f"(attempt {attempt + 1}/{self.policy.max_attempts}): {e}"
                )
                if remaining > 0:
                    self.policy.sleep(self.policy.delay_for(attempt))

        logger.error(
            f"The number of retries exceeds the configured value of "
            f"{self.policy.max_attempts}, giving up on {subject_id or 'attributes'}"
        )
        return SearchOutcome.unavailable()

    def find_duplicates_for_identity(
        self,
        identity: QualifiedIdentity,
        rules: Sequence[DuplicateRule],
        attribute_filter: Sequence[str] = (),
    ) -> SearchOutcome:
        return self.find_duplicates(
            identity.attribute_map(), identity.customer_id, rules, attribute_filter
        )


def _without_subject(
    identities: List[QualifiedIdentity], subject_id: Optional[str]
) -> List[QualifiedIdentity]:
    if not subject_id:
        return list(identities)
    return [identity for identity in identities if identity.customer_id != subject_id]
