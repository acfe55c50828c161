"""
Duplicate resolution daemon.

Works on the suspicions of a single strict-duplicate rule: recomputes the
duplicates of each subject, elects a primary identity and merges the safe
candidates into it under the suspicion lock.
"""

import logging
import time
from typing import Dict, List, Optional

from identity_quality.core.errors import SuspicionLockedError
from identity_quality.core.events import METADATA_DUPLICATE_RULE_CODE, build_identity_change
from identity_quality.core.interfaces import IdentityStore
from identity_quality.core.models import DuplicateRule, IdentityChangeType, SuspiciousIdentity, utcnow
from identity_quality.core.schemas import CertifiedAttribute, QualifiedIdentity, RequestAuthor
from identity_quality.services.rule_service import RuleService
from identity_quality.services.search_duplicates_service import RetrySearchDuplicatesService
from identity_quality.services.suspicion_service import SuspicionService

logger = logging.getLogger(__name__)


def is_strict_duplicate(first: QualifiedIdentity, second: QualifiedIdentity) -> bool:
    """
    True when no attribute present on both identities has conflicting values.

    Values are compared case-insensitively and as stored: surrounding
    whitespace counts, and a blank value conflicts with a non-blank one.
    """
    first_values = _raw_values(first)
    second_values = _raw_values(second)
    for key in first_values.keys() & second_values.keys():
        if first_values[key].lower() != second_values[key].lower():
            return False
    return True


def _raw_values(identity: QualifiedIdentity) -> Dict[str, str]:
    return {a.key: "" if a.value is None else str(a.value) for a in identity.attributes}


def can_merge(primary: QualifiedIdentity, candidate: QualifiedIdentity, min_certification_level: int) -> bool:
    """
    Whether candidate may be absorbed into primary.

    A connected identity is never absorbed. A connected primary must have all
    its pivot attributes certified at min_certification_level or above. The
    two identities must be strict duplicates.
    """
    if candidate.connected:
        return False
    if primary.connected and primary.lowest_pivot_certification() < min_certification_level:
        return False
    return is_strict_duplicate(primary, candidate)


def attribute_overrides(primary: QualifiedIdentity, candidate: QualifiedIdentity) -> List[CertifiedAttribute]:
    """Candidate attributes missing on primary or better certified than primary's."""
    overrides = []
    for attribute in candidate.attributes:
        if attribute.value is None or not str(attribute.value).strip():
            continue
        current = primary.attribute(attribute.key)
        if current is None or current.value is None or not str(current.value).strip():
            overrides.append(attribute)
        elif attribute.certification_level > current.certification_level:
            overrides.append(attribute)
    return overrides


def elect_primary(identities: List[QualifiedIdentity]) -> List[QualifiedIdentity]:
    """Connected identities first, then by quality descending."""
    return sorted(identities, key=lambda i: (not i.connected, -i.quality))


class IdentityDuplicatesResolutionDaemon:
    """Automatic merge of strict duplicates."""

    def __init__(
        self,
        suspicions: SuspicionService,
        search: RetrySearchDuplicatesService,
        identity_store: IdentityStore,
        author: RequestAuthor,
        client_code: str,
        rule_code: Optional[str],
        suspicious_limit: int = 100,
        min_certification_level: int = 500,
    ):
        self.suspicions = suspicions
        self.rules = RuleService(suspicions.session)
        self.search = search
        self.identity_store = identity_store
        self.author = author
        self.client_code = client_code
        self.rule_code = rule_code
        self.suspicious_limit = suspicious_limit
        self.min_certification_level = min_certification_level

    def run(self) -> Dict[str, int]:
        """
        Resolve the suspicions of the strict rule.

        Returns:
            Dict with counts: suspicions_processed, suspicions_skipped_locked,
            suspicions_deleted, identities_merged, merges_rejected, failures
        """
        started = time.time()
        stats = {
            "suspicions_processed": 0,
            "suspicions_skipped_locked": 0,
            "suspicions_deleted": 0,
            "identities_merged": 0,
            "merges_rejected": 0,
            "failures": 0,
        }
        if not self.rule_code:
            logger.info("No strict duplicate rule configured, resolution daemon idle")
            return stats

        logger.info(f"Starting duplicates resolution daemon on rule {self.rule_code}")
        rule = self.rules.get(self.rule_code)

        now = utcnow()
        for suspicion in self.suspicions.list_by_rule(rule.code, self.suspicious_limit):
            if suspicion.is_locked_at(now) and suspicion.lock_author_name != self.author.name:
                stats["suspicions_skipped_locked"] += 1
                continue
            customer_id = suspicion.customer_id
            try:
                self.resolve(suspicion, rule, stats)
                stats["suspicions_processed"] += 1
            except SuspicionLockedError as e:
                stats["suspicions_skipped_locked"] += 1
                logger.info(f"Suspicion of {customer_id} taken by another author: {e}")
            except Exception as e:
                stats["failures"] += 1
                logger.error(f"Resolution failed for {customer_id}: {e}", exc_info=True)

        elapsed = time.time() - started
        logger.info(f"Duplicates resolution daemon done in {elapsed:.1f}s: {stats}")
        return stats

    def resolve(self, suspicion: SuspiciousIdentity, rule: DuplicateRule, stats: Dict[str, int]) -> None:
        customer_id = suspicion.customer_id
        identity = self.identity_store.find_by_customer_id(customer_id)
        if identity is None:
            logger.info(f"Identity {customer_id} not found, suspicion deleted")
            self.suspicions.remove(suspicion)
            stats["suspicions_deleted"] += 1
            return

        outcome = self.search.find_duplicates_for_identity(identity, [rule])
        if outcome.is_unavailable:
            logger.warning(f"Search unavailable for {customer_id}, suspicion kept")
            return

        duplicates = self.suspicions.filter_excluded(
            customer_id, outcome.candidates(exclude=[customer_id])
        )
        identities = [identity] + duplicates
        if len(identities) < 2:
            logger.info(f"No duplicate left for {customer_id}, suspicion deleted")
            self.suspicions.remove(suspicion)
            stats["suspicions_deleted"] += 1
            return

        ordered = elect_primary(identities)
        primary, candidates = ordered[0], ordered[1:]
        eligible = []
        for candidate in candidates:
            if can_merge(primary, candidate, self.min_certification_level):
                eligible.append(candidate)
            else:
                stats["merges_rejected"] += 1
                logger.info(f"{candidate.customer_id} cannot be merged into {primary.customer_id}")
        if not eligible:
            return

        merged = 0
        with self.suspicions.locked(customer_id, self.author):
            for candidate in eligible:
                result = self.identity_store.merge(
                    primary,
                    candidate,
                    attribute_overrides(primary, candidate),
                    rule.code,
                    self.author,
                    self.client_code,
                )
                merged += 1
                stats["identities_merged"] += 1
                logger.info(
                    f"{candidate.customer_id} merged into {primary.customer_id}: {result.status.value}"
                )
                if result.merged_identity is not None:
                    primary = result.merged_identity
                self._notify_merge(primary, candidate, rule)

        if merged == len(candidates):
            self.suspicions.remove(suspicion)
            stats["suspicions_deleted"] += 1

    def _notify_merge(self, primary: QualifiedIdentity, secondary: QualifiedIdentity, rule: DuplicateRule) -> None:
        metadata = {METADATA_DUPLICATE_RULE_CODE: rule.code}
        notifier = self.suspicions.notifier
        notifier.notify(
            build_identity_change(
                IdentityChangeType.MERGED, secondary.customer_id, self.author, self.client_code,
                message=f"Merged into {primary.customer_id}", metadata=metadata,
            )
        )
        notifier.notify(
            build_identity_change(
                IdentityChangeType.CONSOLIDATED, primary.customer_id, self.author, self.client_code,
                message=f"Consolidated with {secondary.customer_id}", metadata=metadata,
            )
        )
