"""
Duplicate detection daemon.

Walks the daemon rules by priority, pages through the identities carrying the
rule's checked attributes, asks the search provider for duplicates and marks
new suspicious identities. Ends with a rolling purge of the suspicions that
the provider no longer corroborates.
"""

import logging
import time
from typing import Dict, Iterator, List, Sequence, Set

from sqlalchemy.orm import Session

from identity_quality.core.events import METADATA_DUPLICATE_RULE_CODE, METADATA_GROUP_KEY
from identity_quality.core.interfaces import IdentityStore
from identity_quality.core.models import DuplicateRule, LimitationMode, utcnow
from identity_quality.core.schemas import QualifiedIdentity, RequestAuthor
from identity_quality.services.rule_service import RuleService
from identity_quality.services.search_duplicates_service import RetrySearchDuplicatesService
from identity_quality.services.suspicion_service import SuspicionService

logger = logging.getLogger(__name__)


def _batches(items: Sequence[str], size: int) -> Iterator[List[str]]:
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


class IdentityDuplicatesDaemon:
    """
    Periodic scan creating suspicious identities.

    One instance per run; collaborators are passed in by the worker, which
    also carries purge_cursor from one run to the next.
    """

    def __init__(
        self,
        session: Session,
        suspicions: SuspicionService,
        search: RetrySearchDuplicatesService,
        identity_store: IdentityStore,
        author: RequestAuthor,
        client_code: str,
        batch_size: int = 200,
        purge_size: int = 500,
        purge_cursor: int = 0,
    ):
        self.session = session
        self.rules = RuleService(session)
        self.suspicions = suspicions
        self.search = search
        self.identity_store = identity_store
        self.author = author
        self.client_code = client_code
        self.batch_size = batch_size
        self.purge_size = purge_size
        # id of the last suspicion checked by the previous purge
        self.purge_cursor = purge_cursor

    def run(self) -> Dict[str, int]:
        """
        Run one full detection sweep.

        Returns:
            Dict with counts: rules_processed, rules_failed, suspicions_created,
            searches_unavailable, suspicions_purged
        """
        started = time.time()
        stats = {
            "rules_processed": 0,
            "rules_failed": 0,
            "suspicions_created": 0,
            "searches_unavailable": 0,
            "suspicions_purged": 0,
        }
        logger.info("Starting identity duplicates daemon...")

        rules = self.rules.list_daemon_rules()
        if not rules:
            logger.info("No active duplicate rule marked for the daemon")
        else:
            logger.info(f"{len(rules)} applicable detection rules found")

        for rule in rules:
            try:
                stats["suspicions_created"] += self.process_rule(rule, stats)
                stats["rules_processed"] += 1
            except Exception as e:
                stats["rules_failed"] += 1
                logger.error(f"Rule {rule.code} failed: {e}", exc_info=True)

        try:
            stats["suspicions_purged"] = self.purge(stats)
        except Exception as e:
            logger.error(f"Suspicion purge failed: {e}", exc_info=True)

        elapsed = time.time() - started
        logger.info(f"Identity duplicates daemon done in {elapsed:.1f}s: {stats}")
        return stats

    def process_rule(self, rule: DuplicateRule, stats: Dict[str, int]) -> int:
        """
        Detect duplicates for a single rule.

        Returns:
            Number of suspicions created for the rule
        """
        logger.info(f"-- Processing rule {rule.code} (priority {rule.priority})")
        limit = rule.detection_limit or 0

        if rule.daemon_limitation_mode == LimitationMode.INCREMENTAL:
            marked = 0
        else:
            marked = self.suspicions.count_by_rule(rule.id)
            if limit > 0 and marked >= limit:
                logger.info(
                    f"Rule {rule.code} already has {marked} suspicions (limit {limit}), skipped"
                )
                return 0

        already_suspicious = self.suspicions.suspicious_customer_ids(rule.id)
        customer_ids = [
            cid
            for cid in self.identity_store.find_customer_ids_with_attributes(rule.attribute_keys)
            if cid not in already_suspicious
        ]
        if not customer_ids:
            logger.info(
                f"No identity having the attributes of {rule.code} and not already suspicious"
            )
            self._mark_executed(rule)
            return 0
        logger.info(f"{len(customer_ids)} identities found for {rule.code}, searching duplicates")

        skip: Set[str] = set()
        created = 0
        limit_reached = False
        for batch in _batches(customer_ids, self.batch_size):
            todo = [cid for cid in batch if cid not in skip]
            if not todo:
                continue
            for identity in self.identity_store.search_batch(todo, rule.attribute_keys):
                if identity.customer_id in skip:
                    continue
                try:
                    group = self._detect(identity, rule, stats)
                except Exception as e:
                    logger.error(
                        f"Duplicate detection failed for {identity.customer_id} on {rule.code}: {e}",
                        exc_info=True,
                    )
                    continue
                if group is None:
                    continue
                skip.update(group)
                if group.created:
                    created += 1
                    marked += 1
                    if limit > 0 and marked >= limit:
                        logger.info(f"Detection limit {limit} reached for {rule.code}")
                        limit_reached = True
                        break
            if limit_reached:
                break

        self._mark_executed(rule)
        logger.info(f"{created} identities have been marked as suspicious for {rule.code}")
        return created

    def _detect(self, identity: QualifiedIdentity, rule: DuplicateRule, stats: Dict[str, int]):
        outcome = self.search.find_duplicates_for_identity(identity, [rule], rule.attribute_keys)
        if outcome.is_unavailable:
            stats["searches_unavailable"] += 1
            logger.warning(f"Search unavailable for {identity.customer_id}, skipped")
            return None

        candidates = self.suspicions.filter_excluded(
            identity.customer_id, outcome.candidates(exclude=[identity.customer_id])
        )
        if not candidates:
            return None

        group = _Group([identity.customer_id] + [c.customer_id for c in candidates])
        if self.suspicions.covers_group(rule.id, group):
            return group

        metadata = outcome.metadata()
        metadata[METADATA_DUPLICATE_RULE_CODE] = rule.code
        metadata[METADATA_GROUP_KEY] = ",".join(group.members)
        self.suspicions.create(
            identity.customer_id,
            self.author,
            self.client_code,
            rule_code=rule.code,
            duplicate_customer_id=candidates[0].customer_id,
            metadata=metadata,
            identity=identity,
        )
        group.created = True
        return group

    def _mark_executed(self, rule: DuplicateRule) -> None:
        rule.daemon_last_exec_date = utcnow()
        self.rules.update(rule)

    def purge(self, stats: Dict[str, int]) -> int:
        """
        Delete suspicions the provider no longer corroborates.

        Each run checks the next purge_size suspicions after purge_cursor and
        wraps around at the end of the table. Only a genuine empty answer
        deletes a suspicion; an unavailable provider leaves it untouched.
        Locked suspicions and explicit declarations are never purged.
        """
        if self.purge_size <= 0:
            return 0
        suspicions = self.suspicions.list_for_purge(self.purge_size, after_id=self.purge_cursor)
        if not suspicions and self.purge_cursor:
            suspicions = self.suspicions.list_for_purge(self.purge_size)
        if len(suspicions) < self.purge_size:
            self.purge_cursor = 0
        else:
            self.purge_cursor = suspicions[-1].id

        now = utcnow()
        purged = 0
        for suspicion in suspicions:
            if suspicion.is_locked_at(now):
                continue
            if suspicion.duplicate_rule_code == self.suspicions.external_declaration_rule_code:
                continue
            try:
                identity = self.identity_store.find_by_customer_id(suspicion.customer_id)
                if identity is None:
                    self.suspicions.remove(suspicion)
                    purged += 1
                    continue
                rule = self.rules.get_by_id(suspicion.id_duplicate_rule)
                outcome = self.search.find_duplicates_for_identity(
                    identity, [rule], rule.attribute_keys
                )
                if outcome.is_unavailable:
                    stats["searches_unavailable"] += 1
                    continue
                candidates = self.suspicions.filter_excluded(
                    identity.customer_id, outcome.candidates(exclude=[identity.customer_id])
                )
                if not candidates:
                    self.suspicions.remove(suspicion)
                    purged += 1
            except Exception as e:
                logger.error(f"Purge failed for {suspicion}: {e}", exc_info=True)
        logger.info(f"{purged} suspicions purged")
        return purged


class _Group:
    """Identities detected together in one search, subject first."""

    def __init__(self, members: List[str]):
        self.members = members
        self.created = False

    def __iter__(self):
        return iter(self.members)
