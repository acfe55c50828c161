"""
Suspicion control daemon.

Consumes queued identity-change actions and recomputes the suspicions of the
changed identity and of every identity paired with it: existing suspicions
are deleted and rebuilt from a fresh duplicate search.
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Sequence, Set, Tuple

from sqlalchemy.orm import Session

from identity_quality.core.errors import ProviderUnavailableError
from identity_quality.core.interfaces import IdentityStore, IndexActionChecker
from identity_quality.core.models import IdentityChangeType, SuspicionAction, utcnow
from identity_quality.core.schemas import QualifiedIdentity, RequestAuthor, SearchOutcome
from identity_quality.services.rule_service import RuleService
from identity_quality.services.search_duplicates_service import RetrySearchDuplicatesService
from identity_quality.services.suspicion_action_service import SuspicionActionService
from identity_quality.services.suspicion_service import SuspicionService

logger = logging.getLogger(__name__)


class SuspicionControlDaemon:
    """Reconciles suspicions with identity changes, one queued action at a time."""

    def __init__(
        self,
        session: Session,
        suspicions: SuspicionService,
        actions: SuspicionActionService,
        search: RetrySearchDuplicatesService,
        identity_store: IdentityStore,
        index_checker: IndexActionChecker,
        author: RequestAuthor,
        client_code: str,
        creation_rule_codes: Sequence[str] = (),
        update_rule_codes: Sequence[str] = (),
        delay_seconds: int = 600,
        batch_size: int = 300,
        now: Callable[[], datetime] = utcnow,
    ):
        self.rules = RuleService(session)
        self.suspicions = suspicions
        self.actions = actions
        self.search = search
        self.identity_store = identity_store
        self.index_checker = index_checker
        self.author = author
        self.client_code = client_code
        self.creation_rule_codes = list(creation_rule_codes)
        self.update_rule_codes = list(update_rule_codes)
        self.delay = timedelta(seconds=delay_seconds)
        self.batch_size = batch_size
        self._now = now

    def run(self) -> Dict[str, int]:
        """
        Process one batch of queued actions.

        Returns:
            Dict with counts: selected, not_eligible, processed, failed, deleted
        """
        started = time.time()
        logger.info(f"Starting suspicion control daemon (batch size {self.batch_size})")

        pending = self.actions.select_with_limit(self.batch_size)
        stats = {
            "selected": len(pending),
            "not_eligible": 0,
            "processed": 0,
            "failed": 0,
            "deleted": 0,
        }
        logger.info(f"-- {len(pending)} suspicion actions selected")

        now = self._now()
        treated: List[int] = []
        for action in pending:
            action_id, customer_id = action.id, action.customer_id
            if not self.is_eligible(action, now):
                stats["not_eligible"] += 1
                continue
            try:
                logger.info(f"Processing {action.action_type} action for {customer_id}")
                self.process(customer_id, action.action_type)
                treated.append(action_id)
                stats["processed"] += 1
            except Exception as e:
                stats["failed"] += 1
                logger.error(
                    f"Suspicion action {action_id} for {customer_id} failed, kept in queue: {e}",
                    exc_info=True,
                )

        try:
            stats["deleted"] = self.actions.delete(treated)
        except Exception as e:
            logger.error(f"Could not delete treated suspicion actions: {e}", exc_info=True)

        elapsed = time.time() - started
        logger.info(f"Suspicion control daemon done in {elapsed:.1f}s: {stats}")
        return stats

    def is_eligible(self, action: SuspicionAction, now: datetime) -> bool:
        """Delay elapsed and no index action still pending for the identity."""
        if action.date + self.delay > now:
            return False
        return not self.index_checker.has_pending(action.customer_id, action.action_type)

    def process(self, customer_id: str, action_type: str) -> None:
        """
        Recompute the suspicions touching customer_id.

        Every search runs before anything is deleted; if one of them cannot
        reach the provider the action fails and the store is left untouched.

        Raises:
            ProviderUnavailableError: A search could not be completed
        """
        if action_type == IdentityChangeType.DELETE.value:
            deleted = self.suspicions.delete_by_customer_id(customer_id)
            logger.info(f"{deleted} suspicions deleted for removed identity {customer_id}")
            return

        existing = self.suspicions.find_by_customer_id(customer_id)
        rule_codes = self._rule_codes_by_customer(customer_id, action_type, existing)

        planned: List[Tuple[QualifiedIdentity, str, QualifiedIdentity, Dict[str, str]]] = []
        for cuid, codes in rule_codes.items():
            identity = self.identity_store.find_by_customer_id(cuid)
            if identity is None:
                logger.info(f"Identity {cuid} no longer exists, not recomputed")
                continue
            rules = self.rules.resolve(codes)
            if not rules:
                continue
            outcome = self.search.find_duplicates_for_identity(identity, rules)
            if outcome.is_unavailable:
                raise ProviderUnavailableError(
                    f"Duplicate search unavailable for {cuid}", source="suspicion_control"
                )
            planned.extend(self._planned_suspicions(identity, outcome))

        if existing:
            logger.info(f"Deleting {len(existing)} suspicions regarding {customer_id}")
            self.suspicions.delete(existing)

        created = 0
        for identity, rule_code, duplicate, metadata in planned:
            rule = self.rules.get(rule_code)
            if self.suspicions.exists_suspicious(identity.customer_id, duplicate.customer_id, rule.id):
                logger.debug(
                    f"Pair {identity.customer_id}/{duplicate.customer_id} already suspicious for {rule_code}"
                )
                continue
            self.suspicions.create(
                identity.customer_id,
                self.author,
                self.client_code,
                rule_code=rule_code,
                duplicate_customer_id=duplicate.customer_id,
                metadata=metadata,
                identity=identity,
            )
            created += 1
        logger.info(f"{created} suspicions recreated for {customer_id}")

    def _rule_codes_by_customer(
        self, customer_id: str, action_type: str, existing
    ) -> Dict[str, Set[str]]:
        if action_type == IdentityChangeType.CREATE.value:
            defaults = self.creation_rule_codes
        else:
            defaults = self.update_rule_codes

        rule_codes: Dict[str, Set[str]] = {customer_id: set(defaults)}
        for suspicion in existing:
            for cuid in (suspicion.customer_id, suspicion.duplicate_customer_id):
                if cuid:
                    rule_codes.setdefault(cuid, set(defaults)).add(suspicion.duplicate_rule_code)
        return rule_codes

    def _planned_suspicions(self, identity: QualifiedIdentity, outcome: SearchOutcome):
        excluded = self.suspicions.excluded_customer_ids(identity.customer_id)
        for rule_code, result in outcome.results.items():
            for duplicate in result.qualified_identities:
                if duplicate.customer_id in excluded:
                    continue
                yield identity, rule_code, duplicate, dict(result.metadata)
