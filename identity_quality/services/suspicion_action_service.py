"""
Suspicion action queue.

Identity changes are queued as SuspicionAction rows and consumed FIFO by the
suspicion control daemon. The index-action checker reads the indexing side's
table to avoid racing an in-flight reindex.
"""

import logging
from datetime import datetime
from typing import Callable, List, Sequence

from sqlalchemy.orm import Session

from identity_quality.core.database import transaction
from identity_quality.core.models import IdentityChangeType, IndexAction, SuspicionAction, utcnow
from identity_quality.core.schemas import IdentityChange

logger = logging.getLogger(__name__)

# Identity changes that require the suspicions of the identity to be recomputed
RECONCILED_CHANGE_TYPES = (
    IdentityChangeType.CREATE,
    IdentityChangeType.UPDATE,
    IdentityChangeType.CONSOLIDATED,
    IdentityChangeType.MERGED,
    IdentityChangeType.DELETE,
)


class SuspicionActionService:
    """Queue operations on SuspicionAction rows."""

    def __init__(self, session: Session):
        self.session = session

    def enqueue(self, customer_id: str, action_type: str, date: datetime = None) -> SuspicionAction:
        action = SuspicionAction(
            customer_id=customer_id,
            action_type=action_type,
            date=date or utcnow(),
        )
        with transaction(self.session):
            self.session.add(action)
        logger.debug(f"Queued suspicion action {action_type} for {customer_id}")
        return action

    def select_with_limit(self, limit: int) -> List[SuspicionAction]:
        """Oldest actions first, at most limit of them."""
        return (
            self.session.query(SuspicionAction)
            .order_by(SuspicionAction.date.asc(), SuspicionAction.id.asc())
            .limit(limit)
            .all()
        )

    def delete(self, action_ids: Sequence[int]) -> int:
        if not action_ids:
            return 0
        with transaction(self.session):
            deleted = (
                self.session.query(SuspicionAction)
                .filter(SuspicionAction.id.in_(list(action_ids)))
                .delete(synchronize_session=False)
            )
        return deleted

    def count(self) -> int:
        return self.session.query(SuspicionAction).count()


class SqlIndexActionChecker:
    """IndexActionChecker backed by the identitystore_index_action table."""

    def __init__(self, session: Session):
        self.session = session

    def has_pending(self, customer_id: str, action_type: str) -> bool:
        return (
            self.session.query(IndexAction.id)
            .filter(
                IndexAction.customer_id == customer_id,
                IndexAction.action_type == action_type,
            )
            .first()
            is not None
        )


class SuspicionActionListener:
    """
    Identity change listener queuing reconciliation work.

    Opens a short-lived session per change so it can be registered once on a
    process-wide notifier.
    """

    name = "suspicion_action_listener"

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def process_identity_change(self, change: IdentityChange) -> None:
        if change.change_type not in RECONCILED_CHANGE_TYPES:
            return
        session = self.session_factory()
        try:
            SuspicionActionService(session).enqueue(
                change.customer_id, change.change_type.value
            )
        finally:
            session.close()
