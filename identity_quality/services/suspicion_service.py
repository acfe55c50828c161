"""
Suspicion store.

Persists suspected duplicates and drives their lock / exclude / delete
lifecycle. Every mutation runs in its own transaction; the lock columns are
the mutual exclusion shared by the daemons and updated with
compare-and-set semantics.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Set

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from identity_quality.core.database import transaction
from identity_quality.core.errors import (
    AlreadyExcludedError,
    IdentityNotFoundError,
    NotExcludedError,
    SuspicionExistsError,
    SuspicionLockedError,
    SuspicionNotFoundError,
    ValidationError,
)
from identity_quality.core.events import (
    METADATA_DUPLICATE_RULE_CODE,
    METADATA_EXCLUDED_CUID_KEY,
    METADATA_GROUP_KEY,
    IdentityChangeNotifier,
    build_identity_change,
)
from identity_quality.core.interfaces import IdentityStore
from identity_quality.core.models import (
    ExcludedIdentities,
    IdentityChangeType,
    SuspiciousIdentity,
    utcnow,
)
from identity_quality.core.schemas import QualifiedIdentity, RequestAuthor
from identity_quality.services.rule_service import RuleService

logger = logging.getLogger(__name__)


@dataclass
class SuspicionLock:
    locked: bool
    author_name: Optional[str] = None
    author_type: Optional[str] = None
    lock_end_date: Optional[datetime] = None


class SuspicionService:
    """
    Core suspicion logic: create, lookup, lock, exclude, delete.
    """

    def __init__(
        self,
        session: Session,
        identity_store: IdentityStore,
        notifier: Optional[IdentityChangeNotifier] = None,
        lock_duration_seconds: int = 3600,
        external_declaration_rule_code: Optional[str] = None,
        now: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.identity_store = identity_store
        self.notifier = notifier or IdentityChangeNotifier()
        self.lock_duration = timedelta(seconds=lock_duration_seconds)
        self.external_declaration_rule_code = external_declaration_rule_code
        self.rules = RuleService(session)
        self._now = now

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(
        self,
        customer_id: str,
        author: RequestAuthor,
        client_code: str,
        rule_code: Optional[str] = None,
        duplicate_customer_id: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        identity: Optional[QualifiedIdentity] = None,
    ) -> SuspiciousIdentity:
        """
        Mark an identity as suspicious for a rule.

        Args:
            customer_id: Subject of the suspicion
            author: Who asks for it
            client_code: Calling application
            rule_code: Rule that matched; the external declaration rule when omitted
            duplicate_customer_id: Paired identity, None for the unpaired form
            metadata: Provenance copied onto the suspicion
            identity: Subject already fetched by the caller, to avoid a lookup

        Raises:
            ValidationError: Missing customer id, client code or author
            RuleNotFoundError: Unknown rule code
            IdentityNotFoundError: Subject does not exist
            SuspicionExistsError: Same (customer, duplicate, rule) already stored
        """
        _require(customer_id, "customer_id")
        _require(client_code, "client_code")
        _require_author(author)

        code = rule_code or self.external_declaration_rule_code
        if not code:
            raise ValidationError("A duplicate rule code is required", source="suspicions")
        rule = self.rules.get(code)

        if identity is None:
            identity = self.identity_store.find_by_customer_id(customer_id)
        if identity is None:
            raise IdentityNotFoundError(customer_id)

        if self.exists_suspicious(customer_id, duplicate_customer_id, rule.id):
            raise SuspicionExistsError(
                f"Suspicion already exists for {customer_id}/{duplicate_customer_id} on rule {code}",
                source="suspicions",
            )

        suspicion = SuspiciousIdentity(
            customer_id=customer_id,
            duplicate_customer_id=duplicate_customer_id,
            id_duplicate_rule=rule.id,
            duplicate_rule_code=rule.code,
            creation_date=self._now(),
            last_update_date=identity.last_update_date,
            suspicion_metadata=dict(metadata or {}),
            is_locked=False,
        )
        with transaction(self.session):
            self.session.add(suspicion)

        change_metadata = dict(metadata or {})
        change_metadata[METADATA_DUPLICATE_RULE_CODE] = rule.code
        self.notifier.notify(
            build_identity_change(
                IdentityChangeType.MARKED_SUSPICIOUS, customer_id, author, client_code,
                metadata=change_metadata,
            )
        )
        logger.debug(f"Suspicion created: {suspicion}")
        return suspicion

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def exists_suspicious(
        self, customer_id: str, duplicate_customer_id: Optional[str], rule_id: int
    ) -> bool:
        """
        Whether an equivalent suspicion is stored.

        Paired suspicions are matched in both orientations.
        """
        query = self.session.query(SuspiciousIdentity.id).filter(
            SuspiciousIdentity.id_duplicate_rule == rule_id
        )
        if duplicate_customer_id is None:
            query = query.filter(
                SuspiciousIdentity.customer_id == customer_id,
                SuspiciousIdentity.duplicate_customer_id.is_(None),
            )
        else:
            query = query.filter(
                or_(
                    and_(
                        SuspiciousIdentity.customer_id == customer_id,
                        SuspiciousIdentity.duplicate_customer_id == duplicate_customer_id,
                    ),
                    and_(
                        SuspiciousIdentity.customer_id == duplicate_customer_id,
                        SuspiciousIdentity.duplicate_customer_id == customer_id,
                    ),
                )
            )
        return query.first() is not None

    def covers_group(self, rule_id: int, customer_ids: Iterable[str]) -> bool:
        """
        Whether a suspicion of the rule was recorded for exactly this group.

        The stored group is the one kept in metadata, or subject and pair for
        suspicions recorded without it. Order does not matter.
        """
        group = set(customer_ids)
        if not group:
            return False
        candidates = (
            self.session.query(SuspiciousIdentity)
            .filter(
                SuspiciousIdentity.id_duplicate_rule == rule_id,
                SuspiciousIdentity.customer_id.in_(list(group)),
            )
            .all()
        )
        return any(_stored_group(suspicion) == group for suspicion in candidates)

    def find_by_customer_ids(self, customer_ids: Sequence[str]) -> List[SuspiciousIdentity]:
        """Suspicions where any of the ids is the subject or the pair."""
        ids = list(customer_ids)
        if not ids:
            return []
        return (
            self.session.query(SuspiciousIdentity)
            .filter(
                or_(
                    SuspiciousIdentity.customer_id.in_(ids),
                    SuspiciousIdentity.duplicate_customer_id.in_(ids),
                )
            )
            .order_by(SuspiciousIdentity.id.asc())
            .all()
        )

    def find_by_customer_id(self, customer_id: str) -> List[SuspiciousIdentity]:
        return self.find_by_customer_ids([customer_id])

    def list_by_rule(self, rule_code: str, limit: int, offset: int = 0) -> List[SuspiciousIdentity]:
        return (
            self.session.query(SuspiciousIdentity)
            .filter(SuspiciousIdentity.duplicate_rule_code == rule_code)
            .order_by(SuspiciousIdentity.creation_date.asc(), SuspiciousIdentity.id.asc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def list_for_purge(self, limit: int, after_id: int = 0) -> List[SuspiciousIdentity]:
        """Suspicions in insertion order, starting after after_id."""
        if limit <= 0:
            return []
        return (
            self.session.query(SuspiciousIdentity)
            .filter(SuspiciousIdentity.id > after_id)
            .order_by(SuspiciousIdentity.id.asc())
            .limit(limit)
            .all()
        )

    def count_by_rule(self, rule_id: int) -> int:
        return (
            self.session.query(func.count(SuspiciousIdentity.id))
            .filter(SuspiciousIdentity.id_duplicate_rule == rule_id)
            .scalar()
            or 0
        )

    def suspicious_customer_ids(self, rule_id: int) -> Set[str]:
        """Every customer id already involved in a suspicion of the rule."""
        rows = (
            self.session.query(
                SuspiciousIdentity.customer_id, SuspiciousIdentity.duplicate_customer_id
            )
            .filter(SuspiciousIdentity.id_duplicate_rule == rule_id)
            .all()
        )
        ids: Set[str] = set()
        for customer_id, duplicate_customer_id in rows:
            ids.add(customer_id)
            if duplicate_customer_id:
                ids.add(duplicate_customer_id)
        return ids

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def get_lock(self, customer_id: str) -> SuspicionLock:
        """
        Current lock of the suspicions of an identity.

        Raises:
            SuspicionNotFoundError: If the identity has no suspicion as subject
        """
        _require(customer_id, "customer_id")
        suspicion = (
            self.session.query(SuspiciousIdentity)
            .filter(SuspiciousIdentity.customer_id == customer_id)
            .order_by(SuspiciousIdentity.is_locked.desc(), SuspiciousIdentity.id.asc())
            .first()
        )
        if suspicion is None:
            raise SuspicionNotFoundError(customer_id)
        if not suspicion.is_locked_at(self._now()):
            return SuspicionLock(locked=False)
        return SuspicionLock(
            locked=True,
            author_name=suspicion.lock_author_name,
            author_type=suspicion.lock_author_type,
            lock_end_date=suspicion.lock_end_date,
        )

    def lock(self, customer_id: str, author: RequestAuthor, locked: bool = True) -> bool:
        """
        Lock or unlock every suspicion whose subject is customer_id.

        The update only applies to rows that are unlocked, expired, or held by
        the same author; if any row is held by someone else nothing changes.

        Returns:
            The new lock state

        Raises:
            SuspicionNotFoundError: No suspicion for this identity
            SuspicionLockedError: Held by another author
        """
        _require(customer_id, "customer_id")
        _require_author(author)

        now = self._now()
        with transaction(self.session):
            total = (
                self.session.query(func.count(SuspiciousIdentity.id))
                .filter(SuspiciousIdentity.customer_id == customer_id)
                .scalar()
            )
            if not total:
                raise SuspicionNotFoundError(customer_id)

            if locked:
                values = {
                    SuspiciousIdentity.is_locked: True,
                    SuspiciousIdentity.lock_end_date: now + self.lock_duration,
                    SuspiciousIdentity.lock_author_name: author.name,
                    SuspiciousIdentity.lock_author_type: author.type.value,
                }
            else:
                values = {
                    SuspiciousIdentity.is_locked: False,
                    SuspiciousIdentity.lock_end_date: None,
                    SuspiciousIdentity.lock_author_name: None,
                    SuspiciousIdentity.lock_author_type: None,
                }

            updated = (
                self.session.query(SuspiciousIdentity)
                .filter(
                    SuspiciousIdentity.customer_id == customer_id,
                    or_(
                        SuspiciousIdentity.is_locked == False,  # noqa: E712
                        SuspiciousIdentity.lock_author_name == author.name,
                        SuspiciousIdentity.lock_end_date <= now,
                    ),
                )
                .update(values, synchronize_session=False)
            )
            if updated != total:
                holder = self._lock_holder(customer_id, author.name)
                raise SuspicionLockedError(customer_id, holder)

        logger.info(
            f"Suspicion of {customer_id} {'locked' if locked else 'unlocked'} by {author.name}"
        )
        return locked

    @contextmanager
    def locked(self, customer_id: str, author: RequestAuthor) -> Iterator[None]:
        """
        Hold the lock of customer_id's suspicions for the duration of the block.

        A lock already held by the same author is kept as is on exit, so the
        lock state after the block always equals the state before it.
        """
        state = self.get_lock(customer_id)
        already_held = state.locked and state.author_name == author.name
        if not already_held:
            self.lock(customer_id, author, True)
        try:
            yield
        finally:
            if not already_held:
                self.lock(customer_id, author, False)

    def _lock_holder(self, customer_id: str, requester: str) -> Optional[str]:
        row = (
            self.session.query(SuspiciousIdentity.lock_author_name)
            .filter(
                SuspiciousIdentity.customer_id == customer_id,
                SuspiciousIdentity.is_locked == True,  # noqa: E712
                SuspiciousIdentity.lock_author_name != requester,
            )
            .first()
        )
        return row[0] if row else None

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def delete(self, suspicions: Sequence[SuspiciousIdentity]) -> int:
        if not suspicions:
            return 0
        with transaction(self.session):
            for suspicion in suspicions:
                self.session.delete(suspicion)
        return len(suspicions)

    def remove(self, suspicion: SuspiciousIdentity) -> None:
        self.delete([suspicion])

    def delete_by_customer_id(self, customer_id: str) -> int:
        """Delete every suspicion referencing the identity as subject or pair."""
        return self.delete(self.find_by_customer_id(customer_id))

    # ------------------------------------------------------------------
    # Exclusions
    # ------------------------------------------------------------------

    def is_excluded(self, first_customer_id: str, second_customer_id: str) -> bool:
        return (
            self._exclusion_query(first_customer_id, second_customer_id).first()
            is not None
        )

    def excluded_customer_ids(self, customer_id: str) -> Set[str]:
        rows = (
            self.session.query(
                ExcludedIdentities.first_customer_id, ExcludedIdentities.second_customer_id
            )
            .filter(
                or_(
                    ExcludedIdentities.first_customer_id == customer_id,
                    ExcludedIdentities.second_customer_id == customer_id,
                )
            )
            .all()
        )
        return {second if first == customer_id else first for first, second in rows}

    def filter_excluded(
        self, customer_id: Optional[str], candidates: Sequence[QualifiedIdentity]
    ) -> List[QualifiedIdentity]:
        """Drop the candidates explicitly excluded from duplication with customer_id."""
        if not customer_id:
            return list(candidates)
        excluded = self.excluded_customer_ids(customer_id)
        return [c for c in candidates if c.customer_id not in excluded]

    def exclude(
        self,
        first_customer_id: str,
        second_customer_id: str,
        author: RequestAuthor,
        client_code: str,
    ) -> None:
        """
        Declare two identities as not being duplicates.

        Removes the suspicions pairing them (and their unpaired suspicions)
        and emits an EXCLUDED change for each identity.

        Raises:
            ValidationError: Missing ids, client code or author, or same id twice
            IdentityNotFoundError: One of the identities does not exist
            AlreadyExcludedError: Pair already excluded
        """
        first, second = self._check_exclusion_request(
            first_customer_id, second_customer_id, author, client_code
        )
        if self.is_excluded(first, second):
            raise AlreadyExcludedError(first, second)

        with transaction(self.session):
            self.session.add(
                ExcludedIdentities(
                    first_customer_id=first,
                    second_customer_id=second,
                    author_type=author.type.value,
                    author_name=author.name,
                    exclusion_date=self._now(),
                )
            )
            for suspicion in self._suspicions_between(first, second):
                self.session.delete(suspicion)

        self._notify_pair(
            IdentityChangeType.EXCLUDED, first, second, author, client_code,
            "Identities excluded from duplicate suspicions.",
        )

    def cancel_exclusion(
        self,
        first_customer_id: str,
        second_customer_id: str,
        author: RequestAuthor,
        client_code: str,
    ) -> None:
        """
        Cancel a previous exclusion.

        Raises:
            ValidationError: Missing ids, client code or author, or same id twice
            IdentityNotFoundError: One of the identities does not exist
            NotExcludedError: Pair is not excluded
        """
        first, second = self._check_exclusion_request(
            first_customer_id, second_customer_id, author, client_code
        )
        if not self.is_excluded(first, second):
            raise NotExcludedError(first, second)

        with transaction(self.session):
            self._exclusion_query(first, second).delete(synchronize_session=False)

        self._notify_pair(
            IdentityChangeType.EXCLUSION_CANCELLED, first, second, author, client_code,
            "Identities exclusion has been cancelled.",
        )

    def _check_exclusion_request(self, first, second, author, client_code):
        _require(first, "first_customer_id")
        _require(second, "second_customer_id")
        _require(client_code, "client_code")
        _require_author(author)
        if first == second:
            raise ValidationError("Cannot exclude an identity from itself", source="suspicions")
        for customer_id in (first, second):
            if self.identity_store.find_by_customer_id(customer_id) is None:
                raise IdentityNotFoundError(customer_id)
        return first, second

    def _exclusion_query(self, first: str, second: str):
        return self.session.query(ExcludedIdentities).filter(
            or_(
                and_(
                    ExcludedIdentities.first_customer_id == first,
                    ExcludedIdentities.second_customer_id == second,
                ),
                and_(
                    ExcludedIdentities.first_customer_id == second,
                    ExcludedIdentities.second_customer_id == first,
                ),
            )
        )

    def _suspicions_between(self, first: str, second: str) -> List[SuspiciousIdentity]:
        return (
            self.session.query(SuspiciousIdentity)
            .filter(
                or_(
                    and_(
                        SuspiciousIdentity.customer_id.in_([first, second]),
                        SuspiciousIdentity.duplicate_customer_id.is_(None),
                    ),
                    and_(
                        SuspiciousIdentity.customer_id == first,
                        SuspiciousIdentity.duplicate_customer_id == second,
                    ),
                    and_(
                        SuspiciousIdentity.customer_id == second,
                        SuspiciousIdentity.duplicate_customer_id == first,
                    ),
                )
            )
            .all()
        )

    def _notify_pair(self, change_type, first, second, author, client_code, message) -> None:
        for customer_id, other in ((first, second), (second, first)):
            self.notifier.notify(
                build_identity_change(
                    change_type, customer_id, author, client_code,
                    message=message,
                    metadata={METADATA_EXCLUDED_CUID_KEY: other},
                )
            )


def _require(value: Optional[str], name: str) -> None:
    if value is None or not str(value).strip():
        raise ValidationError(f"{name} is missing", source="suspicions")


def _require_author(author: Optional[RequestAuthor]) -> None:
    if author is None or not author.name or author.type is None:
        raise ValidationError("Provided author is null or empty", source="suspicions")


def _stored_group(suspicion: SuspiciousIdentity) -> Set[str]:
    recorded = suspicion.metadata_map.get(METADATA_GROUP_KEY)
    if recorded:
        return {cid for cid in recorded.split(",") if cid}
    return {cid for cid in (suspicion.customer_id, suspicion.duplicate_customer_id) if cid}
