"""
Unit tests for the suspicion store: creation, lookups, locking, exclusions.
"""
from datetime import datetime, timedelta

import pytest

from identity_quality.core.errors import (
    AlreadyExcludedError,
    IdentityNotFoundError,
    NotExcludedError,
    RuleNotFoundError,
    SuspicionExistsError,
    SuspicionLockedError,
    SuspicionNotFoundError,
    ValidationError,
)
from identity_quality.core.events import (
    METADATA_DUPLICATE_RULE_CODE,
    METADATA_EXCLUDED_CUID_KEY,
    METADATA_GROUP_KEY,
)
from identity_quality.core.models import (
    ExcludedIdentities,
    IdentityChangeType,
    SuspiciousIdentity,
    utcnow,
)
from identity_quality.core.schemas import RequestAuthor
from identity_quality.services.suspicion_service import SuspicionService


@pytest.fixture
def identities(identity_store, make_identity):
    for cid in ("A", "B", "C"):
        identity_store.add(make_identity(cid, email=f"{cid.lower()}@x.fr"))
    return identity_store


class TestCreate:

    @pytest.mark.unit
    def test_create_persists_and_notifies(self, suspicion_service, identities, make_rule, author, listener, test_db):
        make_rule("R1")

        suspicion = suspicion_service.create(
            "A", author, "client", rule_code="R1", duplicate_customer_id="B", metadata={"k": "v"}
        )

        stored = test_db.query(SuspiciousIdentity).one()
        assert stored.id == suspicion.id
        assert (stored.customer_id, stored.duplicate_customer_id, stored.duplicate_rule_code) == ("A", "B", "R1")
        assert stored.metadata_map == {"k": "v"}
        assert stored.is_locked is False

        assert len(listener.changes) == 1
        change = listener.changes[0]
        assert change.change_type == IdentityChangeType.MARKED_SUSPICIOUS
        assert change.customer_id == "A"
        assert change.client_code == "client"
        assert change.metadata[METADATA_DUPLICATE_RULE_CODE] == "R1"

    @pytest.mark.unit
    def test_create_defaults_to_external_declaration_rule(self, suspicion_service, identities, make_rule, author):
        make_rule("RG_EXTERNAL", is_daemon=False)

        suspicion = suspicion_service.create("A", author, "client")

        assert suspicion.duplicate_rule_code == "RG_EXTERNAL"
        assert suspicion.duplicate_customer_id is None

    @pytest.mark.unit
    def test_create_duplicate_triple_conflicts(self, suspicion_service, identities, make_rule, author, listener):
        make_rule("R1")
        suspicion_service.create("A", author, "client", rule_code="R1", duplicate_customer_id="B")

        with pytest.raises(SuspicionExistsError) as exc_info:
            suspicion_service.create("B", author, "client", rule_code="R1", duplicate_customer_id="A")

        assert exc_info.value.status_code == 409
        assert len(listener.changes) == 1

    @pytest.mark.unit
    def test_create_unknown_rule(self, suspicion_service, identities, author):
        with pytest.raises(RuleNotFoundError):
            suspicion_service.create("A", author, "client", rule_code="NOPE")

    @pytest.mark.unit
    def test_create_unknown_identity(self, suspicion_service, identities, make_rule, author, test_db):
        make_rule("R1")

        with pytest.raises(IdentityNotFoundError):
            suspicion_service.create("Z", author, "client", rule_code="R1")

        assert test_db.query(SuspiciousIdentity).count() == 0

    @pytest.mark.unit
    @pytest.mark.parametrize("customer_id,client_code,req_author", [
        ("", "client", RequestAuthor("x")),
        ("A", " ", RequestAuthor("x")),
        ("A", "client", RequestAuthor("")),
        ("A", "client", None),
    ])
    def test_create_validation(self, suspicion_service, identities, make_rule, listener, test_db,
                               customer_id, client_code, req_author):
        make_rule("R1")

        with pytest.raises(ValidationError) as exc_info:
            suspicion_service.create(customer_id, req_author, client_code, rule_code="R1")

        assert exc_info.value.status_code == 400
        assert test_db.query(SuspiciousIdentity).count() == 0
        assert listener.changes == []


class TestLookups:

    @pytest.fixture
    def stored(self, suspicion_service, identities, make_rule, author):
        rule = make_rule("R1")
        suspicion_service.create("A", author, "client", rule_code="R1", duplicate_customer_id="B")
        suspicion_service.create("C", author, "client", rule_code="R1")
        return rule

    @pytest.mark.unit
    def test_exists_suspicious_is_symmetric(self, suspicion_service, stored):
        assert suspicion_service.exists_suspicious("A", "B", stored.id)
        assert suspicion_service.exists_suspicious("B", "A", stored.id)
        assert not suspicion_service.exists_suspicious("A", "C", stored.id)
        assert suspicion_service.exists_suspicious("C", None, stored.id)
        assert not suspicion_service.exists_suspicious("A", None, stored.id)

    @pytest.mark.unit
    def test_covers_group_needs_exact_set(self, suspicion_service, stored):
        assert suspicion_service.covers_group(stored.id, ["B", "A"])
        assert suspicion_service.covers_group(stored.id, ["C"])
        assert not suspicion_service.covers_group(stored.id, ["A", "B", "X"])
        assert not suspicion_service.covers_group(stored.id, ["C", "Y"])
        assert not suspicion_service.covers_group(stored.id, ["B"])
        assert not suspicion_service.covers_group(stored.id, [])

    @pytest.mark.unit
    def test_covers_group_uses_recorded_group(self, suspicion_service, identities, make_rule, author):
        rule = make_rule("R2")
        suspicion_service.create(
            "A", author, "client", rule_code="R2", duplicate_customer_id="B",
            metadata={METADATA_GROUP_KEY: "A,B,C"},
        )

        assert suspicion_service.covers_group(rule.id, ["C", "B", "A"])
        assert not suspicion_service.covers_group(rule.id, ["A", "B"])

    @pytest.mark.unit
    def test_find_by_customer_id_matches_subject_and_pair(self, suspicion_service, stored):
        assert [s.customer_id for s in suspicion_service.find_by_customer_id("B")] == ["A"]
        assert len(suspicion_service.find_by_customer_ids(["A", "C"])) == 2

    @pytest.mark.unit
    def test_counts_and_ids(self, suspicion_service, stored):
        assert suspicion_service.count_by_rule(stored.id) == 2
        assert suspicion_service.suspicious_customer_ids(stored.id) == {"A", "B", "C"}
        assert len(suspicion_service.list_by_rule("R1", 1)) == 1
        assert len(suspicion_service.list_for_purge(10)) == 2

    @pytest.mark.unit
    def test_list_for_purge_resumes_after_cursor(self, suspicion_service, stored):
        first = suspicion_service.list_for_purge(1)

        assert [s.customer_id for s in first] == ["A"]
        assert [s.customer_id for s in suspicion_service.list_for_purge(10, after_id=first[0].id)] == ["C"]

    @pytest.mark.unit
    def test_delete_by_customer_id(self, suspicion_service, stored, test_db):
        assert suspicion_service.delete_by_customer_id("B") == 1
        assert [s.customer_id for s in test_db.query(SuspiciousIdentity).all()] == ["C"]


class TestLock:

    @pytest.fixture
    def stored(self, suspicion_service, identities, make_rule, author):
        make_rule("R1")
        make_rule("R2", priority=2)
        suspicion_service.create("A", author, "client", rule_code="R1", duplicate_customer_id="B")
        suspicion_service.create("A", author, "client", rule_code="R2", duplicate_customer_id="C")

    @pytest.mark.unit
    def test_lock_and_unlock(self, suspicion_service, stored, test_db):
        alice = RequestAuthor("alice")

        assert suspicion_service.lock("A", alice, True) is True
        state = suspicion_service.get_lock("A")
        assert state.locked and state.author_name == "alice"
        test_db.expire_all()
        assert all(s.is_locked for s in test_db.query(SuspiciousIdentity).all())

        assert suspicion_service.lock("A", alice, False) is False
        assert suspicion_service.get_lock("A").locked is False

    @pytest.mark.unit
    def test_lock_held_by_other_author_conflicts(self, suspicion_service, stored):
        suspicion_service.lock("A", RequestAuthor("alice"), True)

        with pytest.raises(SuspicionLockedError) as exc_info:
            suspicion_service.lock("A", RequestAuthor("bob"), True)
        with pytest.raises(SuspicionLockedError):
            suspicion_service.lock("A", RequestAuthor("bob"), False)

        assert "alice" in str(exc_info.value)
        assert suspicion_service.get_lock("A").author_name == "alice"

    @pytest.mark.unit
    def test_relock_by_same_author(self, suspicion_service, stored):
        alice = RequestAuthor("alice")
        suspicion_service.lock("A", alice, True)

        assert suspicion_service.lock("A", alice, True) is True

    @pytest.mark.unit
    def test_expired_lock_can_be_taken(self, test_db, identities, stored):
        clock = {"now": datetime(2026, 1, 1, 12, 0)}
        service = SuspicionService(test_db, identities, lock_duration_seconds=60, now=lambda: clock["now"])
        service.lock("A", RequestAuthor("alice"), True)

        clock["now"] += timedelta(minutes=5)
        assert service.get_lock("A").locked is False
        assert service.lock("A", RequestAuthor("bob"), True) is True
        assert service.get_lock("A").author_name == "bob"

    @pytest.mark.unit
    def test_lock_without_suspicion(self, suspicion_service, identities):
        with pytest.raises(SuspicionNotFoundError):
            suspicion_service.lock("B", RequestAuthor("alice"), True)
        with pytest.raises(SuspicionNotFoundError):
            suspicion_service.get_lock("B")

    @pytest.mark.unit
    def test_locked_context_releases_on_error(self, suspicion_service, stored):
        alice = RequestAuthor("alice")

        with pytest.raises(RuntimeError):
            with suspicion_service.locked("A", alice):
                assert suspicion_service.get_lock("A").locked
                raise RuntimeError("merge failed")

        assert suspicion_service.get_lock("A").locked is False

    @pytest.mark.unit
    def test_locked_context_keeps_existing_lock(self, suspicion_service, stored):
        alice = RequestAuthor("alice")
        suspicion_service.lock("A", alice, True)

        with suspicion_service.locked("A", alice):
            pass

        assert suspicion_service.get_lock("A").locked is True


class TestExclusion:

    @pytest.mark.unit
    def test_exclude_removes_pair_suspicions(self, suspicion_service, identities, make_rule, author, listener, test_db):
        make_rule("R1")
        suspicion_service.create("A", author, "client", rule_code="R1", duplicate_customer_id="B")
        suspicion_service.create("A", author, "client", rule_code="R1", duplicate_customer_id="C")
        listener.changes.clear()

        suspicion_service.exclude("A", "B", author, "client")

        assert suspicion_service.is_excluded("B", "A")
        remaining = [(s.customer_id, s.duplicate_customer_id) for s in test_db.query(SuspiciousIdentity).all()]
        assert remaining == [("A", "C")]
        assert [(c.change_type, c.customer_id, c.metadata[METADATA_EXCLUDED_CUID_KEY]) for c in listener.changes] == [
            (IdentityChangeType.EXCLUDED, "A", "B"),
            (IdentityChangeType.EXCLUDED, "B", "A"),
        ]

    @pytest.mark.unit
    def test_exclude_twice_conflicts(self, suspicion_service, identities, author):
        suspicion_service.exclude("A", "B", author, "client")

        with pytest.raises(AlreadyExcludedError):
            suspicion_service.exclude("B", "A", author, "client")

    @pytest.mark.unit
    def test_exclude_unknown_identity(self, suspicion_service, identities, author, test_db):
        with pytest.raises(IdentityNotFoundError):
            suspicion_service.exclude("A", "Z", author, "client")

        assert test_db.query(ExcludedIdentities).count() == 0

    @pytest.mark.unit
    def test_exclude_same_identity_invalid(self, suspicion_service, identities, author):
        with pytest.raises(ValidationError):
            suspicion_service.exclude("A", "A", author, "client")

    @pytest.mark.unit
    def test_cancel_exclusion(self, suspicion_service, identities, author, listener):
        suspicion_service.exclude("A", "B", author, "client")
        listener.changes.clear()

        suspicion_service.cancel_exclusion("B", "A", author, "client")

        assert not suspicion_service.is_excluded("A", "B")
        assert {c.change_type for c in listener.changes} == {IdentityChangeType.EXCLUSION_CANCELLED}
        assert len(listener.changes) == 2

    @pytest.mark.unit
    def test_cancel_missing_exclusion(self, suspicion_service, identities, author):
        with pytest.raises(NotExcludedError):
            suspicion_service.cancel_exclusion("A", "B", author, "client")

    @pytest.mark.unit
    def test_filter_excluded(self, suspicion_service, identities, author):
        suspicion_service.exclude("A", "B", author, "client")
        candidates = [identities.identities["B"], identities.identities["C"]]

        kept = suspicion_service.filter_excluded("A", candidates)

        assert [c.customer_id for c in kept] == ["C"]


@pytest.mark.unit
def test_failing_listener_does_not_block_mutation(test_db, identities, make_rule, author, listener):
    from identity_quality.core.events import IdentityChangeNotifier

    class Broken:
        name = "broken"

        def process_identity_change(self, change):
            raise RuntimeError("boom")

    make_rule("R1")
    service = SuspicionService(test_db, identities, IdentityChangeNotifier([Broken(), listener]))

    service.create("A", author, "client", rule_code="R1")

    assert test_db.query(SuspiciousIdentity).count() == 1
    assert len(listener.changes) == 1


@pytest.mark.unit
def test_is_locked_at_respects_expiry():
    suspicion = SuspiciousIdentity(is_locked=True, lock_end_date=utcnow() - timedelta(seconds=1))

    assert not suspicion.is_locked_at(utcnow())
