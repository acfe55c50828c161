"""
Pytest configuration and shared fixtures.

The identity store and the search provider are replaced by in-memory fakes;
the suspicion store runs on a fresh in-memory SQLite database per test.
"""
from typing import Dict, List, Optional, Sequence

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from identity_quality.core.config import reset_settings
from identity_quality.core.events import IdentityChangeNotifier
from identity_quality.core.models import Base, DuplicateRule, LimitationMode
from identity_quality.core.schemas import (
    AttributeChangeStatus,
    AttributeMergeStatus,
    CertifiedAttribute,
    MergeResult,
    QualifiedIdentity,
    QualifiedIdentitySearchResult,
    RequestAuthor,
)
from identity_quality.services.search_duplicates_service import (
    RetryPolicy,
    RetrySearchDuplicatesService,
    SearchDuplicatesService,
)
from identity_quality.services.suspicion_service import SuspicionService


@pytest.fixture(scope="function")
def clean_env(monkeypatch):
    """
    Clean environment for testing.

    Removes all package-related env vars to ensure clean state.
    """
    env_vars = [
        "DATABASE_URL",
        "LOG_LEVEL",
        "CLIENT_CODE",
        "SEARCH_MAX_RETRY",
        "SEARCH_RETRY_DELAY",
        "SEARCH_RETRY_BACKOFF",
        "DUPLICATES_BATCH_SIZE",
        "DUPLICATES_PURGE_SIZE",
        "DUPLICATES_CREATION_RULES",
        "DUPLICATES_UPDATE_RULES",
        "SUSPICION_CONTROL_DELAY",
        "RESOLUTION_RULE_CODE",
        "RESOLUTION_MIN_CERTIFICATION_LEVEL",
        "LOCK_DURATION_SECONDS",
    ]
    for var in env_vars:
        monkeypatch.delenv(var, raising=False)

    # Reset settings singleton
    reset_settings()

    yield

    # Reset again after test
    reset_settings()


@pytest.fixture(scope="function")
def db_engine():
    """In-memory SQLite engine with every quality table."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def test_db(session_factory):
    """
    Create an in-memory SQLite database for testing.

    Fresh database for each test.
    """
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


# =============================================================================
# Builders
# =============================================================================

def build_identity(
    customer_id: str,
    connected: bool = False,
    quality: float = 0.0,
    **attributes,
) -> QualifiedIdentity:
    """
    Build an identity from keyword attributes.

    A value is either a plain string or a (value, certification_level, pivot) tuple.
    """
    certified = []
    for key, given in attributes.items():
        if isinstance(given, tuple):
            value, level, pivot = given
        else:
            value, level, pivot = given, 100, False
        certified.append(CertifiedAttribute(key=key, value=value, certification_level=level, pivot=pivot))
    return QualifiedIdentity(
        customer_id=customer_id, attributes=certified, connected=connected, quality=quality
    )


@pytest.fixture
def make_identity():
    return build_identity


@pytest.fixture
def make_rule(test_db):
    """Persist a duplicate rule and return it."""

    def _make_rule(
        code: str,
        attributes: Sequence[str] = ("email",),
        priority: int = 1,
        detection_limit: int = 0,
        mode: LimitationMode = LimitationMode.GLOBAL,
        is_daemon: bool = True,
        is_active: bool = True,
    ) -> DuplicateRule:
        rule = DuplicateRule(
            code=code,
            name=code,
            priority=priority,
            checked_attributes=list(attributes),
            detection_limit=detection_limit,
            daemon_limitation_mode=mode,
            is_daemon=is_daemon,
            is_active=is_active,
        )
        test_db.add(rule)
        test_db.commit()
        test_db.refresh(rule)
        return rule

    return _make_rule


# =============================================================================
# In-memory collaborators
# =============================================================================

class FakeIdentityStore:
    """IdentityStore keeping identities in a dict."""

    def __init__(self, identities: Sequence[QualifiedIdentity] = ()):
        self.identities: Dict[str, QualifiedIdentity] = {}
        self.merges: List[tuple] = []
        self.merge_error: Optional[Exception] = None
        for identity in identities:
            self.add(identity)

    def add(self, identity: QualifiedIdentity) -> QualifiedIdentity:
        self.identities[identity.customer_id] = identity
        return identity

    def remove(self, customer_id: str) -> None:
        self.identities.pop(customer_id, None)

    def find_by_customer_id(self, customer_id):
        return self.identities.get(customer_id)

    def search_batch(self, customer_ids, attribute_filter):
        return [self.identities[cid] for cid in customer_ids if cid in self.identities]

    def find_customer_ids_with_attributes(self, attribute_keys):
        return [
            cid
            for cid, identity in sorted(self.identities.items())
            if all(identity.attribute_map().get(key) for key in attribute_keys)
        ]

    def merge(self, primary, secondary, attribute_overrides, rule_code, author, client_code):
        if self.merge_error is not None:
            raise self.merge_error
        self.merges.append(
            (primary.customer_id, secondary.customer_id, [a.key for a in attribute_overrides])
        )
        return MergeResult(
            merged_identity=primary,
            attribute_statuses=[
                AttributeMergeStatus(a.key, AttributeChangeStatus.UPDATED) for a in attribute_overrides
            ],
        )


class FakeSearchProvider:
    """
    Matches identities whose checked attributes are all equal (case-insensitive).

    rule_attributes maps rule codes to checked attribute keys. The subject
    itself is part of the raw answer, as real providers do.
    """

    def __init__(self, store: FakeIdentityStore, rule_attributes: Dict[str, List[str]]):
        self.store = store
        self.rule_attributes = rule_attributes
        self.unavailable = False
        self.failures_left = 0
        self.calls: List[tuple] = []

    def find_duplicates(self, attributes, subject_id, rule_codes, attribute_filter):
        self.calls.append((subject_id, tuple(rule_codes)))
        if self.unavailable:
            return None
        if self.failures_left > 0:
            self.failures_left -= 1
            return None

        results = {}
        for code in rule_codes:
            keys = self.rule_attributes.get(code, [])
            matches = []
            if keys and all(attributes.get(key) for key in keys):
                for identity in self.store.identities.values():
                    values = identity.attribute_map()
                    if all(values.get(key, "").lower() == attributes[key].lower() for key in keys):
                        matches.append(identity)
            results[code] = QualifiedIdentitySearchResult(matches, {"matched_rule": code})
        return results


class FakeIndexChecker:
    def __init__(self):
        self.pending = set()

    def has_pending(self, customer_id, action_type):
        return (customer_id, action_type) in self.pending


class RecordingListener:
    name = "recording_listener"

    def __init__(self):
        self.changes = []

    def process_identity_change(self, change):
        self.changes.append(change)


@pytest.fixture
def identity_store():
    return FakeIdentityStore()


@pytest.fixture
def search_provider(identity_store):
    return FakeSearchProvider(identity_store, {})


@pytest.fixture
def retry_search(search_provider):
    """Retrying gateway that never sleeps."""
    policy = RetryPolicy(max_attempts=3, delay=0.0, sleep=lambda seconds: None)
    return RetrySearchDuplicatesService(SearchDuplicatesService(search_provider), policy)


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def suspicion_service(test_db, identity_store, listener):
    return SuspicionService(
        test_db,
        identity_store,
        IdentityChangeNotifier([listener]),
        lock_duration_seconds=3600,
        external_declaration_rule_code="RG_EXTERNAL",
    )


@pytest.fixture
def author():
    return RequestAuthor("test-author")


@pytest.fixture
def index_checker():
    return FakeIndexChecker()
