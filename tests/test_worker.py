"""
Unit tests for the worker service container.
"""
from unittest.mock import MagicMock

import pytest

from identity_quality.core.config import Settings
from identity_quality.core.events import build_identity_change
from identity_quality.core.models import IdentityChangeType, SuspicionAction
from identity_quality.core.scheduler_service import (
    DUPLICATES_JOB_ID,
    RESOLUTION_JOB_ID,
    SUSPICION_CONTROL_JOB_ID,
)
from identity_quality.core.schemas import RequestAuthor
from identity_quality.services.search_duplicates_service import RetryPolicy
from identity_quality.services.suspicion_action_service import SuspicionActionListener
from identity_quality import worker
from identity_quality.worker import ServiceContainer


@pytest.fixture
def container(clean_env, identity_store, search_provider, session_factory):
    settings = Settings(database_url="sqlite:///:memory:", resolution_rule_code=None)
    return ServiceContainer(
        settings,
        identity_store,
        search_provider,
        session_factory,
        retry_policy=RetryPolicy(max_attempts=1, delay=0.0, sleep=lambda seconds: None),
    )


@pytest.mark.unit
def test_runners_cover_every_daemon(container):
    assert set(container.runners()) == {DUPLICATES_JOB_ID, SUSPICION_CONTROL_JOB_ID, RESOLUTION_JOB_ID}


@pytest.mark.unit
def test_runners_execute_on_fresh_sessions(container):
    runners = container.runners()

    assert runners[DUPLICATES_JOB_ID]()["rules_processed"] == 0
    assert runners[SUSPICION_CONTROL_JOB_ID]()["selected"] == 0
    assert runners[RESOLUTION_JOB_ID]()["suspicions_processed"] == 0


@pytest.mark.unit
def test_identity_changes_feed_the_action_queue(container, test_db):
    assert any(isinstance(listener, SuspicionActionListener) for listener in container.notifier.listeners)

    handled = container.notifier.notify(
        build_identity_change(IdentityChangeType.MERGED, "B", RequestAuthor("resolver"), "client")
    )

    assert handled == 1
    assert [(a.customer_id, a.action_type) for a in test_db.query(SuspicionAction).all()] == [("B", "MERGED")]


@pytest.mark.unit
def test_detection_runs_share_the_purge_position(container, test_db, make_rule, identity_store, search_provider,
                                                 make_identity):
    container.settings.duplicates_purge_size = 1
    make_rule("R", attributes=["email"])
    search_provider.rule_attributes = {"R": ["email"]}
    for cid in ("A", "B", "C", "D"):
        identity_store.add(make_identity(cid, email="same@x.fr" if cid in "AB" else f"{cid}@x.fr"))
    service = container.suspicion_service(test_db)
    first = service.create("A", RequestAuthor("agent"), "client", rule_code="R", duplicate_customer_id="B")
    service.create("C", RequestAuthor("agent"), "client", rule_code="R", duplicate_customer_id="D")

    container.run_duplicates()
    assert container.purge_cursor == first.id

    stats = container.run_duplicates()
    assert stats["suspicions_purged"] == 1


@pytest.mark.unit
def test_main_uses_validated_log_level(clean_env, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    calls = {}
    monkeypatch.setattr(worker.logging, "basicConfig", lambda **kwargs: calls.update(kwargs))
    monkeypatch.setattr(worker, "create_tables", lambda: None)
    monkeypatch.setattr(worker.ServiceContainer, "from_settings", classmethod(lambda cls, settings: MagicMock()))
    monkeypatch.setattr(worker, "register_daemon_jobs", lambda runners, settings: 3)
    monkeypatch.setattr(worker.signal, "signal", lambda signum, handler: None)
    monkeypatch.setattr(worker, "start_scheduler", lambda: None)

    worker.main()

    assert calls["level"] == "DEBUG"
