"""
Unit tests for the duplicate rule catalog.
"""
import pytest

from identity_quality.core.errors import RuleNotFoundError
from identity_quality.services.rule_service import RuleService


@pytest.mark.unit
def test_list_rules_orders_by_priority(test_db, make_rule):
    make_rule("RG_LOW", priority=5)
    make_rule("RG_HIGH", priority=1)
    make_rule("RG_MID", priority=3)

    codes = [rule.code for rule in RuleService(test_db).list_rules()]

    assert codes == ["RG_HIGH", "RG_MID", "RG_LOW"]


@pytest.mark.unit
def test_list_daemon_rules_filters_inactive_and_manual(test_db, make_rule):
    make_rule("RG_DAEMON", priority=2)
    make_rule("RG_MANUAL", priority=1, is_daemon=False)
    make_rule("RG_OFF", priority=1, is_active=False)

    codes = [rule.code for rule in RuleService(test_db).list_daemon_rules()]

    assert codes == ["RG_DAEMON"]


@pytest.mark.unit
def test_get_unknown_rule_raises(test_db):
    with pytest.raises(RuleNotFoundError) as exc_info:
        RuleService(test_db).get("RG_NOPE")

    assert exc_info.value.status_code == 404
    assert exc_info.value.resource_id == "RG_NOPE"


@pytest.mark.unit
def test_resolve_skips_unknown_codes(test_db, make_rule):
    make_rule("RG_A")

    rules = RuleService(test_db).resolve(["RG_A", "RG_MISSING", "RG_A"])

    assert [rule.code for rule in rules] == ["RG_A"]


@pytest.mark.unit
def test_update_persists_changes(test_db, make_rule):
    rule = make_rule("RG_A")
    service = RuleService(test_db)

    rule.detection_limit = 42
    service.update(rule)
    test_db.expire_all()

    assert service.get("RG_A").detection_limit == 42
