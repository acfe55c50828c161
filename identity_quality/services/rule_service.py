"""
Duplicate rule catalog.
"""

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from identity_quality.core.database import transaction
from identity_quality.core.errors import RuleNotFoundError
from identity_quality.core.models import DuplicateRule

logger = logging.getLogger(__name__)


class RuleService:
    """Read-mostly access to the priority-ranked detection rules."""

    def __init__(self, session: Session):
        self.session = session

    def list_rules(self) -> List[DuplicateRule]:
        """All rules, highest priority (lowest number) first."""
        return (
            self.session.query(DuplicateRule)
            .order_by(DuplicateRule.priority.asc(), DuplicateRule.id.asc())
            .all()
        )

    def list_daemon_rules(self) -> List[DuplicateRule]:
        """Active rules eligible for automatic scanning, by priority."""
        return [rule for rule in self.list_rules() if rule.is_daemon and rule.is_active]

    def get(self, code: str) -> DuplicateRule:
        """
        Get a rule by code.

        Raises:
            RuleNotFoundError: If no rule has this code
        """
        rule = self.session.query(DuplicateRule).filter(DuplicateRule.code == code).first()
        if rule is None:
            raise RuleNotFoundError(code)
        return rule

    def find(self, code: str) -> Optional[DuplicateRule]:
        try:
            return self.get(code)
        except RuleNotFoundError:
            return None

    def get_by_id(self, rule_id: int) -> DuplicateRule:
        rule = self.session.get(DuplicateRule, rule_id)
        if rule is None:
            raise RuleNotFoundError(str(rule_id))
        return rule

    def resolve(self, codes) -> List[DuplicateRule]:
        """Rules for the given codes, unknown codes skipped with a warning."""
        rules = []
        for code in sorted(set(codes)):
            rule = self.find(code)
            if rule is None:
                logger.warning(f"Rule {code} not found, ignored")
                continue
            rules.append(rule)
        return rules

    def update(self, rule: DuplicateRule) -> DuplicateRule:
        with transaction(self.session):
            self.session.add(rule)
        return rule
