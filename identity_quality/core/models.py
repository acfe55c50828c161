"""
SQLAlchemy models for the identity quality tables.

Rules are read by every daemon; suspicions, exclusions and suspicion actions
are owned by this package. Index actions are written by the indexing side and
only read here.
"""
import enum
from datetime import datetime, timezone
from typing import Dict, List

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the format stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class LimitationMode(str, enum.Enum):
    """How a rule's detection limit is counted."""
    GLOBAL = "GLOBAL"  # suspicions already in store for the rule
    INCREMENTAL = "INCREMENTAL"  # suspicions created by the current run


class AuthorType(str, enum.Enum):
    OWNER = "owner"
    AGENT = "agent"
    ADMIN = "admin"
    APPLICATION = "application"


class IdentityChangeType(str, enum.Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    MERGED = "MERGED"
    CONSOLIDATED = "CONSOLIDATED"
    MARKED_SUSPICIOUS = "MARKED_SUSPICIOUS"
    EXCLUDED = "EXCLUDED"
    EXCLUSION_CANCELLED = "EXCLUSION_CANCELLED"


class DuplicateRule(Base):
    """
    Detection rule configuration.

    Edited externally; the detection daemon only updates
    daemon_last_exec_date after each pass.
    """
    __tablename__ = "identitystore_duplicate_rule"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(100), nullable=False, unique=True)
    name = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    priority = Column(Integer, nullable=False, default=0)  # ascending = higher priority
    checked_attributes = Column(JSON, nullable=False, default=list)
    detection_limit = Column(Integer, nullable=False, default=0)  # 0 = unlimited
    daemon_limitation_mode = Column(
        Enum(LimitationMode, native_enum=False, length=20),
        nullable=False,
        default=LimitationMode.GLOBAL,
    )
    is_daemon = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    daemon_last_exec_date = Column(DateTime, nullable=True)

    @property
    def attribute_keys(self) -> List[str]:
        return list(self.checked_attributes or [])

    def __repr__(self) -> str:
        return f"<DuplicateRule(code={self.code}, priority={self.priority}, limit={self.detection_limit})>"


class SuspiciousIdentity(Base):
    """
    A suspected duplicate assertion.

    duplicate_customer_id is NULL for the unpaired form where the subject is
    suspected against an unspecified set of identities.
    """
    __tablename__ = "identitystore_quality_suspicious_identity"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(String(60), nullable=False, index=True)
    duplicate_customer_id = Column(String(60), nullable=True, index=True)
    id_duplicate_rule = Column(
        Integer, ForeignKey("identitystore_duplicate_rule.id"), nullable=False, index=True
    )
    duplicate_rule_code = Column(String(100), nullable=False)
    creation_date = Column(DateTime, nullable=False, default=utcnow)
    last_update_date = Column(DateTime, nullable=True)
    # renamed from 'metadata' to avoid SQLAlchemy conflict
    suspicion_metadata = Column(JSON, nullable=False, default=dict)

    # Lock
    is_locked = Column(Boolean, nullable=False, default=False)
    lock_end_date = Column(DateTime, nullable=True)
    lock_author_name = Column(String(255), nullable=True)
    lock_author_type = Column(String(50), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "customer_id", "duplicate_customer_id", "id_duplicate_rule",
            name="uq_suspicion_triple",
        ),
    )

    @property
    def metadata_map(self) -> Dict[str, str]:
        return dict(self.suspicion_metadata or {})

    def is_locked_at(self, when: datetime) -> bool:
        """True while the lock is held and not expired."""
        if not self.is_locked:
            return False
        return self.lock_end_date is None or self.lock_end_date > when

    def __repr__(self) -> str:
        return (
            f"<SuspiciousIdentity(customer_id={self.customer_id}, "
            f"duplicate={self.duplicate_customer_id}, rule={self.duplicate_rule_code}, "
            f"locked={self.is_locked})>"
        )


class ExcludedIdentities(Base):
    """Pair of identities declared as not being duplicates."""
    __tablename__ = "identitystore_quality_suspicious_identity_excluded"

    id = Column(Integer, primary_key=True, autoincrement=True)
    first_customer_id = Column(String(60), nullable=False)
    second_customer_id = Column(String(60), nullable=False)
    author_type = Column(String(50), nullable=True)
    author_name = Column(String(255), nullable=True)
    exclusion_date = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("first_customer_id", "second_customer_id", name="uq_excluded_pair"),
    )


class SuspicionAction(Base):
    """Queued trigger asking to recompute the suspicions of one identity."""
    __tablename__ = "identitystore_quality_suspicion_action"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(String(60), nullable=False, index=True)
    action_type = Column(String(50), nullable=False)
    date = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_suspicion_action_date", "date", "id"),
    )

    def __repr__(self) -> str:
        return f"<SuspicionAction(id={self.id}, customer_id={self.customer_id}, type={self.action_type})>"


class IndexAction(Base):
    """Pending search-index action written by the indexing side."""
    __tablename__ = "identitystore_index_action"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(String(60), nullable=False, index=True)
    action_type = Column(String(50), nullable=False)
    date_index = Column(DateTime, nullable=False, default=utcnow)
