"""
Value objects exchanged with the identity store and the search provider.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from identity_quality.core.models import AuthorType, IdentityChangeType


@dataclass
class CertifiedAttribute:
    """One attribute of an identity with its certification."""

    key: str
    value: str
    certification_level: int = 0
    certifier: Optional[str] = None
    certification_date: Optional[datetime] = None
    pivot: bool = False


@dataclass
class QualifiedIdentity:
    """Identity as returned by the identity store, with its quality score."""

    customer_id: str
    attributes: List[CertifiedAttribute] = field(default_factory=list)
    connected: bool = False
    quality: float = 0.0
    last_update_date: Optional[datetime] = None

    def attribute(self, key: str) -> Optional[CertifiedAttribute]:
        for attribute in self.attributes:
            if attribute.key == key:
                return attribute
        return None

    def attribute_map(self) -> Dict[str, str]:
        """Attribute values keyed by attribute key, blank values dropped."""
        return {
            attribute.key: attribute.value
            for attribute in self.attributes
            if attribute.value is not None and str(attribute.value).strip()
        }

    def lowest_pivot_certification(self) -> int:
        """Lowest certification level among pivot attributes (0 when there are none)."""
        levels = [a.certification_level for a in self.attributes if a.pivot]
        return min(levels) if levels else 0


@dataclass
class QualifiedIdentitySearchResult:
    """Candidates found for one rule."""

    qualified_identities: List[QualifiedIdentity] = field(default_factory=list)
    metadata: Dict[str, str] = field(default_factory=dict)


class SearchStatus(str, enum.Enum):
    FOUND = "FOUND"
    EMPTY = "EMPTY"
    UNAVAILABLE = "UNAVAILABLE"


@dataclass
class SearchOutcome:
    """
    Tagged result of a duplicate search.

    UNAVAILABLE means the provider could not be asked; it must never be read
    as "no duplicates".
    """

    status: SearchStatus
    results: Dict[str, QualifiedIdentitySearchResult] = field(default_factory=dict)

    @classmethod
    def from_results(cls, results: Dict[str, QualifiedIdentitySearchResult]) -> "SearchOutcome":
        has_candidates = any(r.qualified_identities for r in results.values())
        return cls(SearchStatus.FOUND if has_candidates else SearchStatus.EMPTY, results)

    @classmethod
    def unavailable(cls) -> "SearchOutcome":
        return cls(SearchStatus.UNAVAILABLE)

    @property
    def is_found(self) -> bool:
        return self.status == SearchStatus.FOUND

    @property
    def is_empty(self) -> bool:
        return self.status == SearchStatus.EMPTY

    @property
    def is_unavailable(self) -> bool:
        return self.status == SearchStatus.UNAVAILABLE

    def candidates(self, exclude: Iterable[str] = ()) -> List[QualifiedIdentity]:
        """Candidates of every rule, deduplicated by customer id, in result order."""
        seen = set(exclude)
        unique: List[QualifiedIdentity] = []
        for result in self.results.values():
            for identity in result.qualified_identities:
                if identity.customer_id in seen:
                    continue
                seen.add(identity.customer_id)
                unique.append(identity)
        return unique

    def metadata(self) -> Dict[str, str]:
        merged: Dict[str, str] = {}
        for result in self.results.values():
            merged.update(result.metadata)
        return merged


@dataclass(frozen=True)
class RequestAuthor:
    name: str
    type: AuthorType = AuthorType.APPLICATION


class AttributeChangeStatus(str, enum.Enum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    NOT_UPDATED = "NOT_UPDATED"
    INSUFFICIENT_CERTIFICATION_LEVEL = "INSUFFICIENT_CERTIFICATION_LEVEL"
    NOT_FOUND = "NOT_FOUND"
    FAILURE = "FAILURE"

    @property
    def is_success(self) -> bool:
        return self in (AttributeChangeStatus.CREATED, AttributeChangeStatus.UPDATED)


@dataclass
class AttributeMergeStatus:
    key: str
    status: AttributeChangeStatus
    message: Optional[str] = None


class MergeStatus(str, enum.Enum):
    SUCCESS = "SUCCESS"
    PARTIAL_SUCCESS = "PARTIAL_SUCCESS"


@dataclass
class MergeResult:
    """Outcome of an identity merge; status is informational."""

    merged_identity: Optional[QualifiedIdentity]
    attribute_statuses: List[AttributeMergeStatus] = field(default_factory=list)

    @property
    def status(self) -> MergeStatus:
        if all(s.status.is_success for s in self.attribute_statuses):
            return MergeStatus.SUCCESS
        return MergeStatus.PARTIAL_SUCCESS


@dataclass
class IdentityChange:
    """Audit event emitted whenever a suspicion-related mutation happens."""

    change_type: IdentityChangeType
    customer_id: str
    author: RequestAuthor
    client_code: str
    status: str = "SUCCESS"
    message: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
