from __future__ import annotations

from typing import Dict, List, Optional, Protocol, Sequence

from identity_quality.core.schemas import (
    CertifiedAttribute,
    IdentityChange,
    MergeResult,
    QualifiedIdentity,
    QualifiedIdentitySearchResult,
    RequestAuthor,
)


class IdentityStore(Protocol):
    """Identity records owned by the identity store."""

    def find_by_customer_id(self, customer_id: str) -> Optional[QualifiedIdentity]:
        ...

    def search_batch(
        self, customer_ids: Sequence[str], attribute_filter: Sequence[str]
    ) -> List[QualifiedIdentity]:
        ...

    def find_customer_ids_with_attributes(self, attribute_keys: Sequence[str]) -> List[str]:
        """Customer ids of identities having a value for every given attribute."""
        ...

    def merge(
        self,
        primary: QualifiedIdentity,
        secondary: QualifiedIdentity,
        attribute_overrides: Sequence[CertifiedAttribute],
        rule_code: str,
        author: RequestAuthor,
        client_code: str,
    ) -> MergeResult:
        ...


class DuplicateSearchProvider(Protocol):
    """Opaque match-finding capability.

    Returns None when the provider is temporarily unable to answer.
    """

    def find_duplicates(
        self,
        attributes: Dict[str, str],
        subject_id: Optional[str],
        rule_codes: Sequence[str],
        attribute_filter: Sequence[str],
    ) -> Optional[Dict[str, QualifiedIdentitySearchResult]]:
        ...


class IndexActionChecker(Protocol):
    """Side-channel telling whether a reindex is still in flight for an identity."""

    def has_pending(self, customer_id: str, action_type: str) -> bool:
        ...


class IdentityChangeListener(Protocol):
    name: str

    def process_identity_change(self, change: IdentityChange) -> None:
        ...
