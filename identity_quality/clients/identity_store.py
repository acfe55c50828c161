"""
HTTP client for the identity store.

Fetches qualified identities and performs merges. The JSON helpers in this
module are shared with the search provider client, which returns identities
in the same shape.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from identity_quality.clients.http_client import BaseAPIClient
from identity_quality.core.errors import NotFoundError
from identity_quality.core.schemas import (
    AttributeChangeStatus,
    AttributeMergeStatus,
    CertifiedAttribute,
    MergeResult,
    QualifiedIdentity,
    RequestAuthor,
)

logger = logging.getLogger(__name__)


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def parse_attribute(data: Dict[str, Any]) -> CertifiedAttribute:
    return CertifiedAttribute(
        key=data["key"],
        value=data.get("value"),
        certification_level=int(data.get("certification_level") or 0),
        certifier=data.get("certifier"),
        certification_date=_parse_date(data.get("certification_date")),
        pivot=bool(data.get("pivot", False)),
    )


def parse_identity(data: Dict[str, Any]) -> QualifiedIdentity:
    """Build a QualifiedIdentity from its JSON representation."""
    return QualifiedIdentity(
        customer_id=data["customer_id"],
        attributes=[parse_attribute(a) for a in data.get("attributes") or []],
        connected=bool(data.get("connected", False)),
        quality=float(data.get("quality") or 0.0),
        last_update_date=_parse_date(data.get("last_update_date")),
    )


def serialize_attribute(attribute: CertifiedAttribute) -> Dict[str, Any]:
    return {
        "key": attribute.key,
        "value": attribute.value,
        "certification_level": attribute.certification_level,
        "certifier": attribute.certifier,
        "certification_date": (
            attribute.certification_date.isoformat() if attribute.certification_date else None
        ),
        "pivot": attribute.pivot,
    }


def _parse_merge_status(data: Dict[str, Any]) -> AttributeMergeStatus:
    try:
        status = AttributeChangeStatus(data.get("status"))
    except ValueError:
        status = AttributeChangeStatus.FAILURE
    return AttributeMergeStatus(key=data.get("key", ""), status=status, message=data.get("message"))


class IdentityStoreClient(BaseAPIClient):
    """
    Identity store API client.

    Implements the IdentityStore protocol over HTTP.
    """

    SOURCE_NAME = "identity_store"

    def find_by_customer_id(self, customer_id: str) -> Optional[QualifiedIdentity]:
        try:
            data = self.get(f"identities/{customer_id}", resource_id=customer_id)
        except NotFoundError:
            return None
        if not data:
            return None
        return parse_identity(data)

    def search_batch(
        self, customer_ids: Sequence[str], attribute_filter: Sequence[str]
    ) -> List[QualifiedIdentity]:
        if not customer_ids:
            return []
        data = self.post(
            "identities/search",
            json_body={
                "customer_ids": list(customer_ids),
                "attribute_filter": list(attribute_filter),
            },
            resource_id=f"batch of {len(customer_ids)}",
        )
        return [parse_identity(item) for item in (data or {}).get("identities", [])]

    def find_customer_ids_with_attributes(self, attribute_keys: Sequence[str]) -> List[str]:
        data = self.post(
            "identities/customer_ids",
            json_body={"attribute_keys": list(attribute_keys)},
            resource_id=",".join(attribute_keys),
        )
        return list((data or {}).get("customer_ids", []))

    def merge(
        self,
        primary: QualifiedIdentity,
        secondary: QualifiedIdentity,
        attribute_overrides: Sequence[CertifiedAttribute],
        rule_code: str,
        author: RequestAuthor,
        client_code: str,
    ) -> MergeResult:
        """
        Merge secondary into primary, overriding the given attributes on primary.

        Returns:
            MergeResult with the merged identity and per-attribute statuses
        """
        data = self.post(
            "identities/merge",
            json_body={
                "primary_customer_id": primary.customer_id,
                "secondary_customer_id": secondary.customer_id,
                "attribute_overrides": [serialize_attribute(a) for a in attribute_overrides],
                "duplicate_rule_code": rule_code,
                "author": {"name": author.name, "type": author.type.value},
                "client_code": client_code,
            },
            resource_id=f"{secondary.customer_id}->{primary.customer_id}",
        ) or {}
        merged = data.get("identity")
        return MergeResult(
            merged_identity=parse_identity(merged) if merged else None,
            attribute_statuses=[_parse_merge_status(s) for s in data.get("attribute_statuses", [])],
        )
