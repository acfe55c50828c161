"""
In-process identity change notification.

Listeners register once at startup; every suspicion mutation emits an
IdentityChange carrying author, client code and metadata. A failing listener
is logged and never blocks the others.
"""

import logging
from typing import Dict, List, Optional

from identity_quality.core.interfaces import IdentityChangeListener
from identity_quality.core.models import IdentityChangeType
from identity_quality.core.schemas import IdentityChange, RequestAuthor

logger = logging.getLogger(__name__)

# Metadata keys
METADATA_DUPLICATE_RULE_CODE = "duplicate_rule_code"
METADATA_EXCLUDED_CUID_KEY = "excluded_customer_id"
# Every identity of a detected group, comma separated, subject first
METADATA_GROUP_KEY = "duplicate_customer_ids"


class IdentityChangeNotifier:
    """Dispatches identity changes to the registered listeners."""

    def __init__(self, listeners: Optional[List[IdentityChangeListener]] = None):
        self._listeners: List[IdentityChangeListener] = list(listeners or [])

    def register(self, listener: IdentityChangeListener) -> None:
        self._listeners.append(listener)
        logger.info(f"Registered identity change listener: {listener.name}")

    @property
    def listeners(self) -> List[IdentityChangeListener]:
        return list(self._listeners)

    def notify(self, change: IdentityChange) -> int:
        """
        Publish a change to every listener.

        Returns:
            Number of listeners that handled the change without error
        """
        handled = 0
        for listener in self._listeners:
            try:
                listener.process_identity_change(change)
                handled += 1
            except Exception as e:
                logger.error(
                    f"Listener {listener.name} failed on {change.change_type.value} "
                    f"for {change.customer_id}: {e}",
                    exc_info=True,
                )
        return handled


def build_identity_change(
    change_type: IdentityChangeType,
    customer_id: str,
    author: RequestAuthor,
    client_code: str,
    message: Optional[str] = None,
    metadata: Optional[Dict[str, str]] = None,
) -> IdentityChange:
    return IdentityChange(
        change_type=change_type,
        customer_id=customer_id,
        author=author,
        client_code=client_code,
        message=message,
        metadata=dict(metadata or {}),
    )
