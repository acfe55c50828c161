"""
Error classification for the identity quality pipeline.

Each error type says whether the operation may be retried and which
HTTP-equivalent status a calling layer should surface.
"""

from typing import Dict, Optional


class IdentityQualityError(Exception):
    """
    Base exception for all identity quality errors.

    Attributes:
        message: Human-readable error description
        source: Collaborator or component that raised it (e.g. 'search_provider')
        status_code: HTTP-equivalent status
        retryable: Whether a later attempt may succeed
    """

    status_code: Optional[int] = None

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.source = source
        if status_code is not None:
            self.status_code = status_code
        self.retryable = retryable

    def __str__(self) -> str:
        parts = [self.message]
        if self.source:
            parts.insert(0, f"[{self.source}]")
        if self.status_code:
            parts.append(f"(HTTP {self.status_code})")
        return " ".join(parts)


class ProviderUnavailableError(IdentityQualityError):
    """
    Transient failure of an external collaborator.

    Examples:
    - HTTP 5xx from the search provider
    - Network timeouts
    - Retries exhausted against the search provider
    """

    status_code = 503

    def __init__(self, message: str = "Provider unavailable", source: Optional[str] = None):
        super().__init__(message=message, source=source, retryable=True)


class NotFoundError(IdentityQualityError):
    """Requested resource truly absent."""

    status_code = 404

    def __init__(
        self,
        message: str = "Resource not found",
        source: Optional[str] = None,
        resource_id: Optional[str] = None,
    ):
        if resource_id:
            message = f"{message}: {resource_id}"
        super().__init__(message=message, source=source)
        self.resource_id = resource_id


class RuleNotFoundError(NotFoundError):
    def __init__(self, code: str):
        super().__init__("Duplicate rule not found", source="rules", resource_id=code)


class IdentityNotFoundError(NotFoundError):
    def __init__(self, customer_id: str):
        super().__init__("Identity not found", source="identity_store", resource_id=customer_id)


class SuspicionNotFoundError(NotFoundError):
    def __init__(self, customer_id: str):
        super().__init__("No suspicion found for identity", source="suspicions", resource_id=customer_id)


class DuplicatesNotFoundError(NotFoundError):
    """Every requested rule returned zero candidates and empty results were not allowed."""

    def __init__(self, rule_codes):
        super().__init__(
            "No potential duplicate found", source="search", resource_id=",".join(rule_codes)
        )


class ConflictError(IdentityQualityError):
    """Operation rejected because of the current state of the store."""

    status_code = 409


class SuspicionLockedError(ConflictError):
    def __init__(self, customer_id: str, author_name: Optional[str] = None):
        message = f"Suspicion for {customer_id} is locked"
        if author_name:
            message = f"{message} by {author_name}"
        super().__init__(message=message, source="suspicions")


class SuspicionExistsError(ConflictError):
    pass


class AlreadyExcludedError(ConflictError):
    def __init__(self, first: str, second: str):
        super().__init__(
            message=f"Identities {first} and {second} are already excluded from duplicate suspicions",
            source="suspicions",
        )


class NotExcludedError(ConflictError):
    def __init__(self, first: str, second: str):
        super().__init__(
            message=f"Identities {first} and {second} are not excluded from duplicate suspicions",
            source="suspicions",
        )


class ValidationError(IdentityQualityError):
    """
    Malformed request, raised before any side effect.
    """

    status_code = 400

    def __init__(
        self,
        message: str = "Invalid request parameters",
        source: Optional[str] = None,
        invalid_params: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message=message, source=source)
        self.invalid_params = invalid_params or {}


def classify_http_error(
    status_code: int, response_text: str = "", source: Optional[str] = None
) -> IdentityQualityError:
    """
    Classify an HTTP error from an external collaborator.

    Args:
        status_code: HTTP status code
        response_text: Response body text
        source: Collaborator name

    Returns:
        Appropriate IdentityQualityError subclass instance
    """
    if status_code == 404:
        return NotFoundError(message=f"Not found: {response_text[:200]}", source=source)
    elif status_code == 409:
        return ConflictError(message=f"Conflict: {response_text[:200]}", source=source)
    elif status_code in (400, 422):
        return ValidationError(message=f"Bad request: {response_text[:200]}", source=source)
    elif status_code == 429 or 500 <= status_code < 600:
        return ProviderUnavailableError(
            message=f"Server error {status_code}: {response_text[:200]}", source=source
        )
    else:
        return IdentityQualityError(
            message=f"HTTP error {status_code}: {response_text[:200]}",
            source=source,
            status_code=status_code,
        )
