"""
Typed domain errors for Ghostwatch.

Provider failures are translated into this taxonomy at the adapter
boundary so services can tell a retryable hiccup from a flood wait, a
missing capability or a bad target, and map each to the right handling.
"""

from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:
    from .content import ContentItem


class DomainError(Exception):
    """Base class for all domain-specific errors."""


# ---------------------------------------------------------------------------
# Provider (MTProto userbot) errors
# ---------------------------------------------------------------------------


class ProviderError(DomainError):
    """Base class for failures reported by the upstream provider."""

    def __init__(self, message: str, code: Optional[int] = None) -> None:
        self.code = code
        super().__init__(message)


class ProviderTransient(ProviderError):
    """Transient provider failure (e.g. no workers running); retry-eligible."""


class ProviderRateLimited(ProviderError):
    """Provider asked us to back off for ``seconds``."""

    def __init__(self, seconds: float, message: Optional[str] = None) -> None:
        self.seconds = seconds
        super().__init__(message or f"Rate limited for {seconds}s", code=420)


class ProviderCapabilityDenied(ProviderError):
    """The account lacks a capability (e.g. premium is required)."""


class ProviderDataError(ProviderError):
    """Target is invalid or not found. Reported to the owner, never retried.

    ``identity_changed`` is set when the failure means the target's public
    handle no longer resolves (renamed or released username).
    """

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        identity_changed: bool = False,
    ) -> None:
        self.identity_changed = identity_changed
        super().__init__(message, code=code)


# ---------------------------------------------------------------------------
# Job / persistence / delivery errors
# ---------------------------------------------------------------------------


class ProcessingTimeout(DomainError):
    """A claimed job did not finish within the processing timeout."""

    def __init__(self, job_id: int, timeout: float) -> None:
        self.job_id = job_id
        self.timeout = timeout
        super().__init__(f"Job {job_id} exceeded processing timeout of {timeout}s")


class PersistenceError(DomainError):
    """The durable store rejected or failed an operation."""


class DeliveryFailure(DomainError):
    """Content could not be delivered to the destination chat.

    ``delivered`` holds the items that did reach the chat before the
    failure, so callers can still record them.
    """

    def __init__(self, message: str, delivered: Sequence["ContentItem"] = ()) -> None:
        self.delivered = list(delivered)
        super().__init__(message)
