"""Error taxonomy for tenant provisioning.

Every error carries the provisioning *step* that failed and a human-readable
*reason*.  ``user_message`` is what gets stored in ``last_error`` and shown to
tenant owners; raw provider codes stay on ``provider_code`` and are only ever
logged.
"""

from __future__ import annotations


class ProvisioningError(Exception):
    """Base exception for all provisioning errors.

    Parameters
    ----------
    reason:
        Human-readable explanation of what went wrong.
    step:
        The provisioning step that failed (``clone``, ``dns``, ``ssl``, ...).
    retryable:
        Whether the failing operation may be attempted again automatically.
    """

    retryable: bool = False
    default_step: str = "provisioning"

    def __init__(self, reason: str, *, step: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.step = step or self.default_step

    @property
    def user_message(self) -> str:
        """Return the message safe to surface to tenant owners."""
        return f"{self.step}: {self.reason}"


# ---------------------------------------------------------------------------
# Registry errors
# ---------------------------------------------------------------------------


class StateConflict(ProvisioningError):
    """The stored state no longer matches what the caller read.

    The caller must re-fetch and retry.
    """

    retryable = True
    default_step = "registry"


class InvalidTransition(ProvisioningError):
    """A state change that the lifecycle tables do not allow."""

    default_step = "registry"


class TenantNotFound(ProvisioningError):
    """No tenant exists with the requested identifier."""

    default_step = "registry"


class TemplateNotFound(ProvisioningError):
    """No template exists with the requested identifier."""

    default_step = "clone"


class BindingNotFound(ProvisioningError):
    """No domain binding exists with the requested identifier."""

    default_step = "domain"


class ContentLocked(ProvisioningError):
    """Tenant content cannot be modified in the tenant's current state."""

    default_step = "content"


class InvalidDomain(ProvisioningError):
    """The requested domain name is not a valid hostname."""

    default_step = "domain"


# ---------------------------------------------------------------------------
# Content errors
# ---------------------------------------------------------------------------


class MalformedEncoding(ProvisioningError):
    """Content could not be decoded, or is nested beyond the depth limit.

    Never retryable: the same bytes will fail the same way.
    """

    default_step = "rewrite"

    def __init__(self, reason: str, *, step: str | None = None, offset: int | None = None) -> None:
        super().__init__(reason, step=step)
        self.offset = offset


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------


class ProviderError(ProvisioningError):
    """Base class for failures reported by an external capability."""

    default_step = "provider"

    def __init__(
        self,
        reason: str,
        *,
        step: str | None = None,
        provider_code: str | None = None,
    ) -> None:
        super().__init__(reason, step=step)
        self.provider_code = provider_code


class ProviderTransient(ProviderError):
    """Timeouts and 5xx-class failures; retried with backoff."""

    retryable = True


class ProviderPermanent(ProviderError):
    """Failures that will not go away on retry; surfaced immediately."""


class DomainConflict(ProviderPermanent):
    """The domain is already bound elsewhere; the owner must pick another."""

    default_step = "domain"


class DnsRejected(ProviderPermanent):
    """The DNS provider refused to create the record."""

    default_step = "dns"


class QuotaExhausted(ProviderPermanent):
    """The provider account has no capacity left."""


# ---------------------------------------------------------------------------
# Clone errors
# ---------------------------------------------------------------------------


class CloneAttemptsExhausted(ProvisioningError):
    """The bounded clone retries are spent; the tenant needs an operator."""

    default_step = "clone"

    def __init__(self, reason: str, *, attempts: int, step: str | None = None) -> None:
        super().__init__(reason, step=step)
        self.attempts = attempts


class CloneLeaseExpired(ProvisioningError):
    """A worker claimed a clone job and stopped reporting progress."""

    retryable = True
    default_step = "clone"
