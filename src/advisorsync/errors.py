"""Summary: Error taxonomy for the integration core.

Importance: Every failure path maps to one classified error the API layer can translate.
Alternatives: Raise ValueError/RuntimeError and parse messages at the edge.
"""

from __future__ import annotations


class IntegrationError(Exception):
    """Summary: Base class for all integration core errors.

    Importance: Lets callers catch the whole taxonomy in one clause.
    Alternatives: Catch Exception at every boundary.
    """


class UnsupportedProvider(IntegrationError):
    """Requested provider has no registered client."""


class AuthenticationFailed(IntegrationError):
    """OAuth state decode, code exchange, or token refresh failed."""


class IntegrationNotActive(IntegrationError):
    """Mutating operation attempted on a connection that is not ACTIVE."""


class NotFound(IntegrationError):
    """Referenced connection, event, email, thread, or log does not exist for the user."""


class SyncAlreadyInProgress(IntegrationError):
    """Another sync run holds the same (user, provider) pair."""


class InvalidRequest(IntegrationError):
    """Caller input failed validation."""


class ProviderTransientError(IntegrationError):
    """Summary: Recoverable provider failure scoped to one item or one push.

    Importance: Recorded in the sync log instead of aborting the run.
    Alternatives: Treat every provider failure as fatal.
    """

    def __init__(self, message: str, item_id: str | None = None) -> None:
        super().__init__(message)
        self.item_id = item_id


class ProviderCatastrophicError(IntegrationError):
    """Summary: Provider failure that aborts the remaining sync run.

    Importance: Closes the sync log as failed and records the message on the connection.
    Alternatives: Keep retrying until the run times out.
    """


class ProviderAuthRevoked(ProviderCatastrophicError):
    """Provider rejected the credentials mid-run; the connection moves to ERROR."""
