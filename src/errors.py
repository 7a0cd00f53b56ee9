"""Domain errors for WhatsApp Archive."""


class ArchiveError(Exception):
    """Base error for the archive."""
    pass


class MigrationError(ArchiveError):
    """A schema migration failed; the store cannot be opened."""
    pass


class NotAuthenticatedError(ArchiveError):
    """The session has no paired device; re-authentication is required."""
    pass


class NotConnectedError(ArchiveError):
    """The session is not connected."""
    pass


class BackfillError(ArchiveError):
    """On-demand history backfill could not complete."""
    pass


class GatewayError(ArchiveError):
    """The send socket could not be bound."""
    pass


class SendError(ArchiveError):
    """A send request was rejected or failed."""
    pass
