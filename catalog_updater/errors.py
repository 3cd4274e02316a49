class CatalogUpdateError(Exception):
    """Base exception for catalog update errors."""


class FormatError(CatalogUpdateError):
    """The table header matches neither recognised schema."""


class ValidationError(CatalogUpdateError):
    """One or more rows failed type or shape checks.

    Carries every row-indexed message so callers can report the whole table
    at once; no row of a failing table is processed.
    """

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("CSV validation failed:\n" + "\n".join(self.errors))


class NoEntitiesError(CatalogUpdateError):
    """The table produced no entity keys to update."""


class NotFoundError(CatalogUpdateError):
    """No remote entity matches the handle."""


class RemoteMutationError(CatalogUpdateError):
    """The remote service accepted the call but reported user errors."""


class RemoteServiceError(CatalogUpdateError):
    """Transport or protocol failure talking to the remote service."""


class RateLimitedError(RemoteServiceError):
    """The remote service throttled the call; safe to retry."""


class JobNotFoundError(CatalogUpdateError):
    """The job id is unknown or the job was already reaped."""
