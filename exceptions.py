"""Exception hierarchy for the catalog and engagement services."""


class CatalogError(Exception):
    """Base exception for all catalog errors."""

    status_code = 500

    def __init__(self, message: str = "Internal Server Error"):
        super().__init__(message)
        self.message = message


class ValidationError(CatalogError):
    """Malformed or missing required input."""

    status_code = 400


class NotFoundError(CatalogError):
    """Referenced entity does not exist."""

    status_code = 404


class ConflictError(CatalogError):
    """Uniqueness or state conflict (duplicate ordinal, duplicate bookmark)."""

    status_code = 409


class AuthError(CatalogError):
    """Missing, invalid or expired credential."""

    status_code = 401


class ForbiddenError(CatalogError):
    """Authenticated but not allowed to perform the operation."""

    status_code = 403


class UpstreamError(CatalogError):
    """Object store or network failure."""

    status_code = 502


class UploadError(UpstreamError):
    """Image could not be stored."""
