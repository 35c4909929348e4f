"""Exceptions shared across the ledger, token store and authorizer."""


class LicenseServiceError(Exception):
    """Base exception for license service errors."""

    pass


class InvalidClaimError(LicenseServiceError):
    """Raised when a purchase claim cannot be parsed or is structurally incomplete."""

    pass


class IntegrityError(LicenseServiceError):
    """A ledger or token-table inconsistency that needs operator attention.

    Never reported to the caller as a plain authorization denial.
    """

    pass
