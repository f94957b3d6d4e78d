"""Error taxonomy shared by the services and the HTTP layer."""

from __future__ import annotations


class ChargingError(Exception):
    """Base class for every error the core surfaces to callers."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ChargingError):
    status_code = 400


class NotFoundError(ChargingError):
    status_code = 404


class ConflictError(ChargingError):
    status_code = 409


class DuplicateTransactionError(ConflictError):
    pass


class InsufficientFundsError(ChargingError):
    status_code = 402


class UpstreamUnavailable(ChargingError):
    """The device or its command channel did not accept a command."""

    status_code = 502


class ResolutionFailure(ChargingError):
    """The protocol transaction id of a session could not be determined."""

    status_code = 404
