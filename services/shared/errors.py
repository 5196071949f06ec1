"""Error taxonomy for the reconciliation service.

Each error carries the HTTP status the API layer reports for it. Expected
"not found" results on read paths are returned as ``None`` instead of raised;
these exceptions cover the conditions a caller has to act on.
"""


class ReconciliationServiceError(Exception):
    """Base class for service errors."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(ReconciliationServiceError):
    """Invoice id or matching key is absent."""

    status_code = 404


class ConflictError(ReconciliationServiceError):
    """Matching key collision at invoice creation."""

    status_code = 409


class InvalidStateError(ReconciliationServiceError):
    """Operation not allowed for the invoice's current status."""

    status_code = 409


class UpstreamUnavailableError(ReconciliationServiceError):
    """Ledger RPC or invoice store unreachable."""

    status_code = 503


class ConfigurationError(ReconciliationServiceError):
    """Required secret or endpoint configuration is missing."""

    status_code = 500
