class LedgerServiceError(Exception):
    pass


class Unauthorized(LedgerServiceError):
    pass


class NotFound(LedgerServiceError):
    pass


class PreconditionFailed(LedgerServiceError):
    pass


class AbortedTransaction(LedgerServiceError):
    pass


class InfrastructureFailure(LedgerServiceError):
    """Raised by a document store for errors unrelated to business rules."""
    pass
