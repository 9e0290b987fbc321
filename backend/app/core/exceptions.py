class EscrowError(Exception):
    """Base exception for the escrow payment backbone.

    Every subclass carries a stable ``code`` returned to API callers and a
    ``retryable`` flag read by the job worker's attempt bookkeeping.
    """

    code = "INTERNAL_ERROR"
    status_code = 500
    retryable = True

    def __init__(self, message: str | None = None):
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)


class InvalidSignatureError(EscrowError):
    """Webhook signature could not be verified."""

    code = "INVALID_SIGNATURE"
    status_code = 400
    retryable = False

    def __init__(self, message: str | None = None, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


class DependencyUnresolvedError(EscrowError):
    """Event depends on another event that has not been processed yet."""

    code = "DEPENDENCY_UNRESOLVED"
    status_code = 409

    def __init__(self, event_id: str, depends_on: str | None):
        self.event_id = event_id
        self.depends_on = depends_on
        super().__init__(f"Event {event_id} is waiting on unprocessed event {depends_on}")


class UnknownJobTypeError(EscrowError):
    """Job carries a type no handler exists for."""

    code = "UNKNOWN_JOB_TYPE"
    status_code = 422
    retryable = False

    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(f"Unknown job type: {job_type}")


class ExternalCallFailedError(EscrowError):
    """Call to the payment processor failed."""

    code = "EXTERNAL_CALL_FAILED"
    status_code = 502

    def __init__(
        self,
        operation: str,
        message: str,
        error_code: str | None = None,
        retryable: bool = True,
    ):
        self.operation = operation
        self.error_code = error_code
        self.retryable = retryable
        super().__init__(f"{operation} failed: {message}")


class InvalidStateTransitionError(EscrowError):
    """Requested state transition is not allowed from the current state."""

    code = "INVALID_STATE_TRANSITION"
    status_code = 409
    retryable = False

    def __init__(self, current: str, requested: str, reason: str | None = None):
        self.current = str(getattr(current, "value", current))
        self.requested = str(getattr(requested, "value", requested))
        self.reason = reason
        message = f"Cannot transition from '{self.current}' to '{self.requested}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class InsufficientFundsError(EscrowError):
    """Available balance does not cover the requested amount."""

    code = "INSUFFICIENT_FUNDS"
    status_code = 422
    retryable = False

    def __init__(self, available, requested):
        self.available = available
        self.requested = requested
        super().__init__(f"Insufficient balance: available {available}, requested {requested}")


class LedgerImbalanceError(EscrowError):
    """Debits and credits of a transaction group do not match."""

    code = "LEDGER_IMBALANCE"
    status_code = 500
    retryable = False

    def __init__(self, transaction_group_id, debits, credits):
        self.transaction_group_id = transaction_group_id
        self.debits = debits
        self.credits = credits
        super().__init__(
            f"Ledger group {transaction_group_id} unbalanced: debits {debits} != credits {credits}"
        )


class NotFoundError(EscrowError):
    """Requested record does not exist."""

    code = "NOT_FOUND"
    status_code = 404
    retryable = False


class PermissionDeniedError(EscrowError):
    """Caller is not allowed to perform this action."""

    code = "FORBIDDEN"
    status_code = 403
    retryable = False


class BusinessRuleError(EscrowError):
    """Request violates a business rule."""

    code = "VALIDATION_ERROR"
    status_code = 422
    retryable = False
