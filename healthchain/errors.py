"""
Error taxonomy for the HealthChain engine.

Every failure surfaced by the registry, the grant engine, the audit log, the
cipher and the content store is one of the classes below. ``retryable`` tells
callers whether the operation may be re-attempted with backoff; everything
else is terminal and must be reported immediately.
"""

TERMINAL = "terminal"
RETRY = "retry"


class HealthChainError(Exception):
    """Base class for all engine errors"""

    retryable = False
    code = "error"

    def __init__(self, message=None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    @property
    def classification(self):
        return RETRY if self.retryable else TERMINAL

    def to_dict(self):
        return {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "classification": self.classification,
        }


class ValidationError(HealthChainError):
    """Malformed input; the caller's fault"""

    code = "validation_error"


class InvalidDuration(ValidationError):
    """Grant duration not positive, above the maximum, or not an allowed option"""

    code = "invalid_duration"


class Forbidden(HealthChainError):
    """The caller is not allowed to perform the operation"""

    code = "forbidden"


class SelfGrant(Forbidden):
    """A principal asked for access to its own records"""

    code = "self_grant"


class Conflict(HealthChainError):
    """The operation contradicts the current ledger state"""

    code = "conflict"


class NotFoundError(HealthChainError):
    """Referenced entity is absent or not in the expected state"""

    code = "not_found"


class DecryptionError(HealthChainError):
    """Wrong key or corrupt ciphertext"""

    code = "decryption_error"

    def __init__(self, message=None):
        # One message for every cause so callers cannot tell them apart
        super().__init__("Failed to decrypt data")


class UnavailableError(HealthChainError):
    """Transient infrastructure failure; safe to retry with backoff"""

    retryable = True
    code = "unavailable"


class LedgerRejected(HealthChainError):
    """The ledger reverted a transaction for a reason outside this taxonomy"""

    code = "ledger_rejected"


# Revert reasons emitted by the contract and the in-memory ledger
ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (
        ValidationError,
        InvalidDuration,
        Forbidden,
        SelfGrant,
        Conflict,
        NotFoundError,
        UnavailableError,
        LedgerRejected,
    )
}


def error_from_reason(reason):
    """
    Translate a ``code: message`` revert reason into a taxonomy error.

    A revert is a deterministic rejection, so reasons that carry no known
    code map to the terminal LedgerRejected rather than UnavailableError.
    """
    if not reason:
        return LedgerRejected("Transaction reverted without a reason")
    text = str(reason)
    if text.startswith("execution reverted"):
        text = text[len("execution reverted"):].lstrip(" :")
    code, _, message = text.partition(":")
    cls = ERRORS_BY_CODE.get(code.strip())
    if cls is None:
        return LedgerRejected(f"Ledger rejected transaction: {reason}")
    return cls(message.strip() or None)
