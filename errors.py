"""Error taxonomy for vault operations.

Every failure raised across the access boundary is a VaultError with a short
machine-readable ``code``. The bot maps classes to user-facing replies.
"""


class VaultError(Exception):
    """Base class. ``retryable`` tells the caller whether trying again may help."""

    retryable = False
    default_code = "error"

    def __init__(self, code: str = "", message: str = ""):
        self.code = code or self.default_code
        self.message = message or self.code
        super().__init__(self.message)


class AccessDenied(VaultError):
    """Requester fails the authorization predicate, or the row does not exist.

    Both cases carry the same message.
    """

    default_code = "not_permitted"

    def __init__(self, code: str = "", message: str = ""):
        super().__init__(code, "Operation not permitted.")


class ConstraintViolation(VaultError):
    """Bad enum value, broken reference, duplicate unique field, empty required field."""

    default_code = "constraint"


class IllegalTransition(VaultError):
    """Transaction status change outside the lending table."""

    default_code = "illegal_transition"


class PreconditionFailed(VaultError):
    """Book is not in the state the operation requires (e.g. not available)."""

    default_code = "not_available"


class BackendUnavailable(VaultError):
    """Database busy/locked or unreachable. Safe to retry; the core never does."""

    retryable = True
    default_code = "unavailable"
