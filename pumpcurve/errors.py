"""
Error taxonomy for the bonding curve.

Rejections are ValidationError subclasses, raised synchronously before any
state is committed. RollbackFailed is the one error that reports state left
partially applied.
"""


class ValidationError(Exception):
    """Raised when validation fails."""

    default_message = "Validation failed"

    def __init__(self, message: str = None):
        super().__init__(message or self.default_message)


class InvalidAmount(ValidationError):
    default_message = "Invalid amount: must be greater than zero"


class InvalidReserves(ValidationError):
    default_message = "Invalid reserves: reserves must be greater than zero"


class MathOverflow(ValidationError):
    default_message = "Math overflow occurred"


class InsufficientLiquidity(ValidationError):
    default_message = "Insufficient liquidity in bonding curve"


class AlreadyCompleted(ValidationError):
    default_message = "Bonding curve already completed"


class NotCompleted(ValidationError):
    default_message = "Bonding curve not yet completed"


class SlippageExceeded(ValidationError):
    default_message = "Slippage tolerance exceeded"


class MinAmountNotMet(ValidationError):
    default_message = "Minimum base amount not met"


class Unauthorized(ValidationError):
    default_message = "Unauthorized: invalid authority"


class InsufficientCreationFee(ValidationError):
    default_message = "Token creation fee insufficient"


class InvalidMetadata(ValidationError):
    default_message = "Invalid token metadata"


class CurveNotFound(ValidationError):
    default_message = "No bonding curve for this mint"


class CurveAlreadyExists(ValidationError):
    default_message = "Bonding curve already exists for this mint"


class AlreadyInitialized(ValidationError):
    default_message = "Registry already initialized"


class NotInitialized(ValidationError):
    default_message = "Registry not initialized"


class InsufficientFunds(ValidationError):
    default_message = "Insufficient payment balance"


class RollbackFailed(Exception):
    """
    An operation failed and reversing its external effects failed too.

    Unlike a ValidationError, the effects named in `failures` may still be
    visible. The error that aborted the operation is chained as __cause__.
    """

    def __init__(self, operation: str, failures: list):
        self.operation = operation
        self.failures = failures
        descriptions = ", ".join(f"{description} ({error})" for description, error in failures)
        super().__init__(f"Rollback of {operation} incomplete: {descriptions}")
