# ===============================================================
# errors.py: application error hierarchy
# ===============================================================


class AppError(Exception):
    """Base error. `status_code` is what the HTTP layer answers with."""

    status_code = 500

    def __init__(self, message: str = "Something went wrong"):
        super().__init__(message)
        self.message = message


class BusinessError(AppError):
    """Validation / state error. Raised before any mutation is attempted."""

    status_code = 400


class InsufficientBalanceError(BusinessError):
    pass


class NotFoundError(AppError):
    status_code = 404


class LedgerConsistencyError(AppError):
    """balanceAfter did not match balanceBefore ± amount. Aborts the transaction."""

    status_code = 500
