"""
Lending Error Taxonomy

Every failure the core reports is a LendingError subclass. User-actionable
failures carry a stable ``code``; ``retryable`` marks failures the caller
may simply try again.
"""


class LendingError(Exception):
    """Base class for all lending core failures"""
    code = "lending_error"
    retryable = False


class InvalidInput(LendingError, ValueError):
    """Malformed or out-of-range argument"""
    code = "invalid_input"


class CreditLimitExceeded(LendingError):
    """Requested amount is above the account's credit limit"""
    code = "credit_limit_exceeded"


class PoolInsufficientFunds(LendingError):
    """Pool does not have enough available funds"""
    code = "pool_insufficient_funds"


class PoolPaused(LendingError):
    """Pool is administratively paused"""
    code = "pool_paused"


class LoanAlreadyActive(LendingError):
    """Account already has an active loan"""
    code = "loan_already_active"


class NoActiveLoan(LendingError):
    """Operation requires an active loan and there is none"""
    code = "no_active_loan"


class Overpayment(LendingError):
    """Repayment is larger than the outstanding balance"""
    code = "overpayment"


class LockTimeout(LendingError):
    """A lock could not be acquired in time"""
    code = "lock_timeout"
    retryable = True


class GatewayError(LendingError):
    """The external ledger rejected or never acknowledged a submission"""
    code = "gateway_error"
    retryable = True


class LedgerCorruption(LendingError):
    """
    Consistency check failed. Fatal: the affected pool stops accepting
    mutations until an operator acknowledges the incident.
    """
    code = "ledger_corruption"
