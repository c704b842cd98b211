"""
MiniLend Lending Core

A wallet-gated micro-lending ledger: collateral deposits, pool-backed loans,
interest accrual and repayment with Decimal precision and a hash-chained
audit trail.
"""

__version__ = "1.0.0"
