"""
Interest Engine Module

Pure, deterministic interest calculations. Rates are basis points per annum
on an ACTUAL/365 day count measured in elapsed seconds. Nothing here touches
storage, so accrual can run lock-free against any consistent snapshot.
"""

from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING

from .currency import Money
from .errors import InvalidInput

if TYPE_CHECKING:
    from .loans import Loan
    from .accounts import Account


BPS_DENOMINATOR = Decimal('10000')
DAYS_PER_YEAR = Decimal('365')
SECONDS_PER_DAY = Decimal('86400')


class CompoundingMethod(Enum):
    """How owed interest grows over time"""
    SIMPLE = "simple"  # Interest on principal only
    DAILY = "daily"    # Compounded once per elapsed day


def bps_to_rate(rate_bps: int) -> Decimal:
    """Convert basis points to a decimal fraction (1000 -> 0.1)"""
    if rate_bps < 0:
        raise InvalidInput(f"Interest rate cannot be negative: {rate_bps} bps")
    return Decimal(rate_bps) / BPS_DENOMINATOR


def elapsed_days(start: datetime, end: datetime) -> Decimal:
    """Exact elapsed days between two instants, never negative"""
    delta = end - start
    seconds = (Decimal(delta.days) * SECONDS_PER_DAY
               + Decimal(delta.seconds)
               + Decimal(delta.microseconds) / Decimal('1000000'))
    if seconds <= 0:
        return Decimal('0')
    return seconds / SECONDS_PER_DAY


def interest_for_period(
    principal: Money,
    rate_bps: int,
    start: datetime,
    end: datetime,
    compounding: CompoundingMethod = CompoundingMethod.SIMPLE
) -> Money:
    """
    Interest owed on a principal over [start, end]

    Simple:  principal * rate * days / 365
    Daily:   principal * ((1 + rate/365) ** whole_days * (1 + rate/365 * fraction) - 1)

    The result is rounded half-up to the currency minor unit.
    """
    days = elapsed_days(start, end)
    if days == 0 or principal.is_zero() or rate_bps == 0:
        return Money.zero(principal.currency)

    rate = bps_to_rate(rate_bps)

    if compounding == CompoundingMethod.SIMPLE:
        amount = principal.amount * rate * days / DAYS_PER_YEAR
    else:
        daily_rate = rate / DAYS_PER_YEAR
        whole_days = int(days)
        fraction = days - Decimal(whole_days)
        growth = (Decimal('1') + daily_rate) ** whole_days * (Decimal('1') + daily_rate * fraction)
        amount = principal.amount * (growth - Decimal('1'))

    return Money(amount, principal.currency)


class InterestEngine:
    """
    Applies interest to loans and deposits.

    Every method is a pure function of its arguments: the same loan and the
    same ``as_of`` always give the same result.
    """

    def __init__(self, compounding: CompoundingMethod = CompoundingMethod.SIMPLE):
        self.compounding = compounding

    def accrue(self, loan: 'Loan', as_of: datetime) -> 'Loan':
        """
        Return a copy of the loan with interest accrued through ``as_of``

        Interest is measured from the loan's last checkpoint (origination or
        the latest repayment), so re-running with the same ``as_of`` is a
        no-op and a later ``as_of`` never lowers interest_accrued. Inactive
        loans are returned unchanged.
        """
        if not loan.is_active:
            return loan
        if as_of <= loan.accrued_through:
            return loan

        period = interest_for_period(
            loan.principal, loan.rate_bps, loan.checkpoint_at, as_of, self.compounding
        )
        accrued = loan.checkpoint_interest + period
        if accrued < loan.interest_accrued:
            accrued = loan.interest_accrued

        return replace(loan, interest_accrued=accrued, accrued_through=as_of)

    def outstanding(self, loan: 'Loan', as_of: datetime) -> Money:
        """Principal plus interest owed at ``as_of``"""
        accrued = self.accrue(loan, as_of)
        return accrued.principal + accrued.interest_accrued

    def projected_interest(self, principal: Money, rate_bps: int,
                           start: datetime, end: datetime) -> Money:
        """Interest a principal would accrue untouched over a whole term"""
        return interest_for_period(principal, rate_bps, start, end, self.compounding)

    def deposit_yield(self, account: 'Account', rate_bps: int, as_of: datetime) -> Money:
        """Gross yield earned on an account's collateral up to ``as_of``"""
        if as_of <= account.yield_checkpoint_at:
            return account.yield_accrued
        # Deposit yield is always simple interest on the idle balance
        earned = interest_for_period(
            account.collateral, rate_bps, account.yield_checkpoint_at, as_of,
            CompoundingMethod.SIMPLE
        )
        return account.yield_accrued + earned
