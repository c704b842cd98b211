"""
Pydantic schemas for service responses

Field names are snake_case in Python and camelCase when dumped with
``by_alias=True``. Monetary values are lossless decimal strings.
"""

from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field

from .currency import Money
from .pools import Pool, PoolStatusSummary
from .loans import Loan, RepaymentScheduleItem


def money_str(money: Optional[Money]) -> Optional[str]:
    return money.to_decimal_string() if money is not None else None


class ResponseModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# Transaction responses
class DepositDetails(ResponseModel):
    token: str
    amount: str = Field(..., description="Decimal amount as string")
    depositor: str


class WithdrawDetails(ResponseModel):
    token: str
    amount: str = Field(..., description="Decimal amount as string")
    withdrawer: str


class LoanDetails(ResponseModel):
    token: str
    amount: str = Field(..., description="Decimal amount as string")
    borrower: str


class DepositResponse(ResponseModel):
    transaction: str = Field(..., description="External ledger transaction hash")
    details: DepositDetails


class WithdrawResponse(ResponseModel):
    transaction: str
    details: WithdrawDetails


class LoanTransactionResponse(ResponseModel):
    transaction: str
    details: LoanDetails


# Account queries
class YieldsResponse(ResponseModel):
    gross_yield: str = Field(..., alias="grossYield")
    net_yield: str = Field(..., alias="netYield")
    used_for_loan_repayment: str = Field(..., alias="usedForLoanRepayment")


class WithdrawableResponse(ResponseModel):
    withdrawable: str
    used_for_loan: str = Field(..., alias="usedForLoan")


class CreditScoreResponse(ResponseModel):
    wallet: str
    score: int
    loans_repaid: int = Field(..., alias="loansRepaid")
    late_repayments: int = Field(..., alias="lateRepayments")
    defaults: int


# Pool schemas
class PoolStatusResponse(ResponseModel):
    total_pools: int = Field(..., alias="totalPools")
    active_pools: int = Field(..., alias="activePools")
    total_funds: str = Field(..., alias="totalFunds")
    available_funds: str = Field(..., alias="availableFunds")
    total_loans_issued: int = Field(..., alias="totalLoansIssued")
    total_loans_repaid: int = Field(..., alias="totalLoansRepaid")
    total_loans_defaulted: int = Field(..., alias="totalLoansDefaulted")
    total_interest_earned: str = Field(..., alias="totalInterestEarned")

    @classmethod
    def from_summary(cls, summary: PoolStatusSummary) -> 'PoolStatusResponse':
        return cls(
            total_pools=summary.total_pools,
            active_pools=summary.active_pools,
            total_funds=str(summary.total_funds),
            available_funds=str(summary.available_funds),
            total_loans_issued=summary.total_loans_issued,
            total_loans_repaid=summary.total_loans_repaid,
            total_loans_defaulted=summary.total_loans_defaulted,
            total_interest_earned=str(summary.total_interest_earned)
        )


class PoolModel(ResponseModel):
    id: str
    name: str
    token: str
    currency: str
    total_funds: str = Field(..., alias="totalFunds")
    available_funds: str = Field(..., alias="availableFunds")
    interest_rate: int = Field(..., alias="interestRate", description="Basis points per annum")
    deposit_rate: int = Field(..., alias="depositRate", description="Basis points per annum")
    status: str
    total_loans_issued: int = Field(..., alias="totalLoansIssued")
    total_loans_repaid: int = Field(..., alias="totalLoansRepaid")
    total_loans_defaulted: int = Field(..., alias="totalLoansDefaulted")
    total_interest_earned: str = Field(..., alias="totalInterestEarned")
    min_loan_amount: Optional[str] = Field(None, alias="minLoanAmount")
    max_loan_amount: Optional[str] = Field(None, alias="maxLoanAmount")
    min_term_days: int = Field(..., alias="minTermDays")
    max_term_days: int = Field(..., alias="maxTermDays")
    risk_level: str = Field(..., alias="riskLevel")
    region: str = ""

    @classmethod
    def from_pool(cls, pool: Pool) -> 'PoolModel':
        return cls(
            id=pool.id,
            name=pool.name,
            token=pool.token,
            currency=pool.currency.code,
            total_funds=money_str(pool.total_funds),
            available_funds=money_str(pool.available_funds),
            interest_rate=pool.interest_rate_bps,
            deposit_rate=pool.deposit_rate_bps,
            status=pool.status.value,
            total_loans_issued=pool.total_loans_issued,
            total_loans_repaid=pool.total_loans_repaid,
            total_loans_defaulted=pool.total_loans_defaulted,
            total_interest_earned=money_str(pool.total_interest_earned),
            min_loan_amount=money_str(pool.min_loan_amount),
            max_loan_amount=money_str(pool.max_loan_amount),
            min_term_days=pool.min_term_days,
            max_term_days=pool.max_term_days,
            risk_level=pool.risk_level.value,
            region=pool.region
        )


# Loan schemas
class ScheduleItemModel(ResponseModel):
    due_date: str = Field(..., alias="dueDate")
    amount: str
    status: str
    settlement_ref: Optional[str] = Field(None, alias="settlementRef")

    @classmethod
    def from_item(cls, item: RepaymentScheduleItem) -> 'ScheduleItemModel':
        return cls(
            due_date=item.due_date.isoformat(),
            amount=money_str(item.amount),
            status=item.status.value,
            settlement_ref=item.settlement_ref
        )


class LoanModel(ResponseModel):
    id: str
    pool_id: str = Field(..., alias="poolId")
    status: str
    principal: str
    interest_accrued: str = Field(..., alias="interestAccrued")
    outstanding: str
    interest_rate: int = Field(..., alias="interestRate")
    originated_at: str = Field(..., alias="originatedAt")
    due_date: str = Field(..., alias="dueDate")
    term_days: int = Field(..., alias="termDays")
    schedule: List[ScheduleItemModel] = []

    @classmethod
    def from_loan(cls, loan: Loan, outstanding: Money) -> 'LoanModel':
        return cls(
            id=loan.id,
            pool_id=loan.pool_id,
            status=loan.status.value,
            principal=money_str(loan.principal),
            interest_accrued=money_str(loan.interest_accrued),
            outstanding=money_str(outstanding),
            interest_rate=loan.rate_bps,
            originated_at=loan.originated_at.isoformat(),
            due_date=loan.due_date.isoformat(),
            term_days=loan.term_days,
            schedule=[ScheduleItemModel.from_item(item) for item in loan.schedule]
        )
