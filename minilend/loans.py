"""
Loan Lifecycle Module

Loans move NONE -> ACTIVE -> {REPAID, DEFAULTED}. Each account (a wallet in
one pool) has at most one ACTIVE loan. Interest is never stored as a running
total that jobs must update: it is derived from the loan's last checkpoint by
the InterestEngine whenever the loan is read or changed.
"""

import uuid
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .currency import Money, Currency, round_down
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .accounts import AccountManager, account_id_for, normalize_wallet
from .credit import CreditLimitCalculator, CreditHistory, CreditEvent
from .interest import InterestEngine
from .locks import LockManager, account_lock_key, pool_lock_key, credit_lock_key
from .pools import PoolManager
from .errors import (
    LendingError, InvalidInput, CreditLimitExceeded, LoanAlreadyActive, NoActiveLoan,
    Overpayment, LedgerCorruption
)

logger = logging.getLogger("minilend.loans")


class LoanStatus(Enum):
    """Loan lifecycle states"""
    NONE = "none"            # Account has never borrowed
    ACTIVE = "active"
    REPAID = "repaid"        # Terminal
    DEFAULTED = "defaulted"  # Terminal


class ScheduleItemStatus(Enum):
    PENDING = "pending"
    PAID = "paid"
    DEFAULTED = "defaulted"


class ScheduleShape(Enum):
    """How the amount due is spread over the term"""
    BALLOON = "balloon"            # Everything due at the end of the term
    INSTALLMENTS = "installments"  # Equal amounts at even intervals


class PaymentSource(Enum):
    WALLET = "wallet"
    YIELD = "yield"  # Deposit yield swept into repayment


@dataclass
class RepaymentScheduleItem:
    """Single entry in a repayment schedule"""
    sequence: int
    due_date: datetime
    amount: Money
    status: ScheduleItemStatus = ScheduleItemStatus.PENDING
    settlement_ref: Optional[str] = None  # Payment that settled the item

    def __post_init__(self):
        if not self.amount.is_positive():
            raise InvalidInput(f"Schedule amount must be positive, got {self.amount.to_string()}")


@dataclass
class Loan(StorageRecord):
    """Loan drawn by one account from one pool"""
    account_id: str
    wallet_address: str
    pool_id: str
    principal: Money                 # Principal still owed
    interest_accrued: Money          # Interest owed as of accrued_through
    rate_bps: int                    # Fixed at origination
    originated_at: datetime
    term_days: int
    status: LoanStatus = LoanStatus.ACTIVE

    # Accrual checkpoint: origination or the latest repayment
    checkpoint_at: datetime = None
    checkpoint_interest: Money = None
    accrued_through: datetime = None

    principal_paid: Money = None
    interest_paid: Money = None
    original_principal: Money = None
    closed_at: Optional[datetime] = None
    schedule: List[RepaymentScheduleItem] = field(default_factory=list)

    def __post_init__(self):
        if self.term_days <= 0:
            raise InvalidInput(f"Term must be positive, got {self.term_days} days")
        if self.principal.is_negative() or self.interest_accrued.is_negative():
            raise InvalidInput("Loan balances cannot be negative")

        zero = Money.zero(self.principal.currency)
        if self.checkpoint_at is None:
            self.checkpoint_at = self.originated_at
        if self.checkpoint_interest is None:
            self.checkpoint_interest = self.interest_accrued
        if self.accrued_through is None:
            self.accrued_through = self.checkpoint_at
        if self.principal_paid is None:
            self.principal_paid = zero
        if self.interest_paid is None:
            self.interest_paid = zero
        if self.original_principal is None:
            self.original_principal = self.principal

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    @property
    def due_date(self) -> datetime:
        """Final due date of the loan"""
        return self.originated_at + timedelta(days=self.term_days)

    @property
    def balance(self) -> Money:
        """Principal plus interest as of accrued_through"""
        return self.principal + self.interest_accrued


@dataclass
class LoanPayment(StorageRecord):
    """Record of a repayment"""
    loan_id: str
    account_id: str
    amount: Money
    principal_amount: Money
    interest_amount: Money
    paid_at: datetime
    source: PaymentSource = PaymentSource.WALLET
    tx_hash: Optional[str] = None  # External ledger reference, once settled


class LoanManager:
    """
    Manages loans from issuance through repayment or default
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        locks: LockManager,
        account_manager: AccountManager,
        pool_manager: PoolManager,
        credit_calculator: CreditLimitCalculator,
        credit_history: CreditHistory,
        interest_engine: InterestEngine,
        schedule_shape: ScheduleShape = ScheduleShape.BALLOON,
        installment_count: int = 4,
        default_term_days: int = 30,
        grace_period_days: int = 10
    ):
        if installment_count < 1:
            raise InvalidInput("Installment count must be at least 1")
        if grace_period_days < 0:
            raise InvalidInput("Grace period cannot be negative")

        self.storage = storage
        self.audit_trail = audit_trail
        self.locks = locks
        self.account_manager = account_manager
        self.pool_manager = pool_manager
        self.credit_calculator = credit_calculator
        self.credit_history = credit_history
        self.interest_engine = interest_engine
        self.schedule_shape = schedule_shape
        self.installment_count = installment_count
        self.default_term_days = default_term_days
        self.grace_period_days = grace_period_days

        self.loans_table = "loans"
        self.payments_table = "loan_payments"

    def borrow(
        self,
        wallet_address: str,
        pool_id: str,
        amount: Money,
        term_days: Optional[int] = None,
        as_of: Optional[datetime] = None
    ) -> Loan:
        """
        Issue a loan from a pool against the wallet's collateral

        Args:
            wallet_address: Borrowing wallet
            pool_id: Pool to draw from
            amount: Principal
            term_days: Loan term (defaults to the configured term)
            as_of: Origination time (defaults to now)

        Returns:
            The new ACTIVE loan

        Raises:
            InvalidInput: Non-positive amount, or amount/term outside pool bounds
            LoanAlreadyActive: Account already has an active loan
            CreditLimitExceeded: Amount above the collateral-based limit
            PoolPaused, PoolInsufficientFunds: Pool cannot fund the loan
        """
        now = as_of or datetime.now(timezone.utc)
        term_days = term_days if term_days is not None else self.default_term_days

        if not amount.is_positive():
            raise InvalidInput(f"Loan amount must be positive, got {amount.to_string()}")

        pool = self.pool_manager.require_pool(pool_id)
        if amount.currency != pool.currency:
            raise InvalidInput(f"Pool {pool.name} lends {pool.currency.code}, not {amount.currency.code}")
        if term_days < pool.min_term_days or term_days > pool.max_term_days:
            raise InvalidInput(
                f"Term of {term_days} days is outside {pool.min_term_days}-{pool.max_term_days} days"
            )
        if pool.min_loan_amount and amount < pool.min_loan_amount:
            raise InvalidInput(f"Minimum loan amount is {pool.min_loan_amount.to_string()}")
        if pool.max_loan_amount and amount > pool.max_loan_amount:
            raise InvalidInput(f"Maximum loan amount is {pool.max_loan_amount.to_string()}")

        account_id = account_id_for(wallet_address, pool_id)

        with self.locks.hold(account_lock_key(account_id), pool_lock_key(pool_id)):
            if self.get_active_loan(wallet_address, pool_id):
                raise LoanAlreadyActive(f"Account {account_id} already has an active loan")

            account = self.account_manager.get_or_empty(wallet_address, pool, now)
            score = self.credit_history.score(wallet_address)
            limit = self.credit_calculator.credit_limit(account, score)
            if amount > limit:
                raise CreditLimitExceeded(
                    f"Requested {amount.to_string()} exceeds credit limit {limit.to_string()} "
                    f"(credit score {score})"
                )

            try:
                with self.storage.atomic():
                    self.pool_manager.reserve(pool_id, amount)
                    self.pool_manager.record_loan_issued(pool_id)

                    loan = Loan(
                        id=str(uuid.uuid4()),
                        created_at=now,
                        updated_at=now,
                        account_id=account_id,
                        wallet_address=normalize_wallet(wallet_address),
                        pool_id=pool_id,
                        principal=amount,
                        interest_accrued=Money.zero(amount.currency),
                        rate_bps=pool.interest_rate_bps,
                        originated_at=now,
                        term_days=term_days
                    )
                    loan.schedule = self._build_schedule(loan)
                    self._save_loan(loan)

                    self.storage.on_commit(lambda: self.audit_trail.log_event(
                        event_type=AuditEventType.LOAN_ISSUED,
                        entity_type="loan",
                        entity_id=loan.id,
                        metadata={
                            "pool_id": pool_id,
                            "principal": amount.to_decimal_string(),
                            "rate_bps": loan.rate_bps,
                            "term_days": term_days,
                            "due_date": loan.due_date,
                            "credit_score": score
                        },
                        actor=loan.wallet_address
                    ))
            except LedgerCorruption:
                self.pool_manager.audit_halt(pool_id)
                raise

        logger.info(
            f"Issued loan {loan.id} of {amount.to_string()} to {loan.wallet_address} "
            f"for {term_days} days at {loan.rate_bps} bps"
        )
        return loan

    def accrue(self, loan: Loan, as_of: datetime) -> Loan:
        """Loan with interest accrued through ``as_of``; nothing is saved"""
        return self.interest_engine.accrue(loan, as_of)

    def outstanding(self, loan: Loan, as_of: Optional[datetime] = None) -> Money:
        """Principal plus interest owed at ``as_of``"""
        if not loan.is_active:
            return Money.zero(loan.currency)
        return self.interest_engine.outstanding(loan, as_of or datetime.now(timezone.utc))

    def repay(
        self,
        wallet_address: str,
        pool_id: str,
        amount: Money,
        as_of: Optional[datetime] = None,
        source: PaymentSource = PaymentSource.WALLET
    ) -> Tuple[Loan, LoanPayment]:
        """
        Apply a repayment to the account's active loan

        Interest is paid before principal. The principal portion goes back to
        the pool's available funds; the interest portion is booked as pool
        interest earned. Paying a loan off moves the wallet's credit score,
        up when paid by the due date and down when late.

        Returns:
            (updated loan, payment record)

        Raises:
            InvalidInput: Non-positive amount or wrong currency
            NoActiveLoan: Account has no active loan
            Overpayment: Amount exceeds the outstanding balance
        """
        now = as_of or datetime.now(timezone.utc)

        if not amount.is_positive():
            raise InvalidInput(f"Repayment amount must be positive, got {amount.to_string()}")

        account_id = account_id_for(wallet_address, pool_id)

        with self.locks.hold(account_lock_key(account_id), pool_lock_key(pool_id),
                             credit_lock_key(normalize_wallet(wallet_address))):
            loan = self.get_active_loan(wallet_address, pool_id)
            if not loan:
                raise NoActiveLoan(f"Account {account_id} has no active loan")
            if amount.currency != loan.currency:
                raise InvalidInput(f"Loan is in {loan.currency.code}, not {amount.currency.code}")

            loan = self.accrue(loan, max(now, loan.accrued_through))
            owed = loan.balance
            if amount > owed:
                raise Overpayment(
                    f"Payment {amount.to_string()} exceeds outstanding balance {owed.to_string()}"
                )

            interest_part = amount if amount < loan.interest_accrued else loan.interest_accrued
            principal_part = amount - interest_part

            remaining_interest = loan.interest_accrued - interest_part
            updated = replace(
                loan,
                principal=loan.principal - principal_part,
                interest_accrued=remaining_interest,
                checkpoint_at=loan.accrued_through,
                checkpoint_interest=remaining_interest,
                principal_paid=loan.principal_paid + principal_part,
                interest_paid=loan.interest_paid + interest_part,
                updated_at=now
            )

            payment = LoanPayment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                account_id=account_id,
                amount=amount,
                principal_amount=principal_part,
                interest_amount=interest_part,
                paid_at=now,
                source=source
            )

            fully_repaid = updated.principal.is_zero() and updated.interest_accrued.is_zero()
            if fully_repaid:
                updated = replace(updated, status=LoanStatus.REPAID, closed_at=now)
            updated.schedule = self._settle_schedule(updated, payment.id, fully_repaid)

            try:
                with self.storage.atomic():
                    self._apply_repayment(loan, updated, payment, fully_repaid, now)
            except LedgerCorruption:
                self.pool_manager.audit_halt(loan.pool_id)
                raise

        logger.info(
            f"Loan {loan.id} payment {amount.to_string()} "
            f"(interest {interest_part.to_string()}, principal {principal_part.to_string()}), "
            f"status {updated.status.value}"
        )
        return updated, payment

    def _apply_repayment(self, loan: Loan, updated: Loan, payment: LoanPayment,
                         fully_repaid: bool, now: datetime) -> None:
        principal_part = payment.principal_amount
        interest_part = payment.interest_amount
        amount = payment.amount

        if principal_part.is_positive():
            self.pool_manager.release(loan.pool_id, principal_part)
        if interest_part.is_positive():
            self.pool_manager.record_interest(loan.pool_id, interest_part)
        if fully_repaid:
            self.pool_manager.record_loan_repaid(loan.pool_id)
            event = CreditEvent.LOAN_LATE if now > loan.due_date else CreditEvent.LOAN_REPAID
            self.credit_history.record(loan.wallet_address, event, now)

        self._save_payment(payment)
        self._save_loan(updated)

        self.storage.on_commit(lambda: self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_PAYMENT_MADE,
            entity_type="loan",
            entity_id=loan.id,
            metadata={
                "payment_id": payment.id,
                "amount": amount.to_decimal_string(),
                "principal_amount": principal_part.to_decimal_string(),
                "interest_amount": interest_part.to_decimal_string(),
                "remaining_balance": updated.balance.to_decimal_string(),
                "source": payment.source.value
            },
            actor=loan.wallet_address
        ))
        if fully_repaid:
            self.storage.on_commit(lambda: self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_REPAID,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "principal_paid": updated.principal_paid.to_decimal_string(),
                    "interest_paid": updated.interest_paid.to_decimal_string()
                },
                actor=loan.wallet_address
            ))

    def record_settlement(self, payment_id: str, tx_hash: str) -> LoanPayment:
        """Attach the external ledger transaction hash to a payment"""
        data = self.storage.load(self.payments_table, payment_id)
        if not data:
            raise InvalidInput(f"Payment {payment_id} not found")
        payment = replace(self._payment_from_dict(data), tx_hash=tx_hash,
                          updated_at=datetime.now(timezone.utc))
        self._save_payment(payment)
        return payment

    def mark_default(self, loan_id: str, as_of: Optional[datetime] = None) -> Loan:
        """
        Default a loan that is past its due date plus the grace period

        The whole principal is written off the pool as a realized loss and
        never returns to available funds. The borrower's collateral in the
        pool is seized up to the outstanding balance, pending schedule items
        become defaulted and the wallet's credit score drops. Loans
        that are not ACTIVE, or not yet past the grace period, are returned
        unchanged, so repeated calls are safe.
        """
        now = as_of or datetime.now(timezone.utc)

        loan = self.get_loan(loan_id)
        if not loan:
            raise InvalidInput(f"Loan {loan_id} not found")
        if not loan.is_active:
            return loan

        with self.locks.hold(account_lock_key(loan.account_id), pool_lock_key(loan.pool_id),
                             credit_lock_key(loan.wallet_address)):
            loan = self.get_loan(loan_id)
            if not loan.is_active or not self.is_past_grace(loan, now):
                return loan

            loan = self.accrue(loan, max(now, loan.accrued_through))
            if not loan.balance.is_positive():
                return loan

            pool = self.pool_manager.require_pool(loan.pool_id)
            account = self.account_manager.get_account(loan.wallet_address, loan.pool_id)
            collateral = account.collateral if account else Money.zero(loan.currency)

            seized = loan.balance if loan.balance < collateral else collateral

            schedule = [
                replace(item, status=ScheduleItemStatus.DEFAULTED)
                if item.status == ScheduleItemStatus.PENDING else item
                for item in loan.schedule
            ]
            updated = replace(
                loan,
                status=LoanStatus.DEFAULTED,
                closed_at=now,
                updated_at=now,
                schedule=schedule
            )

            try:
                with self.storage.atomic():
                    self.pool_manager.write_off(loan.pool_id, loan.principal)
                    if seized.is_positive():
                        self.account_manager.seize_collateral(
                            loan.wallet_address, pool, seized, now, loan.id
                        )
                    self.credit_history.record(loan.wallet_address, CreditEvent.LOAN_DEFAULTED, now)
                    self._save_loan(updated)
                    self.storage.on_commit(lambda: self.audit_trail.log_event(
                        event_type=AuditEventType.LOAN_DEFAULTED,
                        entity_type="loan",
                        entity_id=loan.id,
                        metadata={
                            "collateral_seized": seized.to_decimal_string(),
                            "principal_written_off": loan.principal.to_decimal_string(),
                            "interest_outstanding": loan.interest_accrued.to_decimal_string(),
                            "due_date": loan.due_date
                        },
                        actor=loan.wallet_address
                    ))
            except LedgerCorruption:
                self.pool_manager.audit_halt(loan.pool_id)
                raise

        logger.warning(
            f"Loan {loan.id} defaulted, {seized.to_string()} collateral seized, "
            f"{loan.principal.to_string()} principal written off"
        )
        return updated

    def process_defaults(self, as_of: Optional[datetime] = None) -> Dict[str, int]:
        """
        Default every active loan that is past its grace period

        A loan that cannot be defaulted (its pool is halted, say) is logged
        and counted in ``loans_failed``; the sweep carries on with the rest.
        """
        now = as_of or datetime.now(timezone.utc)
        results = {"loans_checked": 0, "loans_defaulted": 0, "loans_failed": 0}

        for data in self.storage.find(self.loans_table, {"status": LoanStatus.ACTIVE.value}):
            loan = self._loan_from_dict(data)
            results["loans_checked"] += 1
            if not self.is_past_grace(loan, now):
                continue
            try:
                defaulted = self.mark_default(loan.id, now)
            except LendingError as e:
                results["loans_failed"] += 1
                logger.warning(f"Could not default loan {loan.id} in pool {loan.pool_id}: {e}")
                continue
            if defaulted.status == LoanStatus.DEFAULTED:
                results["loans_defaulted"] += 1

        if results["loans_defaulted"] or results["loans_failed"]:
            logger.info(f"Default sweep: {results['loans_defaulted']} of "
                        f"{results['loans_checked']} active loans defaulted, "
                        f"{results['loans_failed']} failed")
        return results

    def is_past_grace(self, loan: Loan, as_of: datetime) -> bool:
        return as_of > loan.due_date + timedelta(days=self.grace_period_days)

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return self._loan_from_dict(data)
        return None

    def get_active_loan(self, wallet_address: str, pool_id: str) -> Optional[Loan]:
        account_id = account_id_for(wallet_address, pool_id)
        matches = self.storage.find(
            self.loans_table,
            {"account_id": account_id, "status": LoanStatus.ACTIVE.value}
        )
        if matches:
            return self._loan_from_dict(matches[0])
        return None

    def get_loan_status(self, wallet_address: str, pool_id: str) -> LoanStatus:
        """Status of the account's most recent loan, NONE if it never borrowed"""
        history = self.get_loan_history(wallet_address, pool_id)
        return history[-1].status if history else LoanStatus.NONE

    def get_loan_history(self, wallet_address: str, pool_id: str) -> List[Loan]:
        """All loans of an account, oldest first"""
        account_id = account_id_for(wallet_address, pool_id)
        loans = [self._loan_from_dict(data)
                 for data in self.storage.find(self.loans_table, {"account_id": account_id})]
        loans.sort(key=lambda loan: loan.originated_at)
        return loans

    def get_schedule(self, loan_id: str) -> List[RepaymentScheduleItem]:
        loan = self.get_loan(loan_id)
        if not loan:
            raise InvalidInput(f"Loan {loan_id} not found")
        return list(loan.schedule)

    def get_loan_payments(self, loan_id: str) -> List[LoanPayment]:
        payments = [self._payment_from_dict(data)
                    for data in self.storage.find(self.payments_table, {"loan_id": loan_id})]
        payments.sort(key=lambda payment: payment.paid_at)
        return payments

    def _build_schedule(self, loan: Loan) -> List[RepaymentScheduleItem]:
        """
        Spread principal plus projected term interest over the schedule

        Installments get equal shares rounded down; the rounding remainder
        goes on the last one.
        """
        projected = self.interest_engine.projected_interest(
            loan.principal, loan.rate_bps, loan.originated_at, loan.due_date
        )
        total = loan.principal + projected

        if self.schedule_shape == ScheduleShape.BALLOON:
            return [RepaymentScheduleItem(sequence=1, due_date=loan.due_date, amount=total)]

        count = min(self.installment_count, loan.term_days)
        share = round_down(total.amount / Decimal(count), loan.currency)
        if not share.is_positive():
            return [RepaymentScheduleItem(sequence=1, due_date=loan.due_date, amount=total)]

        items = []
        allocated = Money.zero(loan.currency)
        for number in range(1, count + 1):
            due = loan.originated_at + timedelta(days=loan.term_days) * number / count
            if number == count:
                amount = total - allocated
            else:
                amount = share
            allocated = allocated + amount
            items.append(RepaymentScheduleItem(sequence=number, due_date=due, amount=amount))
        return items

    def _settle_schedule(self, loan: Loan, payment_id: str,
                         fully_repaid: bool) -> List[RepaymentScheduleItem]:
        """Mark schedule items covered by everything paid so far"""
        paid_total = loan.principal_paid + loan.interest_paid
        covered = Money.zero(loan.currency)
        schedule = []
        for item in loan.schedule:
            covered = covered + item.amount
            if item.status == ScheduleItemStatus.PENDING and (fully_repaid or covered <= paid_total):
                item = replace(item, status=ScheduleItemStatus.PAID, settlement_ref=payment_id)
            schedule.append(item)
        return schedule

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))

    def _save_payment(self, payment: LoanPayment) -> None:
        self.storage.save(self.payments_table, payment.id, self._payment_to_dict(payment))

    def _loan_to_dict(self, loan: Loan) -> Dict:
        """Convert Loan to dictionary for storage"""
        return {
            'id': loan.id,
            'created_at': loan.created_at.isoformat(),
            'updated_at': loan.updated_at.isoformat(),
            'account_id': loan.account_id,
            'wallet_address': loan.wallet_address,
            'pool_id': loan.pool_id,
            'currency': loan.currency.code,
            'principal': str(loan.principal.amount),
            'interest_accrued': str(loan.interest_accrued.amount),
            'rate_bps': loan.rate_bps,
            'originated_at': loan.originated_at.isoformat(),
            'term_days': loan.term_days,
            'status': loan.status.value,
            'checkpoint_at': loan.checkpoint_at.isoformat(),
            'checkpoint_interest': str(loan.checkpoint_interest.amount),
            'accrued_through': loan.accrued_through.isoformat(),
            'principal_paid': str(loan.principal_paid.amount),
            'interest_paid': str(loan.interest_paid.amount),
            'original_principal': str(loan.original_principal.amount),
            'closed_at': loan.closed_at.isoformat() if loan.closed_at else None,
            'schedule': [
                {
                    'sequence': item.sequence,
                    'due_date': item.due_date.isoformat(),
                    'amount': str(item.amount.amount),
                    'status': item.status.value,
                    'settlement_ref': item.settlement_ref
                }
                for item in loan.schedule
            ]
        }

    def _loan_from_dict(self, data: Dict) -> Loan:
        """Convert dictionary to Loan"""
        currency = Currency.from_code(data['currency'])

        def get_money(key: str) -> Money:
            return Money(Decimal(data[key]), currency)

        return Loan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_id=data['account_id'],
            wallet_address=data['wallet_address'],
            pool_id=data['pool_id'],
            principal=get_money('principal'),
            interest_accrued=get_money('interest_accrued'),
            rate_bps=data['rate_bps'],
            originated_at=datetime.fromisoformat(data['originated_at']),
            term_days=data['term_days'],
            status=LoanStatus(data['status']),
            checkpoint_at=datetime.fromisoformat(data['checkpoint_at']),
            checkpoint_interest=get_money('checkpoint_interest'),
            accrued_through=datetime.fromisoformat(data['accrued_through']),
            principal_paid=get_money('principal_paid'),
            interest_paid=get_money('interest_paid'),
            original_principal=get_money('original_principal'),
            closed_at=datetime.fromisoformat(data['closed_at']) if data.get('closed_at') else None,
            schedule=[
                RepaymentScheduleItem(
                    sequence=item['sequence'],
                    due_date=datetime.fromisoformat(item['due_date']),
                    amount=Money(Decimal(item['amount']), currency),
                    status=ScheduleItemStatus(item['status']),
                    settlement_ref=item.get('settlement_ref')
                )
                for item in data.get('schedule', [])
            ]
        )

    def _payment_to_dict(self, payment: LoanPayment) -> Dict:
        """Convert LoanPayment to dictionary for storage"""
        return {
            'id': payment.id,
            'created_at': payment.created_at.isoformat(),
            'updated_at': payment.updated_at.isoformat(),
            'loan_id': payment.loan_id,
            'account_id': payment.account_id,
            'currency': payment.amount.currency.code,
            'amount': str(payment.amount.amount),
            'principal_amount': str(payment.principal_amount.amount),
            'interest_amount': str(payment.interest_amount.amount),
            'paid_at': payment.paid_at.isoformat(),
            'source': payment.source.value,
            'tx_hash': payment.tx_hash
        }

    def _payment_from_dict(self, data: Dict) -> LoanPayment:
        """Convert dictionary to LoanPayment"""
        currency = Currency.from_code(data['currency'])
        return LoanPayment(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            account_id=data['account_id'],
            amount=Money(Decimal(data['amount']), currency),
            principal_amount=Money(Decimal(data['principal_amount']), currency),
            interest_amount=Money(Decimal(data['interest_amount']), currency),
            paid_at=datetime.fromisoformat(data['paid_at']),
            source=PaymentSource(data['source']),
            tx_hash=data.get('tx_hash')
        )
