"""
Test suite for loans module

Tests loan issuance against collateral, interest-first repayment, schedules,
default handling with collateral seizure, credit score movements and the
pool bookkeeping each step implies. All financial math must be precise.
"""

import pytest
from dataclasses import replace
from decimal import Decimal
from datetime import datetime, timedelta, timezone

from minilend.currency import Money, Currency
from minilend.storage import InMemoryStorage
from minilend.audit import AuditTrail, AuditEventType
from minilend.locks import LockManager
from minilend.interest import InterestEngine
from minilend.credit import CreditLimitCalculator, CreditHistory
from minilend.accounts import AccountManager
from minilend.pools import PoolManager, PoolStatus
from minilend.loans import (
    LoanManager, LoanStatus, ScheduleShape, ScheduleItemStatus, PaymentSource
)
from minilend.errors import (
    InvalidInput, CreditLimitExceeded, PoolInsufficientFunds, PoolPaused,
    LoanAlreadyActive, NoActiveLoan, Overpayment, LedgerCorruption
)

WALLET = "0x1111111111111111111111111111111111111111"
OTHER_WALLET = "0x2222222222222222222222222222222222222222"
TOKEN = "0x765de816845861e75a25fca122bb6898b8b1282a"
SECOND_TOKEN = "0x874069fa1eb16d44d622f2e0ca25eea172369bc1"
START = datetime(2024, 1, 1, tzinfo=timezone.utc)


def cusd(value: str) -> Money:
    return Money(Decimal(value), Currency.CUSD)


class LoanTestBase:

    schedule_shape = ScheduleShape.BALLOON
    initial_score = 600

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.locks = LockManager(timeout_seconds=1)
        engine = InterestEngine()
        self.accounts = AccountManager(self.storage, self.audit, self.locks, engine)
        self.pools = PoolManager(self.storage, self.audit, self.locks)
        self.credit = CreditHistory(self.storage, self.audit, self.locks,
                                    initial_score=self.initial_score)
        self.loans = LoanManager(
            self.storage, self.audit, self.locks, self.accounts, self.pools,
            CreditLimitCalculator(), self.credit, engine,
            schedule_shape=self.schedule_shape
        )
        self.pool = self.pools.create_pool(
            name="Celo Dollar Pool",
            token=TOKEN,
            currency=Currency.CUSD,
            total_funds=cusd("1000000"),
            interest_rate_bps=1000
        )
        self.accounts.deposit(WALLET, self.pool, cusd("2000"), as_of=START)

    def pool_now(self):
        return self.pools.get_pool(self.pool.id)

    def corrupt_pool(self, pool_id):
        """Store a pool whose available funds already equal its total funds"""
        pool = self.pools.get_pool(pool_id)
        self.pools._save_pool(replace(pool, available_funds=pool.total_funds))


class TestBorrow(LoanTestBase):
    """Test loan issuance"""

    def test_borrow_reserves_pool_funds(self):
        loan = self.loans.borrow(WALLET, self.pool.id, cusd("500"), as_of=START)

        assert loan.status == LoanStatus.ACTIVE
        assert loan.principal == cusd("500")
        assert loan.interest_accrued.is_zero()
        assert loan.rate_bps == 1000
        assert loan.term_days == 30
        assert loan.due_date == START + timedelta(days=30)

        pool = self.pool_now()
        assert pool.available_funds == cusd("999500")
        assert pool.total_loans_issued == 1
        assert self.audit.get_events_for_entity("loan", loan.id)[0].event_type == AuditEventType.LOAN_ISSUED

    def test_borrow_up_to_credit_limit(self):
        loan = self.loans.borrow(WALLET, self.pool.id, cusd("1000"), as_of=START)
        assert loan.principal == cusd("1000")

    def test_credit_limit_exceeded(self):
        with pytest.raises(CreditLimitExceeded):
            self.loans.borrow(WALLET, self.pool.id, cusd("1000.01"), as_of=START)
        assert self.pool_now().available_funds == cusd("1000000")
        assert self.loans.get_active_loan(WALLET, self.pool.id) is None

    def test_no_collateral_means_no_credit(self):
        with pytest.raises(CreditLimitExceeded):
            self.loans.borrow(OTHER_WALLET, self.pool.id, cusd("1"), as_of=START)

    def test_one_active_loan_per_account(self):
        self.loans.borrow(WALLET, self.pool.id, cusd("100"), as_of=START)
        with pytest.raises(LoanAlreadyActive):
            self.loans.borrow(WALLET, self.pool.id, cusd("100"), as_of=START)
        assert self.pool_now().total_loans_issued == 1

    @pytest.mark.parametrize("amount", ["0", "-10"])
    def test_non_positive_amount(self, amount):
        with pytest.raises(InvalidInput):
            self.loans.borrow(WALLET, self.pool.id, cusd(amount), as_of=START)

    def test_paused_pool(self):
        self.pools.pause_pool(self.pool.id)
        with pytest.raises(PoolPaused):
            self.loans.borrow(WALLET, self.pool.id, cusd("100"), as_of=START)
        assert self.loans.get_active_loan(WALLET, self.pool.id) is None

    def test_pool_without_enough_funds(self):
        self.pools.defund_pool(self.pool.id, cusd("999950"))
        with pytest.raises(PoolInsufficientFunds):
            self.loans.borrow(WALLET, self.pool.id, cusd("60"), as_of=START)

    def test_pool_loan_and_term_bounds(self):
        bounded = self.pools.create_pool(
            "Bounded", "0xbounded", Currency.CUSD, cusd("10000"), 1200,
            min_loan_amount=cusd("50"), max_loan_amount=cusd("500"),
            min_term_days=7, max_term_days=60
        )
        self.accounts.deposit(WALLET, bounded, cusd("1000"), as_of=START)
        with pytest.raises(InvalidInput):
            self.loans.borrow(WALLET, bounded.id, cusd("49.99"), as_of=START)
        with pytest.raises(InvalidInput):
            self.loans.borrow(WALLET, bounded.id, cusd("500.01"), as_of=START)
        with pytest.raises(InvalidInput):
            self.loans.borrow(WALLET, bounded.id, cusd("100"), term_days=6, as_of=START)
        with pytest.raises(InvalidInput):
            self.loans.borrow(WALLET, bounded.id, cusd("100"), term_days=61, as_of=START)

        loan = self.loans.borrow(WALLET, bounded.id, cusd("100"), term_days=14, as_of=START)
        assert loan.term_days == 14

    def test_pool_currency_must_match(self):
        with pytest.raises(InvalidInput):
            self.loans.borrow(WALLET, self.pool.id, Money(Decimal('10'), Currency.CEUR), as_of=START)


class TestRepay(LoanTestBase):
    """Test interest-first repayment"""

    def setup_method(self):
        super().setup_method()
        self.loan = self.loans.borrow(WALLET, self.pool.id, cusd("500"), as_of=START)
        self.due = START + timedelta(days=30)

    def test_full_repayment_after_term(self):
        """500 at 10% for 30 days is 504.11 and returns the pool to full"""
        loan, payment = self.loans.repay(WALLET, self.pool.id, cusd("504.11"), as_of=self.due)

        assert loan.status == LoanStatus.REPAID
        assert loan.principal.is_zero()
        assert loan.interest_accrued.is_zero()
        assert payment.interest_amount == cusd("4.11")
        assert payment.principal_amount == cusd("500")

        pool = self.pool_now()
        assert pool.available_funds == cusd("1000000")
        assert pool.total_interest_earned == cusd("4.11")
        assert pool.total_loans_repaid == 1
        assert self.loans.get_active_loan(WALLET, self.pool.id) is None
        assert self.audit.get_events_by_type(AuditEventType.LOAN_REPAID)

    def test_interest_paid_before_principal(self):
        loan, payment = self.loans.repay(WALLET, self.pool.id, cusd("2.00"), as_of=self.due)

        assert payment.interest_amount == cusd("2.00")
        assert payment.principal_amount.is_zero()
        assert loan.interest_accrued == cusd("2.11")
        assert loan.principal == cusd("500")
        assert loan.status == LoanStatus.ACTIVE
        assert self.pool_now().available_funds == cusd("999500")

    def test_partial_principal_released_to_pool(self):
        loan, payment = self.loans.repay(WALLET, self.pool.id, cusd("104.11"), as_of=self.due)

        assert payment.principal_amount == cusd("100")
        assert loan.principal == cusd("400")
        assert self.pool_now().available_funds == cusd("999600")

        # Interest keeps accruing on the reduced principal from the repayment
        later = self.loans.accrue(loan, self.due + timedelta(days=365))
        assert later.interest_accrued == cusd("40.00")

    def test_overpayment_rejected(self):
        with pytest.raises(Overpayment):
            self.loans.repay(WALLET, self.pool.id, cusd("504.12"), as_of=self.due)

        loan = self.loans.get_active_loan(WALLET, self.pool.id)
        assert loan.principal == cusd("500")
        assert self.pool_now().available_funds == cusd("999500")

    def test_no_active_loan(self):
        with pytest.raises(NoActiveLoan):
            self.loans.repay(OTHER_WALLET, self.pool.id, cusd("1"), as_of=self.due)

        self.loans.repay(WALLET, self.pool.id, cusd("504.11"), as_of=self.due)
        with pytest.raises(NoActiveLoan):
            self.loans.repay(WALLET, self.pool.id, cusd("1"), as_of=self.due)

    def test_non_positive_repayment(self):
        with pytest.raises(InvalidInput):
            self.loans.repay(WALLET, self.pool.id, cusd("0"), as_of=self.due)

    def test_early_repayment_owes_less_interest(self):
        loan, _ = self.loans.repay(WALLET, self.pool.id, cusd("500"), as_of=START)
        assert loan.status == LoanStatus.REPAID

    def test_repaid_loan_is_terminal(self):
        self.loans.repay(WALLET, self.pool.id, cusd("504.11"), as_of=self.due)
        loan = self.loans.get_loan(self.loan.id)
        assert self.loans.accrue(loan, self.due + timedelta(days=90)) is loan
        assert self.loans.mark_default(loan.id, self.due + timedelta(days=90)).status == LoanStatus.REPAID

    def test_payments_recorded(self):
        self.loans.repay(WALLET, self.pool.id, cusd("4.11"), as_of=self.due)
        self.loans.repay(WALLET, self.pool.id, cusd("500"), as_of=self.due, source=PaymentSource.YIELD)

        payments = self.loans.get_loan_payments(self.loan.id)
        assert [p.amount for p in payments] == [cusd("4.11"), cusd("500")]
        assert payments[1].source == PaymentSource.YIELD

        settled = self.loans.record_settlement(payments[0].id, "0xfeed")
        assert settled.tx_hash == "0xfeed"

    def test_history_and_status(self):
        assert self.loans.get_loan_status(WALLET, self.pool.id) == LoanStatus.ACTIVE
        assert self.loans.get_loan_status(OTHER_WALLET, self.pool.id) == LoanStatus.NONE

        self.loans.repay(WALLET, self.pool.id, cusd("504.11"), as_of=self.due)
        second = self.loans.borrow(WALLET, self.pool.id, cusd("50"), as_of=self.due)

        history = self.loans.get_loan_history(WALLET, self.pool.id)
        assert [loan.id for loan in history] == [self.loan.id, second.id]
        assert self.loans.get_loan_status(WALLET, self.pool.id) == LoanStatus.ACTIVE


class TestSchedules(LoanTestBase):
    """Test balloon schedules"""

    def test_balloon_schedule(self):
        loan = self.loans.borrow(WALLET, self.pool.id, cusd("500"), as_of=START)

        assert len(loan.schedule) == 1
        item = loan.schedule[0]
        assert item.due_date == START + timedelta(days=30)
        assert item.amount == cusd("504.11")
        assert item.status == ScheduleItemStatus.PENDING

    def test_full_repayment_settles_schedule(self):
        loan = self.loans.borrow(WALLET, self.pool.id, cusd("500"), as_of=START)
        loan, payment = self.loans.repay(WALLET, self.pool.id, cusd("504.11"), as_of=START + timedelta(days=30))

        assert loan.schedule[0].status == ScheduleItemStatus.PAID
        assert loan.schedule[0].settlement_ref == payment.id
        assert self.loans.get_schedule(loan.id) == loan.schedule


class TestInstallmentSchedules(LoanTestBase):
    """Test installment schedules"""

    schedule_shape = ScheduleShape.INSTALLMENTS

    def test_even_split_with_remainder_last(self):
        loan = self.loans.borrow(WALLET, self.pool.id, cusd("500"), as_of=START)

        assert [item.amount for item in loan.schedule] == [
            cusd("126.02"), cusd("126.02"), cusd("126.02"), cusd("126.05")
        ]
        assert loan.schedule[0].due_date == START + timedelta(days=7, hours=12)
        assert loan.schedule[-1].due_date == loan.due_date
        dues = [item.due_date for item in loan.schedule]
        assert dues == sorted(dues)

    def test_partial_payment_settles_covered_items(self):
        self.loans.borrow(WALLET, self.pool.id, cusd("500"), as_of=START)
        loan, payment = self.loans.repay(WALLET, self.pool.id, cusd("130"), as_of=START + timedelta(days=8))

        statuses = [item.status for item in loan.schedule]
        assert statuses == [ScheduleItemStatus.PAID] + [ScheduleItemStatus.PENDING] * 3
        assert loan.schedule[0].settlement_ref == payment.id


class TestDefaults(LoanTestBase):
    """Test default marking and collateral seizure"""

    def setup_method(self):
        super().setup_method()
        self.loan = self.loans.borrow(WALLET, self.pool.id, cusd("500"), as_of=START)
        self.past_grace = START + timedelta(days=41)

    def test_not_defaulted_within_grace_period(self):
        loan = self.loans.mark_default(self.loan.id, START + timedelta(days=40))
        assert loan.status == LoanStatus.ACTIVE
        assert self.pool_now().total_loans_defaulted == 0

    def test_default_seizes_collateral_for_the_balance(self):
        """500 at 10% for 41 days owes 505.62, taken from 2000 of collateral"""
        loan = self.loans.mark_default(self.loan.id, self.past_grace)

        assert loan.status == LoanStatus.DEFAULTED
        assert all(item.status == ScheduleItemStatus.DEFAULTED for item in loan.schedule)

        account = self.accounts.get_account(WALLET, self.pool.id)
        assert account.collateral == cusd("1494.38")

        # The principal is a realized loss for the pool
        pool = self.pool_now()
        assert pool.total_loans_defaulted == 1
        assert pool.total_funds == cusd("999500")
        assert pool.available_funds == cusd("999500")
        assert pool.total_interest_earned.is_zero()

        event = self.audit.get_events_by_type(AuditEventType.LOAN_DEFAULTED)[0]
        assert event.metadata["collateral_seized"] == "505.62"
        assert event.metadata["principal_written_off"] == "500.00"

    def test_seizure_capped_at_collateral(self):
        # Collateral drained below the balance outside the service guard
        self.accounts.withdraw(WALLET, self.pool, cusd("1800"), as_of=START)

        self.loans.mark_default(self.loan.id, self.past_grace)

        assert self.accounts.get_account(WALLET, self.pool.id).collateral.is_zero()
        pool = self.pool_now()
        assert pool.total_funds == cusd("999500")
        assert pool.available_funds == cusd("999500")
        event = self.audit.get_events_by_type(AuditEventType.LOAN_DEFAULTED)[0]
        assert event.metadata["collateral_seized"] == "200.00"
        assert event.metadata["principal_written_off"] == "500.00"

    def test_default_without_collateral(self):
        self.accounts.withdraw(WALLET, self.pool, cusd("2000"), as_of=START)

        loan = self.loans.mark_default(self.loan.id, self.past_grace)

        assert loan.status == LoanStatus.DEFAULTED
        assert not self.audit.get_events_by_type(AuditEventType.COLLATERAL_SEIZED)
        assert self.pool_now().total_funds == cusd("999500")

    def test_mark_default_is_idempotent(self):
        first = self.loans.mark_default(self.loan.id, self.past_grace)
        pool_after_first = self.pool_now()

        second = self.loans.mark_default(self.loan.id, self.past_grace + timedelta(days=5))

        assert second.status == LoanStatus.DEFAULTED
        assert second.closed_at == first.closed_at
        pool = self.pool_now()
        assert pool.total_loans_defaulted == pool_after_first.total_loans_defaulted == 1
        assert pool.total_funds == pool_after_first.total_funds
        assert len(self.audit.get_events_by_type(AuditEventType.LOAN_DEFAULTED)) == 1
        assert self.accounts.get_account(WALLET, self.pool.id).collateral == cusd("1494.38")

    def test_defaulted_loan_rejects_repayment(self):
        self.loans.mark_default(self.loan.id, self.past_grace)
        with pytest.raises(NoActiveLoan):
            self.loans.repay(WALLET, self.pool.id, cusd("10"), as_of=self.past_grace)

    def test_default_pauses_pool_above_threshold(self):
        self.loans.mark_default(self.loan.id, self.past_grace)
        assert self.pool_now().status == PoolStatus.PAUSED

    def test_process_defaults(self):
        self.accounts.deposit(OTHER_WALLET, self.pool, cusd("200"), as_of=START)
        self.loans.borrow(OTHER_WALLET, self.pool.id, cusd("100"), term_days=60, as_of=START)

        results = self.loans.process_defaults(self.past_grace)

        assert results == {"loans_checked": 2, "loans_defaulted": 1, "loans_failed": 0}
        assert self.loans.get_loan(self.loan.id).status == LoanStatus.DEFAULTED
        assert self.loans.get_active_loan(OTHER_WALLET, self.pool.id) is not None

    def test_process_defaults_continues_past_a_halted_pool(self):
        second_pool = self.pools.create_pool(
            name="Second cUSD Pool", token=SECOND_TOKEN, currency=Currency.CUSD,
            total_funds=cusd("10000"), interest_rate_bps=1000
        )
        self.accounts.deposit(OTHER_WALLET, second_pool, cusd("200"), as_of=START)
        other_loan = self.loans.borrow(OTHER_WALLET, second_pool.id, cusd("100"), as_of=START)
        self.corrupt_pool(self.pool.id)

        results = self.loans.process_defaults(self.past_grace)

        assert results == {"loans_checked": 2, "loans_defaulted": 1, "loans_failed": 1}
        assert self.loans.get_loan(self.loan.id).status == LoanStatus.ACTIVE
        assert self.loans.get_loan(other_loan.id).status == LoanStatus.DEFAULTED
        assert self.pools.is_halted(self.pool.id)
        assert not self.pools.is_halted(second_pool.id)
        # The failed default left the borrower untouched
        assert self.accounts.get_account(WALLET, self.pool.id).collateral == cusd("2000")
        assert self.credit.score(WALLET) == 600

    def test_unknown_loan(self):
        with pytest.raises(InvalidInput):
            self.loans.mark_default("missing", self.past_grace)


class TestHaltAuditing(LoanTestBase):
    """Test that a halt raised inside a loan operation reaches the audit trail"""

    def setup_method(self):
        super().setup_method()
        self.loan = self.loans.borrow(WALLET, self.pool.id, cusd("500"), as_of=START)
        self.corrupt_pool(self.pool.id)

    def test_repay_halt_is_audited_after_rollback(self):
        with pytest.raises(LedgerCorruption):
            self.loans.repay(WALLET, self.pool.id, cusd("504.11"), as_of=START + timedelta(days=30))

        halts = self.audit.get_events_by_type(AuditEventType.POOL_HALTED)
        assert len(halts) == 1
        assert halts[0].entity_id == self.pool.id
        assert self.loans.get_active_loan(WALLET, self.pool.id).principal == cusd("500")
        assert self.loans.get_loan_payments(self.loan.id) == []
        assert self.audit.verify_integrity()['valid']

    def test_default_halt_is_audited_after_rollback(self):
        with pytest.raises(LedgerCorruption):
            self.loans.mark_default(self.loan.id, START + timedelta(days=41))

        assert len(self.audit.get_events_by_type(AuditEventType.POOL_HALTED)) == 1
        assert self.loans.get_loan(self.loan.id).status == LoanStatus.ACTIVE

    def test_halted_pool_refuses_further_repayments(self):
        with pytest.raises(LedgerCorruption):
            self.loans.repay(WALLET, self.pool.id, cusd("504.11"), as_of=START + timedelta(days=30))
        with pytest.raises(LedgerCorruption):
            self.loans.repay(WALLET, self.pool.id, cusd("1"), as_of=START + timedelta(days=30))
        # Still only the one halt event
        assert len(self.audit.get_events_by_type(AuditEventType.POOL_HALTED)) == 1


class TestCreditScoring(LoanTestBase):
    """Test how loan outcomes move the borrower's credit score"""

    def setup_method(self):
        super().setup_method()
        self.loan = self.loans.borrow(WALLET, self.pool.id, cusd("500"), as_of=START)
        self.due = START + timedelta(days=30)

    def test_on_time_repayment_raises_score(self):
        self.loans.repay(WALLET, self.pool.id, cusd("504.11"), as_of=self.due)

        profile = self.credit.get_profile(WALLET)
        assert profile.score == 610
        assert profile.loans_repaid == 1

    def test_partial_repayment_leaves_score(self):
        self.loans.repay(WALLET, self.pool.id, cusd("100"), as_of=self.due)
        assert self.credit.score(WALLET) == 600

    def test_late_repayment_lowers_score(self):
        late = self.due + timedelta(days=5)
        owed = self.loans.outstanding(self.loan, late)
        self.loans.repay(WALLET, self.pool.id, owed, as_of=late)

        profile = self.credit.get_profile(WALLET)
        assert profile.score == 585
        assert profile.late_repayments == 1
        assert profile.loans_repaid == 0

    def test_default_lowers_score(self):
        self.loans.mark_default(self.loan.id, START + timedelta(days=41))

        profile = self.credit.get_profile(WALLET)
        assert profile.score == 570
        assert profile.defaults == 1
        assert self.audit.get_events_by_type(AuditEventType.CREDIT_SCORE_CHANGED)

    def test_score_is_shared_across_pools(self):
        second_pool = self.pools.create_pool(
            name="Second cUSD Pool", token=SECOND_TOKEN, currency=Currency.CUSD,
            total_funds=cusd("10000"), interest_rate_bps=1000
        )
        self.accounts.deposit(WALLET, second_pool, cusd("1000"), as_of=START)
        self.loans.borrow(WALLET, second_pool.id, cusd("100"), as_of=START)

        self.loans.mark_default(self.loan.id, START + timedelta(days=41))

        # The score follows the wallet, not the pool
        assert self.credit.score(WALLET) == 570


class TestScoreTiers(LoanTestBase):
    """Test that the credit score picks the borrowable share of collateral"""

    initial_score = 400

    def test_low_score_borrows_less(self):
        # 2000 collateral at 0.5 * 0.6 = 600
        with pytest.raises(CreditLimitExceeded):
            self.loans.borrow(WALLET, self.pool.id, cusd("600.01"), as_of=START)
        loan = self.loans.borrow(WALLET, self.pool.id, cusd("600"), as_of=START)
        assert loan.principal == cusd("600")


class TestHighScoreTier(LoanTestBase):

    initial_score = 760

    def test_high_score_borrows_more(self):
        # 2000 collateral at 0.5 * 1.2 = 1200
        loan = self.loans.borrow(WALLET, self.pool.id, cusd("1200"), as_of=START)
        assert loan.principal == cusd("1200")
        assert self.audit.get_events_for_entity("loan", loan.id)[0].metadata["credit_score"] == 760
