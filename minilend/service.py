"""
Lending Service Module

Request-facing entry point. Wires storage, audit trail, locks and managers
together from configuration, resolves tokens to pools, and runs every
mutating operation as one atomic unit that includes the external ledger
submission: if the gateway fails, nothing is persisted.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Union

from .config import MiniLendConfig, get_config
from .currency import Money, Currency, parse_amount
from .storage import StorageInterface, create_storage
from .audit import AuditTrail
from .locks import LockManager, account_lock_key, pool_lock_key, credit_lock_key
from .interest import InterestEngine, CompoundingMethod
from .credit import CreditLimitCalculator, CreditHistory
from .accounts import AccountManager, Account, account_id_for, normalize_wallet
from .pools import PoolManager, Pool, RiskLevel
from .loans import LoanManager, ScheduleShape, PaymentSource
from .gateway import LedgerGateway, LedgerOperation, create_gateway
from .errors import InvalidInput, NoActiveLoan, LedgerCorruption
from .logging_config import log_action
from .schemas import (
    DepositResponse, DepositDetails, WithdrawResponse, WithdrawDetails,
    LoanTransactionResponse, LoanDetails, YieldsResponse, WithdrawableResponse, CreditScoreResponse,
    PoolStatusResponse, PoolModel, LoanModel
)

logger = logging.getLogger("minilend.service")

AmountInput = Union[str, int, Decimal]


class LendingService:
    """Lending core with all components initialized"""

    def __init__(
        self,
        cfg: Optional[MiniLendConfig] = None,
        storage: Optional[StorageInterface] = None,
        gateway: Optional[LedgerGateway] = None
    ):
        self.config = cfg or get_config()
        cfg = self.config

        # Initialize storage and shared infrastructure
        self.storage = storage or create_storage(cfg.database_url, cfg.lock_timeout_seconds)
        self.audit_trail = AuditTrail(self.storage, enabled=cfg.enable_audit_logging)
        self.locks = LockManager(timeout_seconds=cfg.lock_timeout_seconds)
        self.gateway = gateway or create_gateway(
            url=cfg.ledger_gateway_url,
            timeout=cfg.ledger_gateway_timeout,
            api_key=cfg.ledger_gateway_api_key,
            max_retries=cfg.ledger_gateway_max_retries,
            backoff_seconds=cfg.ledger_gateway_backoff_seconds
        )

        # Initialize core components
        self.interest_engine = InterestEngine(CompoundingMethod(cfg.interest_compounding))
        self.credit_calculator = CreditLimitCalculator(
            cfg.credit_limit_ratio, cfg.credit_score_multipliers
        )
        self.credit_history = CreditHistory(
            self.storage, self.audit_trail, self.locks, initial_score=cfg.initial_credit_score
        )
        self.account_manager = AccountManager(
            self.storage, self.audit_trail, self.locks, self.interest_engine
        )
        self.pool_manager = PoolManager(
            self.storage, self.audit_trail, self.locks,
            interest_share=cfg.pool_interest_share,
            default_rate_pause_threshold=cfg.default_rate_pause_threshold
        )
        self.loan_manager = LoanManager(
            self.storage, self.audit_trail, self.locks,
            self.account_manager, self.pool_manager,
            self.credit_calculator, self.credit_history, self.interest_engine,
            schedule_shape=ScheduleShape(cfg.repayment_schedule),
            installment_count=cfg.installment_count,
            default_term_days=cfg.default_term_days,
            grace_period_days=cfg.grace_period_days
        )

    @contextmanager
    def _operation(self, wallet_address: str, pool: Pool):
        """
        Hold the account, pool and credit locks and run the block in one
        transaction

        Locks are held until the transaction has committed, so no other
        thread reads state this operation is about to replace.
        """
        account_id = account_id_for(wallet_address, pool.id)
        try:
            with self.locks.hold(account_lock_key(account_id), pool_lock_key(pool.id),
                                 credit_lock_key(wallet_address)):
                with self.storage.atomic():
                    yield
        except LedgerCorruption:
            self.pool_manager.audit_halt(pool.id)
            raise

    def _now(self, as_of: Optional[datetime]) -> datetime:
        return as_of or datetime.now(timezone.utc)

    # -- collateral ----------------------------------------------------------

    def deposit(self, wallet_address: str, token: str, amount: AmountInput,
                as_of: Optional[datetime] = None) -> DepositResponse:
        """Deposit stablecoin collateral"""
        wallet = normalize_wallet(wallet_address)
        pool = self.pool_manager.get_pool_for_token(token)
        money = parse_amount(amount, pool.currency)
        now = self._now(as_of)

        with self._operation(wallet, pool):
            self.account_manager.deposit(wallet, pool, money, now)
            tx_hash = self.gateway.submit(LedgerOperation.DEPOSIT, pool.token, wallet, money)

        log_action(logger, "info", f"Deposit of {money.to_string()} settled",
                   wallet=wallet, action="deposit", resource=f"pool:{pool.id}",
                   extra={"transaction": tx_hash})
        return DepositResponse(
            transaction=tx_hash,
            details=DepositDetails(token=pool.token, amount=money.to_decimal_string(), depositor=wallet)
        )

    def withdraw(self, wallet_address: str, token: str,
                 as_of: Optional[datetime] = None) -> WithdrawResponse:
        """Withdraw all collateral not locked by an active loan"""
        wallet = normalize_wallet(wallet_address)
        pool = self.pool_manager.get_pool_for_token(token)
        now = self._now(as_of)

        with self._operation(wallet, pool):
            account = self.account_manager.get_account(wallet, pool.id)
            if account is None:
                raise InvalidInput(f"No deposits for {wallet} in pool {pool.name}")
            withdrawable, _ = self._withdrawable(account, now)
            if not withdrawable.is_positive():
                raise InvalidInput("Nothing available to withdraw; collateral backs the active loan")

            self.account_manager.withdraw(wallet, pool, withdrawable, now)
            tx_hash = self.gateway.submit(LedgerOperation.WITHDRAW, pool.token, wallet, withdrawable)

        log_action(logger, "info", f"Withdrawal of {withdrawable.to_string()} settled",
                   wallet=wallet, action="withdraw", resource=f"pool:{pool.id}",
                   extra={"transaction": tx_hash})
        return WithdrawResponse(
            transaction=tx_hash,
            details=WithdrawDetails(token=pool.token, amount=withdrawable.to_decimal_string(),
                                    withdrawer=wallet)
        )

    def _withdrawable(self, account: Account, as_of: datetime):
        """(withdrawable, locked by loan) for an account"""
        loan = self.loan_manager.get_active_loan(account.wallet_address, account.pool_id)
        outstanding = (self.loan_manager.outstanding(loan, as_of) if loan
                       else Money.zero(account.currency))
        score = self.credit_history.score(account.wallet_address)
        locked = self.credit_calculator.collateral_required(account, outstanding, score)
        return account.collateral - locked, locked

    # -- loans ---------------------------------------------------------------

    def borrow(self, wallet_address: str, token: str, amount: AmountInput,
               term_days: Optional[int] = None,
               as_of: Optional[datetime] = None) -> LoanTransactionResponse:
        """Borrow from the token's pool against deposited collateral"""
        wallet = normalize_wallet(wallet_address)
        pool = self.pool_manager.get_pool_for_token(token)
        money = parse_amount(amount, pool.currency)
        now = self._now(as_of)

        with self._operation(wallet, pool):
            loan = self.loan_manager.borrow(wallet, pool.id, money, term_days, now)
            tx_hash = self.gateway.submit(LedgerOperation.BORROW, pool.token, wallet, money)

        log_action(logger, "info", f"Loan of {money.to_string()} disbursed",
                   wallet=wallet, action="borrow", resource=f"loan:{loan.id}",
                   extra={"transaction": tx_hash, "pool_id": pool.id})
        return LoanTransactionResponse(
            transaction=tx_hash,
            details=LoanDetails(token=pool.token, amount=money.to_decimal_string(), borrower=wallet)
        )

    def repay(self, wallet_address: str, token: str, amount: AmountInput,
              as_of: Optional[datetime] = None) -> LoanTransactionResponse:
        """Repay the active loan; interest is paid before principal"""
        wallet = normalize_wallet(wallet_address)
        pool = self.pool_manager.get_pool_for_token(token)
        money = parse_amount(amount, pool.currency)
        now = self._now(as_of)

        with self._operation(wallet, pool):
            loan, payment = self.loan_manager.repay(wallet, pool.id, money, now)
            tx_hash = self.gateway.submit(LedgerOperation.REPAY, pool.token, wallet, money)
            self.loan_manager.record_settlement(payment.id, tx_hash)

        log_action(logger, "info", f"Repayment of {money.to_string()} applied",
                   wallet=wallet, action="repay", resource=f"loan:{loan.id}",
                   extra={"transaction": tx_hash, "status": loan.status.value})
        return LoanTransactionResponse(
            transaction=tx_hash,
            details=LoanDetails(token=pool.token, amount=money.to_decimal_string(), borrower=wallet)
        )

    def sweep_yield(self, wallet_address: str, token: str,
                    as_of: Optional[datetime] = None) -> LoanTransactionResponse:
        """Apply net deposit yield to the active loan"""
        wallet = normalize_wallet(wallet_address)
        pool = self.pool_manager.get_pool_for_token(token)
        now = self._now(as_of)

        with self._operation(wallet, pool):
            loan = self.loan_manager.get_active_loan(wallet, pool.id)
            if not loan:
                raise NoActiveLoan(f"{wallet} has no active loan in pool {pool.name}")
            account = self.account_manager.get_or_empty(wallet, pool, now)
            net = self.account_manager.net_yield(account, pool, now)
            if not net.is_positive():
                raise InvalidInput("No deposit yield available to apply")

            outstanding = self.loan_manager.outstanding(loan, now)
            amount = net if net < outstanding else outstanding

            loan, payment = self.loan_manager.repay(wallet, pool.id, amount, now,
                                                   source=PaymentSource.YIELD)
            self.account_manager.record_yield_used(account, pool, amount, now)
            tx_hash = self.gateway.submit(LedgerOperation.REPAY, pool.token, wallet, amount)
            self.loan_manager.record_settlement(payment.id, tx_hash)

        log_action(logger, "info", f"Applied {amount.to_string()} of yield to loan",
                   wallet=wallet, action="sweep_yield", resource=f"loan:{loan.id}",
                   extra={"transaction": tx_hash})
        return LoanTransactionResponse(
            transaction=tx_hash,
            details=LoanDetails(token=pool.token, amount=amount.to_decimal_string(), borrower=wallet)
        )

    def get_loan(self, wallet_address: str, token: str,
                 as_of: Optional[datetime] = None) -> Optional[LoanModel]:
        """Active loan with interest accrued to ``as_of``, or None"""
        pool = self.pool_manager.get_pool_for_token(token)
        loan = self.loan_manager.get_active_loan(wallet_address, pool.id)
        if not loan:
            return None
        now = self._now(as_of)
        accrued = self.loan_manager.accrue(loan, max(now, loan.accrued_through))
        return LoanModel.from_loan(accrued, accrued.balance)

    def process_defaults(self, as_of: Optional[datetime] = None) -> Dict[str, int]:
        results = self.loan_manager.process_defaults(self._now(as_of))
        log_action(logger, "info", "Default sweep finished", action="process_defaults",
                   extra=results)
        return results

    # -- account queries -----------------------------------------------------

    def get_yields(self, wallet_address: str, token: str,
                   as_of: Optional[datetime] = None) -> YieldsResponse:
        pool = self.pool_manager.get_pool_for_token(token)
        now = self._now(as_of)
        account = self.account_manager.get_or_empty(wallet_address, pool, now)
        gross = self.account_manager.gross_yield(account, pool, now)
        used = account.yield_used_for_repayment
        return YieldsResponse(
            gross_yield=gross.to_decimal_string(),
            net_yield=(gross - used).to_decimal_string(),
            used_for_loan_repayment=used.to_decimal_string()
        )

    def get_withdrawable(self, wallet_address: str, token: str,
                         as_of: Optional[datetime] = None) -> WithdrawableResponse:
        pool = self.pool_manager.get_pool_for_token(token)
        now = self._now(as_of)
        account = self.account_manager.get_or_empty(wallet_address, pool, now)
        withdrawable, locked = self._withdrawable(account, now)
        return WithdrawableResponse(
            withdrawable=withdrawable.to_decimal_string(),
            used_for_loan=locked.to_decimal_string()
        )

    def get_credit_score(self, wallet_address: str) -> CreditScoreResponse:
        profile = self.credit_history.get_profile(wallet_address)
        return CreditScoreResponse(
            wallet=profile.wallet_address,
            score=profile.score,
            loans_repaid=profile.loans_repaid,
            late_repayments=profile.late_repayments,
            defaults=profile.defaults
        )

    # -- pools ---------------------------------------------------------------

    def create_pool(
        self,
        name: str,
        token: str,
        currency: str,
        total_funds: AmountInput,
        interest_rate_bps: int,
        deposit_rate_bps: int = 0,
        min_loan_amount: Optional[AmountInput] = None,
        max_loan_amount: Optional[AmountInput] = None,
        min_term_days: int = 1,
        max_term_days: int = 365,
        risk_level: str = "medium",
        region: str = ""
    ) -> PoolModel:
        cur = Currency.from_code(currency)
        pool = self.pool_manager.create_pool(
            name=name,
            token=token,
            currency=cur,
            total_funds=parse_amount(total_funds, cur),
            interest_rate_bps=interest_rate_bps,
            deposit_rate_bps=deposit_rate_bps,
            min_loan_amount=parse_amount(min_loan_amount, cur) if min_loan_amount is not None else None,
            max_loan_amount=parse_amount(max_loan_amount, cur) if max_loan_amount is not None else None,
            min_term_days=min_term_days,
            max_term_days=max_term_days,
            risk_level=RiskLevel(risk_level),
            region=region
        )
        return PoolModel.from_pool(pool)

    def fund_pool(self, pool_id: str, amount: AmountInput,
                  contributor: Optional[str] = None) -> PoolModel:
        pool = self.pool_manager.require_pool(pool_id)
        pool = self.pool_manager.fund_pool(pool_id, parse_amount(amount, pool.currency), contributor)
        return PoolModel.from_pool(pool)

    def pause_pool(self, pool_id: str, reason: str = "") -> PoolModel:
        return PoolModel.from_pool(self.pool_manager.pause_pool(pool_id, reason))

    def resume_pool(self, pool_id: str) -> PoolModel:
        return PoolModel.from_pool(self.pool_manager.resume_pool(pool_id))

    def get_pool_status(self) -> PoolStatusResponse:
        return PoolStatusResponse.from_summary(self.pool_manager.pool_status())

    def get_all_pools(self) -> List[PoolModel]:
        return [PoolModel.from_pool(pool) for pool in self.pool_manager.list_pools()]

    def get_pool(self, pool_id: str) -> PoolModel:
        return PoolModel.from_pool(self.pool_manager.require_pool(pool_id))

    def verify_audit_integrity(self) -> Dict:
        return self.audit_trail.verify_integrity()

    def close(self) -> None:
        self.gateway.close()
        self.storage.close()
