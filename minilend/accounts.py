"""
Account Management Module

An account is a wallet's collateral position in one lending pool. Deposits
and withdrawals change the collateral balance; idle collateral earns the
pool's deposit rate, and the yield is checkpointed before every balance
change. Keying accounts by pool means collateral only ever earns one rate
and only ever backs loans from the pool it was deposited into.
"""

import re
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .interest import InterestEngine
from .locks import LockManager, account_lock_key
from .pools import Pool
from .errors import InvalidInput

logger = logging.getLogger("minilend.accounts")

WALLET_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")


def normalize_wallet(wallet_address: str) -> str:
    """Validate an EVM wallet address and return it lower-cased"""
    if not isinstance(wallet_address, str) or not WALLET_PATTERN.match(wallet_address.strip()):
        raise InvalidInput(f"Invalid wallet address: {wallet_address!r}")
    return wallet_address.strip().lower()


def account_id_for(wallet_address: str, pool_id: str) -> str:
    return f"{normalize_wallet(wallet_address)}:{pool_id}"


@dataclass
class Account(StorageRecord):
    """Collateral position of one wallet in one pool"""
    wallet_address: str
    pool_id: str
    currency: Currency
    collateral: Money
    yield_accrued: Money             # Gross yield earned up to the checkpoint
    yield_checkpoint_at: datetime
    yield_used_for_repayment: Money  # Yield already applied to loans

    def __post_init__(self):
        for name in ('collateral', 'yield_accrued', 'yield_used_for_repayment'):
            if getattr(self, name).currency != self.currency:
                raise InvalidInput(f"{name} currency must match account currency")


class AccountManager:
    """
    Manages collateral deposits, withdrawals and deposit yield
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        locks: LockManager,
        interest_engine: InterestEngine
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.locks = locks
        self.interest_engine = interest_engine
        self.accounts_table = "accounts"

    def get_account(self, wallet_address: str, pool_id: str) -> Optional[Account]:
        """Load an account, or None if the wallet never deposited into the pool"""
        data = self.storage.load(self.accounts_table, account_id_for(wallet_address, pool_id))
        if data:
            return self._account_from_dict(data)
        return None

    def get_or_empty(self, wallet_address: str, pool: Pool,
                     as_of: Optional[datetime] = None) -> Account:
        """Load an account or return an unsaved zero-balance one"""
        account = self.get_account(wallet_address, pool.id)
        if account:
            return account
        now = as_of or datetime.now(timezone.utc)
        zero = Money.zero(pool.currency)
        return Account(
            id=account_id_for(wallet_address, pool.id),
            created_at=now,
            updated_at=now,
            wallet_address=normalize_wallet(wallet_address),
            pool_id=pool.id,
            currency=pool.currency,
            collateral=zero,
            yield_accrued=zero,
            yield_checkpoint_at=now,
            yield_used_for_repayment=zero
        )

    def list_accounts(self, wallet_address: Optional[str] = None) -> List[Account]:
        accounts = [self._account_from_dict(data) for data in self.storage.load_all(self.accounts_table)]
        if wallet_address:
            wallet = normalize_wallet(wallet_address)
            accounts = [a for a in accounts if a.wallet_address == wallet]
        return accounts

    def _checkpoint_yield(self, account: Account, pool: Pool, as_of: datetime) -> Account:
        """Fold yield earned so far into the account before its balance changes"""
        earned = self.interest_engine.deposit_yield(account, pool.deposit_rate_bps, as_of)
        checkpoint = max(as_of, account.yield_checkpoint_at)
        return replace(account, yield_accrued=earned, yield_checkpoint_at=checkpoint)

    def _check_currency(self, pool: Pool, amount: Money) -> None:
        if amount.currency != pool.currency:
            raise InvalidInput(f"Pool {pool.name} holds {pool.currency.code}, not {amount.currency.code}")

    def deposit(
        self,
        wallet_address: str,
        pool: Pool,
        amount: Money,
        as_of: Optional[datetime] = None
    ) -> Account:
        """
        Add collateral to a wallet's account in a pool, opening it if needed

        Args:
            wallet_address: Depositing wallet
            pool: Pool the collateral is deposited into
            amount: Positive amount to deposit
            as_of: Time of the deposit (defaults to now)

        Returns:
            Updated Account
        """
        if not amount.is_positive():
            raise InvalidInput(f"Deposit amount must be positive, got {amount.to_string()}")
        self._check_currency(pool, amount)

        now = as_of or datetime.now(timezone.utc)
        account_id = account_id_for(wallet_address, pool.id)

        with self.locks.hold(account_lock_key(account_id)):
            existing = self.get_account(wallet_address, pool.id)
            account = existing or self.get_or_empty(wallet_address, pool, now)
            account = self._checkpoint_yield(account, pool, now)
            account = replace(account, collateral=account.collateral + amount, updated_at=now)

            with self.storage.atomic():
                self._save_account(account)

                if existing is None:
                    self.storage.on_commit(lambda: self.audit_trail.log_event(
                        event_type=AuditEventType.ACCOUNT_OPENED,
                        entity_type="account",
                        entity_id=account.id,
                        metadata={"pool_id": pool.id, "currency": amount.currency.code},
                        actor=account.wallet_address
                    ))
                self.storage.on_commit(lambda: self.audit_trail.log_event(
                    event_type=AuditEventType.COLLATERAL_DEPOSITED,
                    entity_type="account",
                    entity_id=account.id,
                    metadata={
                        "amount": amount.to_decimal_string(),
                        "collateral": account.collateral.to_decimal_string()
                    },
                    actor=account.wallet_address
                ))

        logger.info(f"Deposited {amount.to_string()} for {account.wallet_address} in pool {pool.id}")
        return account

    def withdraw(
        self,
        wallet_address: str,
        pool: Pool,
        amount: Money,
        as_of: Optional[datetime] = None
    ) -> Account:
        """
        Remove collateral from an account

        Callers are responsible for keeping collateral that backs a loan;
        this method only guarantees the balance never goes negative.
        """
        if not amount.is_positive():
            raise InvalidInput(f"Withdrawal amount must be positive, got {amount.to_string()}")
        self._check_currency(pool, amount)

        now = as_of or datetime.now(timezone.utc)
        account_id = account_id_for(wallet_address, pool.id)

        with self.locks.hold(account_lock_key(account_id)):
            account = self.get_account(wallet_address, pool.id)
            if account is None or amount > account.collateral:
                available = account.collateral.to_string() if account else "nothing"
                raise InvalidInput(f"Cannot withdraw {amount.to_string()}, balance is {available}")

            account = self._checkpoint_yield(account, pool, now)
            account = replace(account, collateral=account.collateral - amount, updated_at=now)

            with self.storage.atomic():
                self._save_account(account)
                self.storage.on_commit(lambda: self.audit_trail.log_event(
                    event_type=AuditEventType.COLLATERAL_WITHDRAWN,
                    entity_type="account",
                    entity_id=account.id,
                    metadata={
                        "amount": amount.to_decimal_string(),
                        "collateral": account.collateral.to_decimal_string()
                    },
                    actor=account.wallet_address
                ))

        logger.info(f"Withdrew {amount.to_string()} for {account.wallet_address} from pool {pool.id}")
        return account

    def seize_collateral(
        self,
        wallet_address: str,
        pool: Pool,
        amount: Money,
        as_of: datetime,
        loan_id: str
    ) -> Account:
        """
        Take collateral to cover a defaulted loan

        Raises:
            InvalidInput: If the account holds less than ``amount``
        """
        if not amount.is_positive():
            raise InvalidInput(f"Seized amount must be positive, got {amount.to_string()}")
        self._check_currency(pool, amount)

        account_id = account_id_for(wallet_address, pool.id)
        with self.locks.hold(account_lock_key(account_id)):
            account = self.get_account(wallet_address, pool.id)
            if account is None or amount > account.collateral:
                raise InvalidInput(f"Account {account_id} cannot cover {amount.to_string()}")

            account = self._checkpoint_yield(account, pool, as_of)
            account = replace(account, collateral=account.collateral - amount, updated_at=as_of)

            with self.storage.atomic():
                self._save_account(account)
                self.storage.on_commit(lambda: self.audit_trail.log_event(
                    event_type=AuditEventType.COLLATERAL_SEIZED,
                    entity_type="account",
                    entity_id=account.id,
                    metadata={
                        "amount": amount.to_decimal_string(),
                        "collateral": account.collateral.to_decimal_string(),
                        "loan_id": loan_id
                    },
                    actor=account.wallet_address
                ))

        logger.warning(f"Seized {amount.to_string()} of collateral from {account.wallet_address} "
                       f"for loan {loan_id}")
        return account

    def gross_yield(self, account: Account, pool: Pool, as_of: datetime) -> Money:
        return self.interest_engine.deposit_yield(account, pool.deposit_rate_bps, as_of)

    def net_yield(self, account: Account, pool: Pool, as_of: datetime) -> Money:
        """Yield earned and not yet applied to loan repayment"""
        return self.gross_yield(account, pool, as_of) - account.yield_used_for_repayment

    def record_yield_used(
        self,
        account: Account,
        pool: Pool,
        amount: Money,
        as_of: datetime
    ) -> Account:
        """Mark part of the net yield as spent on loan repayment"""
        with self.locks.hold(account_lock_key(account.id)):
            current = self.get_account(account.wallet_address, account.pool_id) or account
            available = self.net_yield(current, pool, as_of)
            if amount > available:
                raise InvalidInput(f"Only {available.to_string()} of yield is available")

            updated = self._checkpoint_yield(current, pool, as_of)
            updated = replace(
                updated,
                yield_used_for_repayment=updated.yield_used_for_repayment + amount,
                updated_at=as_of
            )
            with self.storage.atomic():
                self._save_account(updated)
                self.storage.on_commit(lambda: self.audit_trail.log_event(
                    event_type=AuditEventType.YIELD_APPLIED,
                    entity_type="account",
                    entity_id=updated.id,
                    metadata={"amount": amount.to_decimal_string()},
                    actor=updated.wallet_address
                ))
        return updated

    def _save_account(self, account: Account) -> None:
        self.storage.save(self.accounts_table, account.id, self._account_to_dict(account))

    def _account_to_dict(self, account: Account) -> Dict:
        """Convert Account to dictionary for storage"""
        return {
            'id': account.id,
            'created_at': account.created_at.isoformat(),
            'updated_at': account.updated_at.isoformat(),
            'wallet_address': account.wallet_address,
            'pool_id': account.pool_id,
            'currency': account.currency.code,
            'collateral': str(account.collateral.amount),
            'yield_accrued': str(account.yield_accrued.amount),
            'yield_checkpoint_at': account.yield_checkpoint_at.isoformat(),
            'yield_used_for_repayment': str(account.yield_used_for_repayment.amount)
        }

    def _account_from_dict(self, data: Dict) -> Account:
        """Convert dictionary to Account"""
        currency = Currency.from_code(data['currency'])
        return Account(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            wallet_address=data['wallet_address'],
            pool_id=data['pool_id'],
            currency=currency,
            collateral=Money(Decimal(data['collateral']), currency),
            yield_accrued=Money(Decimal(data['yield_accrued']), currency),
            yield_checkpoint_at=datetime.fromisoformat(data['yield_checkpoint_at']),
            yield_used_for_repayment=Money(Decimal(data['yield_used_for_repayment']), currency)
        )
