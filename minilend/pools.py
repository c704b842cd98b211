"""
Lending Pool Module

Pools hold the liquidity loans are drawn from. Every change to a pool's
funds goes through the PoolManager, which serializes mutations per pool,
checks solvency invariants after each change, and halts a pool the moment an
invariant breaks.
"""

import uuid
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Set, Union

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .locks import LockManager, pool_lock_key
from .errors import (
    InvalidInput, PoolInsufficientFunds, PoolPaused, LedgerCorruption
)

logger = logging.getLogger("minilend.pools")


class PoolStatus(Enum):
    """Pool lifecycle states"""
    ACTIVE = "active"      # Accepting new loans
    PAUSED = "paused"      # Administrative stop on new loans
    DEPLETED = "depleted"  # No available funds left


class RiskLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class Pool(StorageRecord):
    """Shared fund that loans are drawn from and repaid into"""
    name: str
    token: str                       # Stablecoin token address
    currency: Currency
    total_funds: Money
    available_funds: Money
    interest_rate_bps: int           # Charged on loans, per annum
    deposit_rate_bps: int = 0        # Paid on idle collateral, per annum
    status: PoolStatus = PoolStatus.ACTIVE
    total_loans_issued: int = 0
    total_loans_repaid: int = 0
    total_loans_defaulted: int = 0
    total_interest_earned: Money = None
    min_loan_amount: Optional[Money] = None
    max_loan_amount: Optional[Money] = None
    min_term_days: int = 1
    max_term_days: int = 365
    risk_level: RiskLevel = RiskLevel.MEDIUM
    region: str = ""

    def __post_init__(self):
        if self.total_interest_earned is None:
            self.total_interest_earned = Money.zero(self.currency)

        for name in ('total_funds', 'available_funds', 'total_interest_earned',
                     'min_loan_amount', 'max_loan_amount'):
            value = getattr(self, name)
            if value is not None and value.currency != self.currency:
                raise InvalidInput(f"{name} currency must match pool currency")

    @property
    def outstanding_principal(self) -> Money:
        """Principal currently lent out"""
        return self.total_funds - self.available_funds

    @property
    def default_rate(self) -> Decimal:
        if self.total_loans_issued == 0:
            return Decimal('0')
        return Decimal(self.total_loans_defaulted) / Decimal(self.total_loans_issued)


@dataclass
class PoolStatusSummary:
    """Aggregate figures across every pool"""
    total_pools: int
    active_pools: int
    total_funds: Decimal
    available_funds: Decimal
    total_loans_issued: int
    total_loans_repaid: int
    total_loans_defaulted: int
    total_interest_earned: Decimal


class PoolManager:
    """
    Pool solvency manager

    Invariants checked after every mutation:
        0 <= available_funds <= total_funds
        counters and interest earned never negative
    A failed check raises LedgerCorruption and halts the pool until
    acknowledge_corruption() is called.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        locks: LockManager,
        interest_share: Union[str, Decimal] = Decimal('0'),
        default_rate_pause_threshold: Union[str, Decimal] = Decimal('0.20')
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.locks = locks
        self.interest_share = Decimal(str(interest_share))
        self.default_rate_pause_threshold = Decimal(str(default_rate_pause_threshold))
        self.pools_table = "pools"
        self._halted: Dict[str, str] = {}
        self._halts_audited: Set[str] = set()

        if not Decimal('0') <= self.interest_share <= Decimal('1'):
            raise InvalidInput("Pool interest share must be between 0 and 1")

    # -- creation and lookup -------------------------------------------------

    def create_pool(
        self,
        name: str,
        token: str,
        currency: Currency,
        total_funds: Money,
        interest_rate_bps: int,
        deposit_rate_bps: int = 0,
        min_loan_amount: Optional[Money] = None,
        max_loan_amount: Optional[Money] = None,
        min_term_days: int = 1,
        max_term_days: int = 365,
        risk_level: RiskLevel = RiskLevel.MEDIUM,
        region: str = ""
    ) -> Pool:
        """
        Create a new lending pool fully available for lending

        Raises:
            InvalidInput: On bad parameters or a duplicate name/token
        """
        if not name:
            raise InvalidInput("Pool name is required")
        if not token:
            raise InvalidInput("Pool token address is required")
        if total_funds.is_negative():
            raise InvalidInput("Pool funds cannot be negative")
        if interest_rate_bps < 0 or deposit_rate_bps < 0:
            raise InvalidInput("Rates cannot be negative")
        if min_term_days < 1 or max_term_days < min_term_days:
            raise InvalidInput(f"Invalid term range {min_term_days}-{max_term_days} days")
        if min_loan_amount and max_loan_amount and min_loan_amount > max_loan_amount:
            raise InvalidInput("Minimum loan amount exceeds maximum loan amount")

        token = token.lower()
        for existing in self.list_pools():
            if existing.name == name:
                raise InvalidInput(f"Pool named {name!r} already exists")
            if existing.token == token:
                raise InvalidInput(f"Token {token} already has a pool")

        now = datetime.now(timezone.utc)
        pool = Pool(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            token=token,
            currency=currency,
            total_funds=total_funds,
            available_funds=total_funds,
            interest_rate_bps=interest_rate_bps,
            deposit_rate_bps=deposit_rate_bps,
            status=PoolStatus.ACTIVE if total_funds.is_positive() else PoolStatus.DEPLETED,
            min_loan_amount=min_loan_amount,
            max_loan_amount=max_loan_amount,
            min_term_days=min_term_days,
            max_term_days=max_term_days,
            risk_level=risk_level,
            region=region
        )

        with self.storage.atomic():
            self._save_pool(pool)
            self.storage.on_commit(lambda: self.audit_trail.log_event(
                event_type=AuditEventType.POOL_CREATED,
                entity_type="pool",
                entity_id=pool.id,
                metadata={
                    "name": name,
                    "token": token,
                    "currency": currency.code,
                    "total_funds": total_funds.to_decimal_string(),
                    "interest_rate_bps": interest_rate_bps
                }
            ))

        logger.info(f"Created pool {name} ({pool.id}) with {total_funds.to_string()}")
        return pool

    def get_pool(self, pool_id: str) -> Optional[Pool]:
        data = self.storage.load(self.pools_table, pool_id)
        if data:
            return self._pool_from_dict(data)
        return None

    def require_pool(self, pool_id: str) -> Pool:
        pool = self.get_pool(pool_id)
        if not pool:
            raise InvalidInput(f"Pool {pool_id} not found")
        return pool

    def get_pool_for_token(self, token: str) -> Pool:
        """Find the pool lending the given stablecoin token"""
        if not token:
            raise InvalidInput("Token address is required")
        matches = self.storage.find(self.pools_table, {'token': token.lower()})
        if not matches:
            raise InvalidInput(f"No lending pool for token {token}")
        return self._pool_from_dict(matches[0])

    def list_pools(self, status: Optional[PoolStatus] = None,
                   currency: Optional[Currency] = None) -> List[Pool]:
        pools = [self._pool_from_dict(data) for data in self.storage.load_all(self.pools_table)]
        if status:
            pools = [p for p in pools if p.status == status]
        if currency:
            pools = [p for p in pools if p.currency == currency]
        pools.sort(key=lambda p: p.created_at)
        return pools

    # -- solvency primitives -------------------------------------------------

    def is_halted(self, pool_id: str) -> bool:
        return pool_id in self._halted

    def reserve(self, pool_id: str, amount: Money) -> Pool:
        """
        Take funds out of a pool's available balance

        Raises:
            PoolPaused: If the pool is paused
            PoolInsufficientFunds: If amount exceeds available funds
            LedgerCorruption: If the pool is halted
        """
        self._require_positive(amount, "Reserve amount")

        with self.locks.hold(pool_lock_key(pool_id)):
            pool = self._load_for_update(pool_id, amount)

            if pool.status == PoolStatus.PAUSED:
                raise PoolPaused(f"Pool {pool.name} is paused")
            if amount > pool.available_funds:
                raise PoolInsufficientFunds(
                    f"Pool {pool.name} has {pool.available_funds.to_string()} available, "
                    f"{amount.to_string()} requested"
                )

            updated = replace(pool, available_funds=pool.available_funds - amount)
            return self._commit(pool, updated, "reserve", amount)

    def release(self, pool_id: str, amount: Money) -> Pool:
        """
        Return funds to a pool's available balance

        Raises:
            LedgerCorruption: If available funds would exceed total funds
        """
        self._require_positive(amount, "Release amount")

        with self.locks.hold(pool_lock_key(pool_id)):
            pool = self._load_for_update(pool_id, amount)
            updated = replace(pool, available_funds=pool.available_funds + amount)
            return self._commit(pool, updated, "release", amount)

    def fund_pool(self, pool_id: str, amount: Money, contributor: Optional[str] = None) -> Pool:
        """Add liquidity: total and available funds both grow"""
        self._require_positive(amount, "Funding amount")

        with self.locks.hold(pool_lock_key(pool_id)):
            pool = self._load_for_update(pool_id, amount)
            updated = replace(
                pool,
                total_funds=pool.total_funds + amount,
                available_funds=pool.available_funds + amount
            )
            result = self._commit(pool, updated, "fund", amount)
            self.storage.on_commit(lambda: self.audit_trail.log_event(
                event_type=AuditEventType.POOL_FUNDED,
                entity_type="pool",
                entity_id=pool_id,
                metadata={"amount": amount.to_decimal_string()},
                actor=contributor
            ))
            return result

    def defund_pool(self, pool_id: str, amount: Money) -> Pool:
        """Remove idle liquidity; lent-out principal cannot be withdrawn"""
        self._require_positive(amount, "Withdrawal amount")

        with self.locks.hold(pool_lock_key(pool_id)):
            pool = self._load_for_update(pool_id, amount)
            if amount > pool.available_funds:
                raise PoolInsufficientFunds(
                    f"Pool {pool.name} has only {pool.available_funds.to_string()} available"
                )
            updated = replace(
                pool,
                total_funds=pool.total_funds - amount,
                available_funds=pool.available_funds - amount
            )
            result = self._commit(pool, updated, "defund", amount)
            self.storage.on_commit(lambda: self.audit_trail.log_event(
                event_type=AuditEventType.POOL_DEFUNDED,
                entity_type="pool",
                entity_id=pool_id,
                metadata={"amount": amount.to_decimal_string()}
            ))
            return result

    # -- loan bookkeeping ----------------------------------------------------

    def record_loan_issued(self, pool_id: str) -> Pool:
        with self.locks.hold(pool_lock_key(pool_id)):
            pool = self._load_for_update(pool_id)
            updated = replace(pool, total_loans_issued=pool.total_loans_issued + 1)
            return self._commit(pool, updated, "loan_issued")

    def record_loan_repaid(self, pool_id: str) -> Pool:
        with self.locks.hold(pool_lock_key(pool_id)):
            pool = self._load_for_update(pool_id)
            updated = replace(pool, total_loans_repaid=pool.total_loans_repaid + 1)
            return self._commit(pool, updated, "loan_repaid")

    def record_interest(self, pool_id: str, interest: Money) -> Pool:
        """
        Book interest paid by a borrower

        The configured share of the interest is added to both total and
        available funds; the whole amount counts toward interest earned.
        """
        if interest.is_zero():
            return self.require_pool(pool_id)
        self._require_positive(interest, "Interest")

        with self.locks.hold(pool_lock_key(pool_id)):
            pool = self._load_for_update(pool_id, interest)
            share = Money(interest.amount * self.interest_share, interest.currency)
            updated = replace(
                pool,
                total_interest_earned=pool.total_interest_earned + interest,
                total_funds=pool.total_funds + share,
                available_funds=pool.available_funds + share
            )
            return self._commit(pool, updated, "interest", interest)

    def write_off(self, pool_id: str, principal: Money) -> Pool:
        """
        Realize a default loss

        Defaulted principal leaves total funds (it was never in available
        funds) and the default counter grows. A pool whose default rate passes
        the threshold is paused.
        """
        with self.locks.hold(pool_lock_key(pool_id)):
            pool = self._load_for_update(pool_id, principal)
            updated = replace(
                pool,
                total_funds=pool.total_funds - principal,
                total_loans_defaulted=pool.total_loans_defaulted + 1
            )
            if (updated.status != PoolStatus.PAUSED
                    and updated.default_rate > self.default_rate_pause_threshold):
                logger.warning(
                    f"Pool {pool.name} default rate {updated.default_rate:.4f} exceeds "
                    f"{self.default_rate_pause_threshold}, pausing"
                )
                updated = replace(updated, status=PoolStatus.PAUSED)
                self.storage.on_commit(lambda: self.audit_trail.log_event(
                    event_type=AuditEventType.POOL_PAUSED,
                    entity_type="pool",
                    entity_id=pool_id,
                    metadata={"reason": "default_rate", "default_rate": str(updated.default_rate)}
                ))
            return self._commit(pool, updated, "write_off", principal)

    # -- administration ------------------------------------------------------

    def pause_pool(self, pool_id: str, reason: str = "") -> Pool:
        """Stop new reservations regardless of available funds"""
        with self.locks.hold(pool_lock_key(pool_id)):
            pool = self.require_pool(pool_id)
            if pool.status == PoolStatus.PAUSED:
                return pool
            updated = replace(pool, status=PoolStatus.PAUSED)
            result = self._commit(pool, updated, "pause")
            self.storage.on_commit(lambda: self.audit_trail.log_event(
                event_type=AuditEventType.POOL_PAUSED,
                entity_type="pool",
                entity_id=pool_id,
                metadata={"reason": reason}
            ))
            return result

    def resume_pool(self, pool_id: str) -> Pool:
        """Lift a pause; the pool becomes active or depleted by its funds"""
        with self.locks.hold(pool_lock_key(pool_id)):
            pool = self.require_pool(pool_id)
            if pool.status != PoolStatus.PAUSED:
                return pool
            status = PoolStatus.ACTIVE if pool.available_funds.is_positive() else PoolStatus.DEPLETED
            updated = replace(pool, status=status)
            result = self._commit(pool, updated, "resume")
            self.storage.on_commit(lambda: self.audit_trail.log_event(
                event_type=AuditEventType.POOL_RESUMED,
                entity_type="pool",
                entity_id=pool_id,
                metadata={"status": status.value}
            ))
            return result

    def acknowledge_corruption(self, pool_id: str, operator: str) -> None:
        """Operator sign-off that lets a halted pool accept mutations again"""
        reason = self._halted.pop(pool_id, None)
        self._halts_audited.discard(pool_id)
        if reason is None:
            return
        logger.warning(f"Halt on pool {pool_id} cleared by {operator} (was: {reason})")
        self.audit_trail.log_event(
            event_type=AuditEventType.POOL_HALT_CLEARED,
            entity_type="pool",
            entity_id=pool_id,
            metadata={"reason": reason},
            actor=operator
        )

    def pool_status(self) -> PoolStatusSummary:
        """Aggregate status across every pool"""
        pools = self.list_pools()
        return PoolStatusSummary(
            total_pools=len(pools),
            active_pools=sum(1 for p in pools if p.status == PoolStatus.ACTIVE),
            total_funds=sum((p.total_funds.amount for p in pools), Decimal('0')),
            available_funds=sum((p.available_funds.amount for p in pools), Decimal('0')),
            total_loans_issued=sum(p.total_loans_issued for p in pools),
            total_loans_repaid=sum(p.total_loans_repaid for p in pools),
            total_loans_defaulted=sum(p.total_loans_defaulted for p in pools),
            total_interest_earned=sum((p.total_interest_earned.amount for p in pools), Decimal('0'))
        )

    # -- internals -----------------------------------------------------------

    def _require_positive(self, amount: Money, label: str) -> None:
        if not amount.is_positive():
            raise InvalidInput(f"{label} must be positive, got {amount.to_string()}")

    def _load_for_update(self, pool_id: str, amount: Optional[Money] = None) -> Pool:
        """Load a pool that is about to change; refuses halted pools"""
        if pool_id in self._halted:
            raise LedgerCorruption(f"Pool {pool_id} is halted: {self._halted[pool_id]}")
        pool = self.require_pool(pool_id)
        if amount is not None and amount.currency != pool.currency:
            raise InvalidInput(f"Pool {pool.name} lends {pool.currency.code}, not {amount.currency.code}")
        return pool

    def _halt(self, pool: Pool, reason: str) -> None:
        self._halted[pool.id] = reason
        logger.critical(f"LEDGER CORRUPTION on pool {pool.name} ({pool.id}): {reason}")
        if not self.storage.in_transaction():
            self.audit_halt(pool.id)
        raise LedgerCorruption(reason)

    def audit_halt(self, pool_id: str) -> None:
        """
        Record a halt in the audit trail

        Halts raised inside a transaction are rolled back with it, so the
        caller records them once the transaction has been unwound. Each halt
        is recorded once, however many operations it stops.
        """
        reason = self._halted.get(pool_id)
        if reason is None or pool_id in self._halts_audited or self.storage.in_transaction():
            return
        self._halts_audited.add(pool_id)
        self.audit_trail.log_event(
            event_type=AuditEventType.POOL_HALTED,
            entity_type="pool",
            entity_id=pool_id,
            metadata={"reason": reason}
        )

    def _verify(self, pool: Pool) -> None:
        zero = Money.zero(pool.currency)
        if pool.available_funds < zero:
            self._halt(pool, f"available funds negative: {pool.available_funds.to_string()}")
        if pool.available_funds > pool.total_funds:
            self._halt(pool, f"available funds {pool.available_funds.to_string()} exceed "
                             f"total funds {pool.total_funds.to_string()}")
        if pool.total_interest_earned < zero:
            self._halt(pool, "interest earned negative")
        if min(pool.total_loans_issued, pool.total_loans_repaid, pool.total_loans_defaulted) < 0:
            self._halt(pool, "loan counters negative")

    def _commit(self, before: Pool, updated: Pool, operation: str,
                amount: Optional[Money] = None) -> Pool:
        """Verify invariants, fix up status and persist"""
        if updated.status != PoolStatus.PAUSED:
            if updated.available_funds.is_zero():
                updated = replace(updated, status=PoolStatus.DEPLETED)
            elif before.status == PoolStatus.DEPLETED and updated.available_funds > before.available_funds:
                updated = replace(updated, status=PoolStatus.ACTIVE)

        updated = replace(updated, updated_at=datetime.now(timezone.utc))
        self._verify(updated)

        with self.storage.atomic():
            self._save_pool(updated)
            if updated.status == PoolStatus.DEPLETED and before.status != PoolStatus.DEPLETED:
                self.storage.on_commit(lambda: self.audit_trail.log_event(
                    event_type=AuditEventType.POOL_DEPLETED,
                    entity_type="pool",
                    entity_id=updated.id,
                    metadata={"operation": operation}
                ))

        logger.debug(
            f"Pool {updated.name} {operation}"
            f"{' ' + amount.to_string() if amount else ''}: "
            f"available={updated.available_funds.to_string()} total={updated.total_funds.to_string()}"
        )
        return updated

    def _save_pool(self, pool: Pool) -> None:
        self.storage.save(self.pools_table, pool.id, self._pool_to_dict(pool))

    def _pool_to_dict(self, pool: Pool) -> Dict:
        """Convert Pool to dictionary for storage"""
        def money(value: Optional[Money]) -> Optional[str]:
            return str(value.amount) if value is not None else None

        return {
            'id': pool.id,
            'created_at': pool.created_at.isoformat(),
            'updated_at': pool.updated_at.isoformat(),
            'name': pool.name,
            'token': pool.token,
            'currency': pool.currency.code,
            'total_funds': money(pool.total_funds),
            'available_funds': money(pool.available_funds),
            'interest_rate_bps': pool.interest_rate_bps,
            'deposit_rate_bps': pool.deposit_rate_bps,
            'status': pool.status.value,
            'total_loans_issued': pool.total_loans_issued,
            'total_loans_repaid': pool.total_loans_repaid,
            'total_loans_defaulted': pool.total_loans_defaulted,
            'total_interest_earned': money(pool.total_interest_earned),
            'min_loan_amount': money(pool.min_loan_amount),
            'max_loan_amount': money(pool.max_loan_amount),
            'min_term_days': pool.min_term_days,
            'max_term_days': pool.max_term_days,
            'risk_level': pool.risk_level.value,
            'region': pool.region
        }

    def _pool_from_dict(self, data: Dict) -> Pool:
        """Convert dictionary to Pool"""
        currency = Currency.from_code(data['currency'])

        def money(key: str) -> Optional[Money]:
            if data.get(key) is None:
                return None
            return Money(Decimal(data[key]), currency)

        return Pool(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            name=data['name'],
            token=data['token'],
            currency=currency,
            total_funds=money('total_funds'),
            available_funds=money('available_funds'),
            interest_rate_bps=data['interest_rate_bps'],
            deposit_rate_bps=data.get('deposit_rate_bps', 0),
            status=PoolStatus(data['status']),
            total_loans_issued=data['total_loans_issued'],
            total_loans_repaid=data['total_loans_repaid'],
            total_loans_defaulted=data['total_loans_defaulted'],
            total_interest_earned=money('total_interest_earned'),
            min_loan_amount=money('min_loan_amount'),
            max_loan_amount=money('max_loan_amount'),
            min_term_days=data.get('min_term_days', 1),
            max_term_days=data.get('max_term_days', 365),
            risk_level=RiskLevel(data.get('risk_level', 'medium')),
            region=data.get('region', "")
        )
