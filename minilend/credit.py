"""
Collateral & Credit Limit Module

Derives borrowing capacity from deposited collateral. The borrowable share
of collateral is a policy parameter, scaled by the wallet's credit score so
that a good repayment record unlocks a higher ratio and defaults lower it.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, Mapping, Optional, Union

from .currency import Money, round_down, round_up
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .locks import LockManager, credit_lock_key
from .errors import InvalidInput
from .accounts import Account, normalize_wallet

logger = logging.getLogger("minilend.credit")

MIN_CREDIT_SCORE = 300
MAX_CREDIT_SCORE = 850
DEFAULT_CREDIT_SCORE = 600

# Lowest score of each tier -> multiplier applied to the base ratio
DEFAULT_SCORE_MULTIPLIERS = {300: "0.6", 500: "1.0", 750: "1.2"}


class CreditEvent(Enum):
    """Loan outcomes that move a wallet's credit score"""
    LOAN_REPAID = "loan_repaid"
    LOAN_LATE = "loan_late"
    LOAN_DEFAULTED = "loan_defaulted"

    @property
    def score_change(self) -> int:
        return SCORE_CHANGES[self]


SCORE_CHANGES = {
    CreditEvent.LOAN_REPAID: 10,
    CreditEvent.LOAN_LATE: -15,
    CreditEvent.LOAN_DEFAULTED: -30,
}


def clamp_score(score: int) -> int:
    return max(MIN_CREDIT_SCORE, min(MAX_CREDIT_SCORE, score))


@dataclass
class CreditProfile(StorageRecord):
    """Repayment record of one wallet across all pools"""
    wallet_address: str
    score: int
    loans_repaid: int = 0
    late_repayments: int = 0
    defaults: int = 0


class CreditHistory:
    """
    Keeps one credit profile per wallet and applies score changes

    Callers that record an event inside a wider transaction must hold the
    wallet's credit lock until that transaction commits.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        locks: LockManager,
        initial_score: int = DEFAULT_CREDIT_SCORE
    ):
        if clamp_score(initial_score) != initial_score:
            raise InvalidInput(
                f"Initial credit score must be {MIN_CREDIT_SCORE}-{MAX_CREDIT_SCORE}, got {initial_score}"
            )
        self.storage = storage
        self.audit_trail = audit_trail
        self.locks = locks
        self.initial_score = initial_score
        self.profiles_table = "credit_profiles"

    def get_profile(self, wallet_address: str) -> CreditProfile:
        """Stored profile, or an unsaved one at the initial score"""
        wallet = normalize_wallet(wallet_address)
        data = self.storage.load(self.profiles_table, wallet)
        if data:
            return CreditProfile.from_dict(data)
        now = datetime.now(timezone.utc)
        return CreditProfile(id=wallet, created_at=now, updated_at=now,
                             wallet_address=wallet, score=self.initial_score)

    def score(self, wallet_address: str) -> int:
        return self.get_profile(wallet_address).score

    def record(self, wallet_address: str, event: CreditEvent,
               as_of: Optional[datetime] = None) -> CreditProfile:
        """Apply a loan outcome to the wallet's score, clamped to the valid range"""
        now = as_of or datetime.now(timezone.utc)

        with self.locks.hold(credit_lock_key(normalize_wallet(wallet_address))):
            profile = self.get_profile(wallet_address)
            previous = profile.score
            profile = replace(
                profile,
                score=clamp_score(previous + event.score_change),
                loans_repaid=profile.loans_repaid + (event == CreditEvent.LOAN_REPAID),
                late_repayments=profile.late_repayments + (event == CreditEvent.LOAN_LATE),
                defaults=profile.defaults + (event == CreditEvent.LOAN_DEFAULTED),
                updated_at=now
            )

            with self.storage.atomic():
                self.storage.save(self.profiles_table, profile.id, profile.to_dict())
                self.storage.on_commit(lambda: self.audit_trail.log_event(
                    event_type=AuditEventType.CREDIT_SCORE_CHANGED,
                    entity_type="credit_profile",
                    entity_id=profile.id,
                    metadata={
                        "event": event.value,
                        "previous_score": previous,
                        "score": profile.score
                    },
                    actor=profile.wallet_address
                ))

        logger.info(f"Credit score of {profile.wallet_address} {previous} -> {profile.score} "
                    f"after {event.value}")
        return profile


class CreditLimitCalculator:
    """
    Computes credit limits as ``collateral * ratio`` rounded down to the
    currency minor unit

    The ratio is the base ratio times the multiplier of the score's tier,
    capped at 1. Without a score the base ratio applies.
    """

    def __init__(self, ratio: Union[str, Decimal] = Decimal('0.50'),
                 score_multipliers: Optional[Mapping[int, Union[str, Decimal]]] = None):
        ratio = Decimal(str(ratio))
        if not ratio.is_finite() or ratio <= Decimal('0') or ratio > Decimal('1'):
            raise InvalidInput(f"Credit limit ratio must be in (0, 1], got {ratio}")
        self.ratio = ratio

        tiers: Dict[int, Decimal] = {}
        for floor, multiplier in (score_multipliers or DEFAULT_SCORE_MULTIPLIERS).items():
            multiplier = Decimal(str(multiplier))
            if not multiplier.is_finite() or multiplier <= Decimal('0'):
                raise InvalidInput(f"Score multiplier must be positive, got {multiplier}")
            tiers[int(floor)] = multiplier
        self.score_multipliers = dict(sorted(tiers.items()))

    def ratio_for_score(self, score: Optional[int] = None) -> Decimal:
        """Borrowable share of collateral for a credit score"""
        if score is None:
            return self.ratio
        multiplier = Decimal('0')
        for floor, tier_multiplier in self.score_multipliers.items():
            if score >= floor:
                multiplier = tier_multiplier
        if not multiplier:
            # Below every tier
            multiplier = next(iter(self.score_multipliers.values()), Decimal('1'))
        return min(self.ratio * multiplier, Decimal('1'))

    def _validated_collateral(self, collateral: Money) -> Money:
        if not collateral.amount.is_finite():
            raise InvalidInput("Collateral balance must be finite")
        if collateral.is_negative():
            raise InvalidInput(f"Collateral balance cannot be negative: {collateral.to_string()}")
        return collateral

    def limit_for_collateral(self, collateral: Money, score: Optional[int] = None) -> Money:
        """Credit limit for a raw collateral balance"""
        collateral = self._validated_collateral(collateral)
        return round_down(collateral.amount * self.ratio_for_score(score), collateral.currency)

    def credit_limit(self, account: Account, score: Optional[int] = None) -> Money:
        """
        Maximum amount the account may borrow

        Raises:
            InvalidInput: If the collateral balance is negative or not finite
        """
        return self.limit_for_collateral(account.collateral, score)

    def collateral_required(self, account: Account, outstanding: Money,
                            score: Optional[int] = None) -> Money:
        """
        Collateral locked by an outstanding balance

        The smallest collateral whose credit limit covers ``outstanding``,
        rounded up and capped at the account balance.
        """
        collateral = self._validated_collateral(account.collateral)
        if outstanding.is_zero() or outstanding.is_negative():
            return Money.zero(collateral.currency)
        required = round_up(outstanding.amount / self.ratio_for_score(score), collateral.currency)
        return required if required < collateral else collateral
