"""
Test suite for account management

Tests collateral deposits and withdrawals, wallet validation, deposit
yield checkpointing and collateral seizure.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timedelta, timezone

from minilend.currency import Money, Currency
from minilend.storage import InMemoryStorage
from minilend.audit import AuditTrail, AuditEventType
from minilend.locks import LockManager
from minilend.interest import InterestEngine
from minilend.pools import PoolManager
from minilend.accounts import AccountManager, normalize_wallet, account_id_for
from minilend.errors import InvalidInput

WALLET = "0x1111111111111111111111111111111111111111"
CUSD_TOKEN = "0x765de816845861e75a25fca122bb6898b8b1282a"
SECOND_CUSD_TOKEN = "0x874069fa1eb16d44d622f2e0ca25eea172369bc1"
START = datetime(2024, 1, 1, tzinfo=timezone.utc)


def cusd(value: str) -> Money:
    return Money(Decimal(value), Currency.CUSD)


class TestWalletAddresses:
    """Test wallet normalization"""

    def test_lower_cases_address(self):
        mixed = "0xAbCdEf0123456789aBcDeF0123456789ABCDEF01"
        assert normalize_wallet(mixed) == mixed.lower()

    @pytest.mark.parametrize("wallet", [
        "", "0x123", "1111111111111111111111111111111111111111",
        "0xZZ11111111111111111111111111111111111111", None
    ])
    def test_invalid_addresses(self, wallet):
        with pytest.raises(InvalidInput):
            normalize_wallet(wallet)

    def test_account_id_is_per_pool(self):
        assert account_id_for(WALLET.upper().replace("0X", "0x"), "pool-a") == f"{WALLET}:pool-a"
        assert account_id_for(WALLET, "pool-a") != account_id_for(WALLET, "pool-b")


class AccountTestCase:
    """Shared fixtures: one storage, one audit trail, a cUSD pool paying 5%"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.locks = LockManager()
        self.pools = PoolManager(self.storage, self.audit, self.locks)
        self.pool = self.pools.create_pool(
            name="cUSD pool", token=CUSD_TOKEN, currency=Currency.CUSD,
            total_funds=cusd("10000"), interest_rate_bps=1000, deposit_rate_bps=500
        )
        self.manager = AccountManager(self.storage, self.audit, self.locks, InterestEngine())


class TestAccountManager(AccountTestCase):
    """Test collateral deposits and withdrawals"""

    def test_first_deposit_opens_account(self):
        account = self.manager.deposit(WALLET, self.pool, cusd("100"), as_of=START)

        assert account.collateral == cusd("100")
        assert account.wallet_address == WALLET
        assert account.pool_id == self.pool.id
        assert self.manager.get_account(WALLET, self.pool.id) == account

        event_types = [e.event_type for e in self.audit.get_events_for_entity("account", account.id)]
        assert event_types == [AuditEventType.ACCOUNT_OPENED, AuditEventType.COLLATERAL_DEPOSITED]

    def test_deposits_accumulate(self):
        self.manager.deposit(WALLET, self.pool, cusd("100"), as_of=START)
        account = self.manager.deposit(WALLET, self.pool, cusd("50.25"), as_of=START)
        assert account.collateral == cusd("150.25")

    def test_wallet_lookup_is_case_insensitive(self):
        self.manager.deposit(WALLET, self.pool, cusd("100"), as_of=START)
        upper = "0x" + WALLET[2:].upper()
        assert self.manager.get_account(upper, self.pool.id).collateral == cusd("100")

    @pytest.mark.parametrize("amount", ["0", "-5"])
    def test_non_positive_deposit_rejected(self, amount):
        with pytest.raises(InvalidInput):
            self.manager.deposit(WALLET, self.pool, cusd(amount))

    def test_deposit_in_wrong_currency_rejected(self):
        with pytest.raises(InvalidInput):
            self.manager.deposit(WALLET, self.pool, Money(Decimal("10"), Currency.CEUR))

    def test_withdraw(self):
        self.manager.deposit(WALLET, self.pool, cusd("100"), as_of=START)
        account = self.manager.withdraw(WALLET, self.pool, cusd("40"), as_of=START)
        assert account.collateral == cusd("60")

    def test_withdraw_more_than_balance(self):
        self.manager.deposit(WALLET, self.pool, cusd("100"), as_of=START)
        with pytest.raises(InvalidInput):
            self.manager.withdraw(WALLET, self.pool, cusd("100.01"))
        assert self.manager.get_account(WALLET, self.pool.id).collateral == cusd("100")

    def test_withdraw_without_account(self):
        with pytest.raises(InvalidInput):
            self.manager.withdraw(WALLET, self.pool, cusd("1"))

    def test_get_or_empty(self):
        account = self.manager.get_or_empty(WALLET, self.pool, START)
        assert account.collateral.is_zero()
        assert account.currency == Currency.CUSD
        assert self.manager.get_account(WALLET, self.pool.id) is None

    def test_list_accounts(self):
        other = "0x2222222222222222222222222222222222222222"
        self.manager.deposit(WALLET, self.pool, cusd("1"), as_of=START)
        self.manager.deposit(other, self.pool, cusd("1"), as_of=START)
        assert {a.wallet_address for a in self.manager.list_accounts()} == {WALLET, other}
        assert [a.wallet_address for a in self.manager.list_accounts(other)] == [other]


class TestAccountsPerPool(AccountTestCase):
    """Test that one wallet keeps a separate account in every pool"""

    def setup_method(self):
        super().setup_method()
        self.second_pool = self.pools.create_pool(
            name="cUSD high yield", token=SECOND_CUSD_TOKEN, currency=Currency.CUSD,
            total_funds=cusd("10000"), interest_rate_bps=1500, deposit_rate_bps=1000
        )

    def test_same_currency_pools_hold_separate_balances(self):
        self.manager.deposit(WALLET, self.pool, cusd("1000"), as_of=START)
        self.manager.deposit(WALLET, self.second_pool, cusd("300"), as_of=START)

        assert self.manager.get_account(WALLET, self.pool.id).collateral == cusd("1000")
        assert self.manager.get_account(WALLET, self.second_pool.id).collateral == cusd("300")
        assert len(self.manager.list_accounts(WALLET)) == 2

    def test_each_account_earns_its_pools_rate(self):
        first = self.manager.deposit(WALLET, self.pool, cusd("1000"), as_of=START)
        second = self.manager.deposit(WALLET, self.second_pool, cusd("1000"), as_of=START)
        later = START + timedelta(days=73)

        # 73 days on 1000: 5% = 10.00, 10% = 20.00
        assert self.manager.gross_yield(first, self.pool, later) == cusd("10.00")
        assert self.manager.gross_yield(second, self.second_pool, later) == cusd("20.00")

    def test_withdraw_only_touches_one_pool(self):
        self.manager.deposit(WALLET, self.pool, cusd("1000"), as_of=START)
        self.manager.deposit(WALLET, self.second_pool, cusd("300"), as_of=START)

        with pytest.raises(InvalidInput):
            self.manager.withdraw(WALLET, self.second_pool, cusd("500"), as_of=START)
        self.manager.withdraw(WALLET, self.pool, cusd("500"), as_of=START)
        assert self.manager.get_account(WALLET, self.second_pool.id).collateral == cusd("300")


class TestDepositYield(AccountTestCase):
    """Test yield checkpointing around balance changes"""

    def test_yield_checkpointed_before_balance_change(self):
        """Yield earned on the old balance is kept when the balance grows"""
        self.manager.deposit(WALLET, self.pool, cusd("1000"), as_of=START)
        # 73 days on 1000 at 5% = 10.00
        account = self.manager.deposit(WALLET, self.pool, cusd("1000"),
                                       as_of=START + timedelta(days=73))
        assert account.yield_accrued == cusd("10.00")

        # Another 73 days on 2000 = 20.00
        later = START + timedelta(days=146)
        assert self.manager.gross_yield(account, self.pool, later) == cusd("30.00")

    def test_net_yield_and_usage(self):
        account = self.manager.deposit(WALLET, self.pool, cusd("1000"), as_of=START)
        later = START + timedelta(days=73)

        updated = self.manager.record_yield_used(account, self.pool, cusd("4.00"), later)
        assert updated.yield_used_for_repayment == cusd("4.00")
        assert self.manager.net_yield(updated, self.pool, later) == cusd("6.00")

    def test_cannot_use_more_yield_than_earned(self):
        account = self.manager.deposit(WALLET, self.pool, cusd("1000"), as_of=START)
        with pytest.raises(InvalidInput):
            self.manager.record_yield_used(account, self.pool, cusd("10.01"),
                                           START + timedelta(days=73))


class TestSeizeCollateral(AccountTestCase):
    """Test collateral taken to cover a defaulted loan"""

    def test_seize_reduces_collateral_and_audits(self):
        self.manager.deposit(WALLET, self.pool, cusd("1000"), as_of=START)
        later = START + timedelta(days=73)

        account = self.manager.seize_collateral(WALLET, self.pool, cusd("400"), later, "loan-1")

        assert account.collateral == cusd("600")
        # Yield on the full balance is kept up to the seizure
        assert account.yield_accrued == cusd("10.00")
        seized = self.audit.get_events_by_type(AuditEventType.COLLATERAL_SEIZED)
        assert len(seized) == 1
        assert seized[0].metadata["loan_id"] == "loan-1"
        assert seized[0].metadata["amount"] == "400.00"

    def test_cannot_seize_more_than_balance(self):
        self.manager.deposit(WALLET, self.pool, cusd("100"), as_of=START)
        with pytest.raises(InvalidInput):
            self.manager.seize_collateral(WALLET, self.pool, cusd("100.01"), START, "loan-1")
        assert self.manager.get_account(WALLET, self.pool.id).collateral == cusd("100")
