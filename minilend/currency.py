"""
Stablecoin Money Module

Currency definitions for the supported stablecoins and an immutable Money
type with proper Decimal precision. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, ROUND_DOWN, ROUND_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Union

from .errors import InvalidInput

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """Supported stablecoins with accounting precision (minor unit)"""
    CUSD = ("cUSD", 2)    # Celo Dollar
    CEUR = ("cEUR", 2)    # Celo Euro
    CREAL = ("cREAL", 2)  # Celo Brazilian Real
    USDC = ("USDC", 2)
    USDT = ("USDT", 2)

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def minor_unit(self) -> Decimal:
        """Smallest representable amount, e.g. 0.01"""
        return Decimal('0.1') ** self.precision

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        """Look up a currency by its code, case-insensitively"""
        for currency in cls:
            if currency.code.lower() == code.lower():
                return currency
        raise InvalidInput(f"Unsupported currency: {code}")


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    All monetary values MUST use this class or raw Decimal.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

        if not self.amount.is_finite():
            raise InvalidInput(f"Amount must be finite, got {self.amount}")

        # Round to currency precision
        rounded = self.amount.quantize(self.currency.minor_unit, rounding=ROUND_HALF_UP)
        object.__setattr__(self, 'amount', rounded)

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    def _check_currency(self, other: 'Money', verb: str) -> None:
        if self.currency != other.currency:
            raise InvalidInput(f"Cannot {verb} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier: Decimal) -> 'Money':
        if not isinstance(multiplier, Decimal):
            multiplier = Decimal(str(multiplier))
        return Money(self.amount * multiplier, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency))

    def __lt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        """Check if amount is exactly zero"""
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        """Check if amount is positive"""
        return self.amount > Decimal('0')

    def is_negative(self) -> bool:
        """Check if amount is negative"""
        return self.amount < Decimal('0')

    def to_decimal_string(self) -> str:
        """Lossless plain decimal string, e.g. '504.11'"""
        return f"{self.amount:.{self.currency.precision}f}"

    def to_string(self) -> str:
        """Format for display"""
        return f"{self.amount:,.{self.currency.precision}f} {self.currency.code}"


def round_down(value: Decimal, currency: Currency) -> Money:
    """Truncate a Decimal to the currency minor unit"""
    return Money(value.quantize(currency.minor_unit, rounding=ROUND_DOWN), currency)


def round_up(value: Decimal, currency: Currency) -> Money:
    """Round a Decimal up to the next currency minor unit"""
    return Money(value.quantize(currency.minor_unit, rounding=ROUND_UP), currency)


def parse_amount(value: Union[str, int, Decimal], currency: Currency) -> Money:
    """
    Parse a request amount into Money without losing precision

    Args:
        value: Decimal string ("504.11"), int or Decimal
        currency: Currency the amount is denominated in

    Returns:
        Money with exactly the given value

    Raises:
        InvalidInput: If the value is malformed, not finite, or has more
            decimal places than the currency supports
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidInput("Amounts must be decimal strings, not floats")

    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise InvalidInput("Amount must be a non-empty string")
        try:
            amount = Decimal(text)
        except InvalidOperation:
            raise InvalidInput(f"Cannot convert '{value}' to a decimal amount")
    elif isinstance(value, (int, Decimal)):
        amount = Decimal(value)
    else:
        raise InvalidInput(f"Unsupported amount type: {type(value).__name__}")

    if not amount.is_finite():
        raise InvalidInput(f"Amount must be finite, got {value}")

    try:
        truncated = amount.quantize(currency.minor_unit, rounding=ROUND_DOWN)
    except InvalidOperation:
        raise InvalidInput(f"Amount {value} is out of range")

    if amount != truncated:
        raise InvalidInput(
            f"Amount {value} has more than {currency.precision} decimal places for {currency.code}"
        )

    return Money(amount, currency)
