"""
Money Module

Decimal money amounts quantized to the smallest subunit of their currency.
NEVER uses float for monetary values. A deployment runs on a single
configured currency; mixing currencies is an error.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from typing import Union
from enum import Enum

from .exceptions import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    USD = ("USD", 2)  # US Dollar, 2 decimal places
    EUR = ("EUR", 2)  # Euro, 2 decimal places
    GBP = ("GBP", 2)  # British Pound, 2 decimal places
    JPY = ("JPY", 0)  # Japanese Yen, 0 decimal places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def subunit(self) -> Decimal:
        """Smallest representable amount"""
        return Decimal('0.1') ** self.precision


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

        # Round to currency precision
        rounded = self.amount.quantize(self.currency.subunit, rounding=ROUND_HALF_UP)
        object.__setattr__(self, 'amount', rounded)

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    def _check_currency(self, other: 'Money', verb: str) -> None:
        if self.currency != other.currency:
            raise ValueError(f"Cannot {verb} {self.currency.code} and {other.currency.code}")

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

    def to_string(self) -> str:
        """Format for display"""
        if self.currency.precision == 0:
            return f"{self.currency.code} {self.amount:,.0f}"
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


def to_money(value: Union[Money, Decimal, str, int], currency: Currency) -> Money:
    """
    Coerce a caller-supplied amount into Money of the given currency

    Floats are refused so binary rounding never leaks into balances.

    Raises:
        ValueError: If the value is a float, unparsable, or in another currency
    """
    if isinstance(value, Money):
        if value.currency != currency:
            raise ValueError(f"Expected {currency.code} amount, got {value.currency.code}")
        return value
    if isinstance(value, float):
        raise ValueError("Monetary amounts must be Decimal, str or int, not float")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")
    if not amount.is_finite():
        raise ValueError(f"Amount must be finite, got '{value}'")
    try:
        return Money(amount, currency)
    except InvalidOperation:
        raise ValueError(f"Amount '{value}' exceeds supported precision")


def positive_money(value: Union[Money, Decimal, str, int], currency: Currency,
                   label: str = "Amount") -> Money:
    """
    Coerce an amount and require it to be strictly positive

    Raises:
        ValidationError: If the amount is malformed, zero or negative
    """
    try:
        money = to_money(value, currency)
    except ValueError as e:
        raise ValidationError(f"{label}: {e}") from e
    if not money.is_positive():
        raise ValidationError(f"{label} must be positive, got {money.to_string()}")
    return money
