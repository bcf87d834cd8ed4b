from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from expense_ledger.core.errors import CurrencyMismatchError, InvalidAmountError

# Number of minor-unit digits per supported currency.
CURRENCY_EXPONENTS: dict[str, int] = {
    "USD": 2,
    "EUR": 2,
    "GBP": 2,
    "INR": 2,
    "JPY": 0,
    "CAD": 2,
    "AUD": 2,
    "CHF": 2,
    "CNY": 2,
}


def currency_exponent(currency: str) -> int:
    try:
        return CURRENCY_EXPONENTS[currency.upper()]
    except KeyError:
        raise InvalidAmountError(f"Unsupported currency: {currency!r}") from None


@dataclass(frozen=True)
class Money:
    """
    An amount in integer minor units (cents for USD) tagged with its currency.

    Arithmetic only ever touches ints; ``float`` is rejected at every entry point.
    Parsing from text goes through ``Decimal`` and rounds half-up to the
    currency's minor unit.
    """

    minor: int
    currency: str = "USD"

    def __post_init__(self) -> None:
        if isinstance(self.minor, bool) or not isinstance(self.minor, int):
            raise InvalidAmountError(f"Money needs integer minor units, got {type(self.minor).__name__}")
        currency_exponent(self.currency)
        if self.currency != self.currency.upper():
            object.__setattr__(self, "currency", self.currency.upper())

    @classmethod
    def zero(cls, currency: str = "USD") -> Money:
        return cls(0, currency)

    @classmethod
    def parse(cls, value: Union[str, int, Decimal], currency: str = "USD") -> Money:
        """Parse a major-unit amount such as ``"12.50"`` into minor units."""
        if isinstance(value, float):
            raise InvalidAmountError("Float amounts are not accepted; pass a string or Decimal.")
        try:
            dec = Decimal(str(value).strip().replace(",", ""))
        except InvalidOperation:
            raise InvalidAmountError(f"Not a valid amount: {value!r}") from None
        if not dec.is_finite():
            raise InvalidAmountError(f"Not a valid amount: {value!r}")
        exp = currency_exponent(currency)
        minor = (dec * (Decimal(10) ** exp)).quantize(Decimal(1), rounding=ROUND_HALF_UP)
        return cls(int(minor), currency)

    def to_decimal(self) -> Decimal:
        exp = currency_exponent(self.currency)
        return Decimal(self.minor).scaleb(-exp)

    def _check(self, other: Money) -> None:
        if not isinstance(other, Money):
            raise TypeError(f"Expected Money, got {type(other).__name__}")
        if other.currency != self.currency:
            raise CurrencyMismatchError(f"Cannot combine {self.currency} with {other.currency}")

    def __add__(self, other: Money) -> Money:
        self._check(other)
        return Money(self.minor + other.minor, self.currency)

    def __sub__(self, other: Money) -> Money:
        self._check(other)
        return Money(self.minor - other.minor, self.currency)

    def __neg__(self) -> Money:
        return Money(-self.minor, self.currency)

    def __abs__(self) -> Money:
        return Money(abs(self.minor), self.currency)

    def __bool__(self) -> bool:
        return self.minor != 0

    @property
    def is_positive(self) -> bool:
        return self.minor > 0

    @property
    def is_negative(self) -> bool:
        return self.minor < 0

    def format(self) -> str:
        exp = currency_exponent(self.currency)
        return f"{self.to_decimal():,.{exp}f} {self.currency}"

    def __str__(self) -> str:
        return self.format()
