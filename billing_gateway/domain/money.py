"""Fixed-point money value object (integer minor units + ISO-4217 currency)"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from billing_gateway.domain.exceptions import InvalidMoneyError

DEFAULT_CURRENCY = "BRL"


@dataclass(frozen=True)
class Money:
    """
    Immutable currency amount.

    The amount is held in minor units (cents) so arithmetic never touches
    floating point. Equality and hashing use (amount, currency), which the
    frozen dataclass gives us for free.

    Example:
        Money.of(4990) + Money.of(10) == Money.of(5000)
        Money.from_decimal("49.90") == Money.of(4990)
    """

    amount: int
    currency: str = DEFAULT_CURRENCY

    def __post_init__(self) -> None:
        # bool is an int subclass; reject it explicitly
        if not isinstance(self.amount, int) or isinstance(self.amount, bool):
            raise InvalidMoneyError(f"Money amount must be an integer number of minor units, got {self.amount!r}")
        if self.amount < 0:
            raise InvalidMoneyError(f"Money amount cannot be negative: {self.amount}")
        if not isinstance(self.currency, str) or len(self.currency) != 3 or not self.currency.isalpha():
            raise InvalidMoneyError(f"Invalid currency code: {self.currency!r}")
        if self.currency != self.currency.upper():
            object.__setattr__(self, "currency", self.currency.upper())

    @classmethod
    def of(cls, amount: int, currency: str = DEFAULT_CURRENCY) -> Money:
        return cls(amount=amount, currency=currency)

    @classmethod
    def zero(cls, currency: str = DEFAULT_CURRENCY) -> Money:
        return cls(amount=0, currency=currency)

    @classmethod
    def from_decimal(cls, value: Decimal | str | int, currency: str = DEFAULT_CURRENCY) -> Money:
        """Build from major units, rounding half-up to the cent ("49.90" -> 4990)"""
        try:
            major = Decimal(str(value))
        except ArithmeticError as e:
            raise InvalidMoneyError(f"Invalid decimal amount: {value!r}") from e
        if not major.is_finite():
            raise InvalidMoneyError(f"Money amount must be finite: {value!r}")
        cents = (major * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return cls(amount=int(cents), currency=currency)

    def to_decimal(self) -> Decimal:
        return (Decimal(self.amount) / 100).quantize(Decimal("0.01"))

    def _check_currency(self, other: Money) -> None:
        if not isinstance(other, Money):
            raise InvalidMoneyError(f"Cannot combine Money with {type(other).__name__}")
        if other.currency != self.currency:
            raise InvalidMoneyError(f"Currency mismatch: {self.currency} vs {other.currency}")

    def __add__(self, other: Money) -> Money:
        self._check_currency(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: Money) -> Money:
        self._check_currency(other)
        result = self.amount - other.amount
        if result < 0:
            raise InvalidMoneyError(f"Subtraction would go negative: {self} - {other}")
        return Money(result, self.currency)

    def __mul__(self, factor: int) -> Money:
        if not isinstance(factor, int) or isinstance(factor, bool):
            raise InvalidMoneyError("Money can only be multiplied by an integer")
        if factor < 0:
            raise InvalidMoneyError("Money cannot be multiplied by a negative factor")
        return Money(self.amount * factor, self.currency)

    __rmul__ = __mul__

    def __lt__(self, other: Money) -> bool:
        self._check_currency(other)
        return self.amount < other.amount

    def __le__(self, other: Money) -> bool:
        self._check_currency(other)
        return self.amount <= other.amount

    def __gt__(self, other: Money) -> bool:
        self._check_currency(other)
        return self.amount > other.amount

    def __ge__(self, other: Money) -> bool:
        self._check_currency(other)
        return self.amount >= other.amount

    def __str__(self) -> str:
        return f"{self.currency} {self.to_decimal()}"
