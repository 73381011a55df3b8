"""Currency-tagged decimal amounts."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

DEFAULT_CURRENCY = "USD"


@dataclass(frozen=True)
class Money:
    """An amount in a single currency.

    Mapped onto amount/currency column pairs with SQLAlchemy ``composite``.
    Arithmetic between different currencies raises ``ValueError``.
    """

    amount: Decimal
    currency: str = DEFAULT_CURRENCY

    @classmethod
    def zero(cls, currency: str = DEFAULT_CURRENCY) -> Money:
        """Zero in the given currency."""
        return cls(Decimal("0"), currency)

    @classmethod
    def of(cls, value: Decimal | int | float | str, currency: str = DEFAULT_CURRENCY) -> Money:
        """Build from any numeric value, going through ``str`` for floats."""
        return cls(Decimal(str(value)), currency)

    @property
    def is_zero(self) -> bool:
        return self.amount == 0

    def _check(self, other: Money) -> None:
        if self.currency != other.currency:
            raise ValueError(f"Currency mismatch: {self.currency} vs {other.currency}")

    def __add__(self, other: Money) -> Money:
        self._check(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: Money) -> Money:
        self._check(other)
        return Money(self.amount - other.amount, self.currency)

    def __str__(self) -> str:
        return f"{self.amount:.2f} {self.currency}"
