# ===============================================================
# utils/money.py: Money value type
# ===============================================================
from dataclasses import dataclass

from errors import InsufficientBalanceError


@dataclass(frozen=True, eq=False)
class Money:
    """
    Real / bonus currency counters in minor units.

    `withdrawable` is the part of `real` that may be withdrawn. It is
    metadata: equality and hashing only look at real + bonus.
    """

    real: int = 0
    bonus: int = 0
    withdrawable: int = 0

    def __post_init__(self):
        if self.real < 0 or self.bonus < 0 or self.withdrawable < 0:
            raise ValueError(f"Money components must be non-negative: {self!r}")

    def __add__(self, other: "Money") -> "Money":
        return Money(
            real=self.real + other.real,
            bonus=self.bonus + other.bonus,
            withdrawable=self.withdrawable + other.withdrawable,
        )

    def __sub__(self, other: "Money") -> "Money":
        if not self.covers(other):
            raise InsufficientBalanceError(f"Insufficient balance: {self} < {other}")
        real = self.real - other.real
        withdrawable = max(self.withdrawable - other.withdrawable, 0)
        return Money(
            real=real,
            bonus=self.bonus - other.bonus,
            withdrawable=min(withdrawable, real),
        )

    def __eq__(self, other):
        if not isinstance(other, Money):
            return NotImplemented
        return self.real == other.real and self.bonus == other.bonus

    def __hash__(self):
        return hash((self.real, self.bonus))

    def __str__(self):
        return f"Money(real: {self.real}, bonus: {self.bonus})"

    def covers(self, other: "Money") -> bool:
        return self.real >= other.real and self.bonus >= other.bonus

    def is_zero(self) -> bool:
        return self.real == 0 and self.bonus == 0

    def to_dict(self) -> dict:
        return {"real": self.real, "bonus": self.bonus, "withdrawable": self.withdrawable}

    @classmethod
    def from_dict(cls, data: dict | None) -> "Money":
        if not data:
            return cls()
        return cls(
            real=int(data.get("real", 0)),
            bonus=int(data.get("bonus", 0)),
            withdrawable=int(data.get("withdrawable", 0)),
        )
