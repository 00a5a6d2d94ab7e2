"""
Exact fixed-point amounts in the token's smallest unit (stroops).

Every token count, price and payment in the system is an ``Amount``. Values are
plain Python ints underneath, so there is no overflow and no rounding except
where a division is explicit (``apply_bps``, ``mul_div``, ``split``), and those
always truncate toward zero. Floats are refused at every entry point.
"""
import re
from dataclasses import dataclass
from typing import List, Sequence, Union

from services.errors import InvalidAmount, NegativeResult

BPS_DENOMINATOR = 10_000
STROOPS_PER_UNIT = 10_000_000  # 7 decimal places

_DIGITS = re.compile(r"^\d+$")

AmountLike = Union["Amount", int, str]


@dataclass(frozen=True, order=True)
class Amount:
    value: int

    def __post_init__(self):
        if isinstance(self.value, bool) or not isinstance(self.value, int):
            raise InvalidAmount(f"Amount must be an integer, got {type(self.value).__name__}")
        if self.value < 0:
            raise InvalidAmount("Amount cannot be negative", value=str(self.value))

    # ── Construction ──

    @classmethod
    def parse(cls, raw: AmountLike) -> "Amount":
        """Accept an Amount, an int or a canonical decimal string of the smallest unit."""
        if isinstance(raw, Amount):
            return raw
        if isinstance(raw, bool) or isinstance(raw, float):
            raise InvalidAmount(f"Refusing to parse {type(raw).__name__} as an amount", value=str(raw))
        if isinstance(raw, int):
            return cls(raw)
        if isinstance(raw, str):
            text = raw.strip()
            if not _DIGITS.match(text):
                raise InvalidAmount("Amount must be a non-negative integer string", value=raw)
            return cls(int(text))
        raise InvalidAmount(f"Unsupported amount type {type(raw).__name__}")

    @classmethod
    def zero(cls) -> "Amount":
        return cls(0)

    @classmethod
    def sum(cls, amounts) -> "Amount":
        total = 0
        for a in amounts:
            total += cls.parse(a).value
        return cls(total)

    # ── Arithmetic ──

    def __add__(self, other: "Amount") -> "Amount":
        return Amount(self.value + Amount.parse(other).value)

    def __sub__(self, other: "Amount") -> "Amount":
        other = Amount.parse(other)
        if other.value > self.value:
            raise NegativeResult(
                "Subtraction would produce a negative amount",
                minuend=str(self.value), subtrahend=str(other.value),
            )
        return Amount(self.value - other.value)

    def saturating_sub(self, other: "Amount") -> "Amount":
        other = Amount.parse(other)
        return Amount(max(0, self.value - other.value))

    def apply_bps(self, bps: int) -> "Amount":
        """amount * bps / 10000, truncated."""
        if isinstance(bps, bool) or not isinstance(bps, int) or bps < 0:
            raise InvalidAmount("Basis points must be a non-negative integer", bps=str(bps))
        return Amount(self.value * bps // BPS_DENOMINATOR)

    def mul_div(self, numerator: int, denominator: int) -> "Amount":
        """amount * numerator / denominator, truncated."""
        if denominator <= 0:
            raise InvalidAmount("Denominator must be positive", denominator=str(denominator))
        if numerator < 0:
            raise InvalidAmount("Numerator cannot be negative", numerator=str(numerator))
        return Amount(self.value * numerator // denominator)

    def split(self, weights: Sequence[int]) -> List["Amount"]:
        """
        Split proportionally to ``weights``. Every part is truncated and the
        leftover goes to the last part, so the parts always sum to self.
        All-zero weights hand everything to the last part.
        """
        if not weights:
            raise InvalidAmount("Cannot split across zero parts")
        if any(w < 0 for w in weights):
            raise InvalidAmount("Split weights cannot be negative")
        total_weight = sum(weights)
        if total_weight == 0:
            return [Amount.zero()] * (len(weights) - 1) + [self]
        parts = [self.value * w // total_weight for w in weights[:-1]]
        parts.append(self.value - sum(parts))
        return [Amount(p) for p in parts]

    # ── Predicates / rendering ──

    def is_zero(self) -> bool:
        return self.value == 0

    def is_positive(self) -> bool:
        return self.value > 0

    def __int__(self) -> int:
        return self.value

    def __str__(self) -> str:
        return str(self.value)

    def display(self, decimals: int = 7) -> str:
        """Human-readable units, e.g. 15000000 -> '1.5'."""
        scale = 10 ** decimals
        whole, frac = divmod(self.value, scale)
        if frac == 0:
            return str(whole)
        return f"{whole}.{str(frac).rjust(decimals, '0').rstrip('0')}"


def require_positive(raw: AmountLike, field: str = "amount") -> Amount:
    amount = Amount.parse(raw)
    if not amount.is_positive():
        raise InvalidAmount(f"{field} must be greater than zero", field=field, value=str(amount))
    return amount
