"""
Fixed-Point Codec
=================
Maps decimal money amounts into the integer domain of the BFV scheme.

A ``ScaledAmount`` is an integer together with the number of times the
scale factor has been applied to it. Addition and subtraction require equal
exponents; multiplication adds them. A product of two exponent-1 values
therefore carries exponent 2 and must be divided by ``scale_factor ** 2``
before display.

Example (scale factor 100):
    1500.75 -> ScaledAmount(150075, 1)
    0.15    -> ScaledAmount(15, 1)
    product -> ScaledAmount(2251125, 2) -> 225.1125
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import List, Sequence, Union

from .errors import ScaleMismatch, SchemeValidationError


Number = Union[int, float, str, Decimal]


@dataclass(frozen=True)
class ScaledAmount:
    """Signed integer plus implicit scale exponent"""
    value: int
    exponent: int = 1

    def __post_init__(self):
        if self.exponent < 0:
            raise ValueError("scale exponent cannot be negative")

    def to_dict(self) -> dict:
        return {'value': self.value, 'exponent': self.exponent}


def to_decimal(amount: Number) -> Decimal:
    """
    Convert user input to Decimal.

    Floats go through their shortest repr so that 1500.75 stays 1500.75
    instead of its binary expansion.
    """
    if isinstance(amount, Decimal):
        result = amount
    elif isinstance(amount, float):
        result = Decimal(repr(amount))
    else:
        try:
            result = Decimal(str(amount).strip())
        except InvalidOperation:
            raise ValueError(f"not a decimal amount: {amount!r}")
    if not result.is_finite():
        raise ValueError(f"amount must be finite: {amount!r}")
    return result


def to_scaled(amount: Number, scale_factor: int) -> ScaledAmount:
    """Round ``amount * scale_factor`` half away from zero, exponent 1"""
    scaled = to_decimal(amount) * scale_factor
    return ScaledAmount(int(scaled.to_integral_value(rounding=ROUND_HALF_UP)), 1)


def from_scaled(amount: ScaledAmount, scale_factor: int) -> Decimal:
    return Decimal(amount.value) / (Decimal(scale_factor) ** amount.exponent)


def require_same_scale(left: int, right: int, operation: str = "combine"):
    if left != right:
        raise ScaleMismatch(
            f"cannot {operation} values at scale exponents {left} and {right}",
            left=left, right=right,
        )


def combine_add(a: ScaledAmount, b: ScaledAmount) -> ScaledAmount:
    require_same_scale(a.exponent, b.exponent, "add")
    return ScaledAmount(a.value + b.value, a.exponent)


def combine_sub(a: ScaledAmount, b: ScaledAmount) -> ScaledAmount:
    require_same_scale(a.exponent, b.exponent, "subtract")
    return ScaledAmount(a.value - b.value, a.exponent)


def combine_mul(a: ScaledAmount, b: ScaledAmount) -> ScaledAmount:
    return ScaledAmount(a.value * b.value, a.exponent + b.exponent)


class FixedPointCodec:
    """
    Codec bound to one scale factor and (optionally) one plaintext modulus.

    With a plaintext modulus set, every integer handed to the encrypted
    domain is checked against the signed range ``(-t/2, t/2]``; values
    outside it would silently wrap inside the scheme.
    """

    def __init__(self, scale_factor: int = 100, plain_modulus: int = None):
        if scale_factor <= 0:
            raise ValueError("scale_factor must be positive")
        self.scale_factor = scale_factor
        self.plain_modulus = plain_modulus

    def encode(self, amount: Number) -> ScaledAmount:
        return to_scaled(amount, self.scale_factor)

    def decode(self, amount: ScaledAmount) -> Decimal:
        return from_scaled(amount, self.scale_factor)

    def encode_many(self, amounts: Sequence[Number]) -> List[int]:
        """Scale a list of amounts to slot integers (all exponent 1)"""
        values = [self.encode(a).value for a in amounts]
        for v in values:
            self.check_range(v)
        return values

    def decode_many(self, values: Sequence[int], exponent: int = 1) -> List[Decimal]:
        return [self.decode(ScaledAmount(int(v), exponent)) for v in values]

    def check_range(self, value: int):
        if self.plain_modulus is None:
            return
        half = self.plain_modulus // 2
        if not -half <= value <= half:
            raise SchemeValidationError(
                f"scaled value {value} outside plaintext range +/-{half}"
            )

    def increment(self, exponent: int = 1) -> Decimal:
        """Smallest representable step at the given exponent"""
        return Decimal(1) / (Decimal(self.scale_factor) ** exponent)
