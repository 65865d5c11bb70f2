"""
Constant-Product Curve Module

Pure x * y = k arithmetic used by the pool program. Fees are charged on the
input side in basis points, and every rounding step resolves in the pool's
favour: the reserve that stays behind is rounded up, amounts paid out are
rounded down and amounts paid in are rounded up.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


BASIS_POINTS = 10_000
DEFAULT_PRECISION = 6


class CurveError(ValueError):
    """Raised when the curve cannot produce a valid result"""
    pass


class SlippageExceeded(CurveError):
    """Raised when a swap would pay out less than the caller's minimum"""
    pass


class LiquidityPair(Enum):
    """Side of the pair the caller is paying in"""
    X = "x"
    Y = "y"


@dataclass
class XYAmounts:
    x: int
    y: int


@dataclass
class SwapResult:
    """Amounts a swap moves: `deposit` in, `withdraw` out, `fee` retained"""
    deposit: int
    withdraw: int
    fee: int


def _ceil_div(numerator: int, denominator: int) -> int:
    if denominator == 0:
        raise CurveError("Division by zero")
    return -(-numerator // denominator)


class ConstantProduct:
    """
    Reserve snapshot of a two-token pool.

    Args:
        x: Reserve of token X
        y: Reserve of token Y
        l: Outstanding liquidity (LP supply, or a proxy for it)
        fee: Swap fee in basis points
        precision: Decimal precision used for pro-rata ratios
    """

    def __init__(self, x: int, y: int, l: int, fee: int, precision: Optional[int] = None):
        if x <= 0 or y <= 0:
            raise CurveError("Pool reserves must be positive")
        if l < 0:
            raise CurveError("Liquidity cannot be negative")
        if not 0 <= fee < BASIS_POINTS:
            raise CurveError(f"Fee {fee} out of range")
        self.x = x
        self.y = y
        self.l = l
        self.fee = fee
        self.precision = DEFAULT_PRECISION if precision is None else precision

    @property
    def k(self) -> int:
        return self.x * self.y

    @staticmethod
    def delta_y_from_x_swap_amount(x: int, y: int, a: int) -> int:
        """Y paid out when `a` of X is added to reserves (x, y)"""
        if x <= 0 or y <= 0:
            raise CurveError("Pool reserves must be positive")
        new_y = _ceil_div(x * y, x + a)
        return y - new_y

    @staticmethod
    def delta_x_from_y_swap_amount(x: int, y: int, a: int) -> int:
        """X paid out when `a` of Y is added to reserves (x, y)"""
        if x <= 0 or y <= 0:
            raise CurveError("Pool reserves must be positive")
        new_x = _ceil_div(x * y, y + a)
        return x - new_x

    @staticmethod
    def xy_deposit_amounts_from_l(x: int, y: int, l: int, a: int, precision: int) -> XYAmounts:
        """Reserves a depositor must add to mint `a` liquidity on top of `l`"""
        if l <= 0:
            raise CurveError("Liquidity must be positive")
        scale = 10 ** precision
        ratio = _ceil_div(a * scale, l)
        return XYAmounts(x=_ceil_div(x * ratio, scale), y=_ceil_div(y * ratio, scale))

    @staticmethod
    def xy_withdraw_amounts_from_l(x: int, y: int, l: int, a: int, precision: int) -> XYAmounts:
        """Reserves returned for redeeming `a` of `l` outstanding liquidity"""
        if l <= 0:
            raise CurveError("Liquidity must be positive")
        if a > l:
            raise CurveError(f"Cannot redeem {a} of {l} liquidity")
        scale = 10 ** precision
        ratio = a * scale // l
        return XYAmounts(x=x * ratio // scale, y=y * ratio // scale)

    def swap(self, pair: LiquidityPair, amount: int, min_out: int) -> SwapResult:
        """
        Swap `amount` of `pair` into the pool and update the reserves.

        Raises:
            CurveError: If the amount is not positive
            SlippageExceeded: If the payout is below `min_out`
        """
        if amount <= 0:
            raise CurveError("Swap amount must be positive")

        net = amount * (BASIS_POINTS - self.fee) // BASIS_POINTS
        if pair == LiquidityPair.X:
            withdraw = self.delta_y_from_x_swap_amount(self.x, self.y, net)
        else:
            withdraw = self.delta_x_from_y_swap_amount(self.x, self.y, net)

        if withdraw < min_out:
            raise SlippageExceeded(f"Swap pays {withdraw}, minimum is {min_out}")

        if pair == LiquidityPair.X:
            self.x += amount
            self.y -= withdraw
        else:
            self.y += amount
            self.x -= withdraw
        return SwapResult(deposit=amount, withdraw=withdraw, fee=amount - net)
