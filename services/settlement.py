"""
Trade settlement arithmetic

Return percentage is fixed at open from the timeframe table below and
never recomputed. Both admin resolution and close-at-market settle with
the same formula:

    win:  pnl = amount * return_pct / 100, credit = amount + pnl
    loss: pnl = -amount,                   credit = 0
"""

from dataclasses import dataclass
from decimal import Decimal

from utils.decimal_precision import MonetaryDecimal

# (max timeframe seconds inclusive, return percent), checked in order
RETURN_PCT_TABLE = (
    (60, 20),
    (120, 30),
    (180, 40),
    (360, 50),
    (600, 60),
    (1200, 70),
)
MAX_RETURN_PCT = 80


def return_pct_for_timeframe(timeframe_seconds: int) -> int:
    for upper_bound, pct in RETURN_PCT_TABLE:
        if timeframe_seconds <= upper_bound:
            return pct
    return MAX_RETURN_PCT


@dataclass(frozen=True)
class Settlement:
    won: bool
    pnl: Decimal
    credit: Decimal


def compute_settlement(amount: Decimal, return_pct: int, won: bool) -> Settlement:
    if won:
        pnl = MonetaryDecimal.percent_of(amount, return_pct)
        return Settlement(won=True, pnl=pnl, credit=MonetaryDecimal.quantize(amount + pnl))
    return Settlement(won=False, pnl=MonetaryDecimal.quantize(-amount), credit=Decimal("0"))


def potential_return(amount: Decimal, return_pct: int) -> Decimal:
    return MonetaryDecimal.percent_of(amount, return_pct)


def is_winning_close(direction: str, price_open: Decimal, price_close: Decimal) -> bool:
    """UP wins when the close is at or above the open; DOWN wins otherwise"""
    return (direction == "UP") == (price_close >= price_open)
