"""
Bet pricing. Pure math, no state.

All functions take Decimal (or int Zeny) inputs and return Decimal or
int outputs. The caller (market engine) owns state and persistence.

Pipeline for one bet of stake S on an outcome with probability p (%):
    fee         = S * 2%                  (burned, never pooled)
    investment  = S - fee
    p'          = clamp(p / 100, 0.01, 0.99)
    odds        = 1 / p'  (backing)   or   1 / (1 - p')  (against)
    odds        = clamp(odds, 1.01, 100)
    payout      = round(investment * odds)

The payout uses the unrounded odds. The odds recorded on the bet are
quantized to 4 dp for display.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP


ZERO = Decimal("0")
HUNDRED = Decimal("100")

MIN_STAKE = 10
MAX_STAKE = 100_000
FEE_RATE = Decimal("0.02")

PROBABILITY_FLOOR = Decimal("0.01")
PROBABILITY_CEILING = Decimal("0.99")
ODDS_FLOOR = Decimal("1.01")
ODDS_CEILING = Decimal("100")

XP_PER_BET = 10
XP_PER_LEVEL = 1000

DEFAULT_POOL = Decimal("100")

_ODDS_QUANTUM = Decimal("0.0001")
_PROBABILITY_QUANTUM = Decimal("0.01")


@dataclass(frozen=True)
class Quote:
    """Everything placement needs to know about one bet before writing it."""
    stake: int
    fee: Decimal
    investment: Decimal
    odds: Decimal
    potential_payout: int


# ---------------------------------------------------------------------------
# Core functions
# ---------------------------------------------------------------------------

def fee(stake: int) -> Decimal:
    """Platform fee on a stake. Exact, no rounding."""
    return Decimal(stake) * FEE_RATE


def investment(stake: int) -> Decimal:
    """The part of the stake that is priced and pooled."""
    return Decimal(stake) - fee(stake)


def clamp_probability(percent: Decimal) -> Decimal:
    """Percentage (0-100) to a fraction clamped into [0.01, 0.99]."""
    p = Decimal(percent) / HUNDRED
    return max(PROBABILITY_FLOOR, min(PROBABILITY_CEILING, p))


def clamped_odds(percent: Decimal, direction: str = "YES") -> Decimal:
    """Decimal odds for backing (YES) or opposing (NO) an outcome, unrounded."""
    p = clamp_probability(percent)
    if direction == "YES":
        raw = 1 / p
    elif direction == "NO":
        raw = 1 / (1 - p)
    else:
        raise ValueError(f"unknown direction: {direction}")
    return max(ODDS_FLOOR, min(ODDS_CEILING, raw))


def odds(percent: Decimal, direction: str = "YES") -> Decimal:
    """
    Clamped odds quantized to 4 dp. This is the value recorded on the bet;
    the payout is priced from the unrounded odds.
    """
    return clamped_odds(percent, direction).quantize(
        _ODDS_QUANTUM, rounding=ROUND_HALF_UP)


def potential_payout(invested: Decimal, bet_odds: Decimal) -> int:
    """investment * odds, rounded half-up to whole Zeny."""
    return int((invested * bet_odds).quantize(Decimal("1"),
                                              rounding=ROUND_HALF_UP))


def quote(stake: int, percent: Decimal, direction: str = "YES") -> Quote:
    """Price a stake against an outcome's current probability."""
    invested = investment(stake)
    raw_odds = clamped_odds(percent, direction)
    return Quote(
        stake=stake,
        fee=fee(stake),
        investment=invested,
        odds=raw_odds.quantize(_ODDS_QUANTUM, rounding=ROUND_HALF_UP),
        potential_payout=potential_payout(invested, raw_odds),
    )


# ---------------------------------------------------------------------------
# Binary pools
# ---------------------------------------------------------------------------

def binary_probabilities(pool_yes: Decimal,
                         pool_no: Decimal) -> tuple[Decimal, Decimal]:
    """
    Probabilities (%) for OUI and NON from the pool ratio.

    OUI = pool_yes / (pool_yes + pool_no) * 100 at 2 dp, NON = 100 - OUI,
    so the pair always sums to exactly 100. Empty pools price at 50/50.
    """
    total = pool_yes + pool_no
    if total <= ZERO:
        return Decimal("50.00"), Decimal("50.00")
    yes = (pool_yes / total * HUNDRED).quantize(
        _PROBABILITY_QUANTUM, rounding=ROUND_HALF_UP)
    return yes, HUNDRED - yes


def equal_split(n: int) -> list[Decimal]:
    """n probabilities (%) at 2 dp that sum to exactly 100."""
    if n <= 0:
        return []
    share = (HUNDRED / n).quantize(_PROBABILITY_QUANTUM, rounding=ROUND_FLOOR)
    split = [share] * n
    split[0] += HUNDRED - share * n
    return split


# ---------------------------------------------------------------------------
# Progression
# ---------------------------------------------------------------------------

def level_for_xp(xp: int) -> int:
    """Level is a pure function of cumulative XP."""
    return xp // XP_PER_LEVEL + 1
