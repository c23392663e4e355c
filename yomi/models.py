"""
Data models for the YOMI betting core.

Two separate domains:
- Ledger side: profiles and ledger entries (who has how much Zeny)
- Market side: markets, outcomes, bets (what is priced and who wagered)

The ledger owns balances and knows nothing about pricing. The market
engine owns pricing state and the bet book, and asks the ledger for
every balance mutation.

Currency amounts (balances, stakes, payouts, volume) are integer Zeny.
Fees, pools, odds and probabilities are Decimal.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional


ZERO = Decimal("0")

# ---------------------------------------------------------------------------
# Statuses
# ---------------------------------------------------------------------------

ROLES = ("user", "admin")

MARKET_TYPES = ("binary", "multi")
MARKET_STATUSES = ("open", "closed", "resolving", "resolved", "cancelled")

DIRECTIONS = ("YES", "NO")

# Binary markets always carry exactly these two outcomes.
YES_OUTCOME = "OUI"
NO_OUTCOME = "NON"


# ---------------------------------------------------------------------------
# Sequential IDs
# ---------------------------------------------------------------------------

_counters: dict[str, int] = defaultdict(int)


def next_id(kind: str) -> int:
    """Sequential ID. Kinds: profile, entry, market, outcome, bet, price."""
    _counters[kind] += 1
    return _counters[kind]


def reset_counters() -> None:
    """Reset all counters. For testing."""
    _counters.clear()


def set_counter(kind: str, value: int) -> None:
    """Set a counter. For loading persisted state."""
    _counters[kind] = value


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Ledger side
# ---------------------------------------------------------------------------

@dataclass
class Profile:
    """
    One per user. `balance` is the single source of truth for spendable
    Zeny and is only ever changed through the ledger.

    total_won: net winnings over settled bets (+payout - stake on a win,
    -stake on a loss).
    """
    id: int
    username: str
    balance: int = 0
    role: str = "user"
    total_bets: int = 0
    total_won: int = 0
    wins: int = 0
    losses: int = 0
    xp: int = 0
    level: int = 1
    created_at: str = field(default_factory=_now)

    @staticmethod
    def new(username: str, role: str = "user") -> "Profile":
        if role not in ROLES:
            raise ValueError(f"unknown role: {role}")
        return Profile(id=next_id("profile"), username=username, role=role)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass
class LedgerEntry:
    """
    Append-only ledger entry. Every balance change gets one of these.

    reason values:
      "signup"       - initial balance at registration
      "topup"        - payment webhook credit (reference = checkout session)
      "adjustment"   - admin credit
      "bet"          - stake debited at placement
      "bet_rollback" - compensation of a failed placement
      "payout"       - winning bet credited at resolution
      "refund"       - stake returned when a market is cancelled
    """
    id: int
    profile_id: int
    delta: int
    balance_after: int
    reason: str
    market_id: Optional[int] = None
    bet_id: Optional[int] = None
    reference: Optional[str] = None
    created_at: str = field(default_factory=_now)

    @staticmethod
    def new(profile_id: int, delta: int, balance_after: int, reason: str,
            market_id: Optional[int] = None,
            bet_id: Optional[int] = None,
            reference: Optional[str] = None) -> "LedgerEntry":
        return LedgerEntry(
            id=next_id("entry"),
            profile_id=profile_id,
            delta=delta,
            balance_after=balance_after,
            reason=reason,
            market_id=market_id,
            bet_id=bet_id,
            reference=reference,
        )


# ---------------------------------------------------------------------------
# Market side
# ---------------------------------------------------------------------------

@dataclass
class Outcome:
    """
    One selectable choice within a market.

    probability is a percentage (0-100). Binary markets derive it from
    the pool ratio after every bet; multi markets keep the admin-set value.
    is_winner stays None until the market is resolved.
    """
    id: int
    market_id: int
    name: str
    probability: Decimal
    is_winner: Optional[bool] = None

    @staticmethod
    def new(market_id: int, name: str, probability: Decimal) -> "Outcome":
        return Outcome(id=next_id("outcome"), market_id=market_id,
                       name=name, probability=probability)


@dataclass
class Market:
    """
    A prediction event.

    type: "binary" (OUI/NON, pool priced) or "multi" (N named outcomes)
    status: "open" -> "closed" -> "resolving" -> "resolved", or "cancelled"
    volume: sum of every stake ever wagered (fee included)
    pool_yes / pool_no: binary liquidity accumulators, fed with the
    post-fee investment of each bet
    """
    id: int
    question: str
    type: str = "binary"
    status: str = "open"
    is_live: bool = True
    category: str = "autre"
    volume: int = 0
    pool_yes: Decimal = Decimal("100")
    pool_no: Decimal = Decimal("100")
    outcomes: list[Outcome] = field(default_factory=list)
    winner_outcome_id: Optional[int] = None
    closes_at: Optional[str] = None
    created_at: str = field(default_factory=_now)
    resolved_at: Optional[str] = None

    @staticmethod
    def new(question: str, type: str = "binary", category: str = "autre",
            closes_at: Optional[str] = None) -> "Market":
        return Market(
            id=next_id("market"),
            question=question,
            type=type,
            category=category,
            closes_at=closes_at,
        )

    @property
    def is_binary(self) -> bool:
        return self.type == "binary"

    @property
    def accepts_bets(self) -> bool:
        return self.status == "open" and self.is_live

    def outcome(self, outcome_id: int) -> Optional[Outcome]:
        return next((o for o in self.outcomes if o.id == outcome_id), None)

    def outcome_by_name(self, name: str) -> Optional[Outcome]:
        return next((o for o in self.outcomes if o.name == name), None)


@dataclass
class Bet:
    """
    One wager by one user on one outcome of one market.

    odds_at_bet and potential_payout are frozen at placement and never
    recomputed. Status moves pending -> won | lost exactly once, during
    resolution, or pending -> cancelled when the market is cancelled.
    """
    id: int
    user_id: int
    market_id: int
    outcome_id: int
    amount: int
    direction: str
    odds_at_bet: Decimal
    potential_payout: int
    status: str = "pending"
    created_at: str = field(default_factory=_now)
    resolved_at: Optional[str] = None

    @staticmethod
    def new(user_id: int, market_id: int, outcome_id: int, amount: int,
            direction: str, odds_at_bet: Decimal,
            potential_payout: int) -> "Bet":
        return Bet(
            id=next_id("bet"),
            user_id=user_id,
            market_id=market_id,
            outcome_id=outcome_id,
            amount=amount,
            direction=direction,
            odds_at_bet=odds_at_bet,
            potential_payout=potential_payout,
        )


@dataclass
class PricePoint:
    """
    One outcome probability at a point in time. Recorded when a market
    opens and after every bet, for charting.
    """
    id: int
    market_id: int
    outcome_id: int
    probability: Decimal
    created_at: str = field(default_factory=_now)

    @staticmethod
    def new(market_id: int, outcome_id: int,
            probability: Decimal) -> "PricePoint":
        return PricePoint(id=next_id("price"), market_id=market_id,
                          outcome_id=outcome_id, probability=probability)


@dataclass(frozen=True)
class Selection:
    """What a bettor picked: an outcome name and whether they back it."""
    direction: str
    outcome_name: str

    def __post_init__(self):
        if self.direction not in DIRECTIONS:
            raise ValueError(f"unknown direction: {self.direction}")
