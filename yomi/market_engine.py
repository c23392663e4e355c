"""
Market engine. Bet placement, market resolution, market lifecycle.

The market engine owns pricing state (pools, outcome probabilities,
volume) and the bet book. It talks to the ledger for every balance
mutation (debit on placement, credit on payout/refund/rollback).

Placement:
  validate -> quote -> debit -> update market -> insert bet.
  Everything up to the debit is side-effect free. The writes after the
  debit run under a compensation: if either fails, the market pricing
  state and the profile (balance via a bet_rollback entry, stats) are
  restored before the error propagates. A failing compensation is
  logged CRITICAL and raised as ReconciliationRequired.

  The bet book is indexed by (user, market). Inserting a second bet
  for the same pair raises AlreadyBet, whatever the pre-checks saw.

Resolution:
  open|closed -> resolving -> resolved. Winner flags are written once.
  Every pending bet is then settled on its own: winners are credited
  their frozen potential_payout and marked won, the rest marked lost.
  A bet that fails to settle stays pending and is reported in the
  result; it never undoes bets already settled. Resolving a resolved
  market sweeps whatever is still pending against the recorded flags,
  which in practice is nothing.

Price history:
  A PricePoint per outcome is recorded when a market is created and
  after each bet (both sides on binary markets, the selected outcome on
  multi markets). Compensation drops the points of a failed bet.

Cancellation (no clawbacks):
  Every pending bet gets its full stake back and is marked cancelled.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Union

from yomi import pricing
from yomi.exceptions import (
    AlreadyBet, IncompleteResolution, InsufficientBalance, InvalidSelection,
    InvalidStake, MarketClosed, MarketNotClosed, MarketNotFound,
    NotAuthenticated, OutcomesMissing, ProfileNotFound,
    ReconciliationRequired, ResolutionInProgress, ValidationError,
    WriteFailure, YomiError,
)
from yomi.ledger import Ledger
from yomi.models import (
    Bet, Market, Outcome, PricePoint, Selection,
    MARKET_TYPES, NO_OUTCOME, YES_OUTCOME, ZERO, _now,
)


logger = logging.getLogger(__name__)


@dataclass
class Resolution:
    """Outcome of one resolution pass."""
    market_id: int
    payouts_count: int = 0
    total_paid: int = 0
    lost_count: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def settled_count(self) -> int:
        return self.payouts_count + self.lost_count


@dataclass
class Cancellation:
    market_id: int
    refunds_count: int = 0
    total_refunded: int = 0
    errors: list[str] = field(default_factory=list)


def parse_selector(market: Market, label: str) -> Selection:
    """
    Turn a user-facing label into a Selection.

    Binary: "NO"/"NON" picks NON, anything else picks OUI.
    Multi: a leading "NON " or "OUI " sets the direction and is stripped;
    an unprefixed label backs the named outcome.
    """
    if market.is_binary:
        if label in ("NO", "NON"):
            return Selection("YES", NO_OUTCOME)
        return Selection("YES", YES_OUTCOME)
    if label.startswith("NON "):
        return Selection("NO", label[4:])
    if label.startswith("OUI "):
        return Selection("YES", label[4:])
    return Selection("YES", label)


def _parse_time(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class MarketEngine:

    def __init__(self, ledger: Ledger):
        self.ledger = ledger
        self.markets: dict[int, Market] = {}
        self.bets: dict[int, Bet] = {}
        self._bet_index: dict[tuple[int, int], int] = {}
        self.price_history: list[PricePoint] = []

    # ------------------------------------------------------------------
    # Market lifecycle
    # ------------------------------------------------------------------

    def create_market(self, question: str, type: str = "binary",
                      outcomes: Optional[list[str]] = None,
                      probabilities: Optional[list[Decimal]] = None,
                      category: str = "autre",
                      closes_at: Optional[str] = None,
                      pool_yes: Decimal = pricing.DEFAULT_POOL,
                      pool_no: Decimal = pricing.DEFAULT_POOL) -> Market:
        """
        Create an open, live market.

        Binary markets get the OUI/NON pair priced from the initial pools.
        Multi markets get the named outcomes with admin-set probabilities
        (equal split by default).
        """
        if type not in MARKET_TYPES:
            raise ValidationError(f"unknown market type: {type}")
        if not question or not question.strip():
            raise ValidationError("question is required")
        if closes_at is not None:
            try:
                closes_at = _parse_time(closes_at).isoformat()
            except ValueError:
                raise ValidationError(f"invalid close time: {closes_at}")

        market = Market.new(question.strip(), type=type, category=category,
                            closes_at=closes_at)

        if market.is_binary:
            pool_yes, pool_no = Decimal(pool_yes), Decimal(pool_no)
            if not (pool_yes.is_finite() and pool_no.is_finite()):
                raise ValidationError("initial pools must be finite numbers")
            if pool_yes <= ZERO or pool_no <= ZERO:
                raise ValidationError("initial pools must be positive")
            market.pool_yes, market.pool_no = pool_yes, pool_no
            yes, no = pricing.binary_probabilities(pool_yes, pool_no)
            market.outcomes = [
                Outcome.new(market.id, YES_OUTCOME, yes),
                Outcome.new(market.id, NO_OUTCOME, no),
            ]
        else:
            names = [n.strip() for n in (outcomes or [])]
            self._check_outcome_names(names)
            if probabilities is None:
                probs = pricing.equal_split(len(names))
            else:
                probs = [Decimal(p) for p in probabilities]
            if len(probs) != len(names):
                raise ValidationError(
                    "one probability is needed per outcome")
            if not all(p.is_finite() for p in probs):
                raise ValidationError("probabilities must be finite numbers")
            if any(p < ZERO or p > pricing.HUNDRED for p in probs):
                raise ValidationError("probabilities must be within 0-100")
            market.pool_yes = market.pool_no = ZERO
            market.outcomes = [
                Outcome.new(market.id, name, prob)
                for name, prob in zip(names, probs)
            ]

        self.markets[market.id] = market
        self._record_prices(market.outcomes)
        logger.info(f"Created {market.type} market {market.id}: "
                    f"{market.question}")
        return market

    def close_market(self, market_id: int) -> Market:
        """Stop taking bets on an open, live market."""
        market = self.get_market(market_id)
        if not market.is_live:
            raise MarketClosed(f"market {market_id} is already closed")
        if market.status != "open":
            raise MarketClosed(f"market {market_id} is not open")
        market.status = "closed"
        market.is_live = False
        logger.info(f"Closed market {market_id}")
        return market

    def close_expired(self, now: Optional[datetime] = None) -> list[Market]:
        """Close every open market whose close time has passed."""
        now = now or datetime.now(timezone.utc)
        closed = []
        for market in self.markets.values():
            if market.status != "open" or market.closes_at is None:
                continue
            if _parse_time(market.closes_at) < now:
                market.status = "closed"
                market.is_live = False
                closed.append(market)
        if closed:
            logger.info(f"Closed {len(closed)} expired markets: "
                        f"{[m.id for m in closed]}")
        return closed

    def cancel_market(self, market_id: int) -> Cancellation:
        """
        Cancel an unresolved market. Every pending bet is refunded its
        full stake (fee included) and marked cancelled.
        """
        market = self.get_market(market_id)
        if market.status in ("resolving", "resolved", "cancelled"):
            raise MarketClosed(
                f"market {market_id} is {market.status} "
                f"and cannot be cancelled")

        market.status = "cancelled"
        market.is_live = False
        market.resolved_at = _now()

        result = Cancellation(market_id=market_id)
        for bet in self.pending_bets(market_id):
            try:
                self.ledger.credit(bet.user_id, bet.amount, reason="refund",
                                   market_id=market_id, bet_id=bet.id)
            except YomiError as exc:
                result.errors.append(f"bet {bet.id}: {exc}")
                logger.error(f"Could not refund bet {bet.id} on market "
                             f"{market_id}: {exc}")
                continue
            bet.status = "cancelled"
            bet.resolved_at = _now()
            result.refunds_count += 1
            result.total_refunded += bet.amount

        logger.info(f"Cancelled market {market_id}: {result.refunds_count} "
                    f"bets refunded ({result.total_refunded} Zeny)")
        return result

    # ------------------------------------------------------------------
    # Bet placement
    # ------------------------------------------------------------------

    def place_bet(self, user_id: int, market_id: int,
                  selection: Union[Selection, str], amount: int) -> Bet:
        """
        Place a bet of `amount` Zeny.

        `selection` is either an explicit Selection or a user-facing label
        (see parse_selector). Returns the pending Bet with its frozen odds
        and potential payout.
        """
        self._check_stake(amount)

        try:
            profile = self.ledger.get_profile(user_id)
        except ProfileNotFound:
            raise NotAuthenticated("you must be signed in to place a bet")
        if profile.balance < amount:
            raise InsufficientBalance(
                f"insufficient balance: need {amount}, "
                f"have {profile.balance}")

        market = self.get_market(market_id)
        if not market.accepts_bets:
            raise MarketClosed(f"market {market_id} is closed to bets")
        if not market.outcomes:
            raise OutcomesMissing(f"market {market_id} has no outcomes")

        outcome, direction = self._select(market, selection)

        if (user_id, market_id) in self._bet_index:
            raise AlreadyBet(f"you already have a bet on market {market_id}")

        probability = outcome.probability
        quote = pricing.quote(amount, probability, direction)

        profile_before = (profile.total_bets, profile.xp, profile.level)
        market_before = self._pricing_state(market)

        self.ledger.debit(user_id, amount, reason="bet", market_id=market_id)
        profile.total_bets += 1
        profile.xp += pricing.XP_PER_BET
        profile.level = pricing.level_for_xp(profile.xp)

        try:
            self._apply_to_market(market, outcome, quote)
            bet = self.insert_bet(Bet.new(
                user_id=user_id,
                market_id=market_id,
                outcome_id=outcome.id,
                amount=amount,
                direction=direction,
                odds_at_bet=quote.odds,
                potential_payout=quote.potential_payout,
            ))
        except Exception as exc:
            self._compensate(profile.id, amount, profile_before,
                             market, market_before, exc)
            if isinstance(exc, YomiError):
                raise
            raise WriteFailure(f"could not record bet: {exc}") from exc

        logger.info(
            f"Bet {bet.id}: user {user_id} {amount} on {outcome.name} "
            f"({direction}) market {market_id}, "
            f"prob {probability}%, odds {quote.odds}, "
            f"payout {quote.potential_payout}")
        return bet

    def insert_bet(self, bet: Bet) -> Bet:
        """Store a bet. (user, market) is unique."""
        key = (bet.user_id, bet.market_id)
        if key in self._bet_index:
            raise AlreadyBet(
                f"you already have a bet on market {bet.market_id}")
        self.bets[bet.id] = bet
        self._bet_index[key] = bet.id
        return bet

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, market_id: int, winning_outcome_id: int,
                force: bool = False) -> Resolution:
        """
        Resolve a market with a single winning outcome.

        The market must be closed unless `force` is set, in which case an
        open market is resolved as a logged admin override.
        """
        market = self.get_market(market_id)
        if market.outcome(winning_outcome_id) is None:
            raise InvalidSelection(
                f"outcome {winning_outcome_id} is not part of "
                f"market {market_id}")
        flags = {o.id: o.id == winning_outcome_id for o in market.outcomes}
        return self._resolve(market, flags, force)

    def resolve_multi(self, market_id: int, flags: dict[int, bool],
                      force: bool = False) -> Resolution:
        """
        Resolve a market from an explicit winner flag per outcome.
        Every outcome must be flagged; partial maps are rejected.
        """
        market = self.get_market(market_id)
        expected = {o.id for o in market.outcomes}
        unknown = set(flags) - expected
        if unknown:
            raise IncompleteResolution(
                f"outcomes {sorted(unknown)} are not part of "
                f"market {market_id}")
        missing = expected - set(flags)
        if missing or not expected:
            raise IncompleteResolution(
                f"every outcome needs a result; missing {sorted(missing)}")
        return self._resolve(
            market, {oid: bool(won) for oid, won in flags.items()}, force)

    def _resolve(self, market: Market, flags: dict[int, bool],
                 force: bool) -> Resolution:
        if market.status == "resolved":
            recorded = {o.id: bool(o.is_winner) for o in market.outcomes}
            if recorded != flags:
                logger.warning(
                    f"Market {market.id} is already resolved; keeping the "
                    f"recorded winners")
            return self._settle_pending(market)

        self._begin_resolution(market, force)

        for outcome in market.outcomes:
            outcome.is_winner = flags[outcome.id]
        winners = [o.id for o in market.outcomes if o.is_winner]
        market.winner_outcome_id = winners[0] if winners else None
        market.resolved_at = _now()

        try:
            result = self._settle_pending(market)
        finally:
            market.status = "resolved"

        logger.info(
            f"Resolved market {market.id}: {result.payouts_count} payouts, "
            f"{result.total_paid} Zeny paid, {result.lost_count} lost, "
            f"{len(result.errors)} errors")
        return result

    def _begin_resolution(self, market: Market, force: bool) -> None:
        if market.status == "resolving":
            raise ResolutionInProgress(
                f"market {market.id} is already being resolved")
        if market.status == "cancelled":
            raise MarketClosed(f"market {market.id} is cancelled")
        if market.status == "open":
            if not force:
                raise MarketNotClosed(
                    f"market {market.id} is still open; close it first "
                    f"or force the resolution")
            logger.warning(
                f"Admin override: resolving market {market.id} while it "
                f"is still open")
        market.status = "resolving"
        market.is_live = False

    def _settle_pending(self, market: Market) -> Resolution:
        result = Resolution(market_id=market.id)
        for bet in self.pending_bets(market.id):
            try:
                self._settle_bet(market, bet, result)
            except YomiError as exc:
                result.errors.append(f"bet {bet.id}: {exc}")
                logger.error(f"Could not settle bet {bet.id} on market "
                             f"{market.id}: {exc}")
        return result

    def _settle_bet(self, market: Market, bet: Bet,
                    result: Resolution) -> None:
        profile = self.ledger.get_profile(bet.user_id)
        if self._bet_wins(market, bet):
            self.ledger.credit(profile.id, bet.potential_payout,
                               reason="payout", market_id=market.id,
                               bet_id=bet.id)
            bet.status = "won"
            profile.wins += 1
            profile.total_won += bet.potential_payout - bet.amount
            result.payouts_count += 1
            result.total_paid += bet.potential_payout
        else:
            bet.status = "lost"
            profile.losses += 1
            profile.total_won -= bet.amount
            result.lost_count += 1
        bet.resolved_at = _now()

    @staticmethod
    def _bet_wins(market: Market, bet: Bet) -> bool:
        outcome = market.outcome(bet.outcome_id)
        backed_won = bool(outcome is not None and outcome.is_winner)
        return backed_won if bet.direction == "YES" else not backed_won

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_market(self, market_id: int) -> Market:
        market = self.markets.get(market_id)
        if market is None:
            raise MarketNotFound(f"market {market_id} not found")
        return market

    def list_markets(self, status: Optional[str] = None,
                     category: Optional[str] = None) -> list[Market]:
        return [
            m for m in self.markets.values()
            if (status is None or m.status == status)
            and (category is None or m.category == category)
        ]

    def bets_for_market(self, market_id: int) -> list[Bet]:
        return [b for b in self.bets.values() if b.market_id == market_id]

    def bets_for_user(self, user_id: int) -> list[Bet]:
        return [b for b in self.bets.values() if b.user_id == user_id]

    def pending_bets(self, market_id: int) -> list[Bet]:
        return [b for b in self.bets.values()
                if b.market_id == market_id and b.status == "pending"]

    def price_history_for_market(self, market_id: int) -> list[PricePoint]:
        return [p for p in self.price_history if p.market_id == market_id]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _check_stake(amount) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise InvalidStake(f"stake must be a whole number of Zeny, "
                               f"got {amount!r}")
        if amount < pricing.MIN_STAKE:
            raise InvalidStake(f"minimum stake is {pricing.MIN_STAKE} Zeny")
        if amount > pricing.MAX_STAKE:
            raise InvalidStake(f"maximum stake is {pricing.MAX_STAKE} Zeny")

    @staticmethod
    def _check_outcome_names(names: list[str]) -> None:
        if len(names) < 2:
            raise ValidationError("multi markets need at least two outcomes")
        if any(not n for n in names):
            raise ValidationError("outcome names cannot be empty")
        if len(set(names)) != len(names):
            raise ValidationError("outcome names must be unique")
        for name in names:
            if name.startswith(("OUI ", "NON ")):
                raise ValidationError(
                    f"outcome name cannot start with a direction: {name}")

    def _select(self, market: Market,
                selection: Union[Selection, str]) -> tuple[Outcome, str]:
        if isinstance(selection, str):
            label = selection
            selection = parse_selector(market, selection)
        else:
            label = selection.outcome_name

        outcome = market.outcome_by_name(selection.outcome_name)
        if outcome is None:
            raise InvalidSelection(f"invalid selection: {label}")

        direction = selection.direction
        if market.is_binary and direction == "NO":
            # Betting against one side of a binary market backs the other.
            outcome = next(o for o in market.outcomes if o.id != outcome.id)
            direction = "YES"
        return outcome, direction

    def _pricing_state(self, market: Market) -> tuple:
        return (market.volume, market.pool_yes, market.pool_no,
                {o.id: o.probability for o in market.outcomes},
                len(self.price_history))

    def _restore_pricing_state(self, market: Market, state: tuple) -> None:
        volume, pool_yes, pool_no, probabilities, history_len = state
        del self.price_history[history_len:]
        market.volume = volume
        market.pool_yes = pool_yes
        market.pool_no = pool_no
        for outcome in market.outcomes:
            outcome.probability = probabilities[outcome.id]

    def _apply_to_market(self, market: Market, outcome: Outcome,
                         quote: pricing.Quote) -> None:
        market.volume += quote.stake
        if not market.is_binary:
            self._record_prices([outcome])
            return
        if outcome.name == NO_OUTCOME:
            market.pool_no += quote.investment
        else:
            market.pool_yes += quote.investment
        yes, no = pricing.binary_probabilities(market.pool_yes,
                                               market.pool_no)
        market.outcome_by_name(YES_OUTCOME).probability = yes
        market.outcome_by_name(NO_OUTCOME).probability = no
        self._record_prices(market.outcomes)

    def _record_prices(self, outcomes: list[Outcome]) -> None:
        for o in outcomes:
            self.price_history.append(
                PricePoint.new(o.market_id, o.id, o.probability))

    def _compensate(self, profile_id: int, amount: int,
                    profile_before: tuple, market: Market,
                    market_before: tuple, cause: Exception) -> None:
        logger.error(f"Bet by user {profile_id} on market {market.id} failed "
                     f"after debit ({cause}); restoring balance and market")
        try:
            self._restore_pricing_state(market, market_before)
            self.ledger.credit(profile_id, amount, reason="bet_rollback",
                               market_id=market.id)
            profile = self.ledger.get_profile(profile_id)
            profile.total_bets, profile.xp, profile.level = profile_before
        except Exception as exc:
            logger.critical(
                f"Rollback failed for user {profile_id} on market "
                f"{market.id} ({amount} Zeny debited): {exc}. "
                f"Manual reconciliation required.")
            raise ReconciliationRequired(
                f"bet failed and {amount} Zeny could not be restored to "
                f"user {profile_id}") from exc
