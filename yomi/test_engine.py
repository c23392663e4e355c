"""
Engine test suite: bet placement, compensation, resolution, lifecycle.

Every test builds its own system with fresh_system() so IDs start at 1.
Balances are checked against the ledger after every scenario:
profile.balance must equal the sum of that profile's entry deltas.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from yomi.exceptions import (
    AlreadyBet, IncompleteResolution, InsufficientBalance, InvalidSelection,
    InvalidStake, MarketClosed, MarketNotClosed, MarketNotFound,
    NotAuthenticated, OutcomesMissing, ReconciliationRequired,
    ResolutionInProgress, ValidationError, WriteFailure,
)
from yomi.ledger import Ledger
from yomi.market_engine import MarketEngine
from yomi.models import Bet, Selection, reset_counters


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def fresh_system(n_bettors=3, balance=1000):
    """
    Ledger, engine, funded bettors and one open binary market at 50/50.
    """
    reset_counters()
    ledger = Ledger()
    engine = MarketEngine(ledger)
    bettors = [
        ledger.create_profile(f"bettor{i}", balance=balance)
        for i in range(n_bettors)
    ]
    market = engine.create_market("Will it rain in Paris tomorrow?",
                                  category="meteo")
    return ledger, engine, bettors, market


def multi_market(engine):
    return engine.create_market(
        "Who wins the league?",
        type="multi",
        outcomes=["Lyon", "Paris", "Marseille"],
        probabilities=[Decimal("50"), Decimal("30"), Decimal("20")],
        category="sport",
    )


def assert_ledger_consistent(ledger):
    for profile in ledger.profiles.values():
        total = sum(e.delta for e in ledger.entries_for(profile.id))
        assert total == profile.balance, profile.username
        assert profile.balance >= 0


def probabilities(market):
    return {o.name: o.probability for o in market.outcomes}


# ---------------------------------------------------------------------------
# Placement
# ---------------------------------------------------------------------------

class TestPlacement:

    def test_even_market_bet_on_oui(self):
        ledger, engine, (alice, *_), market = fresh_system()

        bet = engine.place_bet(alice.id, market.id, "OUI", 100)

        assert bet.odds_at_bet == Decimal("2")
        assert bet.potential_payout == 196
        assert bet.status == "pending"
        assert bet.direction == "YES"
        assert alice.balance == 900
        assert market.volume == 100
        assert market.pool_yes == Decimal("198")
        assert market.pool_no == Decimal("100")
        assert probabilities(market) == {
            "OUI": Decimal("66.44"), "NON": Decimal("33.56")}
        assert_ledger_consistent(ledger)

    def test_bet_updates_profile_progression(self):
        _, engine, (alice, *_), market = fresh_system()
        engine.place_bet(alice.id, market.id, "OUI", 100)
        assert alice.total_bets == 1
        assert alice.xp == 10
        assert alice.level == 1

    def test_non_label_backs_non(self):
        _, engine, (alice, *_), market = fresh_system()
        bet = engine.place_bet(alice.id, market.id, "NON", 100)
        assert bet.outcome_id == market.outcome_by_name("NON").id
        assert bet.direction == "YES"
        assert market.pool_no == Decimal("198")
        assert market.pool_yes == Decimal("100")

    def test_any_other_binary_label_backs_oui(self):
        _, engine, (alice, *_), market = fresh_system()
        bet = engine.place_bet(alice.id, market.id, "YES", 50)
        assert bet.outcome_id == market.outcome_by_name("OUI").id

    def test_against_one_side_backs_the_other(self):
        _, engine, (alice, *_), market = fresh_system()
        bet = engine.place_bet(alice.id, market.id, Selection("NO", "OUI"), 100)
        assert bet.outcome_id == market.outcome_by_name("NON").id
        assert bet.direction == "YES"
        assert bet.odds_at_bet == Decimal("2")

    def test_binary_probabilities_stay_complementary(self):
        ledger, engine, bettors, market = fresh_system(n_bettors=5)
        for bettor, (choice, amount) in zip(
                bettors, [("OUI", 37), ("NON", 410), ("OUI", 999),
                          ("NON", 12), ("OUI", 250)]):
            engine.place_bet(bettor.id, market.id, choice, amount)
            oui, non = market.outcomes
            assert oui.probability + non.probability == Decimal("100")
        assert market.volume == 37 + 410 + 999 + 12 + 250
        assert_ledger_consistent(ledger)

    def test_odds_are_frozen_at_placement(self):
        _, engine, (alice, bob, _), market = fresh_system()
        first = engine.place_bet(alice.id, market.id, "OUI", 100)
        engine.place_bet(bob.id, market.id, "OUI", 500)
        assert first.odds_at_bet == Decimal("2")
        assert first.potential_payout == 196

    @pytest.mark.parametrize("amount", [9, 100_001, 0, -10])
    def test_out_of_bounds_stake(self, amount):
        ledger, engine, (alice, *_), market = fresh_system(balance=200_000)
        entries = len(ledger.entries)
        with pytest.raises(InvalidStake):
            engine.place_bet(alice.id, market.id, "OUI", amount)
        assert alice.balance == 200_000
        assert len(ledger.entries) == entries
        assert market.volume == 0
        assert engine.bets == {}

    def test_boundary_stakes_accepted(self):
        _, engine, (alice, *_), market = fresh_system(balance=200_000)
        other = engine.create_market("Second market?")
        engine.place_bet(alice.id, market.id, "OUI", 10)
        engine.place_bet(alice.id, other.id, "OUI", 100_000)
        assert alice.balance == 200_000 - 10 - 100_000

    @pytest.mark.parametrize("amount", [10.5, "50", True, Decimal("20")])
    def test_stake_must_be_whole_zeny(self, amount):
        _, engine, (alice, *_), market = fresh_system()
        with pytest.raises(InvalidStake):
            engine.place_bet(alice.id, market.id, "OUI", amount)

    def test_insufficient_balance(self):
        ledger, engine, (alice, *_), market = fresh_system(balance=50)
        with pytest.raises(InsufficientBalance):
            engine.place_bet(alice.id, market.id, "OUI", 100)
        assert alice.balance == 50
        assert market.volume == 0

    def test_one_bet_per_market(self):
        ledger, engine, (alice, *_), market = fresh_system()
        engine.place_bet(alice.id, market.id, "OUI", 100)
        before = (alice.balance, market.pool_yes, market.pool_no,
                  market.volume, len(ledger.entries))

        with pytest.raises(AlreadyBet):
            engine.place_bet(alice.id, market.id, "NON", 50)

        assert (alice.balance, market.pool_yes, market.pool_no,
                market.volume, len(ledger.entries)) == before
        assert len(engine.bets) == 1

    def test_bet_book_rejects_duplicate_insert(self):
        _, engine, (alice, *_), market = fresh_system()
        engine.place_bet(alice.id, market.id, "OUI", 100)
        duplicate = Bet.new(alice.id, market.id,
                            market.outcome_by_name("NON").id, 50, "YES",
                            Decimal("2"), 98)
        with pytest.raises(AlreadyBet):
            engine.insert_bet(duplicate)

    def test_closed_market(self):
        _, engine, (alice, *_), market = fresh_system()
        engine.close_market(market.id)
        with pytest.raises(MarketClosed):
            engine.place_bet(alice.id, market.id, "OUI", 100)
        assert alice.balance == 1000

    def test_unknown_market(self):
        _, engine, (alice, *_), _ = fresh_system()
        with pytest.raises(MarketNotFound):
            engine.place_bet(alice.id, 999, "OUI", 100)

    def test_unknown_user(self):
        _, engine, _, market = fresh_system()
        with pytest.raises(NotAuthenticated):
            engine.place_bet(999, market.id, "OUI", 100)

    def test_market_without_outcomes(self):
        _, engine, (alice, *_), market = fresh_system()
        market.outcomes = []
        with pytest.raises(OutcomesMissing):
            engine.place_bet(alice.id, market.id, "OUI", 100)
        assert alice.balance == 1000


class TestMultiPlacement:

    def test_back_an_outcome(self):
        _, engine, (alice, *_), _ = fresh_system()
        market = multi_market(engine)
        bet = engine.place_bet(alice.id, market.id, "Paris", 100)
        assert bet.direction == "YES"
        assert bet.odds_at_bet == Decimal("3.3333")
        assert bet.potential_payout == 327

    def test_bet_against_an_outcome(self):
        _, engine, (alice, *_), _ = fresh_system()
        market = multi_market(engine)
        bet = engine.place_bet(alice.id, market.id, "NON Paris", 100)
        assert bet.direction == "NO"
        assert bet.outcome_id == market.outcome_by_name("Paris").id
        assert bet.odds_at_bet == Decimal("1.4286")
        assert bet.potential_payout == 140

    def test_explicit_selection(self):
        _, engine, (alice, *_), _ = fresh_system()
        market = multi_market(engine)
        bet = engine.place_bet(alice.id, market.id,
                               Selection("NO", "Lyon"), 100)
        assert bet.direction == "NO"
        assert bet.odds_at_bet == Decimal("2")

    def test_probabilities_are_static(self):
        _, engine, bettors, _ = fresh_system()
        market = multi_market(engine)
        before = probabilities(market)
        for bettor in bettors:
            engine.place_bet(bettor.id, market.id, "Paris", 500)
        assert probabilities(market) == before
        assert market.volume == 1500

    def test_unknown_outcome_names_the_input(self):
        ledger, engine, (alice, *_), _ = fresh_system()
        market = multi_market(engine)
        with pytest.raises(InvalidSelection, match="Nice"):
            engine.place_bet(alice.id, market.id, "Nice", 100)
        assert alice.balance == 1000


# ---------------------------------------------------------------------------
# Compensation
# ---------------------------------------------------------------------------

class TestCompensation:

    def test_failed_insert_restores_balance_and_market(self, monkeypatch):
        ledger, engine, (alice, *_), market = fresh_system()

        def broken_insert(bet):
            raise RuntimeError("disk full")

        monkeypatch.setattr(engine, "insert_bet", broken_insert)

        with pytest.raises(WriteFailure):
            engine.place_bet(alice.id, market.id, "OUI", 100)

        assert alice.balance == 1000
        assert (alice.total_bets, alice.xp, alice.level) == (0, 0, 1)
        assert market.volume == 0
        assert market.pool_yes == Decimal("100")
        assert market.pool_no == Decimal("100")
        assert probabilities(market) == {
            "OUI": Decimal("50"), "NON": Decimal("50")}
        assert engine.bets == {}
        assert len(engine.price_history_for_market(market.id)) == 2
        assert [e.reason for e in ledger.entries_for(alice.id)] == [
            "signup", "bet", "bet_rollback"]
        assert_ledger_consistent(ledger)

    def test_user_can_bet_after_compensation(self, monkeypatch):
        _, engine, (alice, *_), market = fresh_system()
        original = engine.insert_bet

        def broken_insert(bet):
            raise OSError("io error")

        monkeypatch.setattr(engine, "insert_bet", broken_insert)
        with pytest.raises(WriteFailure):
            engine.place_bet(alice.id, market.id, "OUI", 100)

        monkeypatch.setattr(engine, "insert_bet", original)
        bet = engine.place_bet(alice.id, market.id, "OUI", 100)
        assert bet.potential_payout == 196
        assert alice.balance == 900

    def test_failed_rollback_requires_reconciliation(self, monkeypatch,
                                                     caplog):
        ledger, engine, (alice, *_), market = fresh_system()

        def broken_insert(bet):
            raise RuntimeError("disk full")

        def broken_credit(*args, **kwargs):
            raise RuntimeError("ledger unavailable")

        monkeypatch.setattr(engine, "insert_bet", broken_insert)
        monkeypatch.setattr(ledger, "credit", broken_credit)

        with caplog.at_level(logging.CRITICAL, logger="yomi.market_engine"):
            with pytest.raises(ReconciliationRequired):
                engine.place_bet(alice.id, market.id, "OUI", 100)

        assert alice.balance == 900
        assert any(r.levelno == logging.CRITICAL for r in caplog.records)


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

class TestResolution:

    def _three_bets(self):
        ledger, engine, (alice, bob, carol), market = fresh_system()
        a = engine.place_bet(alice.id, market.id, "OUI", 100)
        b = engine.place_bet(bob.id, market.id, "NON", 200)
        c = engine.place_bet(carol.id, market.id, "OUI", 50)
        engine.close_market(market.id)
        return ledger, engine, (alice, bob, carol), market, (a, b, c)

    def test_payout_exactness(self):
        ledger, engine, (alice, bob, carol), market, (a, b, c) = \
            self._three_bets()
        oui = market.outcome_by_name("OUI")

        result = engine.resolve(market.id, oui.id)

        assert result.payouts_count == 2
        assert result.total_paid == a.potential_payout + c.potential_payout
        assert result.errors == []
        assert alice.balance == 900 + a.potential_payout
        assert bob.balance == 800
        assert carol.balance == 950 + c.potential_payout
        assert (a.status, b.status, c.status) == ("won", "lost", "won")
        assert all(bet.resolved_at for bet in (a, b, c))
        assert_ledger_consistent(ledger)

    def test_market_and_outcome_flags(self):
        _, engine, _, market, _ = self._three_bets()
        oui, non = market.outcomes
        engine.resolve(market.id, oui.id)
        assert market.status == "resolved"
        assert market.is_live is False
        assert market.winner_outcome_id == oui.id
        assert market.resolved_at is not None
        assert (oui.is_winner, non.is_winner) == (True, False)

    def test_profile_stats(self):
        _, engine, (alice, bob, _), market, (a, b, _) = self._three_bets()
        engine.resolve(market.id, market.outcome_by_name("OUI").id)
        assert (alice.wins, alice.losses) == (1, 0)
        assert alice.total_won == a.potential_payout - a.amount
        assert (bob.wins, bob.losses) == (0, 1)
        assert bob.total_won == -200

    def test_re_resolution_changes_nothing(self):
        ledger, engine, bettors, market, _ = self._three_bets()
        oui = market.outcome_by_name("OUI")
        engine.resolve(market.id, oui.id)
        balances = [p.balance for p in bettors]
        entries = len(ledger.entries)

        again = engine.resolve(market.id, oui.id)

        assert (again.payouts_count, again.total_paid) == (0, 0)
        assert [p.balance for p in bettors] == balances
        assert len(ledger.entries) == entries

    def test_re_resolution_keeps_recorded_winner(self, caplog):
        _, engine, _, market, _ = self._three_bets()
        oui, non = market.outcomes
        engine.resolve(market.id, oui.id)

        with caplog.at_level(logging.WARNING, logger="yomi.market_engine"):
            result = engine.resolve(market.id, non.id)

        assert result.payouts_count == 0
        assert market.winner_outcome_id == oui.id
        assert (oui.is_winner, non.is_winner) == (True, False)
        assert "already resolved" in caplog.text

    def test_open_market_needs_force(self):
        _, engine, (alice, *_), market = fresh_system()
        engine.place_bet(alice.id, market.id, "OUI", 100)
        with pytest.raises(MarketNotClosed):
            engine.resolve(market.id, market.outcome_by_name("OUI").id)
        assert market.status == "open"
        assert market.outcomes[0].is_winner is None

    def test_forced_resolution_of_open_market(self, caplog):
        _, engine, (alice, *_), market = fresh_system()
        bet = engine.place_bet(alice.id, market.id, "OUI", 100)
        with caplog.at_level(logging.WARNING, logger="yomi.market_engine"):
            result = engine.resolve(market.id,
                                    market.outcome_by_name("OUI").id,
                                    force=True)
        assert result.payouts_count == 1
        assert alice.balance == 900 + bet.potential_payout
        assert "override" in caplog.text

    def test_resolution_in_progress_rejected(self):
        _, engine, _, market = fresh_system()
        market.status = "resolving"
        with pytest.raises(ResolutionInProgress):
            engine.resolve(market.id, market.outcome_by_name("OUI").id)

    def test_cancelled_market_cannot_resolve(self):
        _, engine, _, market = fresh_system()
        engine.cancel_market(market.id)
        with pytest.raises(MarketClosed):
            engine.resolve(market.id, market.outcome_by_name("OUI").id)

    def test_outcome_from_another_market(self):
        _, engine, _, market = fresh_system()
        other = engine.create_market("Another?")
        engine.close_market(market.id)
        with pytest.raises(InvalidSelection):
            engine.resolve(market.id, other.outcomes[0].id)
        assert market.status == "closed"

    def test_failing_bet_does_not_block_the_rest(self):
        ledger, engine, (alice, bob, carol), market, (a, b, c) = \
            self._three_bets()
        ledger.profiles.pop(alice.id)

        result = engine.resolve(market.id, market.outcome_by_name("OUI").id)

        assert len(result.errors) == 1
        assert f"bet {a.id}" in result.errors[0]
        assert result.payouts_count == 1
        assert a.status == "pending"
        assert (b.status, c.status) == ("lost", "won")
        assert market.status == "resolved"

        # Once the profile is back, re-resolution sweeps the leftover bet.
        ledger.profiles[alice.id] = alice
        again = engine.resolve(market.id, market.outcome_by_name("OUI").id)
        assert again.payouts_count == 1
        assert again.total_paid == a.potential_payout
        assert a.status == "won"
        assert_ledger_consistent(ledger)


class TestMultiResolution:

    def test_flags_per_outcome(self):
        ledger, engine, (alice, bob, carol), _ = fresh_system()
        market = multi_market(engine)
        lyon, paris, marseille = market.outcomes
        a = engine.place_bet(alice.id, market.id, "Paris", 100)
        b = engine.place_bet(bob.id, market.id, "NON Lyon", 100)
        c = engine.place_bet(carol.id, market.id, "Lyon", 100)
        engine.close_market(market.id)

        result = engine.resolve_multi(market.id, {
            lyon.id: False, paris.id: True, marseille.id: False})

        assert (a.status, b.status, c.status) == ("won", "won", "lost")
        assert result.payouts_count == 2
        assert result.total_paid == a.potential_payout + b.potential_payout
        assert market.winner_outcome_id == paris.id
        assert [o.is_winner for o in market.outcomes] == [False, True, False]
        assert_ledger_consistent(ledger)

    def test_bet_against_the_winner_loses(self):
        ledger, engine, (alice, *_), _ = fresh_system()
        market = multi_market(engine)
        paris = market.outcome_by_name("Paris")
        bet = engine.place_bet(alice.id, market.id, "NON Paris", 100)
        engine.close_market(market.id)
        engine.resolve(market.id, paris.id)
        assert bet.status == "lost"
        assert alice.balance == 900
        assert_ledger_consistent(ledger)

    def test_several_winners(self):
        _, engine, (alice, bob, _), _ = fresh_system()
        market = multi_market(engine)
        lyon, paris, marseille = market.outcomes
        engine.place_bet(alice.id, market.id, "Lyon", 100)
        engine.place_bet(bob.id, market.id, "Paris", 100)
        engine.close_market(market.id)

        result = engine.resolve_multi(market.id, {
            lyon.id: True, paris.id: True, marseille.id: False})
        assert result.payouts_count == 2
        assert market.winner_outcome_id == lyon.id

    def test_incomplete_map_rejected_before_any_write(self):
        _, engine, (alice, *_), _ = fresh_system()
        market = multi_market(engine)
        lyon, paris, _ = market.outcomes
        bet = engine.place_bet(alice.id, market.id, "Paris", 100)
        engine.close_market(market.id)

        with pytest.raises(IncompleteResolution):
            engine.resolve_multi(market.id, {lyon.id: False, paris.id: True})

        assert market.status == "closed"
        assert all(o.is_winner is None for o in market.outcomes)
        assert bet.status == "pending"

    def test_foreign_outcome_rejected(self):
        _, engine, _, binary = fresh_system()
        market = multi_market(engine)
        engine.close_market(market.id)
        flags = {o.id: False for o in market.outcomes}
        flags[binary.outcomes[0].id] = True
        with pytest.raises(IncompleteResolution):
            engine.resolve_multi(market.id, flags)

    def test_binary_market_through_flag_map(self):
        _, engine, (alice, *_), market = fresh_system()
        bet = engine.place_bet(alice.id, market.id, "NON", 100)
        engine.close_market(market.id)
        oui, non = market.outcomes
        result = engine.resolve_multi(market.id, {oui.id: False, non.id: True})
        assert result.payouts_count == 1
        assert bet.status == "won"


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:

    def test_binary_market_starts_even(self):
        _, _, _, market = fresh_system()
        assert market.status == "open"
        assert market.is_live is True
        assert [o.name for o in market.outcomes] == ["OUI", "NON"]
        assert probabilities(market) == {
            "OUI": Decimal("50"), "NON": Decimal("50")}

    def test_multi_market_default_split(self):
        _, engine, _, _ = fresh_system()
        market = engine.create_market("Podium?", type="multi",
                                      outcomes=["A", "B", "C"])
        assert sum(o.probability for o in market.outcomes) == Decimal("100")
        assert market.pool_yes == market.pool_no == Decimal("0")

    @pytest.mark.parametrize("kwargs", [
        {"question": "  "},
        {"question": "Q?", "type": "ternary"},
        {"question": "Q?", "type": "multi", "outcomes": ["Only"]},
        {"question": "Q?", "type": "multi", "outcomes": ["A", "A"]},
        {"question": "Q?", "type": "multi", "outcomes": ["OUI A", "B"]},
        {"question": "Q?", "type": "multi", "outcomes": ["A", "B"],
         "probabilities": [Decimal("100")]},
        {"question": "Q?", "pool_yes": Decimal("0")},
        {"question": "Q?", "closes_at": "tomorrow"},
    ])
    def test_create_market_validation(self, kwargs):
        _, engine, _, _ = fresh_system()
        with pytest.raises(ValidationError):
            engine.create_market(**kwargs)

    @pytest.mark.parametrize("value", ["NaN", "Infinity", "-Infinity", "sNaN"])
    @pytest.mark.parametrize("field", ["pool_yes", "pool_no", "probability"])
    def test_non_finite_numbers_rejected(self, field, value):
        _, engine, _, _ = fresh_system()
        if field == "probability":
            kwargs = {"type": "multi", "outcomes": ["A", "B"],
                      "probabilities": [Decimal("50"), Decimal(value)]}
        else:
            kwargs = {field: Decimal(value)}
        with pytest.raises(ValidationError):
            engine.create_market("Q?", **kwargs)
        assert list(engine.markets) == [1]

    def test_close_market(self):
        _, engine, _, market = fresh_system()
        engine.close_market(market.id)
        assert (market.status, market.is_live) == ("closed", False)
        with pytest.raises(MarketClosed):
            engine.close_market(market.id)

    def test_close_expired(self):
        _, engine, _, market = fresh_system()
        now = datetime.now(timezone.utc)
        expired = engine.create_market(
            "Expired?", closes_at=(now - timedelta(hours=1)).isoformat())
        naive = engine.create_market("Naive?", closes_at="2000-01-01T00:00:00")
        future = engine.create_market(
            "Future?", closes_at=(now + timedelta(days=1)).isoformat())

        closed = engine.close_expired(now)

        assert {m.id for m in closed} == {expired.id, naive.id}
        assert expired.status == naive.status == "closed"
        assert future.status == "open"
        assert market.status == "open"

    def test_cancel_refunds_full_stake(self):
        ledger, engine, (alice, bob, _), market = fresh_system()
        a = engine.place_bet(alice.id, market.id, "OUI", 100)
        b = engine.place_bet(bob.id, market.id, "NON", 250)

        result = engine.cancel_market(market.id)

        assert result.refunds_count == 2
        assert result.total_refunded == 350
        assert alice.balance == bob.balance == 1000
        assert (a.status, b.status) == ("cancelled", "cancelled")
        assert market.status == "cancelled"
        assert market.is_live is False
        assert_ledger_consistent(ledger)

    def test_resolved_market_cannot_be_cancelled(self):
        _, engine, _, market = fresh_system()
        engine.close_market(market.id)
        engine.resolve(market.id, market.outcomes[0].id)
        with pytest.raises(MarketClosed):
            engine.cancel_market(market.id)

    def test_list_markets_filters(self):
        _, engine, _, market = fresh_system()
        multi = multi_market(engine)
        engine.close_market(multi.id)
        assert engine.list_markets(status="open") == [market]
        assert engine.list_markets(category="sport") == [multi]
        assert len(engine.list_markets()) == 2


# ---------------------------------------------------------------------------
# Price history
# ---------------------------------------------------------------------------

class TestPriceHistory:

    def test_new_market_records_opening_prices(self):
        _, engine, _, market = fresh_system()
        history = engine.price_history_for_market(market.id)
        assert [(p.outcome_id, p.probability) for p in history] == [
            (market.outcomes[0].id, Decimal("50")),
            (market.outcomes[1].id, Decimal("50")),
        ]

    def test_binary_bet_records_both_sides(self):
        _, engine, (alice, *_), market = fresh_system()
        engine.place_bet(alice.id, market.id, "OUI", 100)
        latest = engine.price_history_for_market(market.id)[-2:]
        assert [p.probability for p in latest] == [
            Decimal("66.44"), Decimal("33.56")]
        assert sum(p.probability for p in latest) == Decimal("100")

    def test_multi_bet_records_the_selected_outcome(self):
        _, engine, (alice, *_), _ = fresh_system()
        market = multi_market(engine)
        paris = market.outcome_by_name("Paris")
        engine.place_bet(alice.id, market.id, "NON Paris", 100)
        history = engine.price_history_for_market(market.id)
        assert len(history) == 4
        assert (history[-1].outcome_id, history[-1].probability) == (
            paris.id, Decimal("30"))

    def test_history_is_per_market(self):
        _, engine, (alice, *_), market = fresh_system()
        other = multi_market(engine)
        engine.place_bet(alice.id, market.id, "NON", 50)
        assert {p.market_id for p in engine.price_history_for_market(
            other.id)} == {other.id}
        assert len(engine.price_history_for_market(market.id)) == 4


# ---------------------------------------------------------------------------
# Conservation over a full lifecycle
# ---------------------------------------------------------------------------

class TestConservation:

    def test_ledger_matches_balances_after_full_lifecycle(self):
        ledger, engine, bettors, market = fresh_system(n_bettors=3)
        multi = multi_market(engine)
        cancelled = engine.create_market("Called off?")

        for bettor, choice in zip(bettors, ["OUI", "NON", "OUI"]):
            engine.place_bet(bettor.id, market.id, choice, 120)
        for bettor, choice in zip(bettors, ["Lyon", "NON Paris", "Marseille"]):
            engine.place_bet(bettor.id, multi.id, choice, 75)
        for bettor in bettors:
            engine.place_bet(bettor.id, cancelled.id, "NON", 40)

        engine.close_market(market.id)
        engine.resolve(market.id, market.outcome_by_name("NON").id)
        engine.resolve_multi(multi.id, {o.id: o.name == "Marseille"
                                        for o in multi.outcomes}, force=True)
        engine.cancel_market(cancelled.id)

        assert all(b.status != "pending" for b in engine.bets.values())
        assert_ledger_consistent(ledger)
